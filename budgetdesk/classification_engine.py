"""
Merchant Classification Engine

Learns which category a budget assigns to a merchant and suggests that
category for new transactions. Patterns come from the merchant text only;
there is no model training involved.
"""

import re
from datetime import datetime
from typing import Optional
from sqlalchemy import Table, select, and_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection

CONFIDENCE_BY_PATTERN_TYPE = {
    "exact": 0.95,
    "starts_with": 0.75,
    "contains": 0.50,
}


def extract_merchant_patterns(merchant: str) -> list[tuple[str, str]]:
    """
    Extract merchant patterns from a merchant name or payee line.

    Returns list of (pattern, pattern_type) tuples in order of specificity:
    1. Exact match (full merchant text)
    2. Starts-with match (first one or two tokens)
    3. Contains match (first keyword of 3+ characters)

    Args:
        merchant: Raw merchant name or payee

    Returns:
        List of (pattern, pattern_type) tuples
    """
    if not merchant or not merchant.strip():
        return []

    patterns = []
    cleaned = re.sub(r"\s+", " ", merchant.strip().upper())

    patterns.append((cleaned, "exact"))

    merchant_match = re.match(r'^([A-Z0-9]+(?:\s+[A-Z0-9]+)?)', cleaned)
    if merchant_match:
        merchant_name = merchant_match.group(1).strip()
        if merchant_name and merchant_name != cleaned:
            patterns.append((merchant_name, "starts_with"))

    words = re.findall(r'[A-Z0-9]{3,}', cleaned)
    if words:
        keyword = words[0]
        if keyword != cleaned and (not merchant_match or keyword != merchant_match.group(1).strip()):
            patterns.append((keyword, "contains"))

    return patterns


def suggest_category(
    conn: Connection,
    budget_id: int,
    merchant: str,
    classification_rules: Table
) -> tuple[Optional[int], Optional[float]]:
    """
    Suggest a category id for a merchant based on what the budget learned.

    Tries patterns from most to least specific and, for a given pattern,
    prefers the rule with the highest match_count.

    Args:
        conn: Database connection
        budget_id: Budget the rules belong to
        merchant: Merchant name or payee
        classification_rules: SQLAlchemy table for classification rules

    Returns:
        Tuple of (category_id, confidence) or (None, None) if no match
    """
    for pattern, pattern_type in extract_merchant_patterns(merchant):
        result = conn.execute(
            select(classification_rules.c.category_id, classification_rules.c.match_count)
            .where(
                and_(
                    classification_rules.c.budget_id == budget_id,
                    classification_rules.c.pattern == pattern,
                    classification_rules.c.pattern_type == pattern_type
                )
            )
            .order_by(classification_rules.c.match_count.desc())
            .limit(1)
        ).mappings().first()

        if result:
            return result["category_id"], CONFIDENCE_BY_PATTERN_TYPE.get(pattern_type, 0.5)

    return None, None


def upsert_classification_rule(
    conn: Connection,
    budget_id: int,
    pattern: str,
    pattern_type: str,
    category_id: int,
    classification_rules: Table
) -> None:
    """
    Insert a classification rule or bump the count of an existing one.

    A pattern is unique per budget, pattern type and category; a repeat
    increments match_count and refreshes last_used_at.
    """
    if not pattern or category_id is None:
        return

    now = datetime.utcnow()
    insert_fn = pg_insert if conn.dialect.name == "postgresql" else sqlite_insert
    stmt = insert_fn(classification_rules).values(
        budget_id=budget_id,
        pattern=pattern,
        pattern_type=pattern_type,
        category_id=category_id,
        match_count=1,
        last_used_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=['budget_id', 'pattern', 'pattern_type', 'category_id'],
        set_={
            'match_count': classification_rules.c.match_count + 1,
            'last_used_at': now
        }
    )
    conn.execute(stmt)


def learn_category(
    conn: Connection,
    budget_id: int,
    merchant: Optional[str],
    category_id: Optional[int],
    classification_rules: Table
) -> int:
    """Record every pattern of ``merchant`` for ``category_id``; returns patterns learned."""
    if not merchant or category_id is None:
        return 0
    patterns = extract_merchant_patterns(merchant)
    for pattern, pattern_type in patterns:
        upsert_classification_rule(
            conn, budget_id, pattern, pattern_type, category_id, classification_rules
        )
    return len(patterns)
