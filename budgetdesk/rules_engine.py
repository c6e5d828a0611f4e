from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping, Sequence

CONDITION_KEYS = ("merchantName", "amount", "date", "account")
ACTION_KEYS = ("renameMerchant", "setNote", "setCategory", "addTags")

MERCHANT_MATCH_TYPES = {"contains", "exactly"}
RANGE_MATCH_TYPES = {"exactly", "between"}
AMOUNT_DIRECTIONS = {"expenses", "income"}


@dataclass(frozen=True)
class RuleTransaction:
    transaction_id: int
    date: date
    amount: Decimal
    merchant_name: str | None = None
    payee: str | None = None
    budget_account_id: int | None = None
    category_id: int | None = None
    notes: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class BudgetRule:
    id: int
    name: str
    conditions: Mapping[str, dict] = field(default_factory=dict)
    actions: Mapping[str, dict] = field(default_factory=dict)
    is_active: bool = True


def clean_conditions(raw: Mapping[str, dict] | None) -> dict[str, dict]:
    cleaned = _clean_section(raw, CONDITION_KEYS)

    merchant = cleaned["merchantName"]
    if merchant["enabled"]:
        match_type = _require_match_type(merchant, MERCHANT_MATCH_TYPES, "Merchant name")
        value = str(merchant.get("value") or "").strip()
        if not value:
            raise ValueError("Merchant name condition requires a value.")
        cleaned["merchantName"] = {"enabled": True, "matchType": match_type, "value": value}

    amount = cleaned["amount"]
    if amount["enabled"]:
        match_type = _require_match_type(amount, RANGE_MATCH_TYPES, "Amount")
        normalized: dict = {"enabled": True, "matchType": match_type}
        direction = amount.get("type")
        if direction:
            direction = str(direction).strip().lower()
            if direction not in AMOUNT_DIRECTIONS:
                raise ValueError("Amount condition type must be expenses or income.")
            normalized["type"] = direction
        if match_type == "exactly":
            normalized["value"] = str(_parse_amount(amount.get("value"), "Amount value"))
        else:
            start = _parse_amount(amount.get("rangeStart"), "Amount range start")
            end = _parse_amount(amount.get("rangeEnd"), "Amount range end")
            if start > end:
                raise ValueError("Amount range start must be on or before range end.")
            normalized["rangeStart"] = str(start)
            normalized["rangeEnd"] = str(end)
        cleaned["amount"] = normalized

    date_condition = cleaned["date"]
    if date_condition["enabled"]:
        match_type = _require_match_type(date_condition, RANGE_MATCH_TYPES, "Date")
        normalized = {"enabled": True, "matchType": match_type}
        if match_type == "exactly":
            normalized["value"] = _parse_day(date_condition.get("value"))
        else:
            start_day = _parse_day(date_condition.get("rangeStart"))
            end_day = _parse_day(date_condition.get("rangeEnd"))
            if start_day > end_day:
                raise ValueError("Date range start must be on or before range end.")
            normalized["rangeStart"] = start_day
            normalized["rangeEnd"] = end_day
        cleaned["date"] = normalized

    account = cleaned["account"]
    if account["enabled"]:
        try:
            account_id = int(account.get("value"))
        except (TypeError, ValueError) as exc:
            raise ValueError("Account condition requires a budget account id.") from exc
        cleaned["account"] = {"enabled": True, "value": account_id}

    return cleaned


def clean_actions(raw: Mapping[str, dict] | None) -> dict[str, dict]:
    cleaned = _clean_section(raw, ACTION_KEYS)

    for key in ("renameMerchant", "setNote"):
        action = cleaned[key]
        if action["enabled"]:
            value = str(action.get("value") or "").strip()
            if not value:
                raise ValueError(f"{key} action requires a value.")
            cleaned[key] = {"enabled": True, "value": value}

    category = cleaned["setCategory"]
    if category["enabled"]:
        try:
            category_id = int(category.get("value"))
        except (TypeError, ValueError) as exc:
            raise ValueError("setCategory action requires a category id.") from exc
        cleaned["setCategory"] = {"enabled": True, "value": category_id}

    tags = cleaned["addTags"]
    if tags["enabled"]:
        values = tags.get("value") or []
        if not isinstance(values, list):
            raise ValueError("addTags action requires a list of tag names.")
        names = _dedupe([str(value).strip() for value in values if str(value).strip()])
        if not names:
            raise ValueError("addTags action requires at least one tag.")
        cleaned["addTags"] = {"enabled": True, "value": names}

    if not any(action["enabled"] for action in cleaned.values()):
        raise ValueError("Rule requires at least one enabled action.")
    return cleaned


def order_rules(rules: Iterable[BudgetRule], rule_order: Sequence[int] | None) -> list[BudgetRule]:
    """Rules named in ``rule_order`` first, in that order, then the rest by id."""
    positions = {rule_id: index for index, rule_id in enumerate(rule_order or [])}
    ordered = sorted(
        rules,
        key=lambda rule: (rule.id not in positions, positions.get(rule.id, 0), rule.id),
    )
    return ordered


def transaction_matches_rule(txn: RuleTransaction, rule: BudgetRule) -> bool:
    conditions = rule.conditions

    merchant = conditions.get("merchantName") or {}
    if merchant.get("enabled"):
        merchant_name = (txn.merchant_name or txn.payee or "").lower()
        expected = str(merchant.get("value") or "").lower()
        if merchant.get("matchType") == "contains":
            if expected not in merchant_name:
                return False
        elif merchant_name != expected:
            return False

    amount_condition = conditions.get("amount") or {}
    if amount_condition.get("enabled"):
        direction = amount_condition.get("type")
        if direction == "expenses" and txn.amount <= 0:
            return False
        if direction == "income" and txn.amount >= 0:
            return False
        amount = abs(_coerce_amount(txn.amount))
        if amount_condition.get("matchType") == "between":
            start = _coerce_amount(amount_condition.get("rangeStart"))
            end = _coerce_amount(amount_condition.get("rangeEnd"))
            if amount < start or amount > end:
                return False
        elif amount != _coerce_amount(amount_condition.get("value")):
            return False

    date_condition = conditions.get("date") or {}
    if date_condition.get("enabled"):
        day = txn.date.day
        if date_condition.get("matchType") == "between":
            if day < int(date_condition["rangeStart"]) or day > int(date_condition["rangeEnd"]):
                return False
        elif day != int(date_condition["value"]):
            return False

    account = conditions.get("account") or {}
    if account.get("enabled"):
        if txn.budget_account_id is None or txn.budget_account_id != int(account["value"]):
            return False

    return True


def apply_rule_actions(txn: RuleTransaction, rule: BudgetRule) -> RuleTransaction:
    actions = rule.actions
    updates: dict = {}

    category = actions.get("setCategory") or {}
    if category.get("enabled") and category.get("value") is not None:
        updates["category_id"] = int(category["value"])

    rename = actions.get("renameMerchant") or {}
    if rename.get("enabled") and rename.get("value"):
        updates["merchant_name"] = rename["value"]

    note = actions.get("setNote") or {}
    if note.get("enabled") and note.get("value"):
        updates["notes"] = note["value"]

    tags = actions.get("addTags") or {}
    if tags.get("enabled") and tags.get("value"):
        updates["tags"] = tuple(_dedupe([*txn.tags, *tags["value"]]))

    if not updates:
        return txn
    return replace(txn, **updates)


def apply_rules(
    txn: RuleTransaction,
    rules: Iterable[BudgetRule],
    rule_order: Sequence[int] | None = None,
) -> tuple[RuleTransaction, list[int]]:
    """Run active rules in order; each rule sees the previous rule's output.

    Returns the processed transaction and the ids of the rules that matched.
    """
    matched: list[int] = []
    current = txn
    for rule in order_rules((rule for rule in rules if rule.is_active), rule_order):
        if transaction_matches_rule(current, rule):
            current = apply_rule_actions(current, rule)
            matched.append(rule.id)
    return current, matched


def _clean_section(raw: Mapping[str, dict] | None, keys: Sequence[str]) -> dict[str, dict]:
    raw = raw or {}
    unknown = set(raw) - set(keys)
    if unknown:
        raise ValueError(f"Unknown rule fields: {', '.join(sorted(unknown))}")
    cleaned: dict[str, dict] = {}
    for key in keys:
        entry = raw.get(key) or {}
        if not isinstance(entry, Mapping):
            raise ValueError(f"{key} must be an object.")
        if entry.get("enabled"):
            cleaned[key] = {**entry, "enabled": True}
        else:
            cleaned[key] = {"enabled": False}
    return cleaned


def _require_match_type(entry: Mapping, allowed: set[str], label: str) -> str:
    match_type = str(entry.get("matchType") or "").strip().lower()
    if match_type not in allowed:
        raise ValueError(f"{label} condition match type must be one of: {', '.join(sorted(allowed))}.")
    return match_type


def _parse_amount(value, label: str) -> Decimal:
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, AttributeError) as exc:
        raise ValueError(f"{label} must be a number.") from exc
    if not amount.is_finite():
        raise ValueError(f"{label} must be a number.")
    if amount < 0:
        raise ValueError(f"{label} must not be negative.")
    return amount


def _parse_day(value) -> int:
    try:
        day = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("Day of month must be a number.") from exc
    if day < 1 or day > 31:
        raise ValueError("Day of month must be between 1 and 31.")
    return day


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
