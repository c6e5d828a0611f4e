from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Container, Iterable

MANUAL_COUNTER_DIGITS = 8
PLAID_COUNTER_DIGITS = 6
PLAID_ID_SUFFIX_LENGTH = 6
MAX_SYNC_PAGES = 1000


@dataclass
class SyncBatch:
    added: list[dict] = field(default_factory=list)
    modified: list[dict] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    next_cursor: str | None = None
    pages: int = 0


@dataclass(frozen=True)
class PendingRewire:
    pending_plaid_tx_id: str
    posted: dict


@dataclass(frozen=True)
class AggregatedTransaction:
    plaid_tx_id: str
    plaid_account_id: str
    date: date
    amount: Decimal
    merchant_name: str | None
    payee: str | None
    iso_currency_code: str | None
    category_detailed: str
    category_confidence: str | None
    pending: bool
    raw_data: dict


def collect_sync_pages(fetch_page: Callable[[str | None], dict], cursor: str | None) -> SyncBatch:
    """Follow ``transactions/sync`` pages from ``cursor`` until ``has_more`` is false."""
    batch = SyncBatch(next_cursor=cursor)
    current = cursor
    while True:
        page = fetch_page(current)
        batch.pages += 1
        batch.added.extend(page.get("added") or [])
        batch.modified.extend(page.get("modified") or [])
        batch.removed.extend(
            item["transaction_id"] if isinstance(item, dict) else item
            for item in page.get("removed") or []
        )
        current = page.get("next_cursor") or current
        batch.next_cursor = current
        if not page.get("has_more"):
            break
        if batch.pages >= MAX_SYNC_PAGES:
            raise RuntimeError("Plaid sync did not settle after the maximum number of pages.")
    return batch


def split_pending_rewires(batch: SyncBatch) -> list[PendingRewire]:
    """Pull pending-to-posted transitions out of ``batch``.

    A removed pending id whose posted version arrives in ``added`` (linked by
    ``pending_transaction_id``) is not a deletion: the stored row is kept and
    re-pointed at the posted transaction. Matched ids and posted entries are
    removed from the batch in place. A posted version that cannot be stored
    leaves its pending id in ``removed`` so the stale row is deleted.
    """
    removed = set(batch.removed)
    rewires: list[PendingRewire] = []
    remaining_added: list[dict] = []
    for txn in batch.added:
        pending_id = txn.get("pending_transaction_id")
        if pending_id and pending_id in removed and parse_plaid_transaction(txn) is not None:
            rewires.append(PendingRewire(pending_plaid_tx_id=pending_id, posted=txn))
            removed.discard(pending_id)
        else:
            remaining_added.append(txn)
    batch.added = remaining_added
    batch.removed = [plaid_id for plaid_id in batch.removed if plaid_id in removed]
    return rewires


def parse_plaid_transaction(raw: dict) -> AggregatedTransaction | None:
    """Normalize a Plaid transaction, or None when it has no detailed category."""
    category = raw.get("personal_finance_category") or {}
    detailed = category.get("detailed")
    if not detailed:
        return None
    return AggregatedTransaction(
        plaid_tx_id=raw["transaction_id"],
        plaid_account_id=raw["account_id"],
        date=date.fromisoformat(str(raw["date"])),
        amount=Decimal(str(raw["amount"])),
        merchant_name=raw.get("merchant_name"),
        payee=raw.get("name"),
        iso_currency_code=raw.get("iso_currency_code"),
        category_detailed=detailed,
        category_confidence=category.get("confidence_level"),
        pending=bool(raw.get("pending")),
        raw_data=raw,
    )


def partition_transactions(raw_transactions: Iterable[dict]) -> tuple[list[AggregatedTransaction], list[str]]:
    kept: list[AggregatedTransaction] = []
    skipped: list[str] = []
    for raw in raw_transactions:
        parsed = parse_plaid_transaction(raw)
        if parsed is None:
            skipped.append(raw.get("transaction_id", ""))
            continue
        kept.append(parsed)
    return kept, skipped


def plaid_user_tx_id(txn_date: date, plaid_tx_id: str, taken: Container[str]) -> str:
    """``P`` + YYYYMMDD + 6-digit counter + the last six characters of the Plaid id."""
    suffix = (plaid_tx_id or "")[-PLAID_ID_SUFFIX_LENGTH:].rjust(PLAID_ID_SUFFIX_LENGTH, "0")
    prefix = f"P{txn_date:%Y%m%d}"
    for counter in range(10 ** PLAID_COUNTER_DIGITS):
        candidate = f"{prefix}{counter:0{PLAID_COUNTER_DIGITS}d}{suffix}"
        if candidate not in taken:
            return candidate
    raise ValueError("No user transaction id available for this date.")


def manual_user_tx_id(symbol: str, mask: str, taken: Container[str]) -> str:
    """Institution symbol + account mask + the first free 8-digit counter."""
    prefix = f"{symbol.upper()}{mask}"
    for counter in range(1, 10 ** MANUAL_COUNTER_DIGITS):
        candidate = f"{prefix}{counter:0{MANUAL_COUNTER_DIGITS}d}"
        if candidate not in taken:
            return candidate
    raise ValueError("No user transaction id available for this account.")
