from __future__ import annotations

from dataclasses import dataclass
from calendar import monthrange
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List, Dict, Set

WEEKLY_DAYS = 7
BIWEEKLY_DAYS = 14
SEMI_MONTHLY_GAP_DAYS = 15
SUPPORTED_FREQUENCIES = {"weekly", "biweekly", "semimonthly", "monthly", "annually"}
FREQUENCY_ALIASES = {
    "byweekly": "biweekly",
    "semimonth": "semimonthly",
    "yearly": "annually",
    "annual": "annually",
}


@dataclass(frozen=True)
class RecurringStream:
    stream_id: int
    last_date: date
    average_amount: Decimal
    account_key: str
    frequency: str = "monthly"
    description: str | None = None
    category_id: int | None = None


@dataclass(frozen=True)
class ActualTransaction:
    date: date
    account_key: str


@dataclass(frozen=True)
class ProjectedEntry:
    stream_id: int
    date: date
    amount: Decimal
    account_key: str
    description: str | None = None
    source: str = "projected"


def project_recurring_schedule(
    stream: RecurringStream,
    range_start: date,
    range_end: date,
    existing_transactions: Iterable[ActualTransaction],
) -> List[ProjectedEntry]:
    existing_index = _index_existing_transactions(existing_transactions)
    return _project_stream(stream, range_start, range_end, existing_index)


def project_recurring_schedules(
    streams: Iterable[RecurringStream],
    range_start: date,
    range_end: date,
    existing_transactions: Iterable[ActualTransaction],
) -> List[ProjectedEntry]:
    if range_start > range_end:
        raise ValueError("range_start must be on or before range_end.")
    existing_index = _index_existing_transactions(existing_transactions)
    projections: List[ProjectedEntry] = []
    for stream in streams:
        projections.extend(
            _project_stream(stream, range_start, range_end, existing_index, check_range=False)
        )
    projections.sort(key=lambda entry: (entry.date, entry.stream_id))
    return projections


def normalize_frequency(value: str | None) -> str | None:
    """Map a Plaid frequency (``SEMI_MONTHLY``, ``ANNUALLY``...) to a supported one, or None."""
    if not value:
        return None
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    normalized = FREQUENCY_ALIASES.get(normalized, normalized)
    if normalized not in SUPPORTED_FREQUENCIES:
        return None
    return normalized


def _project_stream(
    stream: RecurringStream,
    range_start: date,
    range_end: date,
    existing_index: Dict[str, Set[date]],
    check_range: bool = True,
) -> List[ProjectedEntry]:
    if check_range and range_start > range_end:
        raise ValueError("range_start must be on or before range_end.")
    frequency = normalize_frequency(stream.frequency)
    if frequency is None:
        return []

    # Occurrences strictly after the last seen one.
    minimum_date = max(range_start, stream.last_date + timedelta(days=1))
    excluded_dates = existing_index.get(stream.account_key, set())

    if frequency in {"weekly", "biweekly"}:
        interval = WEEKLY_DAYS if frequency == "weekly" else BIWEEKLY_DAYS
        candidates = _interval_dates(stream.last_date, minimum_date, range_end, interval)
    elif frequency == "semimonthly":
        candidates = _semi_monthly_dates(stream.last_date, minimum_date, range_end)
    else:
        month_increment = 1 if frequency == "monthly" else 12
        candidates = _monthly_dates(stream.last_date, minimum_date, range_end, month_increment)

    amount = _coerce_amount(stream.average_amount)
    return [
        ProjectedEntry(
            stream_id=stream.stream_id,
            date=candidate,
            amount=amount,
            account_key=stream.account_key,
            description=stream.description,
        )
        for candidate in candidates
        if candidate not in excluded_dates
    ]


def _interval_dates(anchor: date, minimum_date: date, range_end: date, interval_days: int) -> List[date]:
    dates: List[date] = []
    current = _first_occurrence_on_or_after(anchor, minimum_date, interval_days)
    while current <= range_end:
        dates.append(current)
        current += timedelta(days=interval_days)
    return dates


def _monthly_dates(anchor: date, minimum_date: date, range_end: date, month_increment: int) -> List[date]:
    dates: List[date] = []
    offset = month_increment
    current = _add_months(anchor, offset, anchor.day)
    while current < minimum_date:
        offset += month_increment
        current = _add_months(anchor, offset, anchor.day)
    while current <= range_end:
        dates.append(current)
        offset += month_increment
        current = _add_months(anchor, offset, anchor.day)
    return dates


def _semi_monthly_dates(anchor: date, minimum_date: date, range_end: date) -> List[date]:
    first_day = anchor.day if anchor.day <= SEMI_MONTHLY_GAP_DAYS else anchor.day - SEMI_MONTHLY_GAP_DAYS
    second_day = first_day + SEMI_MONTHLY_GAP_DAYS
    dates: List[date] = []
    offset = 0
    while True:
        month_start = _add_months(date(anchor.year, anchor.month, 1), offset, 1)
        if month_start > range_end:
            break
        for day in (first_day, second_day):
            candidate = _add_months(month_start, 0, day)
            if minimum_date <= candidate <= range_end:
                dates.append(candidate)
        offset += 1
    return dates


def _first_occurrence_on_or_after(
    start_date: date, minimum_date: date, interval_days: int
) -> date:
    if start_date >= minimum_date:
        return start_date
    days_between = (minimum_date - start_date).days
    intervals = (days_between + interval_days - 1) // interval_days
    return start_date + timedelta(days=interval_days * intervals)


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _index_existing_transactions(
    existing_transactions: Iterable[ActualTransaction],
) -> Dict[str, Set[date]]:
    index: Dict[str, Set[date]] = {}
    for txn in existing_transactions:
        index.setdefault(txn.account_key, set()).add(txn.date)
    return index


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
