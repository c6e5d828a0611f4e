from __future__ import annotations

from calendar import monthrange
from datetime import date
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
CENT = Decimal("0.01")

GOAL_TYPES = {"savings", "debt", "investment"}
DEBT_PAYMENT_COMPONENTS = {"principal", "interest", "principal_interest"}


def allocation_dates(target_date: date, today: date | None = None) -> list[date]:
    """Monthly allocation dates leading up to (but excluding) ``target_date``.

    Each date falls on the target's day of month, clamped to the month length.
    The first one is next month when today's day has already reached the
    target day.
    """
    today = today or date.today()
    target_day = target_date.day
    months_ahead = 1 if today.day >= target_day else 0
    dates: list[date] = []
    offset = months_ahead
    while True:
        candidate = _add_months(date(today.year, today.month, 1), offset, target_day)
        if candidate >= target_date:
            break
        dates.append(candidate)
        offset += 1
    return dates


def monthly_allocations_with_remainder(total: Decimal, months: int) -> list[Decimal]:
    """Split ``total`` into ``months`` floor-to-cent parts; the last part takes the remainder."""
    if months <= 0:
        return []
    total = _coerce_amount(total)
    base = (total / months).quantize(CENT, rounding=ROUND_DOWN)
    remainder = (total - base * (months - 1)).quantize(CENT, rounding=ROUND_HALF_UP)
    return [base] * (months - 1) + [remainder]


def create_goal_tracking(
    amount: Decimal,
    target_date: date,
    starting_balance: Decimal | None = None,
    today: date | None = None,
) -> dict[str, dict]:
    today = today or date.today()
    if target_date <= today:
        raise ValueError("Target date must be in the future.")
    amount = _coerce_amount(amount)
    if amount <= 0:
        raise ValueError("Goal amount must be greater than zero.")

    dates = allocation_dates(target_date, today)
    if not dates:
        # Target falls before the next allocation day; allocate everything on the target date.
        dates = [target_date]
    amounts = monthly_allocations_with_remainder(amount, len(dates))
    opening_balance = _coerce_amount(starting_balance or ZERO)

    tracking: dict[str, dict] = {}
    for index, (allocation_date, allocation_amount) in enumerate(zip(dates, amounts)):
        key = f"{allocation_date.year:04d}-{allocation_date.month:02d}"
        month = tracking.setdefault(
            key,
            {
                "month": key,
                "startingBalance": float(opening_balance) if index == 0 else 0.0,
                "allocations": {},
            },
        )
        iso = allocation_date.isoformat()
        month["allocations"][iso] = {
            "dateTarget": iso,
            "amountTarget": float(allocation_amount),
        }
    return tracking


def shift_month_key(month: str, months: int) -> str:
    year, month_number = int(month[:4]), int(month[5:7])
    total = month_number - 1 + months
    return f"{year + total // 12:04d}-{total % 12 + 1:02d}"


def _add_months(start_value: date, months: int, anchor_day: int) -> date:
    total_month = start_value.month - 1 + months
    year = start_value.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    return date(year, month, min(anchor_day, last_day))


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
