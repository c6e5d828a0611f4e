from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Sequence

from budgetdesk.categories import INCOME_GROUP, OTHER_CATEGORY, OTHER_GROUP

ZERO = Decimal("0")
CENT = Decimal("0.01")
MONTH_KEY_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
MAX_YEAR_DISTANCE = 100
TARGET_SOURCES = {"group", "category"}


class TrackingLookupError(LookupError):
    """Raised when a target update names a group or category the budget does not have."""


@dataclass(frozen=True)
class CategoryInfo:
    id: int | None
    name: str


@dataclass(frozen=True)
class GroupInfo:
    id: int | None
    name: str
    categories: tuple[CategoryInfo, ...] = ()


@dataclass(frozen=True)
class TrackedTransaction:
    date: date
    amount: Decimal
    category_name: str | None = None
    composite_data: tuple[tuple[str, Decimal], ...] = ()


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def iter_month_keys(start_value: date, end_value: date) -> list[str]:
    keys: list[str] = []
    year, month = start_value.year, start_value.month
    while (year, month) <= (end_value.year, end_value.month):
        keys.append(f"{year:04d}-{month:02d}")
        month += 1
        if month > 12:
            month = 1
            year += 1
    return keys


def validate_month_keys(months: Sequence[str], today: date | None = None) -> list[str]:
    today = today or date.today()
    if not months:
        raise ValueError("At least one month is required.")
    validated: list[str] = []
    for month in months:
        if not isinstance(month, str) or not MONTH_KEY_PATTERN.match(month):
            raise ValueError(f"Invalid month format: {month}. Expected format: YYYY-MM")
        year = int(month[:4])
        if abs(year - today.year) > MAX_YEAR_DISTANCE:
            raise ValueError(f"Year {year} is too far from current year")
        validated.append(month)
    return validated


def calculate_spending_tracking(
    transactions: Iterable[TrackedTransaction],
    groups: Sequence[GroupInfo],
    existing: Mapping[str, Mapping[str, dict]] | None = None,
    today: date | None = None,
) -> dict[str, dict[str, dict]]:
    """Aggregate transactions into per-month, per-group spending.

    Every month between the earliest transaction and today is present, and
    every group appears in every month, plus the catch-all ``Other`` group.
    Categories from ``existing`` survive with their amounts reset when they
    carry a tax flag or any non-zero amount, so user-added rows stay visible.
    Targets default to the actual amount.
    """
    today = today or date.today()
    existing = existing or {}
    txns = list(transactions)
    dates = [txn.date for txn in txns]
    start_value = min(dates) if dates else today
    end_value = max([today, *dates])

    category_to_group: dict[str, str] = {}
    category_ids: dict[str, int | None] = {}
    for group in groups:
        for category in group.categories:
            category_to_group[category.name] = group.name
            category_ids[category.name] = category.id
    other_group_id = next((group.id for group in groups if group.name == OTHER_GROUP), None)

    tracking: dict[str, dict[str, dict]] = {}
    for key in iter_month_keys(start_value, end_value):
        existing_month = existing.get(key) or {}
        month: dict[str, dict] = {}
        for group in groups:
            month[group.name] = _fresh_group(group, existing_month.get(group.name))
        month[OTHER_GROUP] = {
            "groupName": OTHER_GROUP,
            "groupId": other_group_id,
            "targetSource": "group",
            "spendingActual": ZERO,
            "spendingTarget": ZERO,
            "isTaxDeductible": False,
            "categories": [_fresh_category(OTHER_CATEGORY, category_ids.get(OTHER_CATEGORY))],
        }
        tracking[key] = month

    for txn in txns:
        month = tracking[month_key(txn.date)]
        amount = _coerce_amount(txn.amount)
        if txn.composite_data:
            for part_name, weight in txn.composite_data:
                group_name = category_to_group.get(part_name, OTHER_GROUP)
                part_amount = amount * _coerce_amount(weight) / Decimal("100")
                _add_to_category(
                    month[group_name],
                    part_name,
                    category_ids.get(part_name),
                    _signed(group_name, part_amount),
                )
            continue

        category_name = txn.category_name or OTHER_CATEGORY
        group_name = category_to_group.get(category_name, OTHER_GROUP) if txn.category_name else OTHER_GROUP
        signed = _signed(group_name, amount)
        if group_name == OTHER_GROUP:
            other = month[OTHER_GROUP]["categories"][0]
            other["spendingActual"] += signed
            other["spendingTarget"] += signed
        else:
            _add_to_category(month[group_name], category_name, category_ids.get(category_name), signed)

    for month in tracking.values():
        for group in month.values():
            group["spendingActual"] = sum((cat["spendingActual"] for cat in group["categories"]), ZERO)
            group["spendingTarget"] = sum((cat["spendingTarget"] for cat in group["categories"]), ZERO)

    return _round_tracking(tracking)


def recalculate_spending_tracking(
    existing: Mapping[str, Mapping[str, dict]],
    months: Sequence[str],
    transactions: Iterable[TrackedTransaction],
    groups: Sequence[GroupInfo],
) -> tuple[dict[str, dict[str, dict]], list[str]]:
    """Recompute actuals for ``months`` while keeping stored targets.

    Months absent from ``existing`` are skipped and returned as the second
    element. Targets, target source and tax flags already stored win over the
    recomputed values; newly seen categories take their actual as target.
    """
    merged: dict[str, dict[str, dict]] = {key: dict(value) for key, value in existing.items()}
    txns = list(transactions)
    skipped: list[str] = []
    for month in months:
        stored_month = merged.get(month)
        if not stored_month:
            skipped.append(month)
            continue
        month_txns = [txn for txn in txns if month_key(txn.date) == month]
        first_day = date(int(month[:4]), int(month[5:7]), 1)
        computed = calculate_spending_tracking(
            month_txns,
            groups,
            existing={month: stored_month},
            today=first_day,
        )[month]

        updated_month = dict(stored_month)
        for group_name, new_group in computed.items():
            stored_group = stored_month.get(group_name)
            if not stored_group:
                continue
            stored_targets = {
                cat["categoryName"]: cat for cat in stored_group.get("categories") or []
            }
            categories = []
            for category in new_group["categories"]:
                stored_category = stored_targets.get(category["categoryName"])
                if stored_category:
                    category = {
                        **category,
                        "spendingTarget": stored_category.get("spendingTarget", category["spendingTarget"]),
                        "isTaxDeductible": stored_category.get("isTaxDeductible", False),
                    }
                categories.append(category)
            updated_month[group_name] = {
                **stored_group,
                **new_group,
                "categories": categories,
                "spendingTarget": stored_group.get("spendingTarget", new_group["spendingTarget"]),
                "targetSource": stored_group.get("targetSource", new_group["targetSource"]),
                "isTaxDeductible": stored_group.get("isTaxDeductible", False),
            }
        merged[month] = updated_month
    return merged, skipped


def apply_month_targets(
    existing: Mapping[str, Mapping[str, dict]],
    month: str,
    category_spending: Mapping[str, Mapping],
    groups: Sequence[GroupInfo],
) -> dict[str, dict[str, dict]]:
    """Replace one month's targets, keeping the stored actuals.

    Raises ``TrackingLookupError`` before touching anything when a group or
    category in ``category_spending`` does not exist for the budget.
    """
    groups_by_name = {group.name: group for group in groups}
    for group_name, group_targets in category_spending.items():
        group = groups_by_name.get(group_name)
        if group is None:
            raise TrackingLookupError(f"Category group not found: {group_name}")
        known = {category.name for category in group.categories}
        for category_targets in group_targets.get("categories") or []:
            if category_targets["categoryName"] not in known:
                raise TrackingLookupError(
                    f"Category not found: {category_targets['categoryName']} in group {group_name}"
                )

    existing_month = existing.get(month) or {}
    updated_month: dict[str, dict] = {}
    for group_name, group_targets in category_spending.items():
        group = groups_by_name[group_name]
        category_ids = {category.name: category.id for category in group.categories}
        stored_group = existing_month.get(group_name) or {}
        stored_actuals = {
            cat["categoryName"]: cat.get("spendingActual", 0)
            for cat in stored_group.get("categories") or []
        }
        target_source = group_targets.get("targetSource") or "group"
        if target_source not in TARGET_SOURCES:
            raise ValueError("Target source must be group or category.")
        updated_month[group_name] = {
            "groupName": group_name,
            "groupId": group.id,
            "targetSource": target_source,
            "spendingActual": stored_group.get("spendingActual", 0),
            "spendingTarget": _to_number(_coerce_amount(group_targets.get("target", 0))),
            "isTaxDeductible": bool(group_targets.get("isTaxDeductible", False)),
            "categories": [
                {
                    "categoryName": cat["categoryName"],
                    "categoryId": category_ids.get(cat["categoryName"]),
                    "spendingActual": stored_actuals.get(cat["categoryName"], 0),
                    "spendingTarget": _to_number(_coerce_amount(cat.get("target", 0))),
                    "isTaxDeductible": bool(cat.get("isTaxDeductible", False)),
                }
                for cat in group_targets.get("categories") or []
            ],
        }

    updated = {key: value for key, value in existing.items()}
    updated[month] = updated_month
    return updated


def _fresh_group(group: GroupInfo, existing_group: Mapping | None) -> dict:
    categories: list[dict] = []
    if existing_group:
        for category in existing_group.get("categories") or []:
            if (
                category.get("isTaxDeductible")
                or category.get("spendingActual")
                or category.get("spendingTarget")
            ):
                categories.append(
                    {**category, "spendingActual": ZERO, "spendingTarget": ZERO}
                )
    return {
        "groupName": group.name,
        "groupId": group.id,
        "targetSource": (existing_group or {}).get("targetSource", "group"),
        "spendingActual": ZERO,
        "spendingTarget": ZERO,
        "isTaxDeductible": bool((existing_group or {}).get("isTaxDeductible", False)),
        "categories": categories,
    }


def _fresh_category(name: str, category_id: int | None) -> dict:
    return {
        "categoryName": name,
        "categoryId": category_id,
        "spendingActual": ZERO,
        "spendingTarget": ZERO,
        "isTaxDeductible": False,
    }


def _add_to_category(group: dict, name: str, category_id: int | None, amount: Decimal) -> None:
    for category in group["categories"]:
        if category["categoryName"] == name:
            category["spendingActual"] += amount
            category["spendingTarget"] += amount
            return
    category = _fresh_category(name, category_id)
    category["spendingActual"] = amount
    category["spendingTarget"] = amount
    group["categories"].append(category)


def _signed(group_name: str, amount: Decimal) -> Decimal:
    if group_name.lower() == INCOME_GROUP.lower():
        return -abs(amount)
    return amount


def _round_tracking(tracking: dict[str, dict[str, dict]]) -> dict[str, dict[str, dict]]:
    for month in tracking.values():
        for group in month.values():
            group["spendingActual"] = _to_number(group["spendingActual"])
            group["spendingTarget"] = _to_number(group["spendingTarget"])
            for category in group["categories"]:
                category["spendingActual"] = _to_number(_coerce_amount(category["spendingActual"]))
                category["spendingTarget"] = _to_number(_coerce_amount(category["spendingTarget"]))
    return tracking


def _to_number(value: Decimal) -> float:
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
