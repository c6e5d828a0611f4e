"""
Spending and goal recommendations for onboarding.

Builds three strategies (balanced, conservative, relaxed) from the latest
rolling month of budget transactions. Each strategy trims or grows
discretionary categories, then fits goal contributions into whatever income
is left, stretching or compressing goal timelines as needed.
"""

from __future__ import annotations

import copy
import math
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Sequence

from budgetdesk.categories import DISCRETIONARY_CATEGORIES, INCOME_CATEGORY, OTHER_CATEGORY, OTHER_GROUP
from budgetdesk.goal_tracking import allocation_dates, monthly_allocations_with_remainder, shift_month_key
from budgetdesk.spending_tracking import GroupInfo, TrackedTransaction, calculate_spending_tracking

ZERO = Decimal("0")
CENT = Decimal("0.01")
ROLLING_WINDOW_DAYS = 30
MAX_REDUCTION = Decimal("0.5")
CONSERVATIVE_REDUCTION = Decimal("0.2")
RELAXED_INCREASE = Decimal("0.2")
STRATEGIES = ("balanced", "conservative", "relaxed")


@dataclass(frozen=True)
class GoalInput:
    id: int
    amount: Decimal
    target_date: date
    starting_balance: Decimal = ZERO
    spending_tracking: Mapping[str, dict] = field(default_factory=dict)


@dataclass(frozen=True)
class SpendingSummary:
    total_income: Decimal
    total_discretionary: Decimal
    total_non_discretionary: Decimal
    category_spending: dict[str, Decimal]


def rolling_month_transactions(transactions: Iterable[TrackedTransaction]) -> list[TrackedTransaction]:
    """Transactions within 30 days of the most recent one."""
    txns = sorted(transactions, key=lambda txn: txn.date, reverse=True)
    if not txns:
        return []
    cutoff = txns[0].date - timedelta(days=ROLLING_WINDOW_DAYS)
    return [txn for txn in txns if txn.date >= cutoff]


def summarize_spending(
    transactions: Iterable[TrackedTransaction],
    discretionary: frozenset[str] = DISCRETIONARY_CATEGORIES,
) -> SpendingSummary:
    category_spending: dict[str, Decimal] = {}
    for txn in transactions:
        name = txn.category_name or OTHER_CATEGORY
        category_spending[name] = category_spending.get(name, ZERO) + _coerce_amount(txn.amount)

    total_income = abs(category_spending.get(INCOME_CATEGORY, ZERO))
    total_discretionary = sum(
        (abs(amount) for name, amount in category_spending.items() if name in discretionary), ZERO
    )
    total_non_discretionary = sum(
        (
            abs(amount)
            for name, amount in category_spending.items()
            if name not in discretionary and name != INCOME_CATEGORY
        ),
        ZERO,
    )
    return SpendingSummary(
        total_income=total_income,
        total_discretionary=total_discretionary,
        total_non_discretionary=total_non_discretionary,
        category_spending=category_spending,
    )


def initial_spending_recommendations(
    summary: SpendingSummary, groups: Sequence[GroupInfo]
) -> dict[str, dict]:
    category_to_group = {
        category.name: group.name for group in groups for category in group.categories
    }
    recommendations: dict[str, dict] = {
        group.name: _empty_group_recommendation(group.name) for group in groups
    }
    for name, spending in summary.category_spending.items():
        group_name = category_to_group.get(name, OTHER_GROUP)
        amount = -abs(spending) if name == INCOME_CATEGORY else spending
        group = recommendations.setdefault(group_name, _empty_group_recommendation(group_name))
        group["recommendation"] += amount
        group["spending"] += amount
        group["categories"].append(
            {"categoryName": name, "recommendation": amount, "spending": amount}
        )
    return recommendations


def initial_goal_amounts(goal: GoalInput, today: date) -> dict[str, Decimal]:
    dates = allocation_dates(goal.target_date, today) or [goal.target_date]
    amounts = monthly_allocations_with_remainder(_coerce_amount(goal.amount), len(dates))
    return {
        f"{allocation_date.year:04d}-{allocation_date.month:02d}": amount
        for allocation_date, amount in zip(dates, amounts)
    }


def apply_balanced_strategy(
    spending: dict[str, dict],
    goals: dict[int, dict[str, Decimal]],
    summary: SpendingSummary,
    discretionary: frozenset[str] = DISCRETIONARY_CATEGORIES,
) -> None:
    deficit = max(
        ZERO,
        summary.total_non_discretionary + summary.total_discretionary - summary.total_income,
    )
    total_discretionary = _discretionary_total(spending, discretionary)
    if deficit > 0 and total_discretionary > 0:
        total_reduction = min(total_discretionary * MAX_REDUCTION, deficit)
        categories = sorted(
            _discretionary_categories(spending, discretionary),
            key=lambda category: category["recommendation"],
            reverse=True,
        )
        applied = ZERO
        for index, category in enumerate(categories):
            if index == len(categories) - 1:
                reduction = total_reduction - applied
            else:
                proportion = category["recommendation"] / total_discretionary
                reduction = _round_cents(total_reduction * proportion)
                applied += reduction
            category["recommendation"] = _round_cents(category["recommendation"] - reduction)
        _refresh_group_totals(spending)

    available = _available_after_spending(spending, summary, discretionary)
    if available <= 0:
        _clear_goals(goals)
        return
    total_first_month = _total_first_month(goals)
    if available < total_first_month:
        _extend_timelines(goals, total_first_month / available)
    else:
        _respread_goals(goals)


def apply_conservative_strategy(
    spending: dict[str, dict],
    goals: dict[int, dict[str, Decimal]],
    summary: SpendingSummary,
    discretionary: frozenset[str] = DISCRETIONARY_CATEGORIES,
) -> None:
    deficit = max(
        ZERO,
        summary.total_non_discretionary + summary.total_discretionary - summary.total_income,
    )
    total_discretionary = _discretionary_total(spending, discretionary)
    if total_discretionary > 0:
        if deficit > 0:
            reduction_percent = max(deficit / total_discretionary, CONSERVATIVE_REDUCTION)
            reduction_percent = min(reduction_percent, MAX_REDUCTION)
        else:
            reduction_percent = CONSERVATIVE_REDUCTION
        _scale_discretionary(spending, discretionary, 1 - reduction_percent)

    available = _available_after_spending(spending, summary, discretionary)
    if available <= 0:
        _clear_goals(goals)
        return
    total_first_month = _total_first_month(goals)
    if available >= total_first_month:
        for goal_id, amounts in goals.items():
            if not amounts:
                continue
            first_amount = amounts[min(amounts)]
            proportion = first_amount / total_first_month if total_first_month else ZERO
            increased = (available * proportion).quantize(CENT, rounding=ROUND_DOWN)
            if increased <= 0:
                continue
            total_needed = sum(amounts.values(), ZERO)
            months_needed = max(1, math.ceil(total_needed / increased))
            goals[goal_id] = _spread(min(amounts), total_needed, months_needed)
    else:
        _extend_timelines(goals, total_first_month / available)


def apply_relaxed_strategy(
    spending: dict[str, dict],
    goals: dict[int, dict[str, Decimal]],
    summary: SpendingSummary,
    discretionary: frozenset[str] = DISCRETIONARY_CATEGORIES,
) -> None:
    surplus = summary.total_income - (summary.total_non_discretionary + summary.total_discretionary)
    total_discretionary = _discretionary_total(spending, discretionary)
    if total_discretionary > 0:
        if surplus >= 0:
            increase = min(total_discretionary * RELAXED_INCREASE, surplus)
            _scale_discretionary(spending, discretionary, 1 + increase / total_discretionary)
        else:
            reduction = min(-surplus, total_discretionary * MAX_REDUCTION)
            _scale_discretionary(spending, discretionary, 1 - reduction / total_discretionary)

    available = _available_after_spending(spending, summary, discretionary)
    if available <= 0:
        _clear_goals(goals)
        return
    total_first_month = _total_first_month(goals)
    if total_first_month > available:
        ratio = available / total_first_month
        for goal_id, amounts in goals.items():
            if not amounts:
                continue
            total_needed = sum(amounts.values(), ZERO) * ratio
            goals[goal_id] = _spread(min(amounts), total_needed, len(amounts))
    else:
        _respread_goals(goals)


def build_goal_tracking(goal: GoalInput, monthly_amounts: Mapping[str, Decimal]) -> dict[str, dict]:
    """Turn recommended monthly amounts into a goal's tracking structure.

    Months that already had allocations keep their dates, scaled to the new
    monthly amount. Other months get one allocation on the goal's day of month.
    """
    tracking: dict[str, dict] = {}
    for index, month in enumerate(sorted(monthly_amounts)):
        amount = _coerce_amount(monthly_amounts[month])
        original = (goal.spending_tracking or {}).get(month) or {}
        allocations = original.get("allocations") or {}
        opening = float(_round_cents(_coerce_amount(goal.starting_balance))) if index == 0 else 0.0
        entry = {
            "month": month,
            "startingBalance": opening,
            "allocations": {},
        }
        if not allocations:
            if amount > 0:
                allocation_date = _day_in_month(month, goal.target_date.day)
                entry["allocations"][allocation_date] = {
                    "dateTarget": allocation_date,
                    "amountTarget": float(_round_cents(amount)),
                }
        else:
            original_total = sum(
                (_coerce_amount(allocation.get("amountTarget", 0)) for allocation in allocations.values()),
                ZERO,
            )
            for key, allocation in allocations.items():
                adjusted = ZERO
                if original_total > 0:
                    adjusted = _round_cents(
                        _coerce_amount(allocation.get("amountTarget", 0)) * amount / original_total
                    )
                entry["allocations"][key] = {
                    "dateTarget": allocation.get("dateTarget", key),
                    "amountTarget": float(adjusted),
                }
        tracking[month] = entry
    return tracking


def recommend_spending_and_goals(
    transactions: Sequence[TrackedTransaction],
    groups: Sequence[GroupInfo],
    goals: Sequence[GoalInput],
    today: date | None = None,
    discretionary: frozenset[str] = DISCRETIONARY_CATEGORIES,
) -> dict:
    today = today or date.today()
    spending_tracking = calculate_spending_tracking(transactions, groups, today=today)
    summary = summarize_spending(rolling_month_transactions(transactions), discretionary)
    base_spending = initial_spending_recommendations(summary, groups)
    base_goals = {goal.id: initial_goal_amounts(goal, today) for goal in goals}

    appliers = {
        "balanced": apply_balanced_strategy,
        "conservative": apply_conservative_strategy,
        "relaxed": apply_relaxed_strategy,
    }
    spending_recommendations: dict[str, dict] = {}
    goal_recommendations: dict[str, dict] = {}
    for strategy in STRATEGIES:
        spending = copy.deepcopy(base_spending)
        goal_amounts = {goal_id: dict(amounts) for goal_id, amounts in base_goals.items()}
        appliers[strategy](spending, goal_amounts, summary, discretionary)
        spending_recommendations[strategy] = _round_spending(spending)
        goal_recommendations[strategy] = {
            str(goal_id): {
                "goalId": goal_id,
                "monthlyAmounts": {
                    month: float(_round_cents(amount)) for month, amount in sorted(amounts.items())
                },
            }
            for goal_id, amounts in goal_amounts.items()
        }

    goal_tracking = {}
    for goal in goals:
        balanced = goal_recommendations["balanced"][str(goal.id)]["monthlyAmounts"]
        goal_tracking[str(goal.id)] = build_goal_tracking(
            goal, {month: _coerce_amount(amount) for month, amount in balanced.items()}
        )

    return {
        "spendingRecommendations": spending_recommendations,
        "spendingTracking": spending_tracking,
        "goalSpendingRecommendations": goal_recommendations,
        "goalSpendingTracking": goal_tracking,
        "summary": {
            "totalIncome": float(_round_cents(summary.total_income)),
            "totalDiscretionarySpending": float(_round_cents(summary.total_discretionary)),
            "totalNonDiscretionarySpending": float(_round_cents(summary.total_non_discretionary)),
        },
    }


def _empty_group_recommendation(name: str) -> dict:
    return {
        "groupName": name,
        "recommendation": ZERO,
        "spending": ZERO,
        "targetSource": "group",
        "categories": [],
    }


def _discretionary_categories(spending: dict[str, dict], discretionary: frozenset[str]) -> list[dict]:
    return [
        category
        for group in spending.values()
        for category in group["categories"]
        if category["categoryName"] in discretionary
    ]


def _discretionary_total(spending: dict[str, dict], discretionary: frozenset[str]) -> Decimal:
    return sum(
        (category["recommendation"] for category in _discretionary_categories(spending, discretionary)),
        ZERO,
    )


def _scale_discretionary(spending: dict[str, dict], discretionary: frozenset[str], factor: Decimal) -> None:
    for category in _discretionary_categories(spending, discretionary):
        category["recommendation"] = _round_cents(category["recommendation"] * factor)
    _refresh_group_totals(spending)


def _refresh_group_totals(spending: dict[str, dict]) -> None:
    for group in spending.values():
        group["recommendation"] = sum(
            (category["recommendation"] for category in group["categories"]), ZERO
        )


def _available_after_spending(
    spending: dict[str, dict], summary: SpendingSummary, discretionary: frozenset[str]
) -> Decimal:
    return (
        summary.total_income
        - summary.total_non_discretionary
        - _discretionary_total(spending, discretionary)
    )


def _clear_goals(goals: dict[int, dict[str, Decimal]]) -> None:
    for goal_id in goals:
        goals[goal_id] = {}


def _total_first_month(goals: dict[int, dict[str, Decimal]]) -> Decimal:
    return sum((amounts[min(amounts)] for amounts in goals.values() if amounts), ZERO)


def _extend_timelines(goals: dict[int, dict[str, Decimal]], ratio: Decimal) -> None:
    for goal_id, amounts in goals.items():
        if not amounts:
            continue
        month_count = math.ceil(Decimal(len(amounts)) * ratio)
        goals[goal_id] = _spread(min(amounts), sum(amounts.values(), ZERO), month_count)


def _respread_goals(goals: dict[int, dict[str, Decimal]]) -> None:
    for goal_id, amounts in goals.items():
        if not amounts:
            continue
        goals[goal_id] = _spread(min(amounts), sum(amounts.values(), ZERO), len(amounts))


def _spread(first_month: str, total: Decimal, month_count: int) -> dict[str, Decimal]:
    allocations = monthly_allocations_with_remainder(total, month_count)
    return {shift_month_key(first_month, index): amount for index, amount in enumerate(allocations)}


def _round_spending(spending: dict[str, dict]) -> dict[str, dict]:
    rounded: dict[str, dict] = {}
    for name, group in spending.items():
        rounded[name] = {
            **group,
            "recommendation": float(_round_cents(group["recommendation"])),
            "spending": float(_round_cents(group["spending"])),
            "categories": [
                {
                    **category,
                    "recommendation": float(_round_cents(category["recommendation"])),
                    "spending": float(_round_cents(category["spending"])),
                }
                for category in group["categories"]
            ],
        }
    return rounded


def _day_in_month(month: str, day: int) -> str:
    year, month_number = int(month[:4]), int(month[5:7])
    last_day = monthrange(year, month_number)[1]
    return date(year, month_number, min(day, last_day)).isoformat()


def _round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
