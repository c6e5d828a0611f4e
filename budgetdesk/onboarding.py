from __future__ import annotations

from typing import Mapping

ACCOUNT_LINKING_STEPS = ("start", "plaid", "manual")
BUDGET_STEPS = (
    "profile_goals",
    "analyze_spending",
    "analyze_spending_in_progress",
    "budget_setup",
    "invite_members",
    "end",
)
ONBOARDING_STEPS = ACCOUNT_LINKING_STEPS + BUDGET_STEPS
REQUIRED_PROFILE_FIELDS = ("full_name", "age", "annual_income", "savings")


class OnboardingTransitionError(ValueError):
    """Raised when a budget cannot move to the requested onboarding step."""


def normalize_step(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in ONBOARDING_STEPS:
        raise ValueError("Invalid onboarding step.")
    return normalized


def allowed_next_steps(current: str) -> set[str]:
    if current in ACCOUNT_LINKING_STEPS:
        allowed = set(ACCOUNT_LINKING_STEPS) - {current}
        # Start has no accounts to show yet.
        if current != "start":
            allowed.add("profile_goals")
        return allowed
    index = BUDGET_STEPS.index(current)
    allowed: set[str] = set()
    if index > 0:
        allowed.add(BUDGET_STEPS[index - 1])
    if index < len(BUDGET_STEPS) - 1:
        allowed.add(BUDGET_STEPS[index + 1])
    return allowed


def is_profile_complete(profile: Mapping | None) -> bool:
    if not profile:
        return False
    return all(profile.get(field_name) for field_name in REQUIRED_PROFILE_FIELDS)


def validate_transition(
    current: str,
    target: str,
    *,
    has_linked_accounts: bool,
    profile_complete: bool,
    has_recommendations: bool,
) -> str:
    current = normalize_step(current)
    target = normalize_step(target)
    if target not in allowed_next_steps(current):
        raise OnboardingTransitionError(f"Invalid onboarding transition: {current} -> {target}")
    if target == "profile_goals" and not has_linked_accounts:
        raise OnboardingTransitionError("Link at least one account before continuing.")
    if target == "analyze_spending" and not profile_complete:
        raise OnboardingTransitionError("Incomplete financial profile.")
    if target == "budget_setup" and not has_recommendations:
        raise OnboardingTransitionError("Spending recommendations are not ready.")
    return target


def validate_end(current: str) -> None:
    if normalize_step(current) != "invite_members":
        raise OnboardingTransitionError(f"Onboarding cannot end from step: {current}")
