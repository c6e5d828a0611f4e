from __future__ import annotations

import re

OTHER_GROUP = "Other"
OTHER_CATEGORY = "Other"
INCOME_GROUP = "Income"
INCOME_CATEGORY = "Income"

CATEGORY_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9\s\-_]*$")
CATEGORY_NAME_MAX_LENGTH = 50

# (group name, description, enabled, categories)
BUILT_IN_CATEGORY_GROUPS: list[tuple[str, str, bool, list[str]]] = [
    ("Income", "Income from various sources", True, ["Income"]),
    (
        "Savings & Transfers",
        "Savings and money transfers",
        True,
        [
            "Inbound Transfer",
            "Investment Income",
            "Account Transfer",
            "Other Inbound",
            "Investment Transfer",
            "Outbound Transfer",
            "Withdrawal",
            "Other Outbound",
        ],
    ),
    ("Debt Payments", "Debt and loan payments", True, ["Debt Payments"]),
    ("Bank Fees", "Bank and financial institution fees", True, ["Bank Fees"]),
    (
        "Entertainment",
        "Entertainment and recreation expenses",
        True,
        [
            "Gambling",
            "Music & Audio",
            "Events & Amusement",
            "TV & Movies",
            "Video Games",
            "Other Entertainment",
        ],
    ),
    (
        "Food & Drink",
        "Food, dining and groceries",
        True,
        [
            "Alcohol",
            "Coffee",
            "Fast Food",
            "Groceries",
            "Dining Out",
            "Vending Machines",
            "Other Food & Drink",
        ],
    ),
    (
        "Retail & Goods",
        "Shopping and retail purchases",
        True,
        ["Shopping", "Online Marketplaces", "Superstores"],
    ),
    (
        "Home Improvement",
        "Home maintenance and improvements",
        True,
        ["Furniture", "Hardware", "Repair & Maintenance", "Security", "Other Home Improvement"],
    ),
    (
        "Medical",
        "Healthcare and medical expenses",
        True,
        [
            "Dental Care",
            "Eye Care",
            "Nursing Care",
            "Pharmacies & Supplements",
            "Primary Care",
            "Veterinary Services",
            "Other Medical",
        ],
    ),
    (
        "Personal Care",
        "Personal care and services",
        True,
        ["Gyms & Fitness", "Hair & Beauty", "Laundry & Dry Cleaning", "Other Personal Care"],
    ),
    (
        "General Services",
        "Various professional services",
        True,
        [
            "Financial Planning",
            "Automotive",
            "Childcare",
            "Consulting & Legal",
            "Education",
            "Insurance",
            "Postage & Shipping",
            "Storage",
            "Other Services",
        ],
    ),
    (
        "Government & Non-Profit",
        "Government and charitable expenses",
        True,
        ["Donations", "Government Services", "Tax Payment", "Other Government & Non-Profit"],
    ),
    (
        "Transport & Travel",
        "Transportation and travel costs",
        True,
        [
            "Bikes & Scooters",
            "Transportation",
            "Other Transportation",
            "Flights",
            "Lodging",
            "Rental Cars",
            "Other Travel",
        ],
    ),
    (
        "Rent & Utilities",
        "Housing rent and utility bills",
        True,
        [
            "Gas & Electricity",
            "Internet & Cable",
            "Rent",
            "Sewage & Waste",
            "Telephone",
            "Water",
            "Other Utilities",
        ],
    ),
    (OTHER_GROUP, "Other catch-all category", False, [OTHER_CATEGORY]),
]

DISCRETIONARY_CATEGORIES = frozenset(
    {
        "Shopping",
        "Online Marketplaces",
        "Superstores",
        "Other Entertainment",
        "Events & Amusement",
        "Video Games",
        "TV & Movies",
        "Music & Audio",
    }
)

# Plaid personal-finance detailed categories. Anything missing here falls back
# to the primary prefix map, then to Other.
PLAID_DETAILED_CATEGORY_MAP: dict[str, str] = {
    "INCOME_DIVIDENDS": "Income",
    "INCOME_INTEREST_EARNED": "Income",
    "INCOME_RETIREMENT_PENSION": "Income",
    "INCOME_TAX_REFUND": "Income",
    "INCOME_UNEMPLOYMENT": "Income",
    "INCOME_WAGES": "Income",
    "INCOME_OTHER_INCOME": "Income",
    "TRANSFER_IN_CASH_ADVANCES_AND_LOANS": "Inbound Transfer",
    "TRANSFER_IN_DEPOSIT": "Inbound Transfer",
    "TRANSFER_IN_INVESTMENT_AND_RETIREMENT_FUNDS": "Investment Income",
    "TRANSFER_IN_SAVINGS": "Account Transfer",
    "TRANSFER_IN_ACCOUNT_TRANSFER": "Account Transfer",
    "TRANSFER_IN_OTHER_TRANSFER_IN": "Other Inbound",
    "TRANSFER_OUT_INVESTMENT_AND_RETIREMENT_FUNDS": "Investment Transfer",
    "TRANSFER_OUT_SAVINGS": "Outbound Transfer",
    "TRANSFER_OUT_WITHDRAWAL": "Withdrawal",
    "TRANSFER_OUT_ACCOUNT_TRANSFER": "Outbound Transfer",
    "TRANSFER_OUT_OTHER_TRANSFER_OUT": "Other Outbound",
    "ENTERTAINMENT_CASINOS_AND_GAMBLING": "Gambling",
    "ENTERTAINMENT_MUSIC_AND_AUDIO": "Music & Audio",
    "ENTERTAINMENT_SPORTING_EVENTS_AMUSEMENT_PARKS_AND_MUSEUMS": "Events & Amusement",
    "ENTERTAINMENT_TV_AND_MOVIES": "TV & Movies",
    "ENTERTAINMENT_VIDEO_GAMES": "Video Games",
    "ENTERTAINMENT_OTHER_ENTERTAINMENT": "Other Entertainment",
    "FOOD_AND_DRINK_BEER_WINE_AND_LIQUOR": "Alcohol",
    "FOOD_AND_DRINK_COFFEE": "Coffee",
    "FOOD_AND_DRINK_FAST_FOOD": "Fast Food",
    "FOOD_AND_DRINK_GROCERIES": "Groceries",
    "FOOD_AND_DRINK_RESTAURANT": "Dining Out",
    "FOOD_AND_DRINK_VENDING_MACHINES": "Vending Machines",
    "FOOD_AND_DRINK_OTHER_FOOD_AND_DRINK": "Other Food & Drink",
    "GENERAL_MERCHANDISE_ONLINE_MARKETPLACES": "Online Marketplaces",
    "GENERAL_MERCHANDISE_SUPERSTORES": "Superstores",
    "HOME_IMPROVEMENT_FURNITURE": "Furniture",
    "HOME_IMPROVEMENT_HARDWARE": "Hardware",
    "HOME_IMPROVEMENT_REPAIR_AND_MAINTENANCE": "Repair & Maintenance",
    "HOME_IMPROVEMENT_SECURITY": "Security",
    "HOME_IMPROVEMENT_OTHER_HOME_IMPROVEMENT": "Other Home Improvement",
    "MEDICAL_DENTAL_CARE": "Dental Care",
    "MEDICAL_EYE_CARE": "Eye Care",
    "MEDICAL_NURSING_CARE": "Nursing Care",
    "MEDICAL_PHARMACIES_AND_SUPPLEMENTS": "Pharmacies & Supplements",
    "MEDICAL_PRIMARY_CARE": "Primary Care",
    "MEDICAL_VETERINARY_SERVICES": "Veterinary Services",
    "MEDICAL_OTHER_MEDICAL": "Other Medical",
    "PERSONAL_CARE_GYMS_AND_FITNESS_CENTERS": "Gyms & Fitness",
    "PERSONAL_CARE_HAIR_AND_BEAUTY": "Hair & Beauty",
    "PERSONAL_CARE_LAUNDRY_AND_DRY_CLEANING": "Laundry & Dry Cleaning",
    "PERSONAL_CARE_OTHER_PERSONAL_CARE": "Other Personal Care",
    "GENERAL_SERVICES_ACCOUNTING_AND_FINANCIAL_PLANNING": "Financial Planning",
    "GENERAL_SERVICES_AUTOMOTIVE": "Automotive",
    "GENERAL_SERVICES_CHILDCARE": "Childcare",
    "GENERAL_SERVICES_CONSULTING_AND_LEGAL": "Consulting & Legal",
    "GENERAL_SERVICES_EDUCATION": "Education",
    "GENERAL_SERVICES_INSURANCE": "Insurance",
    "GENERAL_SERVICES_POSTAGE_AND_SHIPPING": "Postage & Shipping",
    "GENERAL_SERVICES_STORAGE": "Storage",
    "GENERAL_SERVICES_OTHER_GENERAL_SERVICES": "Other Services",
    "GOVERNMENT_AND_NON_PROFIT_DONATIONS": "Donations",
    "GOVERNMENT_AND_NON_PROFIT_GOVERNMENT_DEPARTMENTS_AND_AGENCIES": "Government Services",
    "GOVERNMENT_AND_NON_PROFIT_TAX_PAYMENT": "Tax Payment",
    "GOVERNMENT_AND_NON_PROFIT_OTHER_GOVERNMENT_AND_NON_PROFIT": "Other Government & Non-Profit",
    "TRANSPORTATION_BIKES_AND_SCOOTERS": "Bikes & Scooters",
    "TRANSPORTATION_GAS": "Transportation",
    "TRANSPORTATION_OTHER_TRANSPORTATION": "Other Transportation",
    "TRAVEL_FLIGHTS": "Flights",
    "TRAVEL_LODGING": "Lodging",
    "TRAVEL_RENTAL_CARS": "Rental Cars",
    "TRAVEL_OTHER_TRAVEL": "Other Travel",
    "RENT_AND_UTILITIES_GAS_AND_ELECTRICITY": "Gas & Electricity",
    "RENT_AND_UTILITIES_INTERNET_AND_CABLE": "Internet & Cable",
    "RENT_AND_UTILITIES_RENT": "Rent",
    "RENT_AND_UTILITIES_SEWAGE_AND_WASTE_MANAGEMENT": "Sewage & Waste",
    "RENT_AND_UTILITIES_TELEPHONE": "Telephone",
    "RENT_AND_UTILITIES_WATER": "Water",
    "RENT_AND_UTILITIES_OTHER_UTILITIES": "Other Utilities",
}

PLAID_PRIMARY_CATEGORY_MAP: dict[str, str] = {
    "INCOME": "Income",
    "TRANSFER_IN": "Other Inbound",
    "TRANSFER_OUT": "Other Outbound",
    "LOAN_PAYMENTS": "Debt Payments",
    "BANK_FEES": "Bank Fees",
    "ENTERTAINMENT": "Other Entertainment",
    "FOOD_AND_DRINK": "Other Food & Drink",
    "GENERAL_MERCHANDISE": "Shopping",
    "HOME_IMPROVEMENT": "Other Home Improvement",
    "MEDICAL": "Other Medical",
    "PERSONAL_CARE": "Other Personal Care",
    "GENERAL_SERVICES": "Other Services",
    "GOVERNMENT_AND_NON_PROFIT": "Other Government & Non-Profit",
    "TRANSPORTATION": "Other Transportation",
    "TRAVEL": "Other Travel",
    "RENT_AND_UTILITIES": "Other Utilities",
}


def map_plaid_category(detailed: str | None) -> str:
    if not detailed:
        return OTHER_CATEGORY
    normalized = detailed.strip().upper()
    mapped = PLAID_DETAILED_CATEGORY_MAP.get(normalized)
    if mapped:
        return mapped
    # Longest prefix first so TRANSFER_IN wins over a shorter overlap.
    for prefix in sorted(PLAID_PRIMARY_CATEGORY_MAP, key=len, reverse=True):
        if normalized.startswith(prefix + "_"):
            return PLAID_PRIMARY_CATEGORY_MAP[prefix]
    return OTHER_CATEGORY


def built_in_group_names() -> set[str]:
    return {name for name, _, _, _ in BUILT_IN_CATEGORY_GROUPS}


def built_in_category_names() -> set[str]:
    return {
        category
        for _, _, _, group_categories in BUILT_IN_CATEGORY_GROUPS
        for category in group_categories
    }


def normalize_category_name(value: str) -> str:
    name = value.strip()
    if not name:
        raise ValueError("Category name required.")
    if len(name) > CATEGORY_NAME_MAX_LENGTH:
        raise ValueError("Category name must be 50 characters or fewer.")
    if not CATEGORY_NAME_PATTERN.match(name):
        raise ValueError(
            "Category name must start with a letter and contain only letters, "
            "numbers, spaces, hyphens or underscores."
        )
    return name[0].upper() + name[1:]


def normalize_group_name(value: str) -> str:
    name = value.strip()
    if not name:
        raise ValueError("Category group name required.")
    if len(name) > CATEGORY_NAME_MAX_LENGTH:
        raise ValueError("Category group name must be 50 characters or fewer.")
    return name


def validate_composite_data(
    parts: list[dict], known_categories: set[str]
) -> list[dict]:
    """Check composite parts: every part must exist and the weights must sum to 100."""
    if not parts:
        raise ValueError("Composite category requires at least one part.")
    known_lower = {name.lower(): name for name in known_categories}
    normalized: list[dict] = []
    total = 0
    seen: set[str] = set()
    for part in parts:
        raw_name = str(part.get("categoryName") or "").strip()
        if not raw_name:
            raise ValueError("Composite part requires a category name.")
        resolved = known_lower.get(raw_name.lower())
        if resolved is None:
            raise ValueError(f"Composite part category not found: {raw_name}")
        if resolved.lower() in seen:
            raise ValueError(f"Composite part repeated: {resolved}")
        seen.add(resolved.lower())
        try:
            weight = float(part.get("weight"))
        except (TypeError, ValueError) as exc:
            raise ValueError("Composite part weight must be a number.") from exc
        if weight <= 0:
            raise ValueError("Composite part weight must be greater than zero.")
        total += weight
        normalized.append({"categoryName": resolved, "weight": weight})
    if abs(total - 100) > 0.001:
        raise ValueError("Composite weights must sum to 100.")
    return normalized
