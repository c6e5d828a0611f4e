import json
import logging
import os
from datetime import date, datetime, timedelta
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from budgetdesk.categories import (
    BUILT_IN_CATEGORY_GROUPS,
    DISCRETIONARY_CATEGORIES,
    OTHER_CATEGORY,
    built_in_group_names,
    map_plaid_category,
    normalize_category_name,
    normalize_group_name,
    validate_composite_data,
)
from budgetdesk.classification_engine import learn_category, suggest_category
from budgetdesk.csv_parser import CSVParseResult, parse_manual_csv
from budgetdesk.goal_tracking import DEBT_PAYMENT_COMPONENTS, GOAL_TYPES, create_goal_tracking
from budgetdesk.onboarding import (
    OnboardingTransitionError,
    is_profile_complete,
    validate_end,
    validate_transition,
)
from budgetdesk.plaid_client import PlaidApiError, PlaidClient, PlaidError
from budgetdesk.recommendations import GoalInput, recommend_spending_and_goals
from budgetdesk.recurring_projection import (
    ActualTransaction,
    RecurringStream,
    normalize_frequency,
    project_recurring_schedules,
)
from budgetdesk.rules_engine import (
    BudgetRule,
    RuleTransaction,
    apply_rules,
    clean_actions,
    clean_conditions,
)
from budgetdesk.spending_tracking import (
    CategoryInfo,
    GroupInfo,
    TrackedTransaction,
    TrackingLookupError,
    apply_month_targets,
    calculate_spending_tracking,
    month_key,
    recalculate_spending_tracking,
    validate_month_keys,
)
from budgetdesk.transaction_sync import (
    collect_sync_pages,
    manual_user_tx_id,
    partition_transactions,
    plaid_user_tx_id,
    split_pending_rewires,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./budgetdesk.db")
engine_options: dict = {}
if database_url.startswith("sqlite"):
    engine_options["connect_args"] = {"check_same_thread": False}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine_options["poolclass"] = StaticPool

engine = create_engine(database_url, **engine_options)
metadata = MetaData()

if engine.dialect.name == "sqlite":

    @event.listens_for(engine, "connect")
    def enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()


def split_env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


PLAID_CLIENT = PlaidClient(
    client_id=os.getenv("PLAID_CLIENT_ID"),
    secret=os.getenv("PLAID_SECRET"),
    environment=os.getenv("PLAID_ENV", "sandbox"),
    products=split_env_list("PLAID_PRODUCTS", "transactions"),
    country_codes=split_env_list("PLAID_COUNTRY_CODES", "US"),
    redirect_uri=os.getenv("PLAID_REDIRECT_URI") or None,
)

ROLE_PERMISSIONS = {
    "owner": {"budgets.read", "budgets.write", "members.manage"},
    "collaborator": {"budgets.read", "budgets.write"},
    "reporter": {"budgets.read"},
}

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("full_name", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

fin_profiles = Table(
    "fin_profiles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False),
    Column("full_name", String(255)),
    Column("age", Integer),
    Column("marital_status", String(50)),
    Column("dependents", Integer),
    Column("income_level", String(50)),
    Column("annual_income", Numeric(14, 2)),
    Column("savings", Numeric(14, 2)),
    Column("current_debt", JSON),
    Column("primary_financial_goals", JSON),
    Column("goal_timeline", String(50)),
    Column("monthly_contribution", Numeric(14, 2)),
    Column("state", String(50)),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("budget_type", String(20), nullable=False, server_default="personal"),
    Column("spending_tracking", JSON),
    Column("spending_recommendations", JSON),
    Column("rule_order", JSON),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("start_date", Date),
    Column("current_onboarding_step", String(50), nullable=False, server_default="start"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

budget_members = Table(
    "budget_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role", String(20), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("budget_id", "user_id", name="uq_budget_members_budget_user"),
)

manual_institutions = Table(
    "manual_institutions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(50), nullable=False),
    Column("symbol", String(5), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("owner_user_id", "symbol", name="uq_manual_institutions_owner_symbol"),
)

manual_accounts = Table(
    "manual_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column(
        "institution_id",
        Integer,
        ForeignKey("manual_institutions.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("mask", String(4), nullable=False),
    Column("balance_current", Numeric(14, 2), nullable=False, server_default="0"),
    Column("iso_currency_code", String(3), nullable=False, server_default="USD"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("institution_id", "mask", name="uq_manual_accounts_institution_mask"),
)

plaid_items = Table(
    "plaid_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("plaid_item_id", String(255), unique=True, nullable=False),
    Column("institution_id", String(255)),
    Column("institution_name", String(255)),
    Column("access_token", String(255), nullable=False),
    Column("next_cursor", String(1024)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

plaid_accounts = Table(
    "plaid_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("item_id", Integer, ForeignKey("plaid_items.id", ondelete="CASCADE"), nullable=False),
    Column("plaid_account_id", String(255), unique=True, nullable=False),
    Column("name", String(255), nullable=False),
    Column("official_name", String(255)),
    Column("type", String(50)),
    Column("subtype", String(50)),
    Column("balance_available", Numeric(14, 2)),
    Column("balance_current", Numeric(14, 2)),
    Column("balance_limit", Numeric(14, 2)),
    Column("iso_currency_code", String(3)),
    Column("mask", String(10)),
)

budget_accounts = Table(
    "budget_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("plaid_account_id", Integer, ForeignKey("plaid_accounts.id", ondelete="CASCADE")),
    Column("manual_account_id", Integer, ForeignKey("manual_accounts.id", ondelete="CASCADE")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("budget_id", "plaid_account_id", name="uq_budget_accounts_plaid"),
    UniqueConstraint("budget_id", "manual_account_id", name="uq_budget_accounts_manual"),
    CheckConstraint(
        "(plaid_account_id IS NULL) <> (manual_account_id IS NULL)",
        name="ck_budget_accounts_one_source",
    ),
)

category_groups = Table(
    "category_groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE")),
    Column("name", String(50), nullable=False),
    Column("description", String(255)),
    Column("is_enabled", Boolean, nullable=False, server_default="1"),
    UniqueConstraint("budget_id", "name", name="uq_category_groups_budget_name"),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("group_id", Integer, ForeignKey("category_groups.id", ondelete="CASCADE"), nullable=False),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE")),
    Column("name", String(50), nullable=False),
    Column("description", String(255)),
    Column("is_composite", Boolean, nullable=False, server_default="0"),
    Column("composite_data", JSON),
    UniqueConstraint("budget_id", "name", name="uq_categories_budget_name"),
)

fin_transactions = Table(
    "fin_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_tx_id", String(40), unique=True, nullable=False),
    Column("plaid_tx_id", String(255), unique=True),
    Column("date", Date, nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("iso_currency_code", String(3)),
    Column("plaid_account_id", Integer, ForeignKey("plaid_accounts.id", ondelete="CASCADE")),
    Column("manual_account_id", Integer, ForeignKey("manual_accounts.id", ondelete="CASCADE")),
    Column("plaid_category_detailed", String(255)),
    Column("plaid_category_confidence", String(50)),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("merchant_name", String(255)),
    Column("payee", String(255)),
    Column("tx_status", String(20), nullable=False, server_default="posted"),
    Column("raw_data", JSON),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budget_transactions = Table(
    "budget_transactions",
    metadata,
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column(
        "transaction_id",
        Integer,
        ForeignKey("fin_transactions.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("merchant_name", String(255)),
    Column("payee", String(255)),
    Column("notes", String(500)),
    Column("tag_ids", JSON),
    PrimaryKeyConstraint("budget_id", "transaction_id", name="pk_budget_transactions"),
)

budget_tags = Table(
    "budget_tags",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(50), nullable=False),
    UniqueConstraint("budget_id", "name", name="uq_budget_tags_budget_name"),
)

budget_rules = Table(
    "budget_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("description", String(500)),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("conditions", JSON, nullable=False),
    Column("actions", JSON, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

budget_goals = Table(
    "budget_goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("budget_account_id", Integer, ForeignKey("budget_accounts.id", ondelete="SET NULL")),
    Column("target_date", Date, nullable=False),
    Column("description", String(500)),
    Column("debt_type", String(50)),
    Column("debt_payment_component", String(30)),
    Column("debt_interest_rate", Numeric(7, 4)),
    Column("spending_tracking", JSON),
    Column("spending_recommendations", JSON),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

recurring_transactions = Table(
    "recurring_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("plaid_stream_id", String(255), unique=True),
    Column("plaid_account_id", Integer, ForeignKey("plaid_accounts.id", ondelete="CASCADE")),
    Column("manual_account_id", Integer, ForeignKey("manual_accounts.id", ondelete="CASCADE")),
    Column("frequency", String(30), nullable=False),
    Column("first_date", Date),
    Column("last_date", Date, nullable=False),
    Column("average_amount", Numeric(14, 2), nullable=False),
    Column("merchant_name", String(255)),
    Column("description", String(500)),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("category_id", Integer, ForeignKey("categories.id")),
)

budget_recurring_transactions = Table(
    "budget_recurring_transactions",
    metadata,
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column(
        "recurring_id",
        Integer,
        ForeignKey("recurring_transactions.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("notes", String(500)),
    Column("tag_ids", JSON),
    PrimaryKeyConstraint("budget_id", "recurring_id", name="pk_budget_recurring_transactions"),
)

classification_rules = Table(
    "classification_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("pattern", String(255), nullable=False),
    Column("pattern_type", String(20), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False),
    Column("match_count", Integer, nullable=False, server_default="1"),
    Column("last_used_at", DateTime),
    UniqueConstraint(
        "budget_id",
        "pattern",
        "pattern_type",
        "category_id",
        name="uq_classification_rules_budget_pattern",
    ),
)


def seed_built_in_categories(conn) -> None:
    for group_name, description, enabled, group_categories in BUILT_IN_CATEGORY_GROUPS:
        group_id = conn.execute(
            select(category_groups.c.id).where(
                category_groups.c.budget_id.is_(None), category_groups.c.name == group_name
            )
        ).scalar_one_or_none()
        if group_id is None:
            group_id = conn.execute(
                insert(category_groups)
                .values(name=group_name, description=description, is_enabled=enabled)
                .returning(category_groups.c.id)
            ).scalar_one()
        existing = set(
            conn.execute(
                select(categories.c.name).where(
                    categories.c.budget_id.is_(None), categories.c.group_id == group_id
                )
            ).scalars()
        )
        missing = [name for name in group_categories if name not in existing]
        if missing:
            conn.execute(
                insert(categories),
                [{"group_id": group_id, "name": name} for name in missing],
            )


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)
    with engine.begin() as conn:
        seed_built_in_categories(conn)
    logger.info("Database ready (%s)", engine.dialect.name)


class CredentialsPayload(BaseModel):
    email: str
    password: str
    full_name: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    full_name: str | None = None
    created_at: datetime | None = None


class BudgetType:
    values = {"personal", "business"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid budget type.")
        return normalized


class MemberRole:
    values = {"collaborator", "reporter"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid member role.")
        return normalized


class ManualAccountType:
    values = {"depository", "credit", "loan", "investment", "other"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid account type.")
        return normalized


class TransactionStatus:
    values = {"pending", "posted"}

    @classmethod
    def validate(cls, value: str | None) -> str:
        normalized = (value or "posted").strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction status.")
        return normalized


class GoalType:
    values = GOAL_TYPES

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid goal type.")
        return normalized


class DebtPaymentComponent:
    values = DEBT_PAYMENT_COMPONENTS

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid debt payment component.")
        return normalized


def normalize_institution_symbol(value: str) -> str:
    symbol = value.strip()
    if not 3 <= len(symbol) <= 5 or not symbol.isalpha() or not symbol.isascii():
        raise ValueError("Institution symbol must be 3-5 letters.")
    return symbol.upper()


def normalize_account_mask(value: str) -> str:
    mask = value.strip()
    if len(mask) != 4 or not mask.isdigit():
        raise ValueError("Account mask must be exactly 4 digits.")
    return mask


def normalize_user_tx_id(value: str) -> str:
    user_tx_id = value.strip()
    if not 6 <= len(user_tx_id) <= 20:
        raise ValueError("Transaction id must be 6-20 characters.")
    if any(ch.islower() for ch in user_tx_id) or any(ch.isspace() for ch in user_tx_id):
        raise ValueError("Transaction id cannot contain lower-case letters or spaces.")
    return user_tx_id


def clean_optional(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


class BudgetPayload(BaseModel):
    name: str
    budget_type: str = "personal"

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Budget name required.")
        payload.budget_type = BudgetType.validate(payload.budget_type)
        return payload


class BudgetResponse(BaseModel):
    id: int
    name: str
    budget_type: str
    is_active: bool
    start_date: date | None = None
    current_onboarding_step: str
    rule_order: list[int] = []
    role: str | None = None
    created_at: datetime | None = None


class MemberPayload(BaseModel):
    email: str
    role: str = "collaborator"

    @classmethod
    def validate_payload(cls, payload: "MemberPayload") -> "MemberPayload":
        payload.email = payload.email.strip().lower()
        if not payload.email:
            raise ValueError("Member email required.")
        payload.role = MemberRole.validate(payload.role)
        return payload


class MemberResponse(BaseModel):
    user_id: int
    email: str
    full_name: str | None = None
    role: str


class InstitutionPayload(BaseModel):
    name: str
    symbol: str

    @classmethod
    def validate_payload(cls, payload: "InstitutionPayload") -> "InstitutionPayload":
        payload.name = payload.name.strip()
        if not payload.name or len(payload.name) > 50:
            raise ValueError("Institution name must be 1-50 characters.")
        payload.symbol = normalize_institution_symbol(payload.symbol)
        return payload


class InstitutionResponse(BaseModel):
    id: int
    name: str
    symbol: str
    created_at: datetime | None = None


class ManualAccountPayload(BaseModel):
    institution_id: int
    name: str
    type: str
    mask: str
    balance_current: Decimal = Decimal("0")
    iso_currency_code: str = "USD"

    @classmethod
    def validate_payload(cls, payload: "ManualAccountPayload") -> "ManualAccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        payload.type = ManualAccountType.validate(payload.type)
        payload.mask = normalize_account_mask(payload.mask)
        if payload.balance_current < 0:
            raise ValueError("Balance cannot be negative.")
        payload.iso_currency_code = payload.iso_currency_code.strip().upper()
        if len(payload.iso_currency_code) != 3 or not payload.iso_currency_code.isalpha():
            raise ValueError("Currency must be a 3-letter ISO 4217 code.")
        return payload


class ManualAccountResponse(BaseModel):
    id: int
    institution_id: int
    name: str
    type: str
    mask: str
    balance_current: Decimal
    iso_currency_code: str


class ManualTransactionPayload(BaseModel):
    account_id: int
    user_tx_id: str | None = None
    date: date
    amount: Decimal
    merchant_name: str | None = None
    payee: str | None = None
    category_id: int | None = None
    tx_status: str | None = None
    iso_currency_code: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ManualTransactionPayload") -> "ManualTransactionPayload":
        if payload.user_tx_id is not None:
            payload.user_tx_id = normalize_user_tx_id(payload.user_tx_id)
        payload.tx_status = TransactionStatus.validate(payload.tx_status)
        payload.merchant_name = clean_optional(payload.merchant_name)
        payload.payee = clean_optional(payload.payee)
        if not payload.amount.is_finite():
            raise ValueError("Amount must be a finite number.")
        if payload.iso_currency_code:
            payload.iso_currency_code = payload.iso_currency_code.strip().upper()
        return payload


class ManualTransactionResponse(BaseModel):
    id: int
    user_tx_id: str
    account_id: int
    date: date
    amount: Decimal
    merchant_name: str | None = None
    payee: str | None = None
    category_id: int | None = None
    tx_status: str
    iso_currency_code: str | None = None


class ManualAccountState(ManualAccountResponse):
    transactions: list[ManualTransactionResponse] = []


class InstitutionState(InstitutionResponse):
    accounts: list[ManualAccountState] = []


class PlaidAccountResponse(BaseModel):
    id: int
    plaid_account_id: str
    name: str
    official_name: str | None = None
    type: str | None = None
    subtype: str | None = None
    mask: str | None = None
    balance_available: Decimal | None = None
    balance_current: Decimal | None = None
    balance_limit: Decimal | None = None
    iso_currency_code: str | None = None


class PlaidItemResponse(BaseModel):
    id: int
    plaid_item_id: str
    institution_id: str | None = None
    institution_name: str | None = None
    accounts: list[PlaidAccountResponse] = []


class FinStateResponse(BaseModel):
    institutions: list[InstitutionState] = []
    plaid_items: list[PlaidItemResponse] = []


class CSVImportResponse(CSVParseResult):
    created_institutions: int = 0
    created_accounts: int = 0
    created_transactions: int = 0


class PlaidItemPayload(BaseModel):
    public_token: str


class LinkTokenResponse(BaseModel):
    link_token: str
    expiration: str | None = None


class SyncResponse(BaseModel):
    new: int = 0
    modified: int = 0
    removed: int = 0
    unlinked: int = 0
    skipped: int = 0


class BudgetAccountPayload(BaseModel):
    plaid_account_id: int | None = None
    manual_account_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetAccountPayload") -> "BudgetAccountPayload":
        if (payload.plaid_account_id is None) == (payload.manual_account_id is None):
            raise ValueError("Provide exactly one of plaid_account_id or manual_account_id.")
        return payload


class BudgetAccountResponse(BaseModel):
    id: int
    budget_id: int
    plaid_account_id: int | None = None
    manual_account_id: int | None = None
    name: str
    type: str | None = None
    mask: str | None = None
    balance_current: Decimal | None = None


class CategoryGroupPayload(BaseModel):
    name: str
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryGroupPayload") -> "CategoryGroupPayload":
        payload.name = normalize_group_name(payload.name)
        payload.description = clean_optional(payload.description)
        return payload


class CategoryGroupUpdatePayload(BaseModel):
    description: str | None = None


class CategoryPayload(BaseModel):
    name: str
    group_id: int
    description: str | None = None
    composite_data: list[dict] | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = normalize_category_name(payload.name)
        payload.description = clean_optional(payload.description)
        return payload


class CategoryResponse(BaseModel):
    id: int
    group_id: int
    budget_id: int | None = None
    name: str
    description: str | None = None
    is_composite: bool = False
    composite_data: list[dict] | None = None
    is_built_in: bool = False


class CategoryGroupResponse(BaseModel):
    id: int
    budget_id: int | None = None
    name: str
    description: str | None = None
    is_enabled: bool = True
    is_built_in: bool = False
    categories: list[CategoryResponse] = []


class BudgetTransactionResponse(BaseModel):
    transaction_id: int
    user_tx_id: str
    date: date
    amount: Decimal
    iso_currency_code: str | None = None
    tx_status: str
    merchant_name: str | None = None
    payee: str | None = None
    notes: str | None = None
    category_id: int | None = None
    category_name: str | None = None
    category_group: str | None = None
    budget_account_id: int | None = None
    account_name: str | None = None
    tags: list[str] = []


class BudgetTransactionUpdatePayload(BaseModel):
    category_id: int | None = None
    merchant_name: str | None = None
    payee: str | None = None
    notes: str | None = None
    tags: list[str] | None = None


class CategorySuggestionResponse(BaseModel):
    category_id: int | None = None
    category_name: str | None = None
    confidence: float | None = None


class TagPayload(BaseModel):
    tag_name: str

    @classmethod
    def validate_payload(cls, payload: "TagPayload") -> "TagPayload":
        payload.tag_name = payload.tag_name.strip()
        if not payload.tag_name or len(payload.tag_name) > 50:
            raise ValueError("Tag name must be 1-50 characters.")
        return payload


class TagResponse(BaseModel):
    id: int
    budget_id: int
    name: str


class RulePayload(BaseModel):
    name: str
    description: str | None = None
    is_active: bool = True
    conditions: dict
    actions: dict
    is_applied_to_all_transactions: bool = False

    @classmethod
    def validate_payload(cls, payload: "RulePayload") -> "RulePayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Rule name required.")
        payload.description = clean_optional(payload.description)
        payload.conditions = clean_conditions(payload.conditions)
        payload.actions = clean_actions(payload.actions)
        return payload


class RuleResponse(BaseModel):
    id: int
    budget_id: int
    name: str
    description: str | None = None
    is_active: bool
    conditions: dict
    actions: dict
    applied_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RuleOrderPayload(BaseModel):
    rule_order: list[int]


class RecalculatePayload(BaseModel):
    months: list[str]


class SpendingTargetsPayload(BaseModel):
    date: str
    category_spending: dict[str, dict]


class GoalPayload(BaseModel):
    type: str
    name: str
    amount: Decimal
    target_date: date
    budget_account_id: int | None = None
    description: str | None = None
    debt_type: str | None = None
    debt_payment_component: str | None = None
    debt_interest_rate: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "GoalPayload", today: date | None = None) -> "GoalPayload":
        today = today or date.today()
        payload.type = GoalType.validate(payload.type)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Goal name required.")
        if payload.amount <= 0:
            raise ValueError("Goal amount must be greater than zero.")
        if payload.target_date <= today:
            raise ValueError("Target date must be in the future.")
        payload.description = clean_optional(payload.description)
        if payload.type == "debt":
            payload.debt_type = clean_optional(payload.debt_type)
            if not payload.debt_type:
                raise ValueError("Debt goals require a debt type.")
            if not payload.debt_payment_component:
                raise ValueError("Debt goals require a payment component.")
            payload.debt_payment_component = DebtPaymentComponent.validate(
                payload.debt_payment_component
            )
            if payload.debt_interest_rate is None or payload.debt_interest_rate < 0:
                raise ValueError("Debt goals require a non-negative interest rate.")
        else:
            payload.debt_type = None
            payload.debt_payment_component = None
            payload.debt_interest_rate = None
        return payload


class GoalResponse(BaseModel):
    id: int
    budget_id: int
    type: str
    name: str
    amount: Decimal
    target_date: date
    budget_account_id: int | None = None
    description: str | None = None
    debt_type: str | None = None
    debt_payment_component: str | None = None
    debt_interest_rate: Decimal | None = None
    spending_tracking: dict | None = None
    spending_recommendations: dict | None = None
    created_at: datetime | None = None


class BudgetDetailResponse(BudgetResponse):
    accounts: list[BudgetAccountResponse] = []
    goals: list[GoalResponse] = []


class RecurringUpdatePayload(BaseModel):
    category_id: int | None = None
    notes: str | None = None
    tags: list[str] | None = None


class ProjectedOccurrence(BaseModel):
    date: date
    amount: Decimal


class RecurringResponse(BaseModel):
    id: int
    plaid_stream_id: str | None = None
    frequency: str
    first_date: date | None = None
    last_date: date
    average_amount: Decimal
    merchant_name: str | None = None
    description: str | None = None
    is_active: bool
    category_id: int | None = None
    notes: str | None = None
    tags: list[str] = []
    budget_account_id: int | None = None
    projected: list[ProjectedOccurrence] = []


class OnboardingStepPayload(BaseModel):
    step: str


class ProfilePersonalPayload(BaseModel):
    full_name: str
    age: int
    marital_status: str | None = None
    dependents: int | None = None
    state: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ProfilePersonalPayload") -> "ProfilePersonalPayload":
        payload.full_name = payload.full_name.strip()
        if not payload.full_name:
            raise ValueError("Full name required.")
        if not 0 < payload.age < 130:
            raise ValueError("Age must be between 1 and 129.")
        if payload.dependents is not None and payload.dependents < 0:
            raise ValueError("Dependents cannot be negative.")
        payload.marital_status = clean_optional(payload.marital_status)
        payload.state = clean_optional(payload.state)
        return payload


class ProfileFinPayload(BaseModel):
    annual_income: Decimal
    savings: Decimal
    income_level: str | None = None
    current_debt: list[dict] | None = None

    @classmethod
    def validate_payload(cls, payload: "ProfileFinPayload") -> "ProfileFinPayload":
        if payload.annual_income < 0:
            raise ValueError("Annual income cannot be negative.")
        if payload.savings < 0:
            raise ValueError("Savings cannot be negative.")
        payload.income_level = clean_optional(payload.income_level)
        return payload


class ProfileGoalsPayload(BaseModel):
    primary_financial_goals: list[str] = []
    goal_timeline: str | None = None
    monthly_contribution: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "ProfileGoalsPayload") -> "ProfileGoalsPayload":
        payload.primary_financial_goals = [
            goal.strip() for goal in payload.primary_financial_goals if goal and goal.strip()
        ]
        payload.goal_timeline = clean_optional(payload.goal_timeline)
        if payload.monthly_contribution is not None and payload.monthly_contribution < 0:
            raise ValueError("Monthly contribution cannot be negative.")
        return payload


class FinProfileResponse(BaseModel):
    user_id: int
    full_name: str | None = None
    age: int | None = None
    marital_status: str | None = None
    dependents: int | None = None
    income_level: str | None = None
    annual_income: Decimal | None = None
    savings: Decimal | None = None
    current_debt: list[dict] | None = None
    primary_financial_goals: list[str] | None = None
    goal_timeline: str | None = None
    monthly_contribution: Decimal | None = None
    state: str | None = None


class OnboardingResponse(BaseModel):
    budget_id: int
    step: str
    accounts: list[BudgetAccountResponse] = []
    goals: list[GoalResponse] = []
    profile: FinProfileResponse | None = None
    is_profile_complete: bool = False


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def require_budget_permission(conn, budget_id: int, user_id: int, permission: str):
    budget = conn.execute(select(budgets).where(budgets.c.id == budget_id)).mappings().first()
    if not budget:
        raise HTTPException(status_code=404, detail="Budget not found.")
    role = conn.execute(
        select(budget_members.c.role).where(
            budget_members.c.budget_id == budget_id, budget_members.c.user_id == user_id
        )
    ).scalar_one_or_none()
    if role is None or permission not in ROLE_PERMISSIONS.get(role, set()):
        raise HTTPException(status_code=403, detail="Insufficient budget permissions.")
    return budget


def touch_budget(conn, budget_id: int, **values) -> None:
    conn.execute(
        update(budgets).where(budgets.c.id == budget_id).values(updated_at=datetime.utcnow(), **values)
    )


def budget_response(row, role: str | None = None) -> BudgetResponse:
    return BudgetResponse(
        id=row["id"],
        name=row["name"],
        budget_type=row["budget_type"],
        is_active=row["is_active"],
        start_date=row["start_date"],
        current_onboarding_step=row["current_onboarding_step"],
        rule_order=row["rule_order"] or [],
        role=role,
        created_at=row["created_at"],
    )


def visible_to_budget(table, budget_id: int):
    return or_(table.c.budget_id.is_(None), table.c.budget_id == budget_id)


def get_visible_category(conn, budget_id: int, category_id: int):
    row = conn.execute(
        select(categories).where(
            categories.c.id == category_id, visible_to_budget(categories, budget_id)
        )
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return row


def category_visible_to_user(conn, user_id: int, category_id: int) -> bool:
    member_budgets = select(budget_members.c.budget_id).where(budget_members.c.user_id == user_id)
    return conn.execute(
        select(categories.c.id).where(
            categories.c.id == category_id,
            or_(categories.c.budget_id.is_(None), categories.c.budget_id.in_(member_budgets)),
        )
    ).first() is not None


def built_in_category_ids(conn) -> dict[str, int]:
    rows = conn.execute(
        select(categories.c.id, categories.c.name).where(categories.c.budget_id.is_(None))
    ).mappings().all()
    return {row["name"]: row["id"] for row in rows}


def load_category_groups(conn, budget_id: int) -> list[GroupInfo]:
    group_rows = conn.execute(
        select(category_groups)
        .where(visible_to_budget(category_groups, budget_id))
        .order_by(category_groups.c.id.asc())
    ).mappings().all()
    category_rows = conn.execute(
        select(categories.c.id, categories.c.name, categories.c.group_id)
        .where(visible_to_budget(categories, budget_id))
        .order_by(categories.c.id.asc())
    ).mappings().all()
    by_group: dict[int, list[CategoryInfo]] = {}
    for row in category_rows:
        by_group.setdefault(row["group_id"], []).append(CategoryInfo(id=row["id"], name=row["name"]))
    return [
        GroupInfo(id=row["id"], name=row["name"], categories=tuple(by_group.get(row["id"], [])))
        for row in group_rows
    ]


def category_index(conn, budget_id: int) -> dict[int, dict]:
    rows = conn.execute(
        select(
            categories.c.id,
            categories.c.name,
            categories.c.is_composite,
            categories.c.composite_data,
            category_groups.c.name.label("group_name"),
        )
        .select_from(categories.join(category_groups, categories.c.group_id == category_groups.c.id))
        .where(visible_to_budget(categories, budget_id))
    ).mappings().all()
    return {row["id"]: dict(row) for row in rows}


def budget_account_index(conn, budget_id: int) -> tuple[dict[int, int], dict[int, int]]:
    rows = conn.execute(
        select(
            budget_accounts.c.id,
            budget_accounts.c.plaid_account_id,
            budget_accounts.c.manual_account_id,
        ).where(budget_accounts.c.budget_id == budget_id)
    ).mappings().all()
    plaid_index = {row["plaid_account_id"]: row["id"] for row in rows if row["plaid_account_id"]}
    manual_index = {row["manual_account_id"]: row["id"] for row in rows if row["manual_account_id"]}
    return plaid_index, manual_index


def resolve_budget_account_id(row, plaid_index: dict[int, int], manual_index: dict[int, int]) -> int | None:
    if row["plaid_account_id"] is not None:
        return plaid_index.get(row["plaid_account_id"])
    return manual_index.get(row["manual_account_id"])


def list_budget_accounts(conn, budget_id: int) -> list[BudgetAccountResponse]:
    rows = conn.execute(
        select(
            budget_accounts.c.id,
            budget_accounts.c.budget_id,
            budget_accounts.c.plaid_account_id,
            budget_accounts.c.manual_account_id,
            func.coalesce(plaid_accounts.c.name, manual_accounts.c.name).label("name"),
            func.coalesce(plaid_accounts.c.type, manual_accounts.c.type).label("type"),
            func.coalesce(plaid_accounts.c.mask, manual_accounts.c.mask).label("mask"),
            func.coalesce(
                plaid_accounts.c.balance_current, manual_accounts.c.balance_current
            ).label("balance_current"),
        )
        .select_from(
            budget_accounts.outerjoin(
                plaid_accounts, budget_accounts.c.plaid_account_id == plaid_accounts.c.id
            ).outerjoin(manual_accounts, budget_accounts.c.manual_account_id == manual_accounts.c.id)
        )
        .where(budget_accounts.c.budget_id == budget_id)
        .order_by(budget_accounts.c.id.asc())
    ).mappings().all()
    return [BudgetAccountResponse(**row) for row in rows]


def tag_names_by_id(conn, budget_id: int) -> dict[int, str]:
    rows = conn.execute(
        select(budget_tags.c.id, budget_tags.c.name).where(budget_tags.c.budget_id == budget_id)
    ).mappings().all()
    return {row["id"]: row["name"] for row in rows}


def resolve_tag_ids(conn, budget_id: int, names) -> list[int]:
    """Map tag names to ids, creating the tags the budget does not have yet."""
    existing = {name.lower(): tag_id for tag_id, name in tag_names_by_id(conn, budget_id).items()}
    tag_ids: list[int] = []
    for name in names:
        cleaned = name.strip()
        if not cleaned:
            continue
        tag_id = existing.get(cleaned.lower())
        if tag_id is None:
            tag_id = conn.execute(
                insert(budget_tags)
                .values(budget_id=budget_id, name=cleaned)
                .returning(budget_tags.c.id)
            ).scalar_one()
            existing[cleaned.lower()] = tag_id
        if tag_id not in tag_ids:
            tag_ids.append(tag_id)
    return tag_ids


def load_budget_rules(conn, budget_id: int) -> list[BudgetRule]:
    rows = conn.execute(
        select(budget_rules).where(budget_rules.c.budget_id == budget_id)
    ).mappings().all()
    return [
        BudgetRule(
            id=row["id"],
            name=row["name"],
            conditions=row["conditions"] or {},
            actions=row["actions"] or {},
            is_active=row["is_active"],
        )
        for row in rows
    ]


def budget_transaction_query(budget_id: int):
    return (
        select(
            fin_transactions.c.id.label("transaction_id"),
            fin_transactions.c.user_tx_id,
            fin_transactions.c.date,
            fin_transactions.c.amount,
            fin_transactions.c.iso_currency_code,
            fin_transactions.c.tx_status,
            fin_transactions.c.plaid_account_id,
            fin_transactions.c.manual_account_id,
            func.coalesce(budget_transactions.c.category_id, fin_transactions.c.category_id).label(
                "category_id"
            ),
            func.coalesce(
                budget_transactions.c.merchant_name, fin_transactions.c.merchant_name
            ).label("merchant_name"),
            func.coalesce(budget_transactions.c.payee, fin_transactions.c.payee).label("payee"),
            budget_transactions.c.notes,
            budget_transactions.c.tag_ids,
        )
        .select_from(
            budget_transactions.join(
                fin_transactions, fin_transactions.c.id == budget_transactions.c.transaction_id
            )
        )
        .where(budget_transactions.c.budget_id == budget_id)
    )


def fetch_budget_transactions(
    conn,
    budget_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    search: str | None = None,
):
    stmt = budget_transaction_query(budget_id)
    if start_date is not None:
        stmt = stmt.where(fin_transactions.c.date >= start_date)
    if end_date is not None:
        stmt = stmt.where(fin_transactions.c.date <= end_date)
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(
                func.coalesce(
                    budget_transactions.c.merchant_name, fin_transactions.c.merchant_name
                ).ilike(pattern),
                func.coalesce(budget_transactions.c.payee, fin_transactions.c.payee).ilike(pattern),
                budget_transactions.c.notes.ilike(pattern),
            )
        )
    stmt = stmt.order_by(fin_transactions.c.date.desc(), fin_transactions.c.id.desc())
    return conn.execute(stmt).mappings().all()


def build_budget_transaction_responses(conn, budget_id: int, rows) -> list[BudgetTransactionResponse]:
    categories_by_id = category_index(conn, budget_id)
    tags_by_id = tag_names_by_id(conn, budget_id)
    plaid_index, manual_index = budget_account_index(conn, budget_id)
    account_names = {
        account.id: account.name for account in list_budget_accounts(conn, budget_id)
    }
    responses: list[BudgetTransactionResponse] = []
    for row in rows:
        category = categories_by_id.get(row["category_id"]) or {}
        budget_account_id = resolve_budget_account_id(row, plaid_index, manual_index)
        responses.append(
            BudgetTransactionResponse(
                transaction_id=row["transaction_id"],
                user_tx_id=row["user_tx_id"],
                date=row["date"],
                amount=row["amount"],
                iso_currency_code=row["iso_currency_code"],
                tx_status=row["tx_status"],
                merchant_name=row["merchant_name"],
                payee=row["payee"],
                notes=row["notes"],
                category_id=row["category_id"],
                category_name=category.get("name"),
                category_group=category.get("group_name"),
                budget_account_id=budget_account_id,
                account_name=account_names.get(budget_account_id),
                tags=[tags_by_id[tag_id] for tag_id in row["tag_ids"] or [] if tag_id in tags_by_id],
            )
        )
    return responses


def load_tracked_transactions(conn, budget_id: int) -> list[TrackedTransaction]:
    categories_by_id = category_index(conn, budget_id)
    tracked: list[TrackedTransaction] = []
    for row in conn.execute(budget_transaction_query(budget_id)).mappings().all():
        category = categories_by_id.get(row["category_id"])
        composite: tuple = ()
        if category and category["is_composite"]:
            composite = tuple(
                (part["categoryName"], Decimal(str(part["weight"])))
                for part in category["composite_data"] or []
            )
        tracked.append(
            TrackedTransaction(
                date=row["date"],
                amount=row["amount"],
                category_name=category["name"] if category else OTHER_CATEGORY,
                composite_data=composite,
            )
        )
    return tracked


def attach_transactions_to_budget(conn, budget_id: int, transaction_ids) -> int:
    """Add transactions of linked accounts to a budget, running its active rules.

    Transactions already in the budget or from accounts the budget does not
    link are left alone. Returns how many were attached.
    """
    transaction_ids = list(transaction_ids)
    if not transaction_ids:
        return 0
    already_attached = set(
        conn.execute(
            select(budget_transactions.c.transaction_id).where(
                budget_transactions.c.budget_id == budget_id,
                budget_transactions.c.transaction_id.in_(transaction_ids),
            )
        ).scalars()
    )
    rows = conn.execute(
        select(fin_transactions).where(fin_transactions.c.id.in_(transaction_ids))
    ).mappings().all()
    budget_row = conn.execute(
        select(budgets.c.rule_order).where(budgets.c.id == budget_id)
    ).mappings().first()
    rules = load_budget_rules(conn, budget_id)
    rule_order = budget_row["rule_order"] if budget_row else None
    plaid_index, manual_index = budget_account_index(conn, budget_id)

    attached = 0
    for row in rows:
        if row["id"] in already_attached:
            continue
        budget_account_id = resolve_budget_account_id(row, plaid_index, manual_index)
        if budget_account_id is None:
            continue
        txn = RuleTransaction(
            transaction_id=row["id"],
            date=row["date"],
            amount=row["amount"],
            merchant_name=row["merchant_name"],
            payee=row["payee"],
            budget_account_id=budget_account_id,
            category_id=row["category_id"],
        )
        processed, matched = apply_rules(txn, rules, rule_order)
        if matched:
            logger.info("Budget %s rules %s matched transaction %s", budget_id, matched, row["id"])
        conn.execute(
            insert(budget_transactions).values(
                budget_id=budget_id,
                transaction_id=row["id"],
                category_id=processed.category_id if processed.category_id != row["category_id"] else None,
                merchant_name=(
                    processed.merchant_name if processed.merchant_name != row["merchant_name"] else None
                ),
                notes=processed.notes,
                tag_ids=resolve_tag_ids(conn, budget_id, processed.tags),
            )
        )
        attached += 1
    return attached


def attach_to_linked_budgets(conn, transaction_ids, plaid_account_ids=(), manual_account_ids=()) -> None:
    budget_ids = conn.execute(
        select(budget_accounts.c.budget_id)
        .where(
            or_(
                budget_accounts.c.plaid_account_id.in_(list(plaid_account_ids)),
                budget_accounts.c.manual_account_id.in_(list(manual_account_ids)),
            )
        )
        .distinct()
    ).scalars().all()
    for budget_id in budget_ids:
        attach_transactions_to_budget(conn, budget_id, transaction_ids)


def refresh_spending_tracking(conn, budget_id: int, months) -> None:
    """Recompute actuals for touched months of a budget that already has tracking."""
    existing = conn.execute(
        select(budgets.c.spending_tracking).where(budgets.c.id == budget_id)
    ).scalar_one_or_none()
    months = sorted(set(months))
    if not existing or not months:
        return
    merged, _ = recalculate_spending_tracking(
        existing, months, load_tracked_transactions(conn, budget_id), load_category_groups(conn, budget_id)
    )
    touch_budget(conn, budget_id, spending_tracking=merged)


def goal_response(row) -> GoalResponse:
    return GoalResponse(
        id=row["id"],
        budget_id=row["budget_id"],
        type=row["type"],
        name=row["name"],
        amount=row["amount"],
        target_date=row["target_date"],
        budget_account_id=row["budget_account_id"],
        description=row["description"],
        debt_type=row["debt_type"],
        debt_payment_component=row["debt_payment_component"],
        debt_interest_rate=row["debt_interest_rate"],
        spending_tracking=row["spending_tracking"],
        spending_recommendations=row["spending_recommendations"],
        created_at=row["created_at"],
    )


def list_goals(conn, budget_id: int) -> list[GoalResponse]:
    rows = conn.execute(
        select(budget_goals)
        .where(budget_goals.c.budget_id == budget_id)
        .order_by(budget_goals.c.target_date.asc(), budget_goals.c.id.asc())
    ).mappings().all()
    return [goal_response(row) for row in rows]


def budget_account_balance(conn, budget_id: int, budget_account_id: int | None) -> Decimal:
    if budget_account_id is None:
        return Decimal("0")
    for account in list_budget_accounts(conn, budget_id):
        if account.id == budget_account_id:
            return account.balance_current or Decimal("0")
    raise HTTPException(status_code=409, detail="Budget account does not belong to this budget.")


def get_fin_profile(conn, user_id: int):
    return conn.execute(
        select(fin_profiles).where(fin_profiles.c.user_id == user_id)
    ).mappings().first()


def fin_profile_response(user_id: int, row) -> FinProfileResponse:
    if not row:
        return FinProfileResponse(user_id=user_id)
    values = {key: row[key] for key in FinProfileResponse.model_fields if key != "user_id"}
    return FinProfileResponse(user_id=user_id, **values)


def upsert_fin_profile(conn, user_id: int, values: dict):
    if get_fin_profile(conn, user_id):
        conn.execute(
            update(fin_profiles)
            .where(fin_profiles.c.user_id == user_id)
            .values(updated_at=datetime.utcnow(), **values)
        )
    else:
        conn.execute(insert(fin_profiles).values(user_id=user_id, **values))
    return get_fin_profile(conn, user_id)


def plaid_failure(exc: Exception) -> HTTPException:
    logger.warning("Plaid request failed: %s", exc)
    return HTTPException(status_code=502, detail=f"Banking aggregation API error: {exc}")


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password, full_name=clean_optional(payload.full_name))
        .returning(users.c.id, users.c.email, users.c.full_name, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(**row)


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        result = conn.execute(select(users).where(users.c.email == email))
        row = result.mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(
        id=row["id"], email=row["email"], full_name=row["full_name"], created_at=row["created_at"]
    )


@app.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[BudgetResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(budgets, budget_members.c.role)
            .select_from(budgets.join(budget_members, budget_members.c.budget_id == budgets.c.id))
            .where(budget_members.c.user_id == user_id)
            .order_by(budgets.c.created_at.asc(), budgets.c.id.asc())
        ).mappings().all()
    return [budget_response(row, row["role"]) for row in rows]


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(budgets)
            .values(
                name=payload.name,
                budget_type=payload.budget_type,
                rule_order=[],
                start_date=date.today(),
                current_onboarding_step="start",
            )
            .returning(*budgets.c)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=500, detail="Failed to create budget.")
        conn.execute(
            insert(budget_members).values(budget_id=row["id"], user_id=user_id, role="owner")
        )
    logger.info("User %s created budget %s", user_id, row["id"])
    return budget_response(row, "owner")


@app.get("/budgets/{budget_id}", response_model=BudgetDetailResponse)
def get_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetDetailResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.read")
        role = conn.execute(
            select(budget_members.c.role).where(
                budget_members.c.budget_id == budget_id, budget_members.c.user_id == user_id
            )
        ).scalar_one()
        accounts = list_budget_accounts(conn, budget_id)
        goals = list_goals(conn, budget_id)
    summary = budget_response(budget, role)
    return BudgetDetailResponse(**summary.model_dump(), accounts=accounts, goals=goals)


@app.get("/budgets/{budget_id}/members", response_model=list[MemberResponse])
def list_members(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[MemberResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.read")
        rows = conn.execute(
            select(budget_members.c.user_id, budget_members.c.role, users.c.email, users.c.full_name)
            .select_from(budget_members.join(users, users.c.id == budget_members.c.user_id))
            .where(budget_members.c.budget_id == budget_id)
            .order_by(budget_members.c.id.asc())
        ).mappings().all()
    return [MemberResponse(**row) for row in rows]


@app.post("/budgets/{budget_id}/members", response_model=MemberResponse)
def add_member(
    budget_id: int,
    payload: MemberPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MemberResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = MemberPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            require_budget_permission(conn, budget_id, user_id, "members.manage")
            member = conn.execute(
                select(users.c.id, users.c.email, users.c.full_name).where(users.c.email == payload.email)
            ).mappings().first()
            if not member:
                raise HTTPException(status_code=404, detail="User not found.")
            conn.execute(
                insert(budget_members).values(
                    budget_id=budget_id, user_id=member["id"], role=payload.role
                )
            )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="User is already a member.") from exc

    return MemberResponse(
        user_id=member["id"], email=member["email"], full_name=member["full_name"], role=payload.role
    )


@app.delete("/budgets/{budget_id}/members/{member_user_id}")
def remove_member(
    budget_id: int,
    member_user_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "members.manage")
        role = conn.execute(
            select(budget_members.c.role).where(
                budget_members.c.budget_id == budget_id,
                budget_members.c.user_id == member_user_id,
            )
        ).scalar_one_or_none()
        if role is None:
            raise HTTPException(status_code=404, detail="Member not found.")
        if role == "owner":
            raise HTTPException(status_code=409, detail="The budget owner cannot be removed.")
        conn.execute(
            budget_members.delete().where(
                budget_members.c.budget_id == budget_id,
                budget_members.c.user_id == member_user_id,
            )
        )
    return {"status": "deleted"}


def get_owned_institution(conn, user_id: int, institution_id: int):
    row = conn.execute(
        select(manual_institutions).where(manual_institutions.c.id == institution_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Institution not found.")
    if row["owner_user_id"] != user_id:
        raise HTTPException(status_code=403, detail="Institution belongs to another user.")
    return row


def get_owned_manual_account(conn, user_id: int, account_id: int):
    row = conn.execute(
        select(manual_accounts, manual_institutions.c.symbol)
        .select_from(
            manual_accounts.join(
                manual_institutions, manual_institutions.c.id == manual_accounts.c.institution_id
            )
        )
        .where(manual_accounts.c.id == account_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    if row["owner_user_id"] != user_id:
        raise HTTPException(status_code=403, detail="Account belongs to another user.")
    return row


def get_owned_manual_transaction(conn, user_id: int, transaction_id: int):
    row = conn.execute(
        select(fin_transactions, manual_accounts.c.owner_user_id)
        .select_from(
            fin_transactions.join(
                manual_accounts, manual_accounts.c.id == fin_transactions.c.manual_account_id
            )
        )
        .where(fin_transactions.c.id == transaction_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    if row["owner_user_id"] != user_id:
        raise HTTPException(status_code=403, detail="Transaction belongs to another user.")
    return row


def taken_user_tx_ids(conn, prefix: str) -> set[str]:
    return set(
        conn.execute(
            select(fin_transactions.c.user_tx_id).where(fin_transactions.c.user_tx_id.like(f"{prefix}%"))
        ).scalars()
    )


def manual_transaction_response(row) -> ManualTransactionResponse:
    return ManualTransactionResponse(
        id=row["id"],
        user_tx_id=row["user_tx_id"],
        account_id=row["manual_account_id"],
        date=row["date"],
        amount=row["amount"],
        merchant_name=row["merchant_name"],
        payee=row["payee"],
        category_id=row["category_id"],
        tx_status=row["tx_status"],
        iso_currency_code=row["iso_currency_code"],
    )


@app.get("/fin-accounts/manual/institutions", response_model=list[InstitutionResponse])
def list_institutions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[InstitutionResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(manual_institutions)
            .where(manual_institutions.c.owner_user_id == user_id)
            .order_by(manual_institutions.c.name.asc(), manual_institutions.c.id.asc())
        ).mappings().all()
    return [
        InstitutionResponse(
            id=row["id"], name=row["name"], symbol=row["symbol"], created_at=row["created_at"]
        )
        for row in rows
    ]


@app.post("/fin-accounts/manual/institutions", response_model=InstitutionResponse)
def create_institution(
    payload: InstitutionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> InstitutionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = InstitutionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(manual_institutions)
        .values(owner_user_id=user_id, name=payload.name, symbol=payload.symbol)
        .returning(
            manual_institutions.c.id,
            manual_institutions.c.name,
            manual_institutions.c.symbol,
            manual_institutions.c.created_at,
        )
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Institution symbol already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create institution.")
    return InstitutionResponse(**row)


@app.put("/fin-accounts/manual/institutions/{institution_id}", response_model=InstitutionResponse)
def update_institution(
    institution_id: int,
    payload: InstitutionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InstitutionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = InstitutionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            get_owned_institution(conn, user_id, institution_id)
            row = conn.execute(
                update(manual_institutions)
                .where(manual_institutions.c.id == institution_id)
                .values(name=payload.name, symbol=payload.symbol)
                .returning(
                    manual_institutions.c.id,
                    manual_institutions.c.name,
                    manual_institutions.c.symbol,
                    manual_institutions.c.created_at,
                )
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Institution symbol already exists.") from exc
    return InstitutionResponse(**row)


@app.delete("/fin-accounts/manual/institutions/{institution_id}")
def delete_institution(
    institution_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        get_owned_institution(conn, user_id, institution_id)
        conn.execute(manual_institutions.delete().where(manual_institutions.c.id == institution_id))
    return {"status": "deleted"}


@app.post("/fin-accounts/manual/accounts", response_model=ManualAccountResponse)
def create_manual_account(
    payload: ManualAccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ManualAccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ManualAccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            get_owned_institution(conn, user_id, payload.institution_id)
            row = conn.execute(
                insert(manual_accounts)
                .values(owner_user_id=user_id, **payload.model_dump())
                .returning(*manual_accounts.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409, detail="An account with this mask already exists at the institution."
        ) from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create account.")
    return ManualAccountResponse(**{key: row[key] for key in ManualAccountResponse.model_fields})


@app.put("/fin-accounts/manual/accounts/{account_id}", response_model=ManualAccountResponse)
def update_manual_account(
    account_id: int,
    payload: ManualAccountPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ManualAccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ManualAccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            get_owned_manual_account(conn, user_id, account_id)
            get_owned_institution(conn, user_id, payload.institution_id)
            row = conn.execute(
                update(manual_accounts)
                .where(manual_accounts.c.id == account_id)
                .values(**payload.model_dump())
                .returning(*manual_accounts.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409, detail="An account with this mask already exists at the institution."
        ) from exc
    return ManualAccountResponse(**{key: row[key] for key in ManualAccountResponse.model_fields})


@app.delete("/fin-accounts/manual/accounts/{account_id}")
def delete_manual_account(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        get_owned_manual_account(conn, user_id, account_id)
        conn.execute(manual_accounts.delete().where(manual_accounts.c.id == account_id))
    return {"status": "deleted"}


@app.post("/fin-accounts/manual/transactions", response_model=ManualTransactionResponse)
def create_manual_transaction(
    payload: ManualTransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ManualTransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ManualTransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            account = get_owned_manual_account(conn, user_id, payload.account_id)
            if payload.category_id is not None and not category_visible_to_user(
                conn, user_id, payload.category_id
            ):
                raise HTTPException(status_code=404, detail="Category not found.")
            user_tx_id = payload.user_tx_id
            if user_tx_id is None:
                prefix = f"{account['symbol']}{account['mask']}"
                user_tx_id = manual_user_tx_id(
                    account["symbol"], account["mask"], taken_user_tx_ids(conn, prefix)
                )
            row = conn.execute(
                insert(fin_transactions)
                .values(
                    user_tx_id=user_tx_id,
                    date=payload.date,
                    amount=payload.amount,
                    iso_currency_code=payload.iso_currency_code or account["iso_currency_code"],
                    manual_account_id=account["id"],
                    category_id=payload.category_id,
                    merchant_name=payload.merchant_name,
                    payee=payload.payee,
                    tx_status=payload.tx_status,
                )
                .returning(*fin_transactions.c)
            ).mappings().first()
            attach_to_linked_budgets(conn, [row["id"]], manual_account_ids=[account["id"]])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Transaction id already exists.") from exc

    return manual_transaction_response(row)


@app.put("/fin-accounts/manual/transactions/{transaction_id}", response_model=ManualTransactionResponse)
def update_manual_transaction(
    transaction_id: int,
    payload: ManualTransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ManualTransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ManualTransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            existing = get_owned_manual_transaction(conn, user_id, transaction_id)
            account = get_owned_manual_account(conn, user_id, payload.account_id)
            if payload.category_id is not None and not category_visible_to_user(
                conn, user_id, payload.category_id
            ):
                raise HTTPException(status_code=404, detail="Category not found.")
            row = conn.execute(
                update(fin_transactions)
                .where(fin_transactions.c.id == transaction_id)
                .values(
                    user_tx_id=payload.user_tx_id or existing["user_tx_id"],
                    date=payload.date,
                    amount=payload.amount,
                    iso_currency_code=payload.iso_currency_code or account["iso_currency_code"],
                    manual_account_id=account["id"],
                    category_id=payload.category_id,
                    merchant_name=payload.merchant_name,
                    payee=payload.payee,
                    tx_status=payload.tx_status,
                )
                .returning(*fin_transactions.c)
            ).mappings().first()
            if account["id"] != existing["manual_account_id"]:
                conn.execute(
                    budget_transactions.delete().where(
                        budget_transactions.c.transaction_id == transaction_id
                    )
                )
                attach_to_linked_budgets(conn, [transaction_id], manual_account_ids=[account["id"]])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Transaction id already exists.") from exc

    return manual_transaction_response(row)


@app.delete("/fin-accounts/manual/transactions/{transaction_id}")
def delete_manual_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        get_owned_manual_transaction(conn, user_id, transaction_id)
        conn.execute(fin_transactions.delete().where(fin_transactions.c.id == transaction_id))
    return {"status": "deleted"}


@app.get("/fin-accounts/state", response_model=FinStateResponse)
def fin_accounts_state(x_user_id: str | None = Header(None, alias="x-user-id")) -> FinStateResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        institution_rows = conn.execute(
            select(manual_institutions)
            .where(manual_institutions.c.owner_user_id == user_id)
            .order_by(manual_institutions.c.id.asc())
        ).mappings().all()
        account_rows = conn.execute(
            select(manual_accounts)
            .where(manual_accounts.c.owner_user_id == user_id)
            .order_by(manual_accounts.c.id.asc())
        ).mappings().all()
        transaction_rows = conn.execute(
            select(fin_transactions)
            .where(fin_transactions.c.manual_account_id.in_([row["id"] for row in account_rows]))
            .order_by(fin_transactions.c.date.desc(), fin_transactions.c.id.desc())
        ).mappings().all()
        item_rows = conn.execute(
            select(plaid_items)
            .where(plaid_items.c.owner_user_id == user_id)
            .order_by(plaid_items.c.id.asc())
        ).mappings().all()
        plaid_account_rows = conn.execute(
            select(plaid_accounts)
            .where(plaid_accounts.c.owner_user_id == user_id)
            .order_by(plaid_accounts.c.id.asc())
        ).mappings().all()

    transactions_by_account: dict[int, list[ManualTransactionResponse]] = {}
    for row in transaction_rows:
        transactions_by_account.setdefault(row["manual_account_id"], []).append(
            manual_transaction_response(row)
        )
    accounts_by_institution: dict[int, list[ManualAccountState]] = {}
    for row in account_rows:
        accounts_by_institution.setdefault(row["institution_id"], []).append(
            ManualAccountState(
                **{key: row[key] for key in ManualAccountResponse.model_fields},
                transactions=transactions_by_account.get(row["id"], []),
            )
        )
    plaid_by_item: dict[int, list[PlaidAccountResponse]] = {}
    for row in plaid_account_rows:
        plaid_by_item.setdefault(row["item_id"], []).append(
            PlaidAccountResponse(**{key: row[key] for key in PlaidAccountResponse.model_fields})
        )
    return FinStateResponse(
        institutions=[
            InstitutionState(
                id=row["id"],
                name=row["name"],
                symbol=row["symbol"],
                created_at=row["created_at"],
                accounts=accounts_by_institution.get(row["id"], []),
            )
            for row in institution_rows
        ],
        plaid_items=[
            PlaidItemResponse(
                id=row["id"],
                plaid_item_id=row["plaid_item_id"],
                institution_id=row["institution_id"],
                institution_name=row["institution_name"],
                accounts=plaid_by_item.get(row["id"], []),
            )
            for row in item_rows
        ],
    )


async def read_csv_upload(file: UploadFile) -> str:
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="CSV file required.")

    contents = await file.read()
    try:
        return contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded.") from exc


def import_manual_csv(user_id: int, decoded: str, column_mapping: dict | None = None) -> CSVImportResponse:
    try:
        parse_result = parse_manual_csv(decoded, column_mapping)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not parse_result.is_valid:
        return CSVImportResponse(**parse_result.model_dump())

    counts = {"created_institutions": 0, "created_accounts": 0, "created_transactions": 0}
    try:
        with engine.begin() as conn:
            category_ids = {
                name.lower(): category_id for name, category_id in built_in_category_ids(conn).items()
            }
            institutions_by_symbol = {
                row["symbol"]: row["id"]
                for row in conn.execute(
                    select(manual_institutions.c.id, manual_institutions.c.symbol).where(
                        manual_institutions.c.owner_user_id == user_id
                    )
                ).mappings()
            }
            accounts_by_key = {
                (row["institution_id"], row["mask"]): row["id"]
                for row in conn.execute(
                    select(
                        manual_accounts.c.id, manual_accounts.c.institution_id, manual_accounts.c.mask
                    ).where(manual_accounts.c.owner_user_id == user_id)
                ).mappings()
            }

            new_ids: list[int] = []
            touched_accounts: set[int] = set()
            for row in parse_result.rows:
                institution_id = institutions_by_symbol.get(row.bank_symbol)
                if institution_id is None:
                    institution_id = conn.execute(
                        insert(manual_institutions)
                        .values(
                            owner_user_id=user_id,
                            name=(row.bank_name or row.bank_symbol)[:50],
                            symbol=row.bank_symbol,
                        )
                        .returning(manual_institutions.c.id)
                    ).scalar_one()
                    institutions_by_symbol[row.bank_symbol] = institution_id
                    counts["created_institutions"] += 1

                account_id = accounts_by_key.get((institution_id, row.account_mask))
                if account_id is None:
                    try:
                        account_type = ManualAccountType.validate(row.account_type or "other")
                    except ValueError:
                        account_type = "other"
                    account_id = conn.execute(
                        insert(manual_accounts)
                        .values(
                            owner_user_id=user_id,
                            institution_id=institution_id,
                            name=row.account_name or row.account_mask,
                            type=account_type,
                            mask=row.account_mask,
                        )
                        .returning(manual_accounts.c.id)
                    ).scalar_one()
                    accounts_by_key[(institution_id, row.account_mask)] = account_id
                    counts["created_accounts"] += 1

                if row.user_tx_id:
                    user_tx_id = row.user_tx_id
                else:
                    prefix = f"{row.bank_symbol}{row.account_mask}"
                    user_tx_id = manual_user_tx_id(
                        row.bank_symbol, row.account_mask, taken_user_tx_ids(conn, prefix)
                    )
                category_id = category_ids.get(
                    (row.category or "").lower(), category_ids.get(OTHER_CATEGORY.lower())
                )
                new_ids.append(
                    conn.execute(
                        insert(fin_transactions)
                        .values(
                            user_tx_id=user_tx_id,
                            date=row.date,
                            amount=row.amount,
                            iso_currency_code="USD",
                            manual_account_id=account_id,
                            category_id=category_id,
                            merchant_name=row.merchant_name,
                            payee=row.merchant_name,
                            tx_status=row.tx_status,
                        )
                        .returning(fin_transactions.c.id)
                    ).scalar_one()
                )
                touched_accounts.add(account_id)
                counts["created_transactions"] += 1

            attach_to_linked_budgets(conn, new_ids, manual_account_ids=touched_accounts)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Transaction id already exists.") from exc

    logger.info("User %s imported %s manual transactions", user_id, counts["created_transactions"])
    return CSVImportResponse(**parse_result.model_dump(), **counts)


@app.post("/fin-accounts/manual/csv", response_model=CSVImportResponse)
async def upload_manual_csv(
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CSVImportResponse:
    user_id = get_user_id(x_user_id)
    decoded = await read_csv_upload(file)
    return import_manual_csv(user_id, decoded)


@app.post("/fin-accounts/manual/csv/mapped", response_model=CSVImportResponse)
async def upload_mapped_manual_csv(
    file: UploadFile = File(...),
    column_mapping: str = Form(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CSVImportResponse:
    user_id = get_user_id(x_user_id)
    try:
        mapping = json.loads(column_mapping)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="Column mapping must be a JSON object.") from exc
    if not isinstance(mapping, dict) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in mapping.items()
    ):
        raise HTTPException(status_code=400, detail="Column mapping must map column names to headers.")
    decoded = await read_csv_upload(file)
    return import_manual_csv(user_id, decoded, mapping)


@app.post("/plaid/link-token", response_model=LinkTokenResponse)
def create_link_token(x_user_id: str | None = Header(None, alias="x-user-id")) -> LinkTokenResponse:
    user_id = get_user_id(x_user_id)
    try:
        response = PLAID_CLIENT.link_token_create(str(user_id))
    except PlaidError as exc:
        raise plaid_failure(exc) from exc
    return LinkTokenResponse(link_token=response["link_token"], expiration=response.get("expiration"))


@app.post("/plaid/items", response_model=PlaidItemResponse)
def create_plaid_item(
    payload: PlaidItemPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> PlaidItemResponse:
    user_id = get_user_id(x_user_id)
    public_token = payload.public_token.strip()
    if not public_token:
        raise HTTPException(status_code=400, detail="Public token required.")

    try:
        exchange = PLAID_CLIENT.item_public_token_exchange(public_token)
        access_token = exchange["access_token"]
        item = PLAID_CLIENT.item_get(access_token).get("item") or {}
        institution_id = item.get("institution_id")
        institution_name = None
        if institution_id:
            institution = PLAID_CLIENT.institution_get_by_id(institution_id).get("institution") or {}
            institution_name = institution.get("name")
        accounts_payload = PLAID_CLIENT.accounts_get(access_token).get("accounts") or []
    except PlaidError as exc:
        raise plaid_failure(exc) from exc

    try:
        with engine.begin() as conn:
            item_row = conn.execute(
                insert(plaid_items)
                .values(
                    owner_user_id=user_id,
                    plaid_item_id=exchange["item_id"],
                    institution_id=institution_id,
                    institution_name=institution_name,
                    access_token=access_token,
                )
                .returning(*plaid_items.c)
            ).mappings().first()
            account_rows = []
            for account in accounts_payload:
                balances = account.get("balances") or {}
                account_rows.append(
                    conn.execute(
                        insert(plaid_accounts)
                        .values(
                            owner_user_id=user_id,
                            item_id=item_row["id"],
                            plaid_account_id=account["account_id"],
                            name=account.get("name") or account.get("official_name") or "Account",
                            official_name=account.get("official_name"),
                            type=account.get("type"),
                            subtype=account.get("subtype"),
                            mask=account.get("mask"),
                            balance_available=balances.get("available"),
                            balance_current=balances.get("current"),
                            balance_limit=balances.get("limit"),
                            iso_currency_code=balances.get("iso_currency_code"),
                        )
                        .returning(*plaid_accounts.c)
                    ).mappings().first()
                )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Plaid item already linked.") from exc

    logger.info("User %s linked Plaid item %s with %s accounts", user_id, item_row["id"], len(account_rows))
    return PlaidItemResponse(
        id=item_row["id"],
        plaid_item_id=item_row["plaid_item_id"],
        institution_id=item_row["institution_id"],
        institution_name=item_row["institution_name"],
        accounts=[
            PlaidAccountResponse(**{key: row[key] for key in PlaidAccountResponse.model_fields})
            for row in account_rows
        ],
    )


@app.delete("/plaid/items/{item_id}")
def delete_plaid_item(item_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        item = conn.execute(
            select(plaid_items).where(plaid_items.c.id == item_id, plaid_items.c.owner_user_id == user_id)
        ).mappings().first()
    if not item:
        raise HTTPException(status_code=404, detail="Plaid item not found.")

    try:
        PLAID_CLIENT.item_remove(item["access_token"])
    except PlaidError as exc:
        raise plaid_failure(exc) from exc

    with engine.begin() as conn:
        conn.execute(plaid_items.delete().where(plaid_items.c.id == item_id))
    return {"status": "deleted"}


def apply_sync_batch(conn, item, batch, rewires) -> SyncResponse:
    """Store one item's sync batch; the cursor moves only once the batch is written."""
    accounts_by_plaid_id = {
        row["plaid_account_id"]: row["id"]
        for row in conn.execute(
            select(plaid_accounts.c.id, plaid_accounts.c.plaid_account_id).where(
                plaid_accounts.c.item_id == item["id"]
            )
        ).mappings()
    }
    linked_accounts = set(
        conn.execute(
            select(budget_accounts.c.plaid_account_id).where(
                budget_accounts.c.plaid_account_id.in_(list(accounts_by_plaid_id.values()))
            )
        ).scalars()
    )
    category_ids = built_in_category_ids(conn)
    counts = SyncResponse()
    touched_months: set[str] = set()

    if batch.removed:
        removed_rows = conn.execute(
            select(fin_transactions.c.date).where(fin_transactions.c.plaid_tx_id.in_(batch.removed))
        ).scalars().all()
        touched_months.update(month_key(value) for value in removed_rows)
        conn.execute(
            fin_transactions.delete().where(fin_transactions.c.plaid_tx_id.in_(batch.removed))
        )
        counts.removed = len(removed_rows)

    posted_rewires, _ = partition_transactions(rewire.posted for rewire in rewires)
    pending_ids = {rewire.posted["transaction_id"]: rewire.pending_plaid_tx_id for rewire in rewires}
    added, skipped = partition_transactions(batch.added)
    modified, skipped_modified = partition_transactions(batch.modified)
    counts.skipped = len(skipped) + len(skipped_modified)
    for plaid_tx_id in skipped + skipped_modified:
        logger.warning("Skipping Plaid transaction %s without a detailed category", plaid_tx_id)

    new_ids: list[int] = []
    for txn, lookup_id in [
        *((txn, pending_ids[txn.plaid_tx_id]) for txn in posted_rewires),
        *((txn, txn.plaid_tx_id) for txn in added),
        *((txn, txn.plaid_tx_id) for txn in modified),
    ]:
        account_id = accounts_by_plaid_id.get(txn.plaid_account_id)
        if account_id is None:
            logger.warning("Skipping Plaid transaction %s for unknown account", txn.plaid_tx_id)
            counts.skipped += 1
            continue
        values = {
            "plaid_tx_id": txn.plaid_tx_id,
            "date": txn.date,
            "amount": txn.amount,
            "iso_currency_code": txn.iso_currency_code,
            "plaid_account_id": account_id,
            "plaid_category_detailed": txn.category_detailed,
            "plaid_category_confidence": txn.category_confidence,
            "category_id": category_ids.get(map_plaid_category(txn.category_detailed)),
            "merchant_name": txn.merchant_name,
            "payee": txn.payee,
            "tx_status": "pending" if txn.pending else "posted",
            "raw_data": txn.raw_data,
        }
        existing = conn.execute(
            select(fin_transactions.c.id, fin_transactions.c.date).where(
                fin_transactions.c.plaid_tx_id == lookup_id
            )
        ).mappings().first()
        touched_months.add(month_key(txn.date))
        if existing is not None:
            touched_months.add(month_key(existing["date"]))
            conn.execute(
                update(fin_transactions).where(fin_transactions.c.id == existing["id"]).values(**values)
            )
            counts.modified += 1
            continue
        prefix = f"P{txn.date:%Y%m%d}"
        values["user_tx_id"] = plaid_user_tx_id(txn.date, txn.plaid_tx_id, taken_user_tx_ids(conn, prefix))
        new_ids.append(
            conn.execute(
                insert(fin_transactions).values(**values).returning(fin_transactions.c.id)
            ).scalar_one()
        )
        counts.new += 1
        if account_id not in linked_accounts:
            counts.unlinked += 1

    attach_to_linked_budgets(conn, new_ids, plaid_account_ids=accounts_by_plaid_id.values())
    affected_budgets = conn.execute(
        select(budget_accounts.c.budget_id)
        .where(budget_accounts.c.plaid_account_id.in_(list(accounts_by_plaid_id.values())))
        .distinct()
    ).scalars().all()
    for budget_id in affected_budgets:
        refresh_spending_tracking(conn, budget_id, touched_months)

    conn.execute(
        update(plaid_items).where(plaid_items.c.id == item["id"]).values(next_cursor=batch.next_cursor)
    )
    return counts


def sync_recurring_streams(conn, budget_id: int, item, response: dict) -> int:
    accounts_by_plaid_id = {
        row["plaid_account_id"]: row["id"]
        for row in conn.execute(
            select(plaid_accounts.c.id, plaid_accounts.c.plaid_account_id).where(
                plaid_accounts.c.item_id == item["id"]
            )
        ).mappings()
    }
    plaid_index, _ = budget_account_index(conn, budget_id)
    category_ids = built_in_category_ids(conn)
    synced = 0
    streams = (response.get("outflow_streams") or []) + (response.get("inflow_streams") or [])
    for stream in streams:
        account_id = accounts_by_plaid_id.get(stream.get("account_id"))
        if account_id is None or not stream.get("last_date"):
            continue
        average = stream.get("average_amount") or {}
        detailed = (stream.get("personal_finance_category") or {}).get("detailed")
        values = {
            "plaid_account_id": account_id,
            "frequency": (
                normalize_frequency(stream.get("frequency"))
                or str(stream.get("frequency") or "unknown").lower()
            ),
            "first_date": date.fromisoformat(stream["first_date"]) if stream.get("first_date") else None,
            "last_date": date.fromisoformat(stream["last_date"]),
            "average_amount": Decimal(str(average.get("amount", 0))),
            "merchant_name": stream.get("merchant_name"),
            "description": stream.get("description"),
            "is_active": bool(stream.get("is_active", True)),
            "category_id": category_ids.get(map_plaid_category(detailed)),
        }
        recurring_id = conn.execute(
            select(recurring_transactions.c.id).where(
                recurring_transactions.c.plaid_stream_id == stream["stream_id"]
            )
        ).scalar_one_or_none()
        if recurring_id is None:
            recurring_id = conn.execute(
                insert(recurring_transactions)
                .values(plaid_stream_id=stream["stream_id"], **values)
                .returning(recurring_transactions.c.id)
            ).scalar_one()
        else:
            conn.execute(
                update(recurring_transactions)
                .where(recurring_transactions.c.id == recurring_id)
                .values(**values)
            )
        if account_id in plaid_index:
            linked = conn.execute(
                select(budget_recurring_transactions.c.recurring_id).where(
                    budget_recurring_transactions.c.budget_id == budget_id,
                    budget_recurring_transactions.c.recurring_id == recurring_id,
                )
            ).first()
            if not linked:
                conn.execute(
                    insert(budget_recurring_transactions).values(
                        budget_id=budget_id, recurring_id=recurring_id, tag_ids=[]
                    )
                )
        synced += 1
    return synced


def sync_budget(budget_id: int, user_id: int) -> SyncResponse:
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        items = conn.execute(
            select(plaid_items)
            .where(
                plaid_items.c.owner_user_id == user_id,
                plaid_items.c.id.in_(
                    select(plaid_accounts.c.item_id)
                    .select_from(
                        plaid_accounts.join(
                            budget_accounts, budget_accounts.c.plaid_account_id == plaid_accounts.c.id
                        )
                    )
                    .where(budget_accounts.c.budget_id == budget_id)
                ),
            )
            .order_by(plaid_items.c.id.asc())
        ).mappings().all()

    totals = SyncResponse()
    for item in items:
        try:
            batch = collect_sync_pages(
                lambda cursor: PLAID_CLIENT.transactions_sync(item["access_token"], cursor),
                item["next_cursor"],
            )
        except (PlaidError, RuntimeError) as exc:
            raise plaid_failure(exc) from exc
        rewires = split_pending_rewires(batch)
        with engine.begin() as conn:
            counts = apply_sync_batch(conn, item, batch, rewires)
        logger.info(
            "Synced Plaid item %s for budget %s over %s pages: %s",
            item["id"],
            budget_id,
            batch.pages,
            counts.model_dump(),
        )
        for field_name in SyncResponse.model_fields:
            setattr(totals, field_name, getattr(totals, field_name) + getattr(counts, field_name))

        try:
            recurring = PLAID_CLIENT.transactions_recurring_get(item["access_token"])
        except PlaidApiError as exc:
            logger.warning("Recurring streams unavailable for Plaid item %s: %s", item["id"], exc)
            continue
        except PlaidError as exc:
            raise plaid_failure(exc) from exc
        with engine.begin() as conn:
            sync_recurring_streams(conn, budget_id, item, recurring)
    return totals


@app.post("/budgets/{budget_id}/plaid/sync", response_model=SyncResponse)
def sync_budget_transactions(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> SyncResponse:
    user_id = get_user_id(x_user_id)
    return sync_budget(budget_id, user_id)


@app.post("/budgets/{budget_id}/accounts", response_model=BudgetAccountResponse)
def link_budget_account(
    budget_id: int,
    payload: BudgetAccountPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetAccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetAccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            require_budget_permission(conn, budget_id, user_id, "budgets.write")
            if payload.plaid_account_id is not None:
                owner = conn.execute(
                    select(plaid_accounts.c.owner_user_id).where(
                        plaid_accounts.c.id == payload.plaid_account_id
                    )
                ).scalar_one_or_none()
                source_filter = fin_transactions.c.plaid_account_id == payload.plaid_account_id
            else:
                owner = conn.execute(
                    select(manual_accounts.c.owner_user_id).where(
                        manual_accounts.c.id == payload.manual_account_id
                    )
                ).scalar_one_or_none()
                source_filter = fin_transactions.c.manual_account_id == payload.manual_account_id
            if owner is None:
                raise HTTPException(status_code=404, detail="Account not found.")
            if owner != user_id:
                raise HTTPException(status_code=403, detail="Account belongs to another user.")

            budget_account_id = conn.execute(
                insert(budget_accounts)
                .values(
                    budget_id=budget_id,
                    plaid_account_id=payload.plaid_account_id,
                    manual_account_id=payload.manual_account_id,
                )
                .returning(budget_accounts.c.id)
            ).scalar_one()
            transaction_ids = conn.execute(select(fin_transactions.c.id).where(source_filter)).scalars().all()
            attached = attach_transactions_to_budget(conn, budget_id, transaction_ids)
            account = next(
                account
                for account in list_budget_accounts(conn, budget_id)
                if account.id == budget_account_id
            )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Account already linked to this budget.") from exc

    logger.info("Budget %s linked account %s with %s transactions", budget_id, budget_account_id, attached)
    return account


@app.delete("/budgets/{budget_id}/accounts/{budget_account_id}")
def unlink_budget_account(
    budget_id: int,
    budget_account_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        row = conn.execute(
            select(budget_accounts).where(
                budget_accounts.c.id == budget_account_id, budget_accounts.c.budget_id == budget_id
            )
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Budget account not found.")
        if row["plaid_account_id"] is not None:
            source_filter = fin_transactions.c.plaid_account_id == row["plaid_account_id"]
        else:
            source_filter = fin_transactions.c.manual_account_id == row["manual_account_id"]
        conn.execute(
            budget_transactions.delete().where(
                budget_transactions.c.budget_id == budget_id,
                budget_transactions.c.transaction_id.in_(select(fin_transactions.c.id).where(source_filter)),
            )
        )
        conn.execute(budget_accounts.delete().where(budget_accounts.c.id == budget_account_id))
    return {"status": "deleted"}


def category_response(row) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        group_id=row["group_id"],
        budget_id=row["budget_id"],
        name=row["name"],
        description=row["description"],
        is_composite=row["is_composite"],
        composite_data=row["composite_data"],
        is_built_in=row["budget_id"] is None,
    )


def category_group_response(row, group_categories: list[CategoryResponse]) -> CategoryGroupResponse:
    return CategoryGroupResponse(
        id=row["id"],
        budget_id=row["budget_id"],
        name=row["name"],
        description=row["description"],
        is_enabled=row["is_enabled"],
        is_built_in=row["budget_id"] is None,
        categories=group_categories,
    )


def get_budget_category_group(conn, budget_id: int, group_id: int):
    row = conn.execute(
        select(category_groups).where(
            category_groups.c.id == group_id, visible_to_budget(category_groups, budget_id)
        )
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Category group not found.")
    if row["budget_id"] is None:
        raise HTTPException(status_code=400, detail="Built-in category groups cannot be changed.")
    return row


@app.get("/budgets/{budget_id}/categories", response_model=list[CategoryGroupResponse])
def list_budget_categories(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[CategoryGroupResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.read")
        group_rows = conn.execute(
            select(category_groups)
            .where(visible_to_budget(category_groups, budget_id))
            .order_by(category_groups.c.id.asc())
        ).mappings().all()
        category_rows = conn.execute(
            select(categories)
            .where(visible_to_budget(categories, budget_id))
            .order_by(categories.c.name.asc(), categories.c.id.asc())
        ).mappings().all()

    by_group: dict[int, list[CategoryResponse]] = {}
    for row in category_rows:
        by_group.setdefault(row["group_id"], []).append(category_response(row))
    return [category_group_response(row, by_group.get(row["id"], [])) for row in group_rows]


@app.post("/budgets/{budget_id}/category-groups", response_model=CategoryGroupResponse)
def create_category_group(
    budget_id: int,
    payload: CategoryGroupPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryGroupResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryGroupPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if payload.name.lower() in {name.lower() for name in built_in_group_names()}:
        raise HTTPException(status_code=409, detail="Category group name is reserved.")

    try:
        with engine.begin() as conn:
            require_budget_permission(conn, budget_id, user_id, "budgets.write")
            duplicate = conn.execute(
                select(category_groups.c.id).where(
                    category_groups.c.budget_id == budget_id,
                    func.lower(category_groups.c.name) == payload.name.lower(),
                )
            ).first()
            if duplicate:
                raise HTTPException(status_code=409, detail="Category group already exists.")
            row = conn.execute(
                insert(category_groups)
                .values(budget_id=budget_id, name=payload.name, description=payload.description)
                .returning(*category_groups.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category group already exists.") from exc
    return category_group_response(row, [])


@app.put("/budgets/{budget_id}/category-groups/{group_id}", response_model=CategoryGroupResponse)
def update_category_group(
    budget_id: int,
    group_id: int,
    payload: CategoryGroupUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryGroupResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        get_budget_category_group(conn, budget_id, group_id)
        row = conn.execute(
            update(category_groups)
            .where(category_groups.c.id == group_id)
            .values(description=clean_optional(payload.description))
            .returning(*category_groups.c)
        ).mappings().first()
        category_rows = conn.execute(
            select(categories).where(categories.c.group_id == group_id).order_by(categories.c.name.asc())
        ).mappings().all()
    return category_group_response(row, [category_response(category) for category in category_rows])


@app.post("/budgets/{budget_id}/categories", response_model=CategoryResponse)
def create_budget_category(
    budget_id: int,
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            require_budget_permission(conn, budget_id, user_id, "budgets.write")
            get_budget_category_group(conn, budget_id, payload.group_id)
            visible_names = set(
                conn.execute(
                    select(categories.c.name).where(visible_to_budget(categories, budget_id))
                ).scalars()
            )
            if payload.name.lower() in {name.lower() for name in visible_names}:
                raise HTTPException(status_code=409, detail="Category already exists.")
            composite_data = None
            if payload.composite_data:
                try:
                    composite_data = validate_composite_data(payload.composite_data, visible_names)
                except ValueError as exc:
                    raise HTTPException(status_code=400, detail=str(exc)) from exc
            row = conn.execute(
                insert(categories)
                .values(
                    budget_id=budget_id,
                    group_id=payload.group_id,
                    name=payload.name,
                    description=payload.description,
                    is_composite=composite_data is not None,
                    composite_data=composite_data,
                )
                .returning(*categories.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return category_response(row)


@app.delete("/budgets/{budget_id}/categories/{category_id}")
def delete_budget_category(
    budget_id: int,
    category_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        row = get_visible_category(conn, budget_id, category_id)
        if row["budget_id"] is None:
            raise HTTPException(status_code=400, detail="Built-in categories cannot be deleted.")
        in_use = any(
            conn.execute(
                select(table.c.category_id).where(table.c.category_id == category_id).limit(1)
            ).first()
            for table in (budget_transactions, fin_transactions, budget_recurring_transactions)
        )
        composite_names = conn.execute(
            select(categories.c.composite_data).where(
                categories.c.budget_id == budget_id, categories.c.is_composite.is_(True)
            )
        ).scalars().all()
        used_in_composite = any(
            part.get("categoryName") == row["name"] for parts in composite_names for part in parts or []
        )
        used_in_rules = any(
            (rule.actions.get("setCategory") or {}).get("value") == category_id
            for rule in load_budget_rules(conn, budget_id)
        )
        if in_use or used_in_composite or used_in_rules:
            raise HTTPException(status_code=409, detail="Category is in use.")
        conn.execute(categories.delete().where(categories.c.id == category_id))
    return {"status": "deleted"}


@app.get("/budgets/{budget_id}/transactions", response_model=list[BudgetTransactionResponse])
def list_budget_transactions(
    budget_id: int,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    search: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BudgetTransactionResponse]:
    user_id = get_user_id(x_user_id)
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.read")
        rows = fetch_budget_transactions(conn, budget_id, start_date, end_date, search)
        return build_budget_transaction_responses(conn, budget_id, rows)


@app.get("/budgets/{budget_id}/transactions/suggest-category", response_model=CategorySuggestionResponse)
def suggest_transaction_category(
    budget_id: int,
    merchant: str = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategorySuggestionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.read")
        category_id, confidence = suggest_category(conn, budget_id, merchant, classification_rules)
        category_name = None
        if category_id is not None:
            category_name = (category_index(conn, budget_id).get(category_id) or {}).get("name")
    return CategorySuggestionResponse(
        category_id=category_id, category_name=category_name, confidence=confidence
    )


@app.put("/budgets/{budget_id}/transactions/{transaction_id}", response_model=BudgetTransactionResponse)
def update_budget_transaction(
    budget_id: int,
    transaction_id: int,
    payload: BudgetTransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetTransactionResponse:
    user_id = get_user_id(x_user_id)
    provided = payload.model_fields_set
    if not provided:
        raise HTTPException(status_code=400, detail="No fields to update.")

    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        current = conn.execute(
            budget_transaction_query(budget_id).where(budget_transactions.c.transaction_id == transaction_id)
        ).mappings().first()
        if not current:
            raise HTTPException(status_code=404, detail="Transaction not found.")

        values: dict = {}
        if "category_id" in provided:
            if payload.category_id is not None:
                get_visible_category(conn, budget_id, payload.category_id)
            values["category_id"] = payload.category_id
        if "merchant_name" in provided:
            values["merchant_name"] = clean_optional(payload.merchant_name)
        if "payee" in provided:
            values["payee"] = clean_optional(payload.payee)
        if "notes" in provided:
            values["notes"] = clean_optional(payload.notes)
        if "tags" in provided:
            values["tag_ids"] = resolve_tag_ids(conn, budget_id, payload.tags or [])

        conn.execute(
            update(budget_transactions)
            .where(
                budget_transactions.c.budget_id == budget_id,
                budget_transactions.c.transaction_id == transaction_id,
            )
            .values(**values)
        )
        row = conn.execute(
            budget_transaction_query(budget_id).where(budget_transactions.c.transaction_id == transaction_id)
        ).mappings().first()
        if row["category_id"] != current["category_id"]:
            if payload.category_id is not None:
                learn_category(
                    conn,
                    budget_id,
                    values.get("merchant_name") or current["merchant_name"] or current["payee"],
                    payload.category_id,
                    classification_rules,
                )
            refresh_spending_tracking(conn, budget_id, [month_key(current["date"])])
        return build_budget_transaction_responses(conn, budget_id, [row])[0]


@app.get("/budgets/{budget_id}/tags", response_model=list[TagResponse])
def list_tags(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> list[TagResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.read")
        rows = conn.execute(
            select(budget_tags).where(budget_tags.c.budget_id == budget_id).order_by(budget_tags.c.name.asc())
        ).mappings().all()
    return [TagResponse(**row) for row in rows]


@app.post("/budgets/{budget_id}/tags", response_model=TagResponse)
def create_tag(
    budget_id: int,
    payload: TagPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TagResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TagPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        tag_id = resolve_tag_ids(conn, budget_id, [payload.tag_name])[0]
        row = conn.execute(select(budget_tags).where(budget_tags.c.id == tag_id)).mappings().first()
    return TagResponse(**row)


def rule_response(row, applied_count: int = 0) -> RuleResponse:
    return RuleResponse(
        id=row["id"],
        budget_id=row["budget_id"],
        name=row["name"],
        description=row["description"],
        is_active=row["is_active"],
        conditions=row["conditions"],
        actions=row["actions"],
        applied_count=applied_count,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def check_rule_references(conn, budget_id: int, payload: RulePayload) -> None:
    category_action = payload.actions.get("setCategory") or {}
    if category_action.get("enabled"):
        get_visible_category(conn, budget_id, category_action["value"])
    account_condition = payload.conditions.get("account") or {}
    if account_condition.get("enabled"):
        exists = conn.execute(
            select(budget_accounts.c.id).where(
                budget_accounts.c.id == account_condition["value"],
                budget_accounts.c.budget_id == budget_id,
            )
        ).first()
        if not exists:
            raise HTTPException(status_code=400, detail="Rule account does not belong to this budget.")


def apply_rule_to_existing(conn, budget_id: int, rule: BudgetRule) -> int:
    """Run one rule over every transaction already in the budget; returns matches."""
    tags_by_id = tag_names_by_id(conn, budget_id)
    plaid_index, manual_index = budget_account_index(conn, budget_id)
    touched_months: set[str] = set()
    applied = 0
    for row in conn.execute(budget_transaction_query(budget_id)).mappings().all():
        txn = RuleTransaction(
            transaction_id=row["transaction_id"],
            date=row["date"],
            amount=row["amount"],
            merchant_name=row["merchant_name"],
            payee=row["payee"],
            budget_account_id=resolve_budget_account_id(row, plaid_index, manual_index),
            category_id=row["category_id"],
            notes=row["notes"],
            tags=tuple(tags_by_id[tag_id] for tag_id in row["tag_ids"] or [] if tag_id in tags_by_id),
        )
        processed, matched = apply_rules(txn, [rule])
        if not matched:
            continue
        conn.execute(
            update(budget_transactions)
            .where(
                budget_transactions.c.budget_id == budget_id,
                budget_transactions.c.transaction_id == row["transaction_id"],
            )
            .values(
                category_id=processed.category_id,
                merchant_name=processed.merchant_name,
                notes=processed.notes,
                tag_ids=resolve_tag_ids(conn, budget_id, processed.tags),
            )
        )
        touched_months.add(month_key(row["date"]))
        applied += 1
    refresh_spending_tracking(conn, budget_id, touched_months)
    logger.info("Rule %s applied to %s existing transactions in budget %s", rule.id, applied, budget_id)
    return applied


@app.get("/budgets/{budget_id}/rules", response_model=list[RuleResponse])
def list_rules(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> list[RuleResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.read")
        rows = conn.execute(
            select(budget_rules).where(budget_rules.c.budget_id == budget_id)
        ).mappings().all()
    positions = {rule_id: index for index, rule_id in enumerate(budget["rule_order"] or [])}
    rows = sorted(rows, key=lambda row: (row["id"] not in positions, positions.get(row["id"], 0), row["id"]))
    return [rule_response(row) for row in rows]


@app.post("/budgets/{budget_id}/rules", response_model=RuleResponse)
def create_rule(
    budget_id: int,
    payload: RulePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RuleResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = RulePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.write")
        check_rule_references(conn, budget_id, payload)
        row = conn.execute(
            insert(budget_rules)
            .values(
                budget_id=budget_id,
                name=payload.name,
                description=payload.description,
                is_active=payload.is_active,
                conditions=payload.conditions,
                actions=payload.actions,
            )
            .returning(*budget_rules.c)
        ).mappings().first()
        touch_budget(conn, budget_id, rule_order=[*(budget["rule_order"] or []), row["id"]])
        applied = 0
        if payload.is_applied_to_all_transactions and payload.is_active:
            rule = BudgetRule(
                id=row["id"], name=row["name"], conditions=row["conditions"], actions=row["actions"]
            )
            applied = apply_rule_to_existing(conn, budget_id, rule)
    return rule_response(row, applied)


@app.patch("/budgets/{budget_id}/rules", response_model=BudgetResponse)
def reorder_rules(
    budget_id: int,
    payload: RuleOrderPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    if len(set(payload.rule_order)) != len(payload.rule_order):
        raise HTTPException(status_code=400, detail="Rule order contains duplicates.")

    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        rule_ids = set(
            conn.execute(
                select(budget_rules.c.id).where(budget_rules.c.budget_id == budget_id)
            ).scalars()
        )
        unknown = [rule_id for rule_id in payload.rule_order if rule_id not in rule_ids]
        if unknown:
            raise HTTPException(
                status_code=400,
                detail="Rules do not belong to this budget: "
                + ", ".join(str(rule_id) for rule_id in unknown),
            )
        touch_budget(conn, budget_id, rule_order=list(payload.rule_order))
        budget = conn.execute(select(budgets).where(budgets.c.id == budget_id)).mappings().first()
        role = conn.execute(
            select(budget_members.c.role).where(
                budget_members.c.budget_id == budget_id, budget_members.c.user_id == user_id
            )
        ).scalar_one()
    return budget_response(budget, role)


@app.put("/budgets/{budget_id}/rules/{rule_id}", response_model=RuleResponse)
def update_rule(
    budget_id: int,
    rule_id: int,
    payload: RulePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RuleResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = RulePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        check_rule_references(conn, budget_id, payload)
        row = conn.execute(
            update(budget_rules)
            .where(budget_rules.c.id == rule_id, budget_rules.c.budget_id == budget_id)
            .values(
                name=payload.name,
                description=payload.description,
                is_active=payload.is_active,
                conditions=payload.conditions,
                actions=payload.actions,
                updated_at=datetime.utcnow(),
            )
            .returning(*budget_rules.c)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Rule not found.")
        applied = 0
        if payload.is_applied_to_all_transactions and payload.is_active:
            rule = BudgetRule(
                id=row["id"], name=row["name"], conditions=row["conditions"], actions=row["actions"]
            )
            applied = apply_rule_to_existing(conn, budget_id, rule)
    return rule_response(row, applied)


@app.delete("/budgets/{budget_id}/rules/{rule_id}")
def delete_rule(
    budget_id: int,
    rule_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.write")
        result = conn.execute(
            budget_rules.delete().where(budget_rules.c.id == rule_id, budget_rules.c.budget_id == budget_id)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Rule not found.")
        touch_budget(
            conn,
            budget_id,
            rule_order=[existing for existing in budget["rule_order"] or [] if existing != rule_id],
        )
    return {"status": "deleted"}


def parse_tracking_month(value: str) -> str:
    cleaned = value.strip()
    if len(cleaned) == 10:
        try:
            return month_key(date.fromisoformat(cleaned))
        except ValueError as exc:
            raise ValueError(f"Invalid date: {value}") from exc
    return validate_month_keys([cleaned])[0]


@app.get("/budgets/{budget_id}/spending-tracking")
def get_spending_tracking(
    budget_id: int,
    month: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.read")
    tracking = budget["spending_tracking"] or {}
    if month is None:
        return tracking
    try:
        key = parse_tracking_month(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if key not in tracking:
        raise HTTPException(status_code=404, detail="No spending tracking for this month.")
    return {key: tracking[key]}


@app.post("/budgets/{budget_id}/spending-tracking/recalculate")
def recalculate_budget_spending(
    budget_id: int,
    payload: RecalculatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        months = validate_month_keys(payload.months)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.write")
        transactions = load_tracked_transactions(conn, budget_id)
        groups = load_category_groups(conn, budget_id)
        existing = budget["spending_tracking"]
        if existing:
            tracking, skipped = recalculate_spending_tracking(existing, months, transactions, groups)
        else:
            tracking, skipped = calculate_spending_tracking(transactions, groups), []
        touch_budget(conn, budget_id, spending_tracking=tracking)

    logger.info("Recalculated spending for budget %s (skipped %s)", budget_id, skipped)
    return {
        "recalculated": [month for month in months if month not in skipped],
        "skipped": skipped,
        "spending_tracking": tracking,
    }


@app.put("/budgets/{budget_id}/spending-tracking")
def update_spending_targets(
    budget_id: int,
    payload: SpendingTargetsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        month = parse_tracking_month(payload.date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.write")
        groups = load_category_groups(conn, budget_id)
        try:
            tracking = apply_month_targets(
                budget["spending_tracking"] or {}, month, payload.category_spending, groups
            )
        except TrackingLookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise HTTPException(status_code=400, detail=f"Invalid spending targets: {exc}") from exc
        touch_budget(conn, budget_id, spending_tracking=tracking)
    return {month: tracking[month]}


@app.get("/budgets/{budget_id}/goals", response_model=list[GoalResponse])
def list_budget_goals(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[GoalResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.read")
        return list_goals(conn, budget_id)


def goal_values(conn, budget_id: int, payload: GoalPayload) -> dict:
    starting_balance = budget_account_balance(conn, budget_id, payload.budget_account_id)
    try:
        tracking = create_goal_tracking(payload.amount, payload.target_date, starting_balance)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        **payload.model_dump(),
        "spending_tracking": tracking,
        "spending_recommendations": None,
    }


@app.post("/budgets/{budget_id}/goals", response_model=GoalResponse)
def create_goal(
    budget_id: int,
    payload: GoalPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = GoalPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        row = conn.execute(
            insert(budget_goals)
            .values(budget_id=budget_id, **goal_values(conn, budget_id, payload))
            .returning(*budget_goals.c)
        ).mappings().first()
    return goal_response(row)


@app.put("/budgets/{budget_id}/goals/{goal_id}", response_model=GoalResponse)
def update_goal(
    budget_id: int,
    goal_id: int,
    payload: GoalPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = GoalPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        row = conn.execute(
            update(budget_goals)
            .where(budget_goals.c.id == goal_id, budget_goals.c.budget_id == budget_id)
            .values(**goal_values(conn, budget_id, payload))
            .returning(*budget_goals.c)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Goal not found.")
    return goal_response(row)


@app.delete("/budgets/{budget_id}/goals/{goal_id}")
def delete_goal(
    budget_id: int,
    goal_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        result = conn.execute(
            budget_goals.delete().where(budget_goals.c.id == goal_id, budget_goals.c.budget_id == budget_id)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Goal not found.")
    return {"status": "deleted"}


def account_key(plaid_account_id: int | None, manual_account_id: int | None) -> str:
    if plaid_account_id is not None:
        return f"plaid:{plaid_account_id}"
    return f"manual:{manual_account_id}"


def budget_recurring_query(budget_id: int):
    return (
        select(
            recurring_transactions,
            budget_recurring_transactions.c.category_id.label("budget_category_id"),
            budget_recurring_transactions.c.notes,
            budget_recurring_transactions.c.tag_ids,
        )
        .select_from(
            budget_recurring_transactions.join(
                recurring_transactions,
                recurring_transactions.c.id == budget_recurring_transactions.c.recurring_id,
            )
        )
        .where(budget_recurring_transactions.c.budget_id == budget_id)
    )


def recurring_response(
    row, tags_by_id: dict[int, str], plaid_index, manual_index, projected=()
) -> RecurringResponse:
    return RecurringResponse(
        id=row["id"],
        plaid_stream_id=row["plaid_stream_id"],
        frequency=row["frequency"],
        first_date=row["first_date"],
        last_date=row["last_date"],
        average_amount=row["average_amount"],
        merchant_name=row["merchant_name"],
        description=row["description"],
        is_active=row["is_active"],
        category_id=row["budget_category_id"] or row["category_id"],
        notes=row["notes"],
        tags=[tags_by_id[tag_id] for tag_id in row["tag_ids"] or [] if tag_id in tags_by_id],
        budget_account_id=resolve_budget_account_id(row, plaid_index, manual_index),
        projected=[ProjectedOccurrence(date=entry.date, amount=entry.amount) for entry in projected],
    )


@app.get("/budgets/{budget_id}/transactions-recurring", response_model=list[RecurringResponse])
def list_recurring_transactions(
    budget_id: int,
    until: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringResponse]:
    user_id = get_user_id(x_user_id)
    today = date.today()
    until = until or today + timedelta(days=30)
    if until < today:
        raise HTTPException(status_code=400, detail="Until must be on or after today.")

    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.read")
        rows = conn.execute(
            budget_recurring_query(budget_id).order_by(recurring_transactions.c.id.asc())
        ).mappings().all()
        actual_rows = conn.execute(
            select(
                fin_transactions.c.date,
                fin_transactions.c.plaid_account_id,
                fin_transactions.c.manual_account_id,
            ).where(
                fin_transactions.c.date >= today,
                fin_transactions.c.date <= until,
                or_(
                    fin_transactions.c.plaid_account_id.in_(
                        [row["plaid_account_id"] for row in rows if row["plaid_account_id"]]
                    ),
                    fin_transactions.c.manual_account_id.in_(
                        [row["manual_account_id"] for row in rows if row["manual_account_id"]]
                    ),
                ),
            )
        ).mappings().all()
        tags_by_id = tag_names_by_id(conn, budget_id)
        plaid_index, manual_index = budget_account_index(conn, budget_id)

    streams = [
        RecurringStream(
            stream_id=row["id"],
            last_date=row["last_date"],
            average_amount=row["average_amount"],
            account_key=account_key(row["plaid_account_id"], row["manual_account_id"]),
            frequency=row["frequency"],
            description=row["description"],
            category_id=row["budget_category_id"] or row["category_id"],
        )
        for row in rows
        if row["is_active"]
    ]
    existing = [
        ActualTransaction(
            date=row["date"],
            account_key=account_key(row["plaid_account_id"], row["manual_account_id"]),
        )
        for row in actual_rows
    ]
    projections_by_stream: dict[int, list] = {}
    for entry in project_recurring_schedules(streams, today, until, existing):
        projections_by_stream.setdefault(entry.stream_id, []).append(entry)

    return [
        recurring_response(
            row, tags_by_id, plaid_index, manual_index, projections_by_stream.get(row["id"], [])
        )
        for row in rows
    ]


@app.put("/budgets/{budget_id}/transactions-recurring/{recurring_id}", response_model=RecurringResponse)
def update_recurring_transaction(
    budget_id: int,
    recurring_id: int,
    payload: RecurringUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringResponse:
    user_id = get_user_id(x_user_id)
    provided = payload.model_fields_set
    if not provided:
        raise HTTPException(status_code=400, detail="No fields to update.")

    with engine.begin() as conn:
        require_budget_permission(conn, budget_id, user_id, "budgets.write")
        values: dict = {}
        if "category_id" in provided:
            if payload.category_id is not None:
                get_visible_category(conn, budget_id, payload.category_id)
            values["category_id"] = payload.category_id
        if "notes" in provided:
            values["notes"] = clean_optional(payload.notes)
        if "tags" in provided:
            values["tag_ids"] = resolve_tag_ids(conn, budget_id, payload.tags or [])
        result = conn.execute(
            update(budget_recurring_transactions)
            .where(
                budget_recurring_transactions.c.budget_id == budget_id,
                budget_recurring_transactions.c.recurring_id == recurring_id,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Recurring transaction not found.")
        row = conn.execute(
            budget_recurring_query(budget_id).where(recurring_transactions.c.id == recurring_id)
        ).mappings().first()
        tags_by_id = tag_names_by_id(conn, budget_id)
        plaid_index, manual_index = budget_account_index(conn, budget_id)
    return recurring_response(row, tags_by_id, plaid_index, manual_index)


def onboarding_response(conn, budget, user_id: int) -> OnboardingResponse:
    profile = get_fin_profile(conn, user_id)
    return OnboardingResponse(
        budget_id=budget["id"],
        step=budget["current_onboarding_step"],
        accounts=list_budget_accounts(conn, budget["id"]),
        goals=list_goals(conn, budget["id"]),
        profile=fin_profile_response(user_id, profile),
        is_profile_complete=is_profile_complete(profile),
    )


@app.get("/budgets/{budget_id}/onboarding", response_model=OnboardingResponse)
def get_onboarding(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> OnboardingResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.read")
        return onboarding_response(conn, budget, user_id)


@app.put("/budgets/{budget_id}/onboarding/step", response_model=OnboardingResponse)
def update_onboarding_step(
    budget_id: int,
    payload: OnboardingStepPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> OnboardingResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.write")
        has_linked_accounts = conn.execute(
            select(budget_accounts.c.id).where(budget_accounts.c.budget_id == budget_id).limit(1)
        ).first() is not None
        try:
            step = validate_transition(
                budget["current_onboarding_step"],
                payload.step,
                has_linked_accounts=has_linked_accounts,
                profile_complete=is_profile_complete(get_fin_profile(conn, user_id)),
                has_recommendations=bool(budget["spending_recommendations"]),
            )
        except OnboardingTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        touch_budget(conn, budget_id, current_onboarding_step=step)
        budget = conn.execute(select(budgets).where(budgets.c.id == budget_id)).mappings().first()
        return onboarding_response(conn, budget, user_id)


@app.put("/budgets/{budget_id}/onboarding/end", response_model=BudgetResponse)
def end_onboarding(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.write")
        try:
            validate_end(budget["current_onboarding_step"])
        except OnboardingTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        touch_budget(conn, budget_id, current_onboarding_step="end", is_active=True)
        budget = conn.execute(select(budgets).where(budgets.c.id == budget_id)).mappings().first()
        role = conn.execute(
            select(budget_members.c.role).where(
                budget_members.c.budget_id == budget_id, budget_members.c.user_id == user_id
            )
        ).scalar_one()
    return budget_response(budget, role)


@app.put("/onboarding/profile/personal", response_model=FinProfileResponse)
def update_profile_personal(
    payload: ProfilePersonalPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> FinProfileResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ProfilePersonalPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = upsert_fin_profile(conn, user_id, payload.model_dump())
        conn.execute(update(users).where(users.c.id == user_id).values(full_name=payload.full_name))
    return fin_profile_response(user_id, row)


@app.put("/onboarding/profile/fin", response_model=FinProfileResponse)
def update_profile_fin(
    payload: ProfileFinPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> FinProfileResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ProfileFinPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = upsert_fin_profile(conn, user_id, payload.model_dump())
    return fin_profile_response(user_id, row)


@app.put("/onboarding/profile/goals", response_model=FinProfileResponse)
def update_profile_goals(
    payload: ProfileGoalsPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> FinProfileResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ProfileGoalsPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = upsert_fin_profile(conn, user_id, payload.model_dump())
    return fin_profile_response(user_id, row)


def build_recommendations(conn, budget_id: int, today: date) -> dict:
    goal_rows = conn.execute(
        select(budget_goals).where(budget_goals.c.budget_id == budget_id).order_by(budget_goals.c.id.asc())
    ).mappings().all()
    goals = [
        GoalInput(
            id=row["id"],
            amount=row["amount"],
            target_date=row["target_date"],
            starting_balance=budget_account_balance(conn, budget_id, row["budget_account_id"]),
            spending_tracking=row["spending_tracking"] or {},
        )
        for row in goal_rows
        if row["target_date"] > today
    ]
    result = recommend_spending_and_goals(
        load_tracked_transactions(conn, budget_id),
        load_category_groups(conn, budget_id),
        goals,
        today=today,
        discretionary=DISCRETIONARY_CATEGORIES,
    )
    touch_budget(
        conn,
        budget_id,
        spending_tracking=result["spendingTracking"],
        spending_recommendations=result["spendingRecommendations"],
        current_onboarding_step="budget_setup",
    )
    for goal in goals:
        conn.execute(
            update(budget_goals)
            .where(budget_goals.c.id == goal.id)
            .values(
                spending_tracking=result["goalSpendingTracking"][str(goal.id)],
                spending_recommendations={
                    strategy: recommendations[str(goal.id)]
                    for strategy, recommendations in result["goalSpendingRecommendations"].items()
                },
            )
        )
    return result


@app.post("/budgets/{budget_id}/onboarding/analysis")
def analyze_spending(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget = require_budget_permission(conn, budget_id, user_id, "budgets.write")
        if budget["current_onboarding_step"] != "analyze_spending":
            raise HTTPException(
                status_code=409,
                detail=f"Spending analysis cannot start from step: {budget['current_onboarding_step']}",
            )
        touch_budget(conn, budget_id, current_onboarding_step="analyze_spending_in_progress")

    try:
        sync_counts = sync_budget(budget_id, user_id)
        with engine.begin() as conn:
            result = build_recommendations(conn, budget_id, date.today())
    except Exception:
        logger.exception("Spending analysis failed for budget %s", budget_id)
        with engine.begin() as conn:
            touch_budget(conn, budget_id, current_onboarding_step="analyze_spending")
        raise

    logger.info("Spending analysis finished for budget %s", budget_id)
    return {
        "step": "budget_setup",
        "sync": sync_counts.model_dump(),
        "spending_recommendations": result["spendingRecommendations"],
        "goal_spending_recommendations": result["goalSpendingRecommendations"],
        "summary": result["summary"],
    }
