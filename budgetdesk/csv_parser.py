from __future__ import annotations

import csv
import io
import re
from datetime import date, datetime
from datetime import date as Date
from decimal import Decimal, InvalidOperation
from typing import Mapping

from pydantic import BaseModel


class ParsedCSVRow(BaseModel):
    row_number: int
    user_tx_id: str | None = None
    date: Date | None = None
    amount: Decimal | None = None
    merchant_name: str | None = None
    category: str | None = None
    bank_name: str | None = None
    bank_symbol: str | None = None
    account_name: str | None = None
    account_type: str | None = None
    account_mask: str | None = None
    tx_status: str = "posted"
    is_date_valid: bool = True
    is_amount_valid: bool = True
    is_symbol_valid: bool = True
    is_mask_valid: bool = True
    is_status_valid: bool = True
    is_tx_id_valid: bool = True

    @property
    def is_valid(self) -> bool:
        return (
            self.is_date_valid
            and self.is_amount_valid
            and self.is_symbol_valid
            and self.is_mask_valid
            and self.is_status_valid
            and self.is_tx_id_valid
        )


class CSVParseResult(BaseModel):
    is_valid: bool
    missing_columns: list[str] = []
    mappable_columns: list[str] = []
    invalid_rows: list[int] = []
    rows: list[ParsedCSVRow] = []


REQUIRED_COLUMNS = [
    "TransactionId",
    "Date",
    "Amount",
    "Merchant",
    "Category",
    "BankName",
    "BankSymbol",
    "AccountName",
    "AccountType",
    "AccountMask",
]
OPTIONAL_COLUMNS = ["TransactionStatus"]

SYMBOL_PATTERN = re.compile(r"^[A-Za-z]{3,5}$")
MASK_PATTERN = re.compile(r"^\d{4}$")
TX_STATUSES = {"pending", "posted"}

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y", "%d %b %Y", "%d %B %Y")


def parse_manual_csv(
    contents: str, column_mapping: Mapping[str, str] | None = None
) -> CSVParseResult:
    """Parse a manual-account CSV export.

    ``column_mapping`` maps a required column name to the header actually used
    in the file. Missing columns make the result invalid without reading rows.
    """
    reader = csv.reader(io.StringIO(contents))
    rows = list(reader)
    if not rows:
        raise ValueError("CSV missing header row.")

    fieldnames = [clean_text(name) for name in rows[0]]
    if column_mapping:
        fieldnames = apply_column_mapping(fieldnames, column_mapping)

    headers: dict[str, str] = {}
    for column in REQUIRED_COLUMNS + OPTIONAL_COLUMNS:
        header = find_header(fieldnames, [column])
        if header:
            headers[column] = header

    missing = [column for column in REQUIRED_COLUMNS if column not in headers]
    if missing:
        used = set(headers.values())
        mappable = [name for name in fieldnames if name and name not in used]
        return CSVParseResult(is_valid=False, missing_columns=missing, mappable_columns=mappable)

    parsed_rows: list[ParsedCSVRow] = []
    for index, row in enumerate(rows[1:], start=2):
        raw = row_to_dict(fieldnames, row)
        if is_blank_row(raw):
            continue
        parsed_rows.append(parse_row(index, raw, headers))

    invalid_rows = [row.row_number for row in parsed_rows if not row.is_valid]
    return CSVParseResult(
        is_valid=bool(parsed_rows) and not invalid_rows,
        invalid_rows=invalid_rows,
        rows=parsed_rows,
    )


def apply_column_mapping(fieldnames: list[str], column_mapping: Mapping[str, str]) -> list[str]:
    unknown = [column for column in column_mapping if column not in REQUIRED_COLUMNS + OPTIONAL_COLUMNS]
    if unknown:
        raise ValueError(f"Unknown columns in mapping: {', '.join(unknown)}")
    renamed = list(fieldnames)
    for column, header in column_mapping.items():
        if header not in fieldnames:
            raise ValueError(f"Mapped header not found in file: {header}")
        renamed[fieldnames.index(header)] = column
    return renamed


def parse_row(row_number: int, row: dict[str, str | None], headers: dict[str, str]) -> ParsedCSVRow:
    date_value = parse_date(row.get(headers["Date"]))
    amount_value = parse_decimal(row.get(headers["Amount"]))
    symbol = clean_text(row.get(headers["BankSymbol"]))
    mask = clean_text(row.get(headers["AccountMask"]))

    status_header = headers.get("TransactionStatus")
    raw_status = clean_text(row.get(status_header)) if status_header else ""
    status = raw_status.lower() or "posted"

    user_tx_id = clean_text(row.get(headers["TransactionId"]))
    return ParsedCSVRow(
        row_number=row_number,
        user_tx_id=user_tx_id or None,
        date=date_value,
        amount=amount_value,
        merchant_name=clean_text(row.get(headers["Merchant"])) or None,
        category=clean_text(row.get(headers["Category"])) or None,
        bank_name=clean_text(row.get(headers["BankName"])) or None,
        bank_symbol=symbol.upper() or None,
        account_name=clean_text(row.get(headers["AccountName"])) or None,
        account_type=clean_text(row.get(headers["AccountType"])).lower() or None,
        account_mask=mask or None,
        tx_status=status if status in TX_STATUSES else "posted",
        is_date_valid=date_value is not None,
        is_amount_valid=amount_value is not None,
        is_symbol_valid=bool(SYMBOL_PATTERN.match(symbol)),
        is_mask_valid=bool(MASK_PATTERN.match(mask)),
        is_status_valid=status in TX_STATUSES,
        is_tx_id_valid=not user_tx_id or is_valid_tx_id(user_tx_id),
    )


def row_to_dict(fieldnames: list[str], row: list[str]) -> dict[str, str | None]:
    if len(row) < len(fieldnames):
        row = row + [""] * (len(fieldnames) - len(row))
    if len(row) > len(fieldnames):
        row = row[: len(fieldnames)]
    return dict(zip(fieldnames, row))


def parse_date(value: str | None) -> date | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def parse_decimal(value: str | None) -> Decimal | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    cleaned = cleaned.replace("$", "").replace(",", "")
    cleaned = re.sub(r"\s+", "", cleaned)

    if cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None

    return -amount if negative else amount


def find_header(fieldnames: list[str], candidates: list[str]) -> str | None:
    normalized = [(name, normalize_header(name)) for name in fieldnames if name]
    for candidate in candidates:
        cand_norm = normalize_header(candidate)
        for name, norm in normalized:
            if norm == cand_norm:
                return name
    return None


def normalize_header(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.strip().lower())


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def is_valid_tx_id(value: str) -> bool:
    return 6 <= len(value) <= 20 and not any(ch.islower() or ch.isspace() for ch in value)


def is_blank_row(row: dict[str, str | None]) -> bool:
    return all(not clean_text(value) for value in row.values())
