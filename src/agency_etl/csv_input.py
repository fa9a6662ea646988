"""agency_etl.csv_input

Canonical-column CSV readers for the CLI.

The carrier spreadsheet parsers live outside this package; they (or a
person) produce CSVs whose headers are the record field names, e.g.

    first_name,last_name,zip_code,policy_number,termination_effective_date,...

Headers are matched case-insensitively; spaces and hyphens count as
underscores.  Values are normalized with agency_etl.normalize: dates via
parse_date, counts via parse_int.  Money columns hold dollar amounts
("$1,200.00") and are named without a suffix; parse_cents turns each into
the matching *_cents record field:

    premium      -> premium_cents       (cancel_audit, sales, quotes)
    premium_new  -> premium_new_cents   (terminations, renewals)
    premium_old  -> premium_old_cents   (terminations, renewals)
    amount_due   -> amount_due_cents    (cancel_audit, renewals)

An unparseable value becomes None and the pipeline rejects the record if
the field is mandatory.
"""

from __future__ import annotations

import csv
import re
from pathlib import Path
from typing import Any, Callable

from agency_etl.normalize import parse_bool, parse_cents, parse_date, parse_int, trim
from agency_etl.records import (
    CancelAuditRecord,
    LeadRecord,
    QuoteRecord,
    RenewalRecord,
    SaleRecord,
    TerminationRecord,
)

_IDENTITY_COLUMNS = {"first_name", "last_name", "zip_code"}

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "terminations": _IDENTITY_COLUMNS | {"policy_number", "termination_effective_date"},
    "cancel_audit": _IDENTITY_COLUMNS | {"policy_number"},
    "renewals": _IDENTITY_COLUMNS | {"policy_number", "renewal_effective_date"},
    "sales": _IDENTITY_COLUMNS | {"sale_date", "product_type"},
    "leads": _IDENTITY_COLUMNS,
    "quotes": _IDENTITY_COLUMNS | {"quote_date", "product_type"},
}


class CsvHeaderError(ValueError):
    """Raised when an input CSV lacks a required column."""


def normalize_header(name: str) -> str:
    return re.sub(r"[\s\-]+", "_", name.strip().lower())


def normalize_headers(raw: dict[str, str | None]) -> dict[str, str | None]:
    """Return a new dict keyed by canonical column names."""
    return {normalize_header(k): v for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# Row -> record
# ---------------------------------------------------------------------------

def _s(row: dict[str, Any], key: str) -> str | None:
    return trim(row.get(key))


def termination_from_row(row: dict[str, Any]) -> TerminationRecord:
    return TerminationRecord(
        first_name=_s(row, "first_name"),
        last_name=_s(row, "last_name"),
        zip_code=_s(row, "zip_code"),
        policy_number=_s(row, "policy_number"),
        termination_effective_date=parse_date(row.get("termination_effective_date")),
        product_name=_s(row, "product_name"),
        line_code=_s(row, "line_code"),
        product_code=_s(row, "product_code"),
        email=_s(row, "email"),
        phone=_s(row, "phone"),
        agent_number=_s(row, "agent_number"),
        original_year=_s(row, "original_year"),
        policy_term_months=parse_int(row.get("policy_term_months")) or 12,
        renewal_effective_date=parse_date(row.get("renewal_effective_date")),
        anniversary_effective_date=parse_date(row.get("anniversary_effective_date")),
        termination_reason=_s(row, "termination_reason"),
        termination_type=_s(row, "termination_type"),
        premium_new_cents=parse_cents(row.get("premium_new")),
        premium_old_cents=parse_cents(row.get("premium_old")),
        account_type=_s(row, "account_type"),
        company_code=_s(row, "company_code"),
        is_cancel_rewrite=parse_bool(row.get("is_cancel_rewrite")),
        items_count=parse_int(row.get("items_count")),
    )


def cancel_audit_from_row(row: dict[str, Any]) -> CancelAuditRecord:
    return CancelAuditRecord(
        first_name=_s(row, "first_name"),
        last_name=_s(row, "last_name"),
        zip_code=_s(row, "zip_code"),
        policy_number=_s(row, "policy_number"),
        report_type=_s(row, "report_type"),
        cancel_status=_s(row, "cancel_status"),
        product_name=_s(row, "product_name"),
        email=_s(row, "email"),
        phone=_s(row, "phone"),
        phone_alt=_s(row, "phone_alt"),
        agent_number=_s(row, "agent_number"),
        premium_cents=parse_cents(row.get("premium")),
        amount_due_cents=parse_cents(row.get("amount_due")),
        no_of_items=parse_int(row.get("no_of_items")),
        account_type=_s(row, "account_type"),
        cancel_date=parse_date(row.get("cancel_date")),
        pending_cancel_date=parse_date(row.get("pending_cancel_date")),
        renewal_effective_date=parse_date(row.get("renewal_effective_date")),
        original_year=_s(row, "original_year"),
    )


def renewal_from_row(row: dict[str, Any]) -> RenewalRecord:
    return RenewalRecord(
        first_name=_s(row, "first_name"),
        last_name=_s(row, "last_name"),
        zip_code=_s(row, "zip_code"),
        policy_number=_s(row, "policy_number"),
        renewal_effective_date=parse_date(row.get("renewal_effective_date")),
        product_name=_s(row, "product_name"),
        renewal_status=_s(row, "renewal_status"),
        email=_s(row, "email"),
        phone=_s(row, "phone"),
        agent_number=_s(row, "agent_number"),
        account_type=_s(row, "account_type"),
        premium_old_cents=parse_cents(row.get("premium_old")),
        premium_new_cents=parse_cents(row.get("premium_new")),
        amount_due_cents=parse_cents(row.get("amount_due")),
        multi_line_indicator=parse_bool(row.get("multi_line_indicator")),
    )


def sale_from_row(row: dict[str, Any]) -> SaleRecord:
    return SaleRecord(
        first_name=_s(row, "first_name"),
        last_name=_s(row, "last_name"),
        zip_code=_s(row, "zip_code"),
        sale_date=parse_date(row.get("sale_date")),
        product_type=_s(row, "product_type"),
        policy_number=_s(row, "policy_number"),
        items_sold=parse_int(row.get("items_sold")) or 1,
        policies_sold=parse_int(row.get("policies_sold")) or 1,
        premium_cents=parse_cents(row.get("premium")),
        sub_producer_code=_s(row, "sub_producer_code"),
        email=_s(row, "email"),
        phone=_s(row, "phone"),
    )


def lead_from_row(row: dict[str, Any]) -> LeadRecord:
    return LeadRecord(
        first_name=_s(row, "first_name"),
        last_name=_s(row, "last_name"),
        zip_code=_s(row, "zip_code"),
        lead_date=parse_date(row.get("lead_date")),
        lead_source=_s(row, "lead_source"),
        products_interested=_s(row, "products_interested"),
        email=_s(row, "email"),
        phone=_s(row, "phone"),
    )


def quote_from_row(row: dict[str, Any]) -> QuoteRecord:
    return QuoteRecord(
        first_name=_s(row, "first_name"),
        last_name=_s(row, "last_name"),
        zip_code=_s(row, "zip_code"),
        quote_date=parse_date(row.get("quote_date")),
        product_type=_s(row, "product_type"),
        items_quoted=parse_int(row.get("items_quoted")) or 1,
        premium_cents=parse_cents(row.get("premium")),
        issued_policy_number=_s(row, "issued_policy_number"),
        sub_producer_code=_s(row, "sub_producer_code"),
        email=_s(row, "email"),
        phone=_s(row, "phone"),
    )


ROW_PARSERS: dict[str, Callable[[dict[str, Any]], Any]] = {
    "terminations": termination_from_row,
    "cancel_audit": cancel_audit_from_row,
    "renewals": renewal_from_row,
    "sales": sale_from_row,
    "leads": lead_from_row,
    "quotes": quote_from_row,
}


# ---------------------------------------------------------------------------
# File loader
# ---------------------------------------------------------------------------

def load_records(mode: str, csv_path: Path) -> tuple[list[Any], list[dict[str, Any]]]:
    """Read csv_path as records for `mode`.

    Returns (records, raw_rows); raw_rows[i] is the header-normalized
    source row of records[i], kept for the rejects file.

    Raises:
        CsvHeaderError: If a required column is missing.
        KeyError: If mode is not an upload pipeline.
    """
    parser = ROW_PARSERS[mode]
    with csv_path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        headers = {normalize_header(h) for h in (reader.fieldnames or [])}
        missing = REQUIRED_COLUMNS[mode] - headers
        if missing:
            raise CsvHeaderError(
                f"{csv_path.name}: missing required columns {sorted(missing)}"
            )
        raw_rows = [normalize_headers(raw) for raw in reader]
    return [parser(row) for row in raw_rows], raw_rows
