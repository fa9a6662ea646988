"""agency_etl.records

Typed inbound records, one shape per upload producer.  The spreadsheet
parsers that build these live outside this package; the CLI only reads
canonical-column CSVs (see agency_etl.csv_input).

Money fields are integer cents.  Dates are datetime.date.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class TerminationRecord:
    """One terminated policy from a book-of-business termination report."""

    first_name: str | None
    last_name: str | None
    zip_code: str | None
    policy_number: str | None
    termination_effective_date: date | None
    product_name: str | None = None
    line_code: str | None = None
    product_code: str | None = None
    email: str | None = None
    phone: str | None = None
    agent_number: str | None = None
    original_year: str | None = None
    policy_term_months: int = 12
    renewal_effective_date: date | None = None
    anniversary_effective_date: date | None = None
    termination_reason: str | None = None
    termination_type: str | None = None
    premium_new_cents: int | None = None
    premium_old_cents: int | None = None
    account_type: str | None = None
    company_code: str | None = None
    is_cancel_rewrite: bool = False
    items_count: int | None = None


@dataclass(frozen=True)
class CancelAuditRecord:
    """One policy from a cancellation or pending-cancel audit report."""

    first_name: str | None
    last_name: str | None
    zip_code: str | None
    policy_number: str | None
    report_type: str | None = None
    cancel_status: str | None = None
    product_name: str | None = None
    email: str | None = None
    phone: str | None = None
    phone_alt: str | None = None
    agent_number: str | None = None
    premium_cents: int | None = None
    amount_due_cents: int | None = None
    no_of_items: int | None = None
    account_type: str | None = None
    cancel_date: date | None = None
    pending_cancel_date: date | None = None
    renewal_effective_date: date | None = None
    original_year: str | None = None


@dataclass(frozen=True)
class RenewalRecord:
    """One upcoming renewal from a renewal audit report."""

    first_name: str | None
    last_name: str | None
    zip_code: str | None
    policy_number: str | None
    renewal_effective_date: date | None
    product_name: str | None = None
    renewal_status: str | None = None
    email: str | None = None
    phone: str | None = None
    agent_number: str | None = None
    account_type: str | None = None
    premium_old_cents: int | None = None
    premium_new_cents: int | None = None
    amount_due_cents: int | None = None
    multi_line_indicator: bool = False


@dataclass(frozen=True)
class SaleRecord:
    """One new-business sale line."""

    first_name: str | None
    last_name: str | None
    zip_code: str | None
    sale_date: date | None
    product_type: str | None
    policy_number: str | None = None
    items_sold: int = 1
    policies_sold: int = 1
    premium_cents: int | None = None
    sub_producer_code: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class LeadRecord:
    """One inbound lead from a lead-source list."""

    first_name: str | None
    last_name: str | None
    zip_code: str | None
    lead_date: date | None = None
    lead_source: str | None = None
    products_interested: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class QuoteRecord:
    """One quoted product from a quote activity report."""

    first_name: str | None
    last_name: str | None
    zip_code: str | None
    quote_date: date | None
    product_type: str | None
    items_quoted: int = 1
    premium_cents: int | None = None
    issued_policy_number: str | None = None
    sub_producer_code: str | None = None
    email: str | None = None
    phone: str | None = None
