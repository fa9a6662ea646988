"""agency_etl.import_terminations

Termination (winback) upload pipeline.

Append-style: rows in termination_policy are merged by policy_number;
nothing is deactivated.  Every household a termination lands on gets
winback_status 'untouched' unless a worked status is already set.

Required per record: last name, policy_number, termination_effective_date,
and product_name or line_code.  A record with neither product field is
skipped; a missing product_name with a line_code stores 'Line <code>'.

Usage:
    from agency_etl.import_terminations import run_terminations

    result = run_terminations(store, records, UploadContext(agency_id, user_id, "terms.xlsx"))
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_CEILING
from typing import Any, Callable, Sequence

from agency_etl.config import EngineSettings
from agency_etl.normalize import trim
from agency_etl.records import TerminationRecord
from agency_etl.shared import RecordRejected
from agency_etl.store import TERMINATION_POLICY, HouseholdStore
from agency_etl.upload_coordinator import (
    InvalidationSignal,
    UploadContext,
    UploadCoordinator,
    UploadPipeline,
    UploadResult,
)


# ---------------------------------------------------------------------------
# Derived fields
# ---------------------------------------------------------------------------

def add_months(value: date, months: int) -> date:
    """Calendar month arithmetic; the day is clamped to the target month's end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_winback_date(
    termination_date: date,
    policy_term_months: int = 12,
    contact_days_before: int = 45,
) -> date:
    """Date to start working a lost customer.

    The competitor's policy renews one term after our termination; contact
    begins contact_days_before ahead of that renewal.

    >>> calculate_winback_date(date(2025, 1, 31), 6, 45)
    datetime.date(2025, 6, 16)
    """
    competitor_renewal = add_months(termination_date, policy_term_months)
    return competitor_renewal - timedelta(days=contact_days_before)


def premium_change(
    new_cents: int | None,
    old_cents: int | None,
) -> tuple[int | None, Decimal | None]:
    """(change in cents, change in percent rounded to 2dp, halves toward +inf).

    Both are None unless both premiums are known and the old premium > 0.
    """
    if new_cents is None or old_cents is None or old_cents <= 0:
        return None, None
    change = new_cents - old_cents
    percent = (Decimal(change) * 100 / Decimal(old_cents)).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_CEILING
    )
    return change, percent


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TerminationPipeline(UploadPipeline):
    name = "terminations"
    table = TERMINATION_POLICY
    default_report_type = "termination"
    invalidation_topics = ("winback-households", "winback-stats", "contacts")

    def __init__(self, contact_days_before: int = 45) -> None:
        self.contact_days_before = contact_days_before

    def validate(self, record: TerminationRecord, report_type: str) -> None:
        super().validate(record, report_type)
        if trim(record.policy_number) is None:
            raise RecordRejected("missing_policy_number")
        if record.termination_effective_date is None:
            raise RecordRejected("missing_termination_effective_date", record.policy_number)
        if trim(record.product_name) is None and trim(record.line_code) is None:
            raise RecordRejected("missing_product_name_and_line_code", record.policy_number)

    def build_row(
        self,
        record: TerminationRecord,
        agency_id: str,
        household_id: str,
        upload_id: str,
        report_type: str,
    ) -> dict[str, Any]:
        change_cents, change_percent = premium_change(
            record.premium_new_cents, record.premium_old_cents,
        )
        product_name = trim(record.product_name) or f"Line {trim(record.line_code)}"
        return {
            "agency_id": agency_id,
            "household_id": household_id,
            "policy_number": trim(record.policy_number),
            "agent_number": trim(record.agent_number),
            "original_year": trim(record.original_year),
            "product_code": trim(record.product_code),
            "product_name": product_name,
            "line_code": trim(record.line_code),
            "policy_term_months": record.policy_term_months,
            "renewal_effective_date": record.renewal_effective_date,
            "anniversary_effective_date": record.anniversary_effective_date,
            "termination_effective_date": record.termination_effective_date,
            "termination_reason": trim(record.termination_reason),
            "termination_type": trim(record.termination_type),
            "premium_new_cents": record.premium_new_cents,
            "premium_old_cents": record.premium_old_cents,
            "premium_change_cents": change_cents,
            "premium_change_percent": change_percent,
            "account_type": trim(record.account_type),
            "company_code": trim(record.company_code),
            "is_cancel_rewrite": record.is_cancel_rewrite,
            "items_count": record.items_count,
            "calculated_winback_date": calculate_winback_date(
                record.termination_effective_date,
                record.policy_term_months,
                self.contact_days_before,
            ),
            "last_upload_id": upload_id,
        }

    def build_update(self, existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
        changes = super().build_update(existing, incoming)
        # A blank descriptive column in a later report keeps the stored value
        for column in ("agent_number", "original_year", "product_code", "company_code", "account_type"):
            if incoming.get(column) is None:
                changes.pop(column, None)
        return changes

    def after_upsert(self, store: HouseholdStore, household_id: str, record: TerminationRecord) -> None:
        store.ensure_winback_status(household_id)


def run_terminations(
    store: HouseholdStore,
    records: Sequence[TerminationRecord],
    context: UploadContext,
    settings: EngineSettings | None = None,
    on_invalidate: Callable[[InvalidationSignal], None] | None = None,
) -> UploadResult:
    settings = settings or EngineSettings()
    coordinator = UploadCoordinator(store, settings, on_invalidate)
    return coordinator.run(
        TerminationPipeline(settings.contact_days_before), records, context,
    )

