"""agency_etl.import_renewals

Renewal audit upload pipeline.

Snapshot-style (report type 'renewal'): the upload replaces the active
renewal list.  New renewals start with current_status 'uncontacted'; a
renewal that reappears keeps whatever status the agency has worked it to.
"""

from __future__ import annotations

from typing import Any, Callable, Sequence

from agency_etl.config import EngineSettings
from agency_etl.import_terminations import premium_change
from agency_etl.normalize import normalize_email, normalize_phone, trim
from agency_etl.records import RenewalRecord
from agency_etl.shared import RecordRejected
from agency_etl.store import RENEWAL_RECORD, HouseholdStore
from agency_etl.upload_coordinator import (
    InvalidationSignal,
    UploadContext,
    UploadCoordinator,
    UploadPipeline,
    UploadResult,
)

RENEWAL_STATUSES = ("uncontacted", "pending", "success", "unsuccessful")


class RenewalPipeline(UploadPipeline):
    name = "renewals"
    table = RENEWAL_RECORD
    default_report_type = "renewal"
    invalidation_topics = ("renewal-records", "renewal-stats", "contacts")

    def report_type(self, context: UploadContext) -> str:
        return self.default_report_type

    def validate(self, record: RenewalRecord, report_type: str) -> None:
        super().validate(record, report_type)
        if trim(record.policy_number) is None:
            raise RecordRejected("missing_policy_number")
        if record.renewal_effective_date is None:
            raise RecordRejected("missing_renewal_effective_date", record.policy_number)

    def build_row(
        self,
        record: RenewalRecord,
        agency_id: str,
        household_id: str,
        upload_id: str,
        report_type: str,
    ) -> dict[str, Any]:
        change_cents, change_percent = premium_change(
            record.premium_new_cents, record.premium_old_cents,
        )
        return {
            "agency_id": agency_id,
            "household_id": household_id,
            "policy_number": trim(record.policy_number),
            "report_type": report_type,
            "renewal_effective_date": record.renewal_effective_date,
            "product_name": trim(record.product_name),
            "renewal_status": trim(record.renewal_status),
            "agent_number": trim(record.agent_number),
            "account_type": trim(record.account_type),
            "premium_old_cents": record.premium_old_cents,
            "premium_new_cents": record.premium_new_cents,
            "premium_change_cents": change_cents,
            "premium_change_percent": change_percent,
            "amount_due_cents": record.amount_due_cents,
            "multi_line_indicator": record.multi_line_indicator,
            "insured_email": normalize_email(record.email),
            "insured_phone": normalize_phone(record.phone),
            "current_status": "uncontacted",
            "is_active": True,
            "dropped_from_report_at": None,
            "last_upload_id": upload_id,
        }

    def build_update(self, existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
        changes = super().build_update(existing, incoming)
        changes.pop("current_status", None)
        return changes


def run_renewals(
    store: HouseholdStore,
    records: Sequence[RenewalRecord],
    context: UploadContext,
    settings: EngineSettings | None = None,
    on_invalidate: Callable[[InvalidationSignal], None] | None = None,
) -> UploadResult:
    coordinator = UploadCoordinator(store, settings, on_invalidate)
    return coordinator.run(RenewalPipeline(), records, context)
