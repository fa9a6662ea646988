"""agency_etl.import_cancel_audit

Cancellation / pending-cancel audit upload pipeline.

Snapshot-style: each upload is the full current list for its report type.
Before any record is applied every active row of that report type is
deactivated and stamped with dropped_from_report_at; rows that reappear in
the new file are reactivated and the stamp is cleared.  Rows that do not
reappear keep their data (and their workflow history) but stay inactive.

Workflow status on reappearance:
  new / in_progress  -> kept
  resolved / lost    -> reset to 'new' (the policy is back on the report)
"""

from __future__ import annotations

from typing import Any, Callable, Sequence

from agency_etl.config import EngineSettings
from agency_etl.lifecycle_stage import normalize_status
from agency_etl.normalize import normalize_email, normalize_phone, trim
from agency_etl.records import CancelAuditRecord
from agency_etl.shared import RecordRejected
from agency_etl.store import CANCEL_AUDIT_RECORD, HouseholdStore
from agency_etl.upload_coordinator import (
    InvalidationSignal,
    UploadContext,
    UploadCoordinator,
    UploadPipeline,
    UploadResult,
)

CANCEL_REPORT_TYPES = ("cancellation", "pending_cancel")

WORKFLOW_STATUSES = ("new", "in_progress", "resolved", "lost")
_CLOSED_STATUSES = frozenset({"resolved", "lost"})


class CancelAuditPipeline(UploadPipeline):
    name = "cancel_audit"
    table = CANCEL_AUDIT_RECORD
    default_report_type = "cancellation"
    invalidation_topics = ("cancel-audit-records", "cancel-audit-stats", "contacts")

    def report_type(self, context: UploadContext) -> str:
        report_type = context.report_type or self.default_report_type
        if report_type not in CANCEL_REPORT_TYPES:
            raise ValueError(
                f"cancel audit report_type must be one of {CANCEL_REPORT_TYPES}, got {report_type!r}"
            )
        return report_type

    def validate(self, record: CancelAuditRecord, report_type: str) -> None:
        super().validate(record, report_type)
        if trim(record.policy_number) is None:
            raise RecordRejected("missing_policy_number")
        if trim(record.report_type) and normalize_status(record.report_type) != report_type:
            raise RecordRejected(
                "report_type_mismatch",
                f"{record.policy_number}: record is {record.report_type!r}, upload is {report_type!r}",
            )

    def build_row(
        self,
        record: CancelAuditRecord,
        agency_id: str,
        household_id: str,
        upload_id: str,
        report_type: str,
    ) -> dict[str, Any]:
        return {
            "agency_id": agency_id,
            "household_id": household_id,
            "policy_number": trim(record.policy_number),
            "report_type": report_type,
            "cancel_status": trim(record.cancel_status),
            "product_name": trim(record.product_name),
            "agent_number": trim(record.agent_number),
            "premium_cents": record.premium_cents,
            "amount_due_cents": record.amount_due_cents,
            "no_of_items": record.no_of_items,
            "account_type": trim(record.account_type),
            "cancel_date": record.cancel_date,
            "pending_cancel_date": record.pending_cancel_date,
            "renewal_effective_date": record.renewal_effective_date,
            "original_year": trim(record.original_year),
            "insured_email": normalize_email(record.email),
            "insured_phone": normalize_phone(record.phone),
            "insured_phone_alt": normalize_phone(record.phone_alt),
            "status": "new",
            "is_active": True,
            "dropped_from_report_at": None,
            "last_upload_id": upload_id,
        }

    def build_update(self, existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
        changes = super().build_update(existing, incoming)
        status = (existing.get("status") or "new").lower()
        if status in _CLOSED_STATUSES:
            changes["status"] = "new"
        else:
            changes.pop("status", None)
        return changes


def run_cancel_audit(
    store: HouseholdStore,
    records: Sequence[CancelAuditRecord],
    context: UploadContext,
    settings: EngineSettings | None = None,
    on_invalidate: Callable[[InvalidationSignal], None] | None = None,
) -> UploadResult:
    coordinator = UploadCoordinator(store, settings, on_invalidate)
    return coordinator.run(CancelAuditPipeline(), records, context)
