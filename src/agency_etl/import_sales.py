"""agency_etl.import_sales

New-business sales (LQS) upload pipeline.

Append-style.  The natural key is the policy number when the sale line
carries one; otherwise a fingerprint of (household key, sale date, product
type) so that re-uploading the same file stays idempotent.

A sale marks its household lqs_status = 'sold' and stamps sold_date with
the latest sale date seen.  The same natural key arriving with a
different product type is rejected as a natural-key conflict.
"""

from __future__ import annotations

from typing import Any, Callable, Sequence

from agency_etl.config import EngineSettings
from agency_etl.normalize import fingerprint, household_key, normalize_name, trim
from agency_etl.records import SaleRecord
from agency_etl.shared import RecordRejected
from agency_etl.store import SALE, HouseholdStore
from agency_etl.upload_coordinator import (
    InvalidationSignal,
    UploadContext,
    UploadCoordinator,
    UploadPipeline,
    UploadResult,
)


def sale_natural_key(record: SaleRecord) -> str | None:
    policy_number = trim(record.policy_number)
    if policy_number:
        return policy_number
    if record.sale_date is None or trim(record.product_type) is None:
        return None
    return fingerprint(
        household_key(record.first_name, record.last_name, record.zip_code),
        record.sale_date.isoformat(),
        normalize_name(record.product_type),
    )


class SalePipeline(UploadPipeline):
    name = "sales"
    table = SALE
    default_report_type = "sales"
    invalidation_topics = ("lqs-households", "sales", "contacts")

    def report_type(self, context: UploadContext) -> str:
        return self.default_report_type

    def natural_key(self, record: SaleRecord) -> str | None:
        return sale_natural_key(record)

    def validate(self, record: SaleRecord, report_type: str) -> None:
        super().validate(record, report_type)
        if record.sale_date is None:
            raise RecordRejected("missing_sale_date", record.policy_number)
        if trim(record.product_type) is None:
            raise RecordRejected("missing_product_type", record.policy_number)

    def build_row(
        self,
        record: SaleRecord,
        agency_id: str,
        household_id: str,
        upload_id: str,
        report_type: str,
    ) -> dict[str, Any]:
        return {
            "agency_id": agency_id,
            "household_id": household_id,
            "natural_key": sale_natural_key(record),
            "policy_number": trim(record.policy_number),
            "sale_date": record.sale_date,
            "product_type": trim(record.product_type),
            "items_sold": record.items_sold,
            "policies_sold": record.policies_sold,
            "premium_cents": record.premium_cents,
            "sub_producer_code": trim(record.sub_producer_code),
            "last_upload_id": upload_id,
        }

    def check_compatible(self, existing: dict[str, Any], incoming: dict[str, Any]) -> None:
        if normalize_name(existing.get("product_type")) != normalize_name(incoming["product_type"]):
            raise RecordRejected(
                "natural_key_conflict",
                f"{incoming['natural_key']}: product_type {existing.get('product_type')!r} "
                f"already recorded, got {incoming['product_type']!r}",
            )

    def after_upsert(self, store: HouseholdStore, household_id: str, record: SaleRecord) -> None:
        store.mark_household_sold(household_id, record.sale_date)


def run_sales(
    store: HouseholdStore,
    records: Sequence[SaleRecord],
    context: UploadContext,
    settings: EngineSettings | None = None,
    on_invalidate: Callable[[InvalidationSignal], None] | None = None,
) -> UploadResult:
    coordinator = UploadCoordinator(store, settings, on_invalidate)
    return coordinator.run(SalePipeline(), records, context)
