"""agency_etl.import_quotes

LQS quote activity upload pipeline.

Append-style.  A quote is identified by (household key, quote date,
product type); re-uploading a report updates items, premium and the
issued policy number of the quotes already recorded.

A quote lifts its household's lqs_status to 'quoted' from nothing or
'lead'.  A 'sold' household stays sold.
"""

from __future__ import annotations

from typing import Any, Callable, Sequence

from agency_etl.config import EngineSettings
from agency_etl.normalize import fingerprint, household_key, normalize_name, trim
from agency_etl.records import QuoteRecord
from agency_etl.shared import RecordRejected
from agency_etl.store import LQS_QUOTE, HouseholdStore
from agency_etl.upload_coordinator import (
    InvalidationSignal,
    UploadContext,
    UploadCoordinator,
    UploadPipeline,
    UploadResult,
)


def quote_natural_key(record: QuoteRecord) -> str | None:
    if record.quote_date is None or trim(record.product_type) is None:
        return None
    return fingerprint(
        household_key(record.first_name, record.last_name, record.zip_code),
        record.quote_date.isoformat(),
        normalize_name(record.product_type),
    )


class QuotePipeline(UploadPipeline):
    name = "quotes"
    table = LQS_QUOTE
    default_report_type = "quotes"
    invalidation_topics = ("lqs-households", "contacts")

    def report_type(self, context: UploadContext) -> str:
        return self.default_report_type

    def natural_key(self, record: QuoteRecord) -> str | None:
        return quote_natural_key(record)

    def validate(self, record: QuoteRecord, report_type: str) -> None:
        super().validate(record, report_type)
        if record.quote_date is None:
            raise RecordRejected("missing_quote_date")
        if trim(record.product_type) is None:
            raise RecordRejected("missing_product_type")

    def build_row(
        self,
        record: QuoteRecord,
        agency_id: str,
        household_id: str,
        upload_id: str,
        report_type: str,
    ) -> dict[str, Any]:
        return {
            "agency_id": agency_id,
            "household_id": household_id,
            "natural_key": quote_natural_key(record),
            "quote_date": record.quote_date,
            "product_type": trim(record.product_type),
            "items_quoted": record.items_quoted,
            "premium_cents": record.premium_cents,
            "issued_policy_number": trim(record.issued_policy_number),
            "sub_producer_code": trim(record.sub_producer_code),
            "last_upload_id": upload_id,
        }

    def after_upsert(self, store: HouseholdStore, household_id: str, record: QuoteRecord) -> None:
        store.promote_lqs_status(household_id, "quoted")


def run_quotes(
    store: HouseholdStore,
    records: Sequence[QuoteRecord],
    context: UploadContext,
    settings: EngineSettings | None = None,
    on_invalidate: Callable[[InvalidationSignal], None] | None = None,
) -> UploadResult:
    coordinator = UploadCoordinator(store, settings, on_invalidate)
    return coordinator.run(QuotePipeline(), records, context)
