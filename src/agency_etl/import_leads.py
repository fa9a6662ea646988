"""agency_etl.import_leads

LQS lead-list upload pipeline.

One lead row per household: the natural key is the household key, so a
household that shows up on several lead lists keeps a single row.  On
reappearance the row is merged instead of overwritten:

  - lead_date keeps the earliest date seen
  - lead_source is kept once set; a different incoming source is recorded
    in conflicting_lead_source for review
  - products_interested is filled once

A lead lifts its household's lqs_status to 'lead' when it has none.  It
never lowers 'quoted' or 'sold'.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Callable, Sequence

from agency_etl.config import EngineSettings
from agency_etl.normalize import household_key, normalize_name, trim
from agency_etl.records import LeadRecord
from agency_etl.store import LQS_LEAD, HouseholdStore
from agency_etl.upload_coordinator import (
    InvalidationSignal,
    UploadContext,
    UploadCoordinator,
    UploadPipeline,
    UploadResult,
)


class LeadPipeline(UploadPipeline):
    name = "leads"
    table = LQS_LEAD
    default_report_type = "leads"
    invalidation_topics = ("lqs-households", "contacts")

    def __init__(self, today: Callable[[], date] = date.today) -> None:
        self.today = today

    def report_type(self, context: UploadContext) -> str:
        return self.default_report_type

    def natural_key(self, record: LeadRecord) -> str | None:
        return household_key(record.first_name, record.last_name, record.zip_code)

    def build_row(
        self,
        record: LeadRecord,
        agency_id: str,
        household_id: str,
        upload_id: str,
        report_type: str,
    ) -> dict[str, Any]:
        return {
            "agency_id": agency_id,
            "household_id": household_id,
            "natural_key": self.natural_key(record),
            "lead_date": record.lead_date or self.today(),
            "lead_source": trim(record.lead_source),
            "products_interested": trim(record.products_interested),
            "last_upload_id": upload_id,
        }

    def build_update(self, existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
        changes: dict[str, Any] = {
            "lead_date": min(existing["lead_date"], incoming["lead_date"]),
            "last_upload_id": incoming["last_upload_id"],
        }
        if not existing.get("products_interested") and incoming["products_interested"]:
            changes["products_interested"] = incoming["products_interested"]

        source = incoming["lead_source"]
        if source:
            if not existing.get("lead_source"):
                changes["lead_source"] = source
                changes["conflicting_lead_source"] = None
            elif normalize_name(existing["lead_source"]) != normalize_name(source):
                changes["conflicting_lead_source"] = source
        return changes

    def after_upsert(self, store: HouseholdStore, household_id: str, record: LeadRecord) -> None:
        store.promote_lqs_status(household_id, "lead")


def run_leads(
    store: HouseholdStore,
    records: Sequence[LeadRecord],
    context: UploadContext,
    settings: EngineSettings | None = None,
    on_invalidate: Callable[[InvalidationSignal], None] | None = None,
) -> UploadResult:
    coordinator = UploadCoordinator(store, settings, on_invalidate)
    return coordinator.run(LeadPipeline(), records, context)
