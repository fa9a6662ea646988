"""agency_etl.upload_coordinator

Generic batch upload run shared by the four upload pipelines.

Steps, in order:
  1. Take the single-writer lock for (agency_id, report_type)
  2. Create the upload provenance row (status 'processing')
  3. Snapshot pipelines only: deactivate the currently active rows of
     this report type (own transaction, before any record is applied)
  4. Validate every record and group the valid ones by household key
  5. Batch-resolve / create households
  6. Batch-register canonical contacts (non-fatal)
  7. Upsert detail rows by natural key in chunks of settings.chunk_size;
     each chunk is one transaction and each record one savepoint inside it
  8. Recompute aggregates once per affected household
  9. Finalize the upload row with counts + errors (exactly once)
 10. Publish an InvalidationSignal

Failure semantics:
  - RecordRejected and any per-record storage error: the record is skipped,
    an UploadError is collected, the batch continues.
  - A chunk whose transaction fails as a whole: every record in it is
    counted as skipped, later chunks still run.
  - InfrastructureError (store unreachable, provenance write failure):
    the batch fails; the upload row is finalized as 'failed' when possible.

A pipeline (agency_etl.import_*) plugs its record shape into this run by
subclassing UploadPipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from agency_etl.config import EngineSettings
from agency_etl.contact_registry import ContactRegistrar
from agency_etl.household_resolution import (
    HouseholdIdentity,
    HouseholdResolver,
    MatchStrategy,
    build_match_strategy,
)
from agency_etl.normalize import household_key, normalize_email, normalize_phone, trim
from agency_etl.shared import InfrastructureError, RecordRejected, UploadCounters
from agency_etl.store import DetailTable, HouseholdStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Context, result, signal
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UploadContext:
    agency_id: str
    uploader_id: str | None
    filename: str
    report_type: str | None = None


@dataclass(frozen=True)
class InvalidationSignal:
    """Tells read-side views which agency data changed."""

    agency_id: str
    upload_id: str
    pipeline: str
    report_type: str
    topics: tuple[str, ...]
    household_ids: tuple[str, ...] = ()


@dataclass
class UploadResult:
    success: bool
    upload_id: str | None
    counters: UploadCounters
    error: str | None = None
    signal: InvalidationSignal | None = None

    @property
    def errors(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.counters.errors]


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------

class UploadPipeline:
    """Record-shape specific behavior plugged into UploadCoordinator.run()."""

    name: str = ""
    table: DetailTable
    default_report_type: str = ""
    invalidation_topics: tuple[str, ...] = ()

    def report_type(self, context: UploadContext) -> str:
        return context.report_type or self.default_report_type

    def natural_key(self, record: Any) -> str | None:
        return trim(getattr(record, "policy_number", None))

    def validate(self, record: Any, report_type: str) -> None:
        """Raise RecordRejected when a mandatory field is missing."""
        if trim(record.last_name) is None:
            raise RecordRejected("missing_last_name")

    def build_row(
        self,
        record: Any,
        agency_id: str,
        household_id: str,
        upload_id: str,
        report_type: str,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def build_update(self, existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
        """Columns to change on an existing row; the household link is kept."""
        return {
            k: v for k, v in incoming.items()
            if k not in ("agency_id", "household_id", self.table.natural_key_column)
        }

    def check_compatible(self, existing: dict[str, Any], incoming: dict[str, Any]) -> None:
        """Raise RecordRejected when the natural key collides with different data."""

    def after_upsert(self, store: HouseholdStore, household_id: str, record: Any) -> None:
        """Household-level side effect applied in the record's savepoint."""


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

@dataclass
class _ChunkTally:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[tuple[int, str | None, str, str | None]] = field(default_factory=list)
    households: set[str] = field(default_factory=set)


def _identity_for(records: Sequence[Any], key: str) -> HouseholdIdentity:
    first = records[0]
    email = next((normalize_email(r.email) for r in records if normalize_email(r.email)), None)
    phone = next((normalize_phone(r.phone) for r in records if normalize_phone(r.phone)), None)
    return HouseholdIdentity(
        household_key=key,
        first_name=trim(first.first_name),
        last_name=trim(first.last_name),
        zip_code=trim(first.zip_code),
        email=email,
        phone=phone,
    )


class UploadCoordinator:
    def __init__(
        self,
        store: HouseholdStore,
        settings: EngineSettings | None = None,
        on_invalidate: Callable[[InvalidationSignal], None] | None = None,
        strategy: MatchStrategy | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self.on_invalidate = on_invalidate
        self.resolver = HouseholdResolver(
            store,
            strategy or build_match_strategy(
                self.settings.match_strategy, self.settings.zip_prefix_length,
            ),
        )
        self.registrar = ContactRegistrar(store)

    # -- public entry point ---------------------------------------------------

    def run(
        self,
        pipeline: UploadPipeline,
        records: Sequence[Any],
        context: UploadContext,
    ) -> UploadResult:
        records = list(records)
        counters = UploadCounters()
        report_type = pipeline.report_type(context)
        log.info(
            "%s upload start agency=%s report_type=%s file=%s records=%d",
            pipeline.name, context.agency_id, report_type, context.filename, len(records),
        )

        try:
            with self.store.writer_lock(context.agency_id, report_type):
                result = self._run_locked(pipeline, records, context, report_type, counters)
        except InfrastructureError as exc:
            log.error("%s upload could not start: %s", pipeline.name, exc)
            return UploadResult(False, None, counters, error=str(exc))

        if result.signal is not None:
            self._publish(result.signal)
            log.info(
                "%s upload %s done: processed=%d created=%d updated=%d skipped=%d errors=%d",
                pipeline.name, result.upload_id, counters.records_processed,
                counters.records_created, counters.records_updated,
                counters.records_skipped, len(counters.errors),
            )
        return result

    def _run_locked(
        self,
        pipeline: UploadPipeline,
        records: list[Any],
        context: UploadContext,
        report_type: str,
        counters: UploadCounters,
    ) -> UploadResult:
        upload_id = self.store.create_upload(
            context.agency_id, context.uploader_id, context.filename, report_type,
        )

        try:
            affected = self._apply(pipeline, records, context, report_type, upload_id, counters)
        except InfrastructureError as exc:
            log.error("%s upload %s failed: %s", pipeline.name, upload_id, exc)
            counters.record_error(None, None, "infrastructure_error", str(exc))
            self._finalize_failed(upload_id, counters)
            return UploadResult(False, upload_id, counters, error=str(exc))
        except Exception as exc:
            log.exception("%s upload %s crashed", pipeline.name, upload_id)
            counters.record_error(None, None, "unexpected_error", f"{type(exc).__name__}: {exc}")
            self._finalize_failed(upload_id, counters)
            raise

        try:
            self.store.finalize_upload(
                upload_id, "completed", counters.provenance_counts(), self._reported_errors(counters),
            )
        except InfrastructureError as exc:
            log.error("%s upload %s could not be finalized: %s", pipeline.name, upload_id, exc)
            return UploadResult(False, upload_id, counters, error=str(exc))

        signal = InvalidationSignal(
            agency_id=context.agency_id,
            upload_id=upload_id,
            pipeline=pipeline.name,
            report_type=report_type,
            topics=pipeline.invalidation_topics,
            household_ids=tuple(sorted(affected)),
        )
        return UploadResult(True, upload_id, counters, signal=signal)

    # -- steps ------------------------------------------------------------------

    def _apply(
        self,
        pipeline: UploadPipeline,
        records: list[Any],
        context: UploadContext,
        report_type: str,
        upload_id: str,
        counters: UploadCounters,
    ) -> set[str]:
        agency_id = context.agency_id
        affected: set[str] = set()

        # Step 3: snapshot replace
        if pipeline.table.snapshot:
            with self.store.transaction():
                dropped = self.store.deactivate_snapshot(pipeline.table, agency_id, report_type)
            counters.snapshot_deactivated = len(dropped)
            affected.update(dropped)

        # Step 4: validate + group by household key
        rejected: dict[int, RecordRejected] = {}
        record_keys: dict[int, str] = {}
        groups: dict[str, list[Any]] = {}
        for idx, record in enumerate(records):
            try:
                pipeline.validate(record, report_type)
            except RecordRejected as exc:
                rejected[idx] = exc
                continue
            key = household_key(record.first_name, record.last_name, record.zip_code)
            record_keys[idx] = key
            groups.setdefault(key, []).append(record)

        # Step 5: households
        resolution = self.resolver.resolve(
            agency_id, [_identity_for(recs, key) for key, recs in groups.items()], upload_id,
        )
        counters.households_created = len(resolution.created)
        counters.households_matched = len(resolution.matched_exact) + len(resolution.matched_heuristic)
        counters.households_matched_heuristic = len(resolution.matched_heuristic)

        # Step 6: contacts
        self.registrar.register(agency_id, list(resolution.household_ids.values()), counters)

        # Step 7: chunked detail upsert
        chunk_size = self.settings.chunk_size
        for start in range(0, len(records), chunk_size):
            indexes = range(start, min(start + chunk_size, len(records)))
            counters.chunks_processed += 1
            tally = _ChunkTally()
            try:
                with self.store.transaction():
                    for idx in indexes:
                        if idx in rejected:
                            exc = rejected[idx]
                            tally.skipped += 1
                            tally.errors.append(
                                (idx, pipeline.natural_key(records[idx]), exc.reason, exc.detail)
                            )
                            continue
                        household_id = resolution.household_ids[record_keys[idx]]
                        self._apply_record(
                            pipeline, records[idx], idx, agency_id, household_id,
                            upload_id, report_type, tally,
                        )
            except InfrastructureError:
                raise
            except Exception as exc:
                log.warning(
                    "%s upload %s chunk %d failed: %s",
                    pipeline.name, upload_id, counters.chunks_processed, exc,
                )
                counters.chunks_failed += 1
                counters.records_processed += len(indexes)
                counters.records_skipped += len(indexes)
                for idx in indexes:
                    counters.record_error(
                        idx, pipeline.natural_key(records[idx]), "chunk_failed",
                        f"{type(exc).__name__}: {exc}",
                    )
                continue
            counters.records_processed += len(indexes)
            counters.records_created += tally.created
            counters.records_updated += tally.updated
            counters.records_skipped += tally.skipped
            for error in tally.errors:
                counters.record_error(*error)
            affected.update(tally.households)

        # Step 8: aggregates
        for household_id in sorted(affected):
            try:
                self.store.recompute_household_aggregates(household_id)
            except InfrastructureError:
                raise
            except Exception as exc:
                counters.warnings.append(
                    f"aggregate recompute failed for household {household_id}: "
                    f"{type(exc).__name__}: {exc}"
                )
                log.warning("aggregate recompute failed for household %s: %s", household_id, exc)
                continue
            counters.aggregates_recomputed += 1

        return affected

    def _apply_record(
        self,
        pipeline: UploadPipeline,
        record: Any,
        idx: int,
        agency_id: str,
        household_id: str,
        upload_id: str,
        report_type: str,
        tally: _ChunkTally,
    ) -> None:
        table = pipeline.table
        natural_key = pipeline.natural_key(record)
        try:
            with self.store.transaction():
                row = pipeline.build_row(record, agency_id, household_id, upload_id, report_type)
                existing = self.store.find_detail(table, agency_id, row[table.natural_key_column])
                if existing is None:
                    self.store.insert_detail(table, row)
                    target_household = household_id
                    outcome = "created"
                else:
                    pipeline.check_compatible(existing, row)
                    self.store.update_detail(
                        table, str(existing["id"]), pipeline.build_update(existing, row),
                    )
                    target_household = str(existing["household_id"])
                    outcome = "updated"
                pipeline.after_upsert(self.store, target_household, record)
        except InfrastructureError:
            raise
        except RecordRejected as exc:
            tally.skipped += 1
            tally.errors.append((idx, natural_key, exc.reason, exc.detail))
            return
        except Exception as exc:
            log.warning("%s record %d (%s) failed: %s", pipeline.name, idx, natural_key, exc)
            tally.skipped += 1
            tally.errors.append((idx, natural_key, "store_error", f"{type(exc).__name__}: {exc}"))
            return

        if outcome == "created":
            tally.created += 1
        else:
            tally.updated += 1
        tally.households.add(target_household)

    # -- bookkeeping -------------------------------------------------------------

    def _reported_errors(self, counters: UploadCounters) -> list[dict[str, Any]]:
        return [e.to_dict() for e in counters.errors[: self.settings.max_reported_errors]]

    def _finalize_failed(self, upload_id: str, counters: UploadCounters) -> None:
        try:
            self.store.finalize_upload(
                upload_id, "failed", counters.provenance_counts(), self._reported_errors(counters),
            )
        except InfrastructureError as exc:
            log.error("upload %s could not be marked failed: %s", upload_id, exc)

    def _publish(self, signal: InvalidationSignal) -> None:
        if self.on_invalidate is None:
            return
        try:
            self.on_invalidate(signal)
        except Exception:
            log.exception("invalidation listener failed for upload %s", signal.upload_id)
