"""agency_etl.cli

Command-line entrypoint.

Modes (--mode):
  terminations     upload a termination (winback) CSV
  cancel_audit     upload a cancellation / pending-cancel audit CSV
  renewals         upload a renewal audit CSV
  sales            upload a new-business sales CSV
  leads            upload an LQS lead list CSV
  quotes           upload an LQS quote activity CSV
  contact_stages   print the lifecycle stage + journey of contacts as JSON

Usage (upload):
    agency-etl \\
        --mode cancel_audit \\
        --db-dsn "$AGENCY_ETL_DB_DSN" \\
        --agency-id 3f1c... \\
        --report-type pending_cancel \\
        --input-path "exports/pending_cancel_2025-07-01.csv" \\
        --settings-path config/engine.yml

Usage (contact_stages):
    agency-etl --mode contact_stages --agency-id 3f1c... \\
        --contact-id 9a0e... --contact-id 77b2...

--dry-run runs the upload against an empty in-memory store: validation,
household grouping and counts are reported, nothing is written.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click

from agency_etl.config import DSN_ENV_VAR, EngineSettings, SettingsValidationError, load_settings
from agency_etl.contact_projection import ContactProjector
from agency_etl.csv_input import CsvHeaderError, load_records
from agency_etl.import_cancel_audit import CancelAuditPipeline
from agency_etl.import_leads import LeadPipeline
from agency_etl.import_quotes import QuotePipeline
from agency_etl.import_renewals import RenewalPipeline
from agency_etl.import_sales import SalePipeline
from agency_etl.import_terminations import TerminationPipeline
from agency_etl.memory_store import InMemoryStore
from agency_etl.shared import InfrastructureError, RejectWriter, write_run_report
from agency_etl.store import HouseholdStore, PostgresStore
from agency_etl.upload_coordinator import (
    InvalidationSignal,
    UploadContext,
    UploadCoordinator,
    UploadPipeline,
)

UPLOAD_MODES = ("terminations", "cancel_audit", "renewals", "sales", "leads", "quotes")


def build_pipeline(mode: str, settings: EngineSettings) -> UploadPipeline:
    if mode == "terminations":
        return TerminationPipeline(settings.contact_days_before)
    if mode == "cancel_audit":
        return CancelAuditPipeline()
    if mode == "renewals":
        return RenewalPipeline()
    if mode == "sales":
        return SalePipeline()
    if mode == "leads":
        return LeadPipeline()
    if mode == "quotes":
        return QuotePipeline()
    raise ValueError(f"not an upload mode: {mode!r}")


@click.command()
@click.option(
    "--mode",
    required=True,
    type=click.Choice([*UPLOAD_MODES, "contact_stages"]),
    help="Pipeline to run",
)
@click.option("--db-dsn", envvar=DSN_ENV_VAR, default=None, help=f"PostgreSQL DSN (or ${DSN_ENV_VAR})")
@click.option("--agency-id", required=True, help="Agency the upload belongs to")
@click.option("--input-path", default=None, type=click.Path(), help="[upload modes] Canonical-column CSV")
@click.option("--uploader-id", default=None, help="[upload modes] User recorded on the upload row")
@click.option(
    "--report-type",
    default=None,
    type=click.Choice(["cancellation", "pending_cancel"]),
    help="[cancel_audit] Snapshot the upload replaces (default cancellation)",
)
@click.option("--settings-path", default=None, type=click.Path(), help="Engine settings YAML")
@click.option("--contact-id", "contact_ids", multiple=True, help="[contact_stages] Contact to project (repeatable)")
@click.option("--rejects-path", default=None, type=click.Path(), help="CSV for skipped rows")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
)
def main(
    mode: str,
    db_dsn: str | None,
    agency_id: str,
    input_path: str | None,
    uploader_id: str | None,
    report_type: str | None,
    settings_path: str | None,
    contact_ids: tuple[str, ...],
    rejects_path: str | None,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Household resolution + contact lifecycle engine CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        settings = load_settings(Path(settings_path) if settings_path else None)
    except (SettingsValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: invalid settings: {exc}", err=True)
        sys.exit(1)

    store = _open_store(db_dsn, dry_run, run_id)
    try:
        if mode == "contact_stages":
            _run_contact_stages(store, agency_id, contact_ids, run_id)
        else:
            _run_upload(
                store, settings, mode, run_id, started_at,
                agency_id=agency_id,
                uploader_id=uploader_id,
                input_path=input_path,
                report_type=report_type,
                rejects_path=rejects_path,
                dry_run=dry_run,
            )
    finally:
        if isinstance(store, PostgresStore):
            store.close()


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _open_store(db_dsn: str | None, dry_run: bool, run_id: str) -> HouseholdStore:
    if dry_run:
        return InMemoryStore()
    if not db_dsn:
        click.echo(f"[{run_id}] FATAL: --db-dsn or ${DSN_ENV_VAR} is required", err=True)
        sys.exit(1)
    try:
        return PostgresStore.connect(db_dsn)
    except InfrastructureError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)


def _run_upload(
    store: HouseholdStore,
    settings: EngineSettings,
    mode: str,
    run_id: str,
    started_at: str,
    agency_id: str,
    uploader_id: str | None,
    input_path: str | None,
    report_type: str | None,
    rejects_path: str | None,
    dry_run: bool,
) -> None:
    if not input_path:
        click.echo(f"[{run_id}] ERROR: --input-path is required for --mode {mode}", err=True)
        sys.exit(1)
    if report_type and mode != "cancel_audit":
        click.echo(f"[{run_id}] ERROR: --report-type only applies to --mode cancel_audit", err=True)
        sys.exit(1)

    csv_path = Path(input_path)
    try:
        records, raw_rows = load_records(mode, csv_path)
    except (CsvHeaderError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Read {len(records)} rows from {csv_path.name}")

    def echo_signal(signal: InvalidationSignal) -> None:
        click.echo(
            f"[{run_id}] Invalidate {', '.join(signal.topics)} "
            f"({len(signal.household_ids)} households)"
        )

    coordinator = UploadCoordinator(store, settings, on_invalidate=echo_signal)
    result = coordinator.run(
        build_pipeline(mode, settings),
        records,
        UploadContext(agency_id, uploader_id, csv_path.name, report_type),
    )
    counters = result.counters

    rejects = RejectWriter(Path(rejects_path or f"./artifacts/rejects/{run_id}_{mode}_rejects.csv"))
    try:
        for error in counters.errors:
            if error.record_index is not None:
                rejects.write(raw_rows[error.record_index], error.reason)
    finally:
        rejects.close()

    click.echo(_summary(run_id, result.upload_id, counters.to_dict()))
    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"input_path": str(csv_path), "upload_id": result.upload_id or ""},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if not result.success:
        click.echo(f"[{run_id}] FATAL: upload failed: {result.error}", err=True)
        sys.exit(1)


def _summary(run_id: str, upload_id: str | None, counts: dict[str, Any]) -> str:
    lines = [f"[{run_id}] Upload {upload_id or '-'}"]
    for key in (
        "records_processed", "records_created", "records_updated", "records_skipped",
        "households_created", "households_matched", "households_matched_heuristic",
        "contacts_linked", "snapshot_deactivated", "chunks_processed", "chunks_failed",
    ):
        lines.append(f"  {key:<30} {counts[key]}")
    lines.append(f"  {'errors':<30} {len(counts['errors'])}")
    return "\n".join(lines)


def _run_contact_stages(
    store: HouseholdStore,
    agency_id: str,
    contact_ids: tuple[str, ...],
    run_id: str,
) -> None:
    if not contact_ids:
        click.echo(f"[{run_id}] ERROR: --contact-id is required for --mode contact_stages", err=True)
        sys.exit(1)
    profiles = ContactProjector(store).project(agency_id, list(contact_ids))
    for contact_id in contact_ids:
        profile = profiles.get(contact_id)
        if profile is None:
            click.echo(f"[{run_id}] WARNING: contact {contact_id} not found", err=True)
            continue
        click.echo(json.dumps(profile.to_dict(), default=str))


if __name__ == "__main__":
    main()
