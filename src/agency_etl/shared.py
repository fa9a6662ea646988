"""agency_etl.shared

Shared utilities used by every upload pipeline.
Includes the exception taxonomy, RejectWriter, UploadCounters, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class EngineError(Exception):
    """Base class for errors raised by the engine."""


class InfrastructureError(EngineError):
    """The batch cannot continue: storage unreachable or provenance lost."""


class StoreUnavailableError(InfrastructureError):
    """Raised when the backing store cannot be reached."""


class ProvenanceWriteError(InfrastructureError):
    """Raised when the upload provenance row cannot be written."""


class RecordRejected(EngineError):
    """Raised for a single record that cannot be applied.

    Record-level only: the coordinator catches it, skips the record and
    keeps going.
    """

    def __init__(self, reason: str, detail: str | None = None) -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# UploadError + UploadCounters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UploadError:
    """A non-fatal, record-level (or chunk-level) failure."""

    record_index: int | None
    natural_key: str | None
    reason: str
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UploadCounters:
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    households_created: int = 0
    households_matched: int = 0
    households_matched_heuristic: int = 0
    contacts_linked: int = 0
    contact_link_errors: int = 0
    snapshot_deactivated: int = 0
    chunks_processed: int = 0
    chunks_failed: int = 0
    aggregates_recomputed: int = 0
    errors: list[UploadError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def record_error(
        self,
        record_index: int | None,
        natural_key: str | None,
        reason: str,
        detail: str | None = None,
    ) -> None:
        self.errors.append(UploadError(record_index, natural_key, reason, detail))

    def provenance_counts(self) -> dict[str, int]:
        """The counts patched onto the upload row at completion."""
        return {
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_skipped": self.records_skipped,
            "households_created": self.households_created,
        }

    def to_dict(self) -> dict[str, Any]:
        d = {
            k: v for k, v in self.__dict__.items()
            if k not in ("errors", "warnings")
        }
        d["errors"] = [e.to_dict() for e in self.errors[:50]]
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: UploadCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
