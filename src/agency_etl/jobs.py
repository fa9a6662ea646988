"""agency_etl.jobs

Background upload jobs.

UploadJobRunner.submit() hands an upload to a thread pool and returns an
UploadJob right away.  The job moves pending -> running -> succeeded|failed;
callers either block on job.wait() or register job.add_done_callback().
A job whose coordinator returned an unsuccessful UploadResult is 'failed'
but still resolves its future with that result; only an unexpected
exception is set on the future.

Stores:
  store_factory is called once per job.  A store exposing close() is
  closed when the job ends, so PostgresStore.connect(dsn) gives every job
  its own connection; `lambda: shared_store` reuses one InMemoryStore.

Invalidation signals from every job are fanned out to subscribe()d
listeners on the worker thread.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Sequence

from agency_etl.config import EngineSettings
from agency_etl.store import HouseholdStore
from agency_etl.upload_coordinator import (
    InvalidationSignal,
    UploadContext,
    UploadCoordinator,
    UploadPipeline,
    UploadResult,
)

log = logging.getLogger(__name__)


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UploadJob:
    job_id: str
    pipeline: str
    context: UploadContext
    state: JobState = JobState.PENDING
    submitted_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    future: Future = field(default_factory=Future, repr=False)

    def done(self) -> bool:
        return self.future.done()

    def wait(self, timeout: float | None = None) -> UploadResult:
        """Block until the job finishes; re-raises an unexpected job exception."""
        return self.future.result(timeout)

    @property
    def result(self) -> UploadResult | None:
        if not self.future.done() or self.future.exception() is not None:
            return None
        return self.future.result()

    def add_done_callback(self, fn: Callable[["UploadJob"], Any]) -> None:
        """Call fn(job) once the job finishes (immediately if it already has)."""
        self.future.add_done_callback(lambda _f: fn(self))


class UploadJobRunner:
    def __init__(
        self,
        store_factory: Callable[[], HouseholdStore],
        settings: EngineSettings | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.store_factory = store_factory
        self.settings = settings or EngineSettings()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or self.settings.max_workers,
            thread_name_prefix="agency-upload",
        )
        self._listeners: list[Callable[[InvalidationSignal], Any]] = []
        self._jobs: dict[str, UploadJob] = {}
        self._lock = threading.Lock()

    # -- listeners ------------------------------------------------------------

    def subscribe(self, listener: Callable[[InvalidationSignal], Any]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _broadcast(self, signal: InvalidationSignal) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(signal)
            except Exception:
                log.exception("invalidation listener %r failed", listener)

    # -- jobs -----------------------------------------------------------------------

    def submit(
        self,
        pipeline: UploadPipeline,
        records: Sequence[Any],
        context: UploadContext,
    ) -> UploadJob:
        job = UploadJob(job_id=str(uuid.uuid4()), pipeline=pipeline.name, context=context)
        with self._lock:
            self._jobs[job.job_id] = job
        self._executor.submit(self._run, job, pipeline, list(records))
        log.info("job %s queued: %s for agency %s", job.job_id, pipeline.name, context.agency_id)
        return job

    def get(self, job_id: str) -> UploadJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self) -> list[UploadJob]:
        with self._lock:
            return list(self._jobs.values())

    def _run(self, job: UploadJob, pipeline: UploadPipeline, records: list[Any]) -> None:
        job.state = JobState.RUNNING
        job.started_at = _utcnow()
        store = None
        try:
            store = self.store_factory()
            coordinator = UploadCoordinator(store, self.settings, on_invalidate=self._broadcast)
            result = coordinator.run(pipeline, records, job.context)
        except Exception as exc:
            log.exception("job %s crashed", job.job_id)
            job.state = JobState.FAILED
            job.error = f"{type(exc).__name__}: {exc}"
            job.finished_at = _utcnow()
            job.future.set_exception(exc)
            return
        finally:
            self._close_store(job, store)

        job.state = JobState.SUCCEEDED if result.success else JobState.FAILED
        job.error = result.error
        job.finished_at = _utcnow()
        log.info("job %s %s", job.job_id, job.state.value)
        job.future.set_result(result)

    def _close_store(self, job: UploadJob, store: Any) -> None:
        close = getattr(store, "close", None)
        if close is None:
            return
        try:
            close()
        except Exception:
            log.exception("job %s could not close its store", job.job_id)

    # -- lifecycle --------------------------------------------------------------------

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "UploadJobRunner":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown(wait=True)
