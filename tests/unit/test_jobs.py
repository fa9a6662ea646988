"""Unit tests for agency_etl.jobs."""

import threading
from datetime import date

import pytest

from agency_etl.config import EngineSettings
from agency_etl.import_cancel_audit import CancelAuditPipeline
from agency_etl.import_terminations import TerminationPipeline
from agency_etl.jobs import JobState, UploadJobRunner
from agency_etl.memory_store import InMemoryStore
from agency_etl.records import TerminationRecord
from agency_etl.shared import StoreUnavailableError
from agency_etl.store import TERMINATION_POLICY
from agency_etl.upload_coordinator import UploadContext

AGENCY = "agency-1"
TIMEOUT = 10


def _terms(*policies):
    return [
        TerminationRecord(
            first_name="John",
            last_name="Smith",
            zip_code="10001",
            policy_number=p,
            termination_effective_date=date(2025, 1, 15),
            product_name="Auto",
        )
        for p in policies
    ]


def _ctx(report_type=None):
    return UploadContext(AGENCY, "user-1", "terms.csv", report_type)


class ClosingStore(InMemoryStore):
    def __init__(self):
        super().__init__()
        self.closed = False

    def close(self):
        self.closed = True


class CloseFailsStore(InMemoryStore):
    def close(self):
        raise RuntimeError("connection already closed")


class UnreachableStore(InMemoryStore):
    def find_households_by_keys(self, agency_id, keys):
        raise StoreUnavailableError("connection refused")


# ---------------------------------------------------------------------------
# Job lifecycle
# ---------------------------------------------------------------------------

class TestUploadJobRunner:
    def test_successful_job(self):
        store = InMemoryStore()
        with UploadJobRunner(lambda: store) as runner:
            job = runner.submit(TerminationPipeline(), _terms("P1", "P2"), _ctx())
            result = job.wait(TIMEOUT)

        assert result.success
        assert result.counters.records_created == 2
        assert job.state == JobState.SUCCEEDED
        assert job.result is result
        assert job.done()
        assert job.pipeline == "terminations"
        assert job.started_at is not None
        assert job.finished_at is not None
        assert runner.get(job.job_id) is job

    def test_failed_result_resolves_future(self):
        with UploadJobRunner(UnreachableStore) as runner:
            job = runner.submit(TerminationPipeline(), _terms("P1"), _ctx())
            result = job.wait(TIMEOUT)

        assert not result.success
        assert job.state == JobState.FAILED
        assert "connection refused" in job.error

    def test_unexpected_exception_set_on_future(self):
        with UploadJobRunner(InMemoryStore) as runner:
            job = runner.submit(CancelAuditPipeline(), [], _ctx(report_type="renewal"))
            with pytest.raises(ValueError):
                job.wait(TIMEOUT)

        assert job.state == JobState.FAILED
        assert job.result is None
        assert "ValueError" in job.error

    def test_close_failure_still_resolves_job(self):
        finished = threading.Event()
        with UploadJobRunner(CloseFailsStore) as runner:
            job = runner.submit(TerminationPipeline(), _terms("P1"), _ctx())
            job.add_done_callback(lambda _job: finished.set())
            result = job.wait(TIMEOUT)

        assert finished.wait(TIMEOUT)
        assert result.success
        assert job.state == JobState.SUCCEEDED

    def test_close_failure_after_crash_keeps_exception(self):
        with UploadJobRunner(CloseFailsStore) as runner:
            job = runner.submit(CancelAuditPipeline(), [], _ctx(report_type="renewal"))
            with pytest.raises(ValueError):
                job.wait(TIMEOUT)

        assert job.state == JobState.FAILED

    def test_store_closed_after_job(self):
        stores = []

        def factory():
            stores.append(ClosingStore())
            return stores[-1]

        with UploadJobRunner(factory) as runner:
            runner.submit(TerminationPipeline(), _terms("P1"), _ctx()).wait(TIMEOUT)

        (store,) = stores
        assert store.closed

    def test_done_callback(self):
        finished = threading.Event()
        seen = []

        def on_done(job):
            seen.append(job.state)
            finished.set()

        with UploadJobRunner(InMemoryStore) as runner:
            job = runner.submit(TerminationPipeline(), _terms("P1"), _ctx())
            job.add_done_callback(on_done)
            assert finished.wait(TIMEOUT)

        assert seen == [JobState.SUCCEEDED]

    def test_callback_after_completion_runs_immediately(self):
        with UploadJobRunner(InMemoryStore) as runner:
            job = runner.submit(TerminationPipeline(), _terms("P1"), _ctx())
            job.wait(TIMEOUT)
            seen = []
            job.add_done_callback(seen.append)

        assert seen == [job]


# ---------------------------------------------------------------------------
# Listeners + concurrency
# ---------------------------------------------------------------------------

class TestListenersAndConcurrency:
    def test_subscribers_receive_signals(self):
        received = []
        with UploadJobRunner(InMemoryStore) as runner:
            runner.subscribe(received.append)
            job = runner.submit(TerminationPipeline(), _terms("P1"), _ctx())
            result = job.wait(TIMEOUT)

        assert received == [result.signal]

    def test_failing_listener_does_not_fail_job(self):
        def broken(signal):
            raise RuntimeError("cache down")

        received = []
        with UploadJobRunner(InMemoryStore) as runner:
            runner.subscribe(broken)
            runner.subscribe(received.append)
            job = runner.submit(TerminationPipeline(), _terms("P1"), _ctx())
            job.wait(TIMEOUT)

        assert job.state == JobState.SUCCEEDED
        assert len(received) == 1

    def test_same_agency_uploads_serialize(self):
        store = InMemoryStore()
        records = _terms("P1", "P2", "P3")
        with UploadJobRunner(lambda: store, EngineSettings(max_workers=4)) as runner:
            jobs = [runner.submit(TerminationPipeline(), records, _ctx()) for _ in range(4)]
            results = [job.wait(TIMEOUT) for job in jobs]

        assert all(r.success for r in results)
        assert sum(r.counters.records_created for r in results) == 3
        assert sum(r.counters.records_updated for r in results) == 9
        assert len(store.detail_rows(TERMINATION_POLICY)) == 3
        assert len(store.households) == 1
        assert len(runner.jobs()) == 4
