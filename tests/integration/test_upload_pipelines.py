"""Integration tests: upload pipelines + projection against PostgresStore.

Require PostgreSQL (pytest-postgresql); skipped when it is not installed.
"""

from __future__ import annotations

import uuid
from datetime import date

from agency_etl.config import EngineSettings
from agency_etl.contact_projection import ContactProjector
from agency_etl.household_resolution import HouseholdIdentity, HouseholdResolver
from agency_etl.import_cancel_audit import run_cancel_audit
from agency_etl.import_renewals import run_renewals
from agency_etl.import_sales import run_sales
from agency_etl.import_terminations import run_terminations
from agency_etl.lifecycle_stage import LifecycleStage
from agency_etl.records import CancelAuditRecord, RenewalRecord, SaleRecord, TerminationRecord
from agency_etl.store import HouseholdSeed
from agency_etl.upload_coordinator import UploadContext

JOHN = dict(first_name="John", last_name="Smith", zip_code="10001")


def _ctx(agency_id, report_type=None):
    return UploadContext(agency_id, "user-1", "upload.csv", report_type)


def _term(policy, **kw):
    return TerminationRecord(
        policy_number=policy,
        termination_effective_date=kw.pop("termination_effective_date", date(2025, 1, 15)),
        product_name=kw.pop("product_name", "Auto"),
        **{**JOHN, **kw},
    )


def _scalar(conn, query, params=()):
    return conn.execute(query, params).fetchone()[0]


# ---------------------------------------------------------------------------
# Terminations
# ---------------------------------------------------------------------------

class TestTerminationsPostgres:
    def test_upload_and_reupload(self, db_conn, pg_store, agency_id):
        conn, _ = db_conn
        records = [_term("P1"), _term("P2", premium_new_cents=11000, premium_old_cents=10000)]

        first = run_terminations(pg_store, records, _ctx(agency_id))
        assert first.success, first.error
        assert first.counters.records_created == 2
        assert first.counters.households_created == 1

        second = run_terminations(pg_store, records, _ctx(agency_id))
        assert second.success, second.error
        assert second.counters.records_created == 0
        assert second.counters.records_updated == 2
        assert second.counters.households_created == 0

        assert _scalar(conn, "SELECT count(*) FROM termination_policy") == 2
        assert _scalar(conn, "SELECT count(*) FROM household") == 1

        upload = pg_store.get_upload(second.upload_id)
        assert upload.status == "completed"
        assert upload.counts["records_updated"] == 2

    def test_household_aggregates_and_winback(self, db_conn, pg_store, agency_id):
        conn, _ = db_conn
        result = run_terminations(
            pg_store,
            [
                _term("P1", premium_new_cents=10000),
                _term("P2", termination_effective_date=date(2025, 3, 1), premium_new_cents=5000),
            ],
            _ctx(agency_id),
        )
        (household_id,) = result.signal.household_ids
        row = conn.execute(
            """
            SELECT winback_status, termination_policy_count, earliest_winback_date,
                   terminated_premium_cents, contact_id
            FROM household WHERE id = %s
            """,
            (household_id,),
        ).fetchone()

        assert row[0] == "untouched"
        assert row[1] == 2
        assert row[2] == date(2025, 12, 1)
        assert row[3] == 15000
        assert row[4] is not None

    def test_rejected_record_reported(self, pg_store, agency_id):
        result = run_terminations(
            pg_store,
            [_term("P1"), _term("P2", product_name=None), _term("P3")],
            _ctx(agency_id),
            settings=EngineSettings(chunk_size=2),
        )
        assert result.success
        assert result.counters.chunks_processed == 2
        assert result.counters.records_created == 2
        assert result.counters.records_skipped == 1

        upload = pg_store.get_upload(result.upload_id)
        assert upload.errors[0]["reason"] == "missing_product_name_and_line_code"
        assert upload.errors[0]["natural_key"] == "P2"

    def test_storage_error_rolls_back_one_record(self, db_conn, pg_store, agency_id):
        conn, _ = db_conn
        result = run_terminations(
            pg_store,
            [_term("P1"), _term("P2", is_cancel_rewrite=None), _term("P3")],
            _ctx(agency_id),
        )
        assert result.success
        assert result.counters.records_created == 2
        assert result.counters.records_skipped == 1
        assert result.errors[0]["reason"] == "store_error"
        assert _scalar(conn, "SELECT count(*) FROM termination_policy") == 2


# ---------------------------------------------------------------------------
# Household resolution
# ---------------------------------------------------------------------------

class TestResolutionPostgres:
    def test_heuristic_match(self, db_conn, pg_store, agency_id):
        conn, _ = db_conn
        legacy = pg_store.insert_households(
            agency_id,
            [HouseholdSeed("legacy-smith-john", "john", "smith", "10001-2345")],
            None,
        )["legacy-smith-john"]

        result = run_terminations(pg_store, [_term("P1")], _ctx(agency_id))
        assert result.counters.households_matched_heuristic == 1
        assert result.counters.households_created == 0
        assert result.signal.household_ids == (legacy,)
        assert _scalar(conn, "SELECT count(*) FROM household") == 1

    def test_resolver_is_agency_scoped(self, pg_store, agency_id):
        other_agency = str(uuid.uuid4())
        run_terminations(pg_store, [_term("P1")], _ctx(other_agency))
        result = run_terminations(pg_store, [_term("P1")], _ctx(agency_id))

        assert result.counters.households_created == 1
        assert result.counters.records_created == 1

    def test_duplicate_key_oldest_wins(self, pg_store, agency_id):
        seed = HouseholdSeed("smith_john_10001", "John", "Smith", "10001")
        first = pg_store.insert_households(agency_id, [seed], None)["smith_john_10001"]
        pg_store.insert_households(agency_id, [seed], None)

        identity = HouseholdIdentity("smith_john_10001", "John", "Smith", "10001")
        resolution = HouseholdResolver(pg_store).resolve(agency_id, [identity])
        assert resolution.get("smith_john_10001") == first


# ---------------------------------------------------------------------------
# Snapshot pipelines
# ---------------------------------------------------------------------------

class TestSnapshotPostgres:
    def test_cancel_audit_replace(self, db_conn, pg_store, agency_id):
        conn, _ = db_conn
        run_cancel_audit(
            pg_store,
            [CancelAuditRecord(policy_number="C1", **JOHN), CancelAuditRecord(policy_number="C2", **JOHN)],
            _ctx(agency_id),
        )
        conn.execute("UPDATE cancel_audit_record SET status = 'resolved' WHERE policy_number = 'C2'")

        result = run_cancel_audit(
            pg_store,
            [CancelAuditRecord(policy_number="C2", **JOHN), CancelAuditRecord(policy_number="C3", **JOHN)],
            _ctx(agency_id),
        )
        assert result.success, result.error
        assert result.counters.snapshot_deactivated == 2

        rows = {
            r[0]: r[1:]
            for r in conn.execute(
                "SELECT policy_number, is_active, dropped_from_report_at IS NOT NULL, status "
                "FROM cancel_audit_record"
            ).fetchall()
        }
        assert rows["C1"] == (False, True, "new")
        assert rows["C2"] == (True, False, "new")
        assert rows["C3"] == (True, False, "new")

        (household_id,) = result.signal.household_ids
        assert _scalar(
            conn, "SELECT active_cancel_count FROM household WHERE id = %s", (household_id,)
        ) == 2

    def test_renewal_status_kept(self, db_conn, pg_store, agency_id):
        conn, _ = db_conn
        record = RenewalRecord(policy_number="R1", renewal_effective_date=date(2025, 8, 1), **JOHN)
        run_renewals(pg_store, [record], _ctx(agency_id))
        conn.execute("UPDATE renewal_record SET current_status = 'pending'")

        result = run_renewals(pg_store, [record], _ctx(agency_id))
        assert result.counters.records_updated == 1
        assert _scalar(conn, "SELECT current_status FROM renewal_record") == "pending"
        assert _scalar(conn, "SELECT is_active FROM renewal_record") is True


# ---------------------------------------------------------------------------
# Sales + projection
# ---------------------------------------------------------------------------

class TestProjectionPostgres:
    def test_contact_journey(self, db_conn, pg_store, agency_id):
        conn, _ = db_conn
        run_terminations(pg_store, [_term("P1")], _ctx(agency_id))
        run_sales(
            pg_store,
            [SaleRecord(sale_date=date(2025, 5, 2), product_type="Home", **JOHN)],
            _ctx(agency_id),
        )
        contact_id = str(_scalar(conn, "SELECT contact_id FROM household"))
        projector = ContactProjector(pg_store)

        profile = projector.project(agency_id, [contact_id])[contact_id]
        assert profile.stage == LifecycleStage.WINBACK
        assert "Sale Recorded" in [e.label for e in profile.journey]

        (household_id,) = profile.household_ids
        assert pg_store.update_winback_status(household_id, "won_back", "untouched")
        assert not pg_store.update_winback_status(household_id, "dismissed", "untouched")
        assert projector.stages(agency_id, [contact_id])[contact_id] == LifecycleStage.WON_BACK

    def test_sale_sold_date_keeps_latest(self, db_conn, pg_store, agency_id):
        conn, _ = db_conn
        run_sales(
            pg_store,
            [
                SaleRecord(sale_date=date(2025, 5, 2), product_type="Home", **JOHN),
                SaleRecord(sale_date=date(2025, 3, 1), product_type="Auto", **JOHN),
            ],
            _ctx(agency_id),
        )
        row = conn.execute("SELECT lqs_status, sold_date, sale_count FROM household").fetchone()
        assert row == ("sold", date(2025, 5, 2), 2)

    def test_lookup_by_phone(self, pg_store, agency_id):
        run_terminations(pg_store, [_term("P1", phone="207-555-1234")], _ctx(agency_id))
        profile = ContactProjector(pg_store).lookup(agency_id, phone="(207) 555-1234")
        assert profile is not None
        assert profile.contact.phones == ("+12075551234",)
