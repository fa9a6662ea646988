"""Unit tests for agency_etl.lifecycle_stage."""

import itertools

import pytest

from agency_etl.lifecycle_stage import (
    LifecycleStage,
    LinkedRecord,
    StageInputs,
    normalize_status,
    resolve_stage,
)


# ---------------------------------------------------------------------------
# normalize_status
# ---------------------------------------------------------------------------

class TestNormalizeStatus:
    @pytest.mark.parametrize("raw,expected", [
        ("In Progress", "in_progress"),
        ("  WON-BACK ", "won_back"),
        ("cancelled", "cancelled"),
        (None, ""),
        ("", ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_status(raw) == expected


# ---------------------------------------------------------------------------
# Rule order
# ---------------------------------------------------------------------------

class TestResolveStage:
    def test_no_records_is_lead(self):
        assert resolve_stage() == LifecycleStage.LEAD

    def test_untouched_winback(self):
        assert resolve_stage(winback=["untouched"]) == LifecycleStage.WINBACK

    def test_in_progress_winback_spaced(self):
        assert resolve_stage(winback=["In Progress"]) == LifecycleStage.WINBACK

    def test_active_winback_beats_sold(self):
        assert resolve_stage(winback=["untouched"], lqs=["sold"]) == LifecycleStage.WINBACK

    def test_active_winback_beats_won_back(self):
        assert resolve_stage(winback=["won_back", "in_progress"]) == LifecycleStage.WINBACK

    def test_won_back(self):
        assert resolve_stage(winback=["won_back"]) == LifecycleStage.WON_BACK

    def test_won_back_beats_cancelled(self):
        assert resolve_stage(winback=["won_back"], cancel_audit=["cancelled"]) == LifecycleStage.WON_BACK

    def test_dismissed_winback_alone_is_lead(self):
        assert resolve_stage(winback=["dismissed"]) == LifecycleStage.LEAD

    def test_pending_cancel_is_at_risk(self):
        assert resolve_stage(cancel_audit=[" Cancel "]) == LifecycleStage.AT_RISK

    def test_at_risk_beats_renewal(self):
        assert resolve_stage(cancel_audit=["cancel"], renewals=["pending"]) == LifecycleStage.AT_RISK

    def test_cancelled(self):
        assert resolve_stage(cancel_audit=["Cancelled"]) == LifecycleStage.CANCELLED

    def test_lost_counts_as_cancelled(self):
        assert resolve_stage(cancel_audit=["lost"]) == LifecycleStage.CANCELLED

    def test_cancelled_with_saved_is_customer(self):
        stage = resolve_stage(cancel_audit=["cancelled", "saved"])
        assert stage != LifecycleStage.CANCELLED
        assert stage == LifecycleStage.CUSTOMER

    def test_cancelled_with_any_renewal_is_not_cancelled(self):
        assert resolve_stage(cancel_audit=["cancelled"], renewals=["unsuccessful"]) == LifecycleStage.LEAD
        assert resolve_stage(cancel_audit=["cancelled"], renewals=["success"]) == LifecycleStage.CUSTOMER

    def test_uncontacted_renewal(self):
        assert resolve_stage(renewals=["Uncontacted"]) == LifecycleStage.RENEWAL

    def test_pending_renewal_beats_success(self):
        assert resolve_stage(renewals=["success", "pending"]) == LifecycleStage.RENEWAL

    def test_renewal_success_is_customer(self):
        assert resolve_stage(renewals=["success"]) == LifecycleStage.CUSTOMER

    def test_sold_is_customer(self):
        assert resolve_stage(lqs=["sold"]) == LifecycleStage.CUSTOMER

    def test_saved_alone_is_customer(self):
        assert resolve_stage(cancel_audit=["saved"]) == LifecycleStage.CUSTOMER

    def test_quoted_is_lead(self):
        assert resolve_stage(lqs=["quoted"]) == LifecycleStage.LEAD

    def test_linked_record_input(self):
        records = [
            LinkedRecord("cancel_audit", "c1", "Cancelled"),
            LinkedRecord("cancel_audit", "c2", "Saved"),
        ]
        assert resolve_stage(cancel_audit=records) == LifecycleStage.CUSTOMER

    def test_stage_values_are_strings(self):
        assert LifecycleStage.WON_BACK == "won_back"


# ---------------------------------------------------------------------------
# Purity
# ---------------------------------------------------------------------------

_WINBACK = [(), ("untouched",), ("won_back",), ("dismissed",)]
_CANCEL = [(), ("cancel",), ("cancelled",), ("saved",), ("cancelled", "saved"), ("lost",)]
_RENEWALS = [(), ("pending",), ("success",)]
_LQS = [(), ("lead",), ("sold",)]


class TestPurity:
    def test_order_independent(self):
        records = [
            LinkedRecord("cancel_audit", "c1", "cancelled"),
            LinkedRecord("cancel_audit", "c2", "saved"),
            LinkedRecord("cancel_audit", "c3", "lost"),
        ]
        stages = {resolve_stage(cancel_audit=perm) for perm in itertools.permutations(records)}
        assert stages == {LifecycleStage.CUSTOMER}

    def test_duplicates_do_not_matter(self):
        assert resolve_stage(renewals=["pending"] * 3) == resolve_stage(renewals=["pending"])

    def test_total_over_combinations(self):
        for winback, cancel, renewals, lqs in itertools.product(_WINBACK, _CANCEL, _RENEWALS, _LQS):
            stage = resolve_stage(winback, cancel, renewals, lqs)
            assert isinstance(stage, LifecycleStage)
            if "untouched" in winback:
                assert stage == LifecycleStage.WINBACK

    def test_repeatable(self):
        for winback, cancel, renewals, lqs in itertools.product(_WINBACK, _CANCEL, _RENEWALS, _LQS):
            assert resolve_stage(winback, cancel, renewals, lqs) == resolve_stage(
                winback, cancel, renewals, lqs
            )

    def test_inputs_are_status_sets(self):
        inputs = StageInputs.from_records(cancel_audit=["Cancelled", "cancelled", " CANCELLED"])
        assert inputs.cancel_audit == frozenset({"cancelled"})
