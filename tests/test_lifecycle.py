"""Tests for the batch lifecycle state machine: guards, transitions, audit."""

from datetime import datetime, timedelta, timezone

import pytest

from batchgate.engine.lifecycle import BatchLifecycleStateMachine
from batchgate.models.batch import BatchStatus, RejectionKind, Role, ScrapReason
from batchgate.persistence.event_log import EventKind


T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sm(clock: FakeClock) -> BatchLifecycleStateMachine:
    machine = BatchLifecycleStateMachine(supervisor="sup", clock=clock)
    machine.tiers.set_tier("op", 3)
    machine.tiers.set_requirement("V", 3)
    machine.roles.grant("mgr", Role.MANAGER)
    machine.roles.grant("qc", Role.QC_TECH)
    return machine


def _started(sm: BatchLifecycleStateMachine, batch_id: str = "B1") -> None:
    assert sm.create_batch(batch_id, principal="sup").success
    assert sm.start_batch(batch_id, "V", principal="op").success


def _approved(sm: BatchLifecycleStateMachine, batch_id: str = "B1") -> None:
    _started(sm, batch_id)
    assert sm.finalize_batch(batch_id, approved=True, principal="qc").success


def _kinds(sm: BatchLifecycleStateMachine) -> list[EventKind]:
    return [e.event_kind for e in sm.event_log.events()]


class TestCreateBatch:
    def test_supervisor_creates_scheduled_batch(self, sm) -> None:
        result = sm.create_batch("B1", principal="sup")
        assert result.success
        batch = sm.get_batch("B1")
        assert batch.status == BatchStatus.SCHEDULED
        assert batch.current_operator is None
        assert batch.vessel_id is None
        assert batch.out_of_spec is False

    def test_manager_can_create(self, sm) -> None:
        assert sm.create_batch("B1", principal="mgr").success

    def test_operator_cannot_create(self, sm) -> None:
        result = sm.create_batch("B1", principal="op")
        assert result.rejection == RejectionKind.ROLE_DENIED
        assert sm.get_batch("B1") is None

    def test_duplicate_rejected(self, sm) -> None:
        sm.create_batch("B1", principal="sup")
        result = sm.create_batch("B1", principal="sup")
        assert result.rejection == RejectionKind.DUPLICATE_BATCH
        assert sm.event_log.count == 1

    def test_blank_id_raises(self, sm) -> None:
        with pytest.raises(ValueError):
            sm.create_batch("  ", principal="sup")

    def test_creation_is_audited(self, sm) -> None:
        sm.create_batch("B1", principal="sup")
        event = sm.event_log.last_event
        assert event.event_kind == EventKind.BATCH_CREATED
        assert event.batch_id == "B1"


class TestUnknownBatch:
    def test_every_action_rejects_unknown_batch(self, sm) -> None:
        results = [
            sm.start_batch("nope", "V", principal="op"),
            sm.log_process_update("nope", True, principal="op"),
            sm.manager_bypass("nope", principal="mgr"),
            sm.submit_for_quality_check("nope", principal="op"),
            sm.finalize_batch("nope", True, principal="qc"),
            sm.approve_for_shipping("nope", principal="sup"),
        ]
        for result in results:
            assert not result.success
            assert result.rejection == RejectionKind.UNKNOWN_BATCH
        assert sm.event_log.count == 0
        assert sm.get_batch("nope") is None


class TestStartBatch:
    def test_tier_scenario(self, sm) -> None:
        """tier 2 < requirement 3 fails; after promotion to 3 it succeeds."""
        sm.tiers.set_tier("op", 2)
        sm.create_batch("B1", principal="sup")
        result = sm.start_batch("B1", "V", principal="op")
        assert result.rejection == RejectionKind.INSUFFICIENT_TIER
        assert sm.get_batch("B1").status == BatchStatus.SCHEDULED

        sm.tiers.set_tier("op", 3)
        result = sm.start_batch("B1", "V", principal="op")
        assert result.success
        batch = sm.get_batch("B1")
        assert batch.status == BatchStatus.IN_PROCESS
        assert batch.current_operator == "op"
        assert batch.vessel_id == "V"

    def test_start_announces(self, sm) -> None:
        _started(sm)
        event = sm.event_log.last_event
        assert event.event_kind == EventKind.BATCH_STARTED
        assert event.message == "Batch started"

    def test_restart_in_process_allowed(self, sm, clock) -> None:
        _started(sm)
        sm.tiers.set_tier("op2", 4)
        clock.advance(minutes=5)
        result = sm.start_batch("B1", "V", principal="op2")
        assert result.success
        assert sm.get_batch("B1").current_operator == "op2"

    def test_cannot_restart_approved_batch(self, sm) -> None:
        _approved(sm)
        result = sm.start_batch("B1", "V", principal="op")
        assert result.rejection == RejectionKind.INVALID_STATE_TRANSITION
        assert sm.get_batch("B1").status == BatchStatus.APPROVED

    def test_cannot_restart_terminal_batch(self, sm) -> None:
        _started(sm)
        sm.finalize_batch("B1", approved=False, principal="qc")
        result = sm.start_batch("B1", "V", principal="op")
        assert result.rejection == RejectionKind.INVALID_STATE_TRANSITION
        assert sm.get_batch("B1").status == BatchStatus.BURNED

    def test_sets_last_event_timestamp(self, sm, clock) -> None:
        sm.create_batch("B1", principal="sup")
        clock.advance(minutes=3)
        sm.start_batch("B1", "V", principal="op")
        assert sm.get_batch("B1").last_event_utc == T0 + timedelta(minutes=3)


class TestLogProcessUpdate:
    def test_throttle_scenario(self, sm, clock) -> None:
        """Started at t=0: in-spec update at t=10 fails, at t=20 succeeds."""
        _started(sm, "B2")
        clock.advance(minutes=10)
        result = sm.log_process_update("B2", True, principal="op")
        assert result.rejection == RejectionKind.INTERVAL_NOT_REACHED
        assert "next_admissible_utc" in result.data

        clock.advance(minutes=10)
        result = sm.log_process_update("B2", True, principal="op")
        assert result.success
        assert sm.event_log.last_event.event_kind == EventKind.PROCESS_VERIFIED

    def test_out_of_spec_accepted_immediately(self, sm) -> None:
        _started(sm)
        result = sm.log_process_update("B1", False, principal="op")
        assert result.success
        assert sm.get_batch("B1").out_of_spec is True
        assert sm.event_log.last_event.event_kind == EventKind.PROCESS_ALERT

    def test_out_of_spec_is_sticky(self, sm, clock) -> None:
        _started(sm)
        sm.log_process_update("B1", False, principal="op")
        clock.advance(minutes=30)
        sm.log_process_update("B1", True, principal="op")
        assert sm.get_batch("B1").out_of_spec is True

    def test_rejected_update_does_not_touch_timestamp(self, sm, clock) -> None:
        _started(sm)
        clock.advance(minutes=5)
        sm.log_process_update("B1", True, principal="op")
        assert sm.get_batch("B1").last_event_utc == T0

    def test_timestamp_never_moves_backward(self, sm) -> None:
        _started(sm)
        earlier = T0 - timedelta(hours=1)
        assert sm.log_process_update("B1", False, principal="op", now=earlier).success
        assert sm.get_batch("B1").last_event_utc == T0

    def test_naive_timestamp_taken_as_utc(self, sm) -> None:
        _started(sm)
        naive = (T0 + timedelta(minutes=20)).replace(tzinfo=None)
        result = sm.log_process_update("B1", True, principal="op", now=naive)
        assert result.success
        assert sm.get_batch("B1").last_event_utc == T0 + timedelta(minutes=20)
        assert sm.event_log.last_event.timestamp_utc == "2026-03-02T08:20:00Z"


class TestManagerBypass:
    def test_requires_manager_role(self, sm) -> None:
        _started(sm)
        result = sm.manager_bypass("B1", principal="qc")
        assert result.rejection == RejectionKind.ROLE_DENIED

    def test_supervisor_is_not_implicitly_manager(self, sm) -> None:
        _started(sm)
        assert sm.manager_bypass("B1", principal="sup").rejection == RejectionKind.ROLE_DENIED

    def test_changes_nothing_but_audit(self, sm) -> None:
        _started(sm)
        before = sm.get_batch("B1")
        result = sm.manager_bypass("B1", principal="mgr", note="witnessed valve reset")
        assert result.success
        assert sm.get_batch("B1") == before
        event = sm.event_log.last_event
        assert event.event_kind == EventKind.MANAGER_OVERRIDE
        assert event.payload["note"] == "witnessed valve reset"


class TestQualityCheck:
    def test_submit_moves_to_quality_check(self, sm) -> None:
        _started(sm)
        result = sm.submit_for_quality_check("B1", principal="op")
        assert result.success
        assert sm.get_batch("B1").status == BatchStatus.QUALITY_CHECK

    def test_submit_requires_vessel_qualification(self, sm) -> None:
        _started(sm)
        result = sm.submit_for_quality_check("B1", principal="stranger")
        assert result.rejection == RejectionKind.INSUFFICIENT_TIER

    def test_submit_scheduled_rejected(self, sm) -> None:
        sm.create_batch("B1", principal="sup")
        result = sm.submit_for_quality_check("B1", principal="op")
        assert result.rejection == RejectionKind.INVALID_STATE_TRANSITION

    def test_finalize_from_quality_check(self, sm) -> None:
        _started(sm)
        sm.submit_for_quality_check("B1", principal="op")
        assert sm.finalize_batch("B1", approved=True, principal="qc").success
        assert sm.get_batch("B1").status == BatchStatus.APPROVED


class TestFinalizeBatch:
    def test_requires_qc_role(self, sm) -> None:
        _started(sm)
        result = sm.finalize_batch("B1", approved=True, principal="mgr")
        assert result.rejection == RejectionKind.ROLE_DENIED
        assert sm.get_batch("B1").status == BatchStatus.IN_PROCESS

    def test_approve_clean_batch(self, sm) -> None:
        _started(sm)
        result = sm.finalize_batch("B1", approved=True, principal="qc")
        assert result.success
        assert sm.get_batch("B1").status == BatchStatus.APPROVED
        assert sm.event_log.last_event.event_kind == EventKind.BATCH_APPROVED

    def test_qc_rejection_burns(self, sm) -> None:
        _started(sm)
        sm.finalize_batch("B1", approved=False, principal="qc")
        batch = sm.get_batch("B1")
        assert batch.status == BatchStatus.BURNED
        assert batch.scrap_reason == ScrapReason.QC_REJECTED

    def test_out_of_spec_scenario(self, sm) -> None:
        """Out-of-spec batch approved by QC is burned, with a scrap event."""
        _started(sm, "B3")
        sm.log_process_update("B3", False, principal="op")
        result = sm.finalize_batch("B3", approved=True, principal="qc")
        assert result.success
        assert sm.get_batch("B3").status == BatchStatus.BURNED
        event = sm.event_log.last_event
        assert event.event_kind == EventKind.BATCH_SCRAPPED
        assert event.reason == ScrapReason.OUT_OF_SPEC.value
        assert event.batch_id == "B3"

    def test_scheduled_cannot_be_finalized(self, sm) -> None:
        sm.create_batch("B1", principal="sup")
        result = sm.finalize_batch("B1", approved=True, principal="qc")
        assert result.rejection == RejectionKind.INVALID_STATE_TRANSITION
        assert "Invalid batch transition" in result.errors[0]
        assert sm.get_batch("B1").status == BatchStatus.SCHEDULED

    def test_second_finalize_rejected(self, sm) -> None:
        _started(sm)
        sm.finalize_batch("B1", approved=True, principal="qc")
        result = sm.finalize_batch("B1", approved=False, principal="qc")
        assert result.rejection == RejectionKind.INVALID_STATE_TRANSITION
        assert sm.get_batch("B1").status == BatchStatus.APPROVED


class TestApproveForShipping:
    def test_ships_approved_batch(self, sm) -> None:
        _approved(sm)
        result = sm.approve_for_shipping("B1", principal="sup")
        assert result.success
        assert sm.get_batch("B1").status == BatchStatus.SHIPPED
        event = sm.event_log.last_event
        assert event.event_kind == EventKind.BATCH_SHIPPED
        assert event.reason is not None
        assert event.message == "Batch shipped"

    def test_requires_supervisor(self, sm) -> None:
        _approved(sm)
        result = sm.approve_for_shipping("B1", principal="mgr")
        assert result.rejection == RejectionKind.NOT_SUPERVISOR
        assert sm.get_batch("B1").status == BatchStatus.APPROVED

    @pytest.mark.parametrize("setup", ["scheduled", "in_process", "quality_check", "burned", "shipped"])
    def test_non_approved_rejected(self, sm, setup) -> None:
        sm.create_batch("B1", principal="sup")
        if setup != "scheduled":
            sm.start_batch("B1", "V", principal="op")
        if setup == "quality_check":
            sm.submit_for_quality_check("B1", principal="op")
        if setup == "burned":
            sm.finalize_batch("B1", approved=False, principal="qc")
        if setup == "shipped":
            sm.finalize_batch("B1", approved=True, principal="qc")
            sm.approve_for_shipping("B1", principal="sup")
        before = sm.get_batch("B1").status

        result = sm.approve_for_shipping("B1", principal="sup")
        assert result.rejection == RejectionKind.INVALID_STATE_TRANSITION
        assert "Invalid batch transition" in result.errors[0]
        assert sm.get_batch("B1").status == before


class TestCircuitBreaker:
    def test_toggle_flips_and_records(self, sm) -> None:
        result = sm.toggle_circuit_breaker(principal="sup")
        assert result.success
        assert result.data["halted"] is True
        event = sm.event_log.last_event
        assert event.event_kind == EventKind.CIRCUIT_BREAKER_TOGGLED
        assert event.batch_id is None
        assert event.payload["halted"] is True

    def test_toggle_twice_restores_and_emits_two_events(self, sm) -> None:
        sm.toggle_circuit_breaker(principal="sup")
        sm.toggle_circuit_breaker(principal="sup")
        assert sm.halted is False
        assert _kinds(sm).count(EventKind.CIRCUIT_BREAKER_TOGGLED) == 2

    def test_non_supervisor_cannot_toggle(self, sm) -> None:
        result = sm.toggle_circuit_breaker(principal="mgr")
        assert result.rejection == RejectionKind.NOT_SUPERVISOR
        assert sm.halted is False
        assert sm.event_log.count == 0

    def test_halt_blocks_sensitive_actions(self, sm, clock) -> None:
        _started(sm, "B1")
        _approved(sm, "B2")
        sm.create_batch("B3", principal="sup")
        sm.toggle_circuit_breaker(principal="sup")
        clock.advance(hours=1)
        count = sm.event_log.count

        results = [
            sm.start_batch("B3", "V", principal="op"),
            sm.log_process_update("B1", True, principal="op"),
            sm.log_process_update("B1", False, principal="op"),
            sm.submit_for_quality_check("B1", principal="op"),
            sm.finalize_batch("B1", approved=True, principal="qc"),
            sm.approve_for_shipping("B2", principal="sup"),
        ]
        for result in results:
            assert result.rejection == RejectionKind.SYSTEM_HALTED
        assert sm.event_log.count == count
        assert sm.get_batch("B1").status == BatchStatus.IN_PROCESS
        assert sm.get_batch("B1").out_of_spec is False

    def test_manager_bypass_survives_halt(self, sm) -> None:
        _started(sm)
        sm.toggle_circuit_breaker(principal="sup")
        assert sm.manager_bypass("B1", principal="mgr").success

    def test_release_restores_operations(self, sm) -> None:
        _approved(sm)
        sm.toggle_circuit_breaker(principal="sup")
        sm.toggle_circuit_breaker(principal="sup")
        assert sm.approve_for_shipping("B1", principal="sup").success


class TestAuditTrail:
    def test_one_event_per_accepted_action_in_order(self, sm, clock) -> None:
        _started(sm)
        clock.advance(minutes=25)
        sm.log_process_update("B1", True, principal="op")
        sm.finalize_batch("B1", approved=True, principal="qc")
        sm.approve_for_shipping("B1", principal="sup")
        assert _kinds(sm) == [
            EventKind.BATCH_CREATED,
            EventKind.BATCH_STARTED,
            EventKind.PROCESS_VERIFIED,
            EventKind.BATCH_APPROVED,
            EventKind.BATCH_SHIPPED,
        ]
        assert [e.sequence for e in sm.event_log.events()] == [1, 2, 3, 4, 5]

    def test_rejections_emit_nothing(self, sm) -> None:
        _started(sm)
        count = sm.event_log.count
        sm.finalize_batch("B1", approved=True, principal="op")
        sm.approve_for_shipping("B1", principal="sup")
        assert sm.event_log.count == count

    def test_status_summary(self, sm) -> None:
        _approved(sm, "B1")
        sm.create_batch("B2", principal="sup")
        status = sm.status()
        assert status["supervisor"] == "sup"
        assert status["batches"]["total"] == 2
        assert status["batches"]["by_status"] == {"approved": 1, "scheduled": 1}
        assert status["events"] == 4


class TestConstruction:
    def test_supervisor_required(self) -> None:
        with pytest.raises(ValueError):
            BatchLifecycleStateMachine()

    def test_get_batch_returns_copy(self, sm) -> None:
        sm.create_batch("B1", principal="sup")
        copy = sm.get_batch("B1")
        copy.status = BatchStatus.SHIPPED
        assert sm.get_batch("B1").status == BatchStatus.SCHEDULED
