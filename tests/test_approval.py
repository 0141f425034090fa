"""
Tests for chartguard.approval -- Approval State Machine.

Covers: record creation, the PENDING -> {APPROVED | REJECTED | EXPIRED}
transition graph, human gates (actor id, rejection notes), double
resolution, dual approval, expiry on resolution, sweep idempotence, and
the resolve-vs-sweep race.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chartguard.approval import ApprovalStateMachine, can_transition
from chartguard.config import SafetyPolicy
from chartguard.errors import DuplicateApproverError, InvalidStateTransition, NotFoundError
from chartguard.models import ApprovalStatus, CommandKind, CreateNoteDraft, Decision
from chartguard.policy_engine import Routing, RoutingDecision
from chartguard.store import InMemoryApprovalStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _make_command(command_id: str = "cmd-1") -> CreateNoteDraft:
    return CreateNoteDraft(
        kind="create_note_draft",
        command_id=command_id,
        confidence=0.8,
        source_model="test-model",
        subject_id="Patient/1",
        encounter_id="enc-1",
        note_type="progress",
        content="Stable.",
    )


def _make_machine(clock: _Clock | None = None):
    store = InMemoryApprovalStore()
    return ApprovalStateMachine(store, clock=clock or _Clock()), store


def _needs_approval(required: int = 1) -> Routing:
    return Routing(decision=RoutingDecision.NEEDS_APPROVAL, reason="approval_requested",
                   required_approvals=required)


# ---------------------------------------------------------------------------
# 1. Creation
# ---------------------------------------------------------------------------

class TestCreate:
    def test_create_pending_record_with_ttl(self):
        machine, _ = _make_machine()
        policy = SafetyPolicy(approval_ttl="2h")
        record = machine.create(_make_command(), _needs_approval(), policy)
        assert record.status is ApprovalStatus.PENDING
        assert record.created_at == T0
        assert record.expires_at == T0 + timedelta(hours=2)
        assert record.version == 0

    def test_ttl_override_applies_per_kind(self):
        machine, _ = _make_machine()
        policy = SafetyPolicy(approval_ttl_overrides={CommandKind.CREATE_NOTE_DRAFT: "3d"})
        record = machine.create(_make_command(), _needs_approval(), policy)
        assert record.expires_at - record.created_at == timedelta(days=3)

    def test_only_needs_approval_routings_accepted(self):
        machine, _ = _make_machine()
        with pytest.raises(ValueError):
            machine.create(_make_command(), Routing(decision=RoutingDecision.AUTO_EXECUTE), SafetyPolicy())

    def test_record_holds_snapshot(self):
        machine, _ = _make_machine()
        command = _make_command()
        record = machine.create(command, _needs_approval(), SafetyPolicy())
        assert record.command == command
        assert record.command is not command

    def test_second_create_for_same_command_returns_existing(self):
        machine, store = _make_machine()
        first = machine.create(_make_command(), _needs_approval(), SafetyPolicy())
        again = machine.create(_make_command(), _needs_approval(2), SafetyPolicy())
        assert again == first
        assert len(store) == 1

    def test_get_unknown_raises_not_found(self):
        machine, _ = _make_machine()
        with pytest.raises(NotFoundError):
            machine.get("apr-missing")


# ---------------------------------------------------------------------------
# 2. Transition graph
# ---------------------------------------------------------------------------

class TestTransitionGraph:
    @pytest.mark.parametrize("target", [
        ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.EXPIRED,
    ])
    def test_pending_reaches_every_terminal_state(self, target):
        assert can_transition(ApprovalStatus.PENDING, target)

    @pytest.mark.parametrize("terminal", [
        ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.EXPIRED,
    ])
    def test_terminal_states_have_no_exit(self, terminal):
        for target in ApprovalStatus:
            assert not can_transition(terminal, target)

    def test_is_terminal(self):
        assert not ApprovalStatus.PENDING.is_terminal
        assert all(s.is_terminal for s in ApprovalStatus if s is not ApprovalStatus.PENDING)


# ---------------------------------------------------------------------------
# 3. Resolution
# ---------------------------------------------------------------------------

class TestResolve:
    def test_approve(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy())
        resolved = machine.resolve(record.id, Decision.APPROVE, "dr_a")
        assert resolved.status is ApprovalStatus.APPROVED
        assert resolved.resolved_by == "dr_a"
        assert resolved.resolved_at == T0
        assert resolved.approver_ids == ("dr_a",)

    def test_reject_stores_note_verbatim(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy())
        resolved = machine.resolve(record.id, "reject", "dr_a", "insufficient evidence")
        assert resolved.status is ApprovalStatus.REJECTED
        assert resolved.resolution_note == "insufficient evidence"

    def test_reject_requires_note(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy())
        with pytest.raises(ValueError, match="note is mandatory"):
            machine.resolve(record.id, Decision.REJECT, "dr_a", "   ")
        assert machine.get(record.id).status is ApprovalStatus.PENDING

    def test_actor_required(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy())
        with pytest.raises(ValueError, match="actor id"):
            machine.resolve(record.id, Decision.APPROVE, "")

    def test_double_resolution_fails_second_time(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy())
        machine.resolve(record.id, Decision.APPROVE, "dr_a")
        with pytest.raises(InvalidStateTransition) as excinfo:
            machine.resolve(record.id, Decision.REJECT, "dr_b", "too late")
        assert excinfo.value.current == "APPROVED"
        assert excinfo.value.expired_record is None
        assert machine.get(record.id).status is ApprovalStatus.APPROVED

    def test_resolve_unknown_raises_not_found(self):
        machine, _ = _make_machine()
        with pytest.raises(NotFoundError):
            machine.resolve("apr-missing", Decision.APPROVE, "dr_a")

    def test_resolve_past_expiry_expires_record(self):
        clock = _Clock()
        machine, _ = _make_machine(clock)
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy(approval_ttl="1h"))
        clock.now = T0 + timedelta(hours=1)
        with pytest.raises(InvalidStateTransition) as excinfo:
            machine.resolve(record.id, Decision.APPROVE, "dr_a")
        expired = excinfo.value.expired_record
        assert expired is not None
        assert expired.status is ApprovalStatus.EXPIRED
        assert machine.get(record.id).status is ApprovalStatus.EXPIRED

        # a later attempt sees the terminal state and expires nothing new
        with pytest.raises(InvalidStateTransition) as again:
            machine.resolve(record.id, Decision.APPROVE, "dr_a")
        assert again.value.expired_record is None


# ---------------------------------------------------------------------------
# 4. Dual approval
# ---------------------------------------------------------------------------

class TestDualApproval:
    def test_stays_pending_until_required_count(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(2), SafetyPolicy())
        first = machine.resolve(record.id, Decision.APPROVE, "dr_a")
        assert first.status is ApprovalStatus.PENDING
        assert first.approvals_remaining == 1
        assert first.version == 1

        second = machine.resolve(record.id, Decision.APPROVE, "pharm_b")
        assert second.status is ApprovalStatus.APPROVED
        assert second.approver_ids == ("dr_a", "pharm_b")

    def test_same_actor_cannot_approve_twice(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(2), SafetyPolicy())
        machine.resolve(record.id, Decision.APPROVE, "dr_a")
        with pytest.raises(DuplicateApproverError):
            machine.resolve(record.id, Decision.APPROVE, "dr_a")
        assert machine.get(record.id).status is ApprovalStatus.PENDING

    def test_single_rejection_is_final(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(2), SafetyPolicy())
        machine.resolve(record.id, Decision.APPROVE, "dr_a")
        rejected = machine.resolve(record.id, Decision.REJECT, "pharm_b", "interaction risk")
        assert rejected.status is ApprovalStatus.REJECTED
        with pytest.raises(InvalidStateTransition):
            machine.resolve(record.id, Decision.APPROVE, "dr_c")


# ---------------------------------------------------------------------------
# 5. Sweep
# ---------------------------------------------------------------------------

class TestSweep:
    def test_sweep_expires_overdue_records_only(self):
        clock = _Clock()
        machine, _ = _make_machine(clock)
        short = machine.create(_make_command("cmd-short"), _needs_approval(),
                               SafetyPolicy(approval_ttl="1h"))
        long = machine.create(_make_command("cmd-long"), _needs_approval(),
                              SafetyPolicy(approval_ttl="1d"))
        expired = machine.sweep(T0 + timedelta(hours=2))
        assert [r.id for r in expired] == [short.id]
        assert machine.get(long.id).status is ApprovalStatus.PENDING

    def test_sweep_is_idempotent(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy(approval_ttl="1h"))
        later = T0 + timedelta(hours=2)
        assert [r.id for r in machine.sweep(later)] == [record.id]
        assert machine.sweep(later) == []

    def test_sweep_boundary_is_inclusive(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy(approval_ttl="1h"))
        assert machine.sweep(record.expires_at - timedelta(seconds=1)) == []
        assert len(machine.sweep(record.expires_at)) == 1

    def test_resolved_records_are_not_swept(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy(approval_ttl="1h"))
        machine.resolve(record.id, Decision.APPROVE, "dr_a")
        assert machine.sweep(T0 + timedelta(days=1)) == []
        assert machine.get(record.id).status is ApprovalStatus.APPROVED

    def test_sweep_wins_race_against_stale_resolution(self):
        """A resolution computed from a stale read loses the CAS to sweep."""
        clock = _Clock()
        machine, store = _make_machine(clock)
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy(approval_ttl="1h"))
        stale = store.get(record.id)

        machine.sweep(T0 + timedelta(hours=2))
        approved = stale.model_copy(update={
            "status": ApprovalStatus.APPROVED, "version": stale.version + 1,
        })
        assert store.compare_and_swap(approved, stale.version) is False
        assert machine.get(record.id).status is ApprovalStatus.EXPIRED

    def test_stale_sweep_loses_to_resolution(self):
        machine, store = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy(approval_ttl="1h"))
        stale = store.get(record.id)
        machine.resolve(record.id, Decision.APPROVE, "dr_a")

        expired = stale.model_copy(update={
            "status": ApprovalStatus.EXPIRED, "version": stale.version + 1,
        })
        assert store.compare_and_swap(expired, stale.version) is False
        assert machine.get(record.id).status is ApprovalStatus.APPROVED

    def test_list_pending(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy())
        assert [r.id for r in machine.list_pending()] == [record.id]
        machine.resolve(record.id, Decision.APPROVE, "dr_a")
        assert machine.list_pending() == []


class TestAttachExecution:
    def test_attach_only_once(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy())
        machine.resolve(record.id, Decision.APPROVE, "dr_a")
        first = machine.attach_execution(record.id, "DocumentReference/1")
        second = machine.attach_execution(record.id, "DocumentReference/2")
        assert first.executed_resource_id == "DocumentReference/1"
        assert second.executed_resource_id == "DocumentReference/1"
        assert second.status is ApprovalStatus.APPROVED

    def test_attach_ignored_for_pending(self):
        machine, _ = _make_machine()
        record = machine.create(_make_command(), _needs_approval(), SafetyPolicy())
        assert machine.attach_execution(record.id, "X/1").executed_resource_id is None
