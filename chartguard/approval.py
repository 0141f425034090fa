"""
Approval State Machine for commands that need human sign-off.

**State machine:**

    PENDING -> APPROVED | REJECTED | EXPIRED

All three outcomes are terminal; a record never leaves a terminal state.

**Human gates enforced in code:**

* ``resolve()`` requires an actor id -- no anonymous decisions.
* Rejections require a note, stored verbatim.
* Dual-approval records stay ``PENDING`` until ``required_approvals``
  distinct actors have approved; a single rejection is final.
* Double resolution fails loudly with ``InvalidStateTransition``.

**Concurrency:** every transition is a compare-and-swap against the store
on ``(status == PENDING, version)``.  ``resolve`` and ``sweep`` may race
on the same record; exactly one wins and the other observes the terminal
state.  The state machine never writes audit events itself -- it returns
the records it transitioned so the pipeline can audit each exactly once.

DISCLAIMER: Approval records track clinician review of AI proposals.  The
state machine does not evaluate the clinical content of a proposal.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from chartguard.config import SafetyPolicy
from chartguard.errors import (
    DuplicateApproverError,
    InvalidStateTransition,
    NotFoundError,
)
from chartguard.models import (
    ApprovalRecord,
    ApprovalStatus,
    ApprovalVote,
    Command,
    Decision,
)
from chartguard.policy_engine import Routing, RoutingDecision
from chartguard.store import ApprovalStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[ApprovalStatus, set[ApprovalStatus]] = {
    ApprovalStatus.PENDING: {
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.EXPIRED,
    },
    ApprovalStatus.APPROVED: set(),  # terminal state
    ApprovalStatus.REJECTED: set(),  # terminal state
    ApprovalStatus.EXPIRED: set(),  # terminal state
}


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    return target in _VALID_TRANSITIONS.get(current, set())


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class ApprovalStateMachine:
    """Owns the lifecycle of approval records.

    Args:
        store: Shared ``ApprovalStore`` handle.
        clock: Returns the current UTC time; injectable for tests.
        max_cas_attempts: Re-read budget when a concurrent partial approval
            bumps the record version under us.
    """

    def __init__(
        self,
        store: ApprovalStore,
        clock: Optional[Callable[[], datetime]] = None,
        max_cas_attempts: int = 5,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._max_cas_attempts = max_cas_attempts

    # -- helpers --

    def _validate_transition(
        self, record: ApprovalRecord, target: ApprovalStatus
    ) -> None:
        """Raise InvalidStateTransition if the transition is not allowed."""
        if not can_transition(record.status, target):
            raise InvalidStateTransition(
                current=record.status.value,
                attempted=target.value,
                message=(
                    f"Approval {record.id} is {record.status.value}; "
                    f"cannot transition to {target.value}"
                ),
            )

    def _expire(self, record: ApprovalRecord, now: datetime) -> ApprovalRecord:
        return record.model_copy(update={
            "status": ApprovalStatus.EXPIRED,
            "resolved_at": now,
            "version": record.version + 1,
        })

    # -- queries --

    def get(self, approval_id: str) -> ApprovalRecord:
        """Return an approval record.

        Raises:
            NotFoundError: If the id is unknown.
        """
        record = self._store.get(approval_id)
        if record is None:
            raise NotFoundError("Approval", approval_id)
        return record

    def list_pending(self) -> list[ApprovalRecord]:
        return self._store.list_pending()

    # -- lifecycle operations --

    def create(
        self,
        command: Command,
        routing: Routing,
        policy: SafetyPolicy,
    ) -> ApprovalRecord:
        """Create a PENDING record holding an immutable snapshot of ``command``.

        A command gets at most one record: when the store already holds one
        for ``command.command_id`` that record is returned unchanged.

        Args:
            command: The validated command.
            routing: The policy engine's routing; must be NEEDS_APPROVAL.
            policy: The policy snapshot that produced ``routing`` (TTL source).

        Returns:
            The stored ``ApprovalRecord``.

        Raises:
            ValueError: If ``routing`` is not NEEDS_APPROVAL.
        """
        if routing.decision is not RoutingDecision.NEEDS_APPROVAL:
            raise ValueError(
                f"Only NEEDS_APPROVAL commands get approval records, "
                f"got {routing.decision.value}"
            )

        existing = self._store.find_by_command(command.command_id)
        if existing is not None:
            logger.warning(
                "Command %s already has approval %s; not creating another",
                command.command_id, existing.id,
            )
            return existing

        created_at = self._clock()
        ttl = policy.ttl_for(command.command_kind)
        record = ApprovalRecord(
            command=command.model_copy(deep=True),
            status=ApprovalStatus.PENDING,
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=ttl),
            required_approvals=routing.required_approvals,
        )
        self._store.insert(record)
        logger.info(
            "Approval %s created for command %s (%s), expires %s, approvals needed %d",
            record.id, command.command_id, command.kind,
            record.expires_at.isoformat(), record.required_approvals,
        )
        return record

    def resolve(
        self,
        approval_id: str,
        decision: Decision | str,
        actor_id: str,
        note: str = "",
    ) -> ApprovalRecord:
        """Human gate: approve or reject a pending record.

        For dual-approval records an approval that does not yet reach
        ``required_approvals`` is recorded and the record stays PENDING.

        Args:
            approval_id: Record to resolve.
            decision: ``Decision.APPROVE`` or ``Decision.REJECT``.
            actor_id: The deciding human; required.
            note: Resolution note; required for rejections.

        Returns:
            The updated record.

        Raises:
            NotFoundError: If the id is unknown.
            InvalidStateTransition: If the record is not PENDING (including
                a second resolution), or it was found past its expiry -- in
                which case ``expired_record`` holds the record this call
                expired.
            DuplicateApproverError: If ``actor_id`` already approved.
            ValueError: If ``actor_id`` is empty, or a rejection has no note.
        """
        decision = Decision(decision)
        if not actor_id or not actor_id.strip():
            raise ValueError("An actor id is required to resolve an approval.")
        if decision is Decision.REJECT and not note.strip():
            raise ValueError(
                "A note is mandatory when rejecting. Document why the "
                "proposal was rejected."
            )
        target = (
            ApprovalStatus.APPROVED if decision is Decision.APPROVE
            else ApprovalStatus.REJECTED
        )

        for _ in range(self._max_cas_attempts):
            current = self.get(approval_id)
            self._validate_transition(current, target)
            now = self._clock()

            if current.expires_at <= now:
                expired = self._expire(current, now)
                if self._store.compare_and_swap(expired, current.version):
                    logger.info("Approval %s expired on resolution attempt by %s", approval_id, actor_id)
                    raise InvalidStateTransition(
                        current=ApprovalStatus.EXPIRED.value,
                        attempted=target.value,
                        message=f"Approval {approval_id} expired at {current.expires_at.isoformat()}",
                        expired_record=expired,
                    )
                continue

            updated = self._apply_decision(current, decision, actor_id, note, now)
            if self._store.compare_and_swap(updated, current.version):
                logger.info(
                    "Approval %s: %s by %s -> %s",
                    approval_id, decision.value, actor_id, updated.status.value,
                )
                return updated

        raise InvalidStateTransition(
            current=ApprovalStatus.PENDING.value,
            attempted=target.value,
            message=(
                f"Approval {approval_id} was modified concurrently "
                f"{self._max_cas_attempts} times; retry the resolution"
            ),
        )

    def _apply_decision(
        self,
        current: ApprovalRecord,
        decision: Decision,
        actor_id: str,
        note: str,
        now: datetime,
    ) -> ApprovalRecord:
        if decision is Decision.REJECT:
            return current.model_copy(update={
                "status": ApprovalStatus.REJECTED,
                "resolved_at": now,
                "resolved_by": actor_id,
                "resolution_note": note,
                "version": current.version + 1,
            })

        if actor_id in current.approver_ids:
            raise DuplicateApproverError(
                current=current.status.value,
                attempted=ApprovalStatus.APPROVED.value,
                message=(
                    f"Actor '{actor_id}' already approved {current.id}; "
                    f"{current.approvals_remaining} distinct approver(s) still required"
                ),
            )

        votes = current.approvals + (ApprovalVote(actor_id=actor_id, approved_at=now, note=note),)
        if len(votes) < current.required_approvals:
            return current.model_copy(update={
                "approvals": votes,
                "version": current.version + 1,
            })
        return current.model_copy(update={
            "status": ApprovalStatus.APPROVED,
            "approvals": votes,
            "resolved_at": now,
            "resolved_by": actor_id,
            "resolution_note": note or None,
            "version": current.version + 1,
        })

    def sweep(self, now: Optional[datetime] = None) -> list[ApprovalRecord]:
        """Expire every PENDING record with ``expires_at <= now``.

        Safe to call repeatedly and concurrently: a record that another
        sweep or a racing ``resolve`` already moved is left untouched.

        Returns:
            Only the records this call transitioned to EXPIRED.
        """
        now = now or self._clock()
        expired: list[ApprovalRecord] = []
        for record in self._store.list_pending(expiring_at_or_before=now):
            candidate = record
            # one re-read covers a partial approval landing between list and swap
            for _ in range(2):
                updated = self._expire(candidate, now)
                if self._store.compare_and_swap(updated, candidate.version):
                    expired.append(updated)
                    break
                fresh = self._store.get(candidate.id)
                if (
                    fresh is None
                    or fresh.status.is_terminal
                    or fresh.expires_at > now
                ):
                    break
                candidate = fresh
        if expired:
            logger.info("Sweep at %s expired %d approval(s)", now.isoformat(), len(expired))
        return expired

    def attach_execution(self, approval_id: str, resource_id: str) -> ApprovalRecord:
        """Link an APPROVED record to the resource its execution produced."""
        record = self._store.attach_execution(approval_id, resource_id)
        if record is None:
            raise NotFoundError("Approval", approval_id)
        return record
