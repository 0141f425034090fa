"""
Governance Pipeline -- the single entry point for AI-proposed commands.

Control flow for one candidate command::

    received -> validate -> classify ->
        BLOCKED         -> blocked
        AUTO_EXECUTE    -> execute -> executed | execution_failed
        NEEDS_APPROVAL  -> create approval -> queued

and later, for queued commands::

    resolve_approval -> approval_recorded (partial dual approval)
                      | rejected
                      | approved -> execute -> executed | execution_failed
    sweep_expired    -> approval_timeout

**Audit guarantees:**

* ``received`` is the first event for every command id the pipeline sees.
* Every transition is appended before the caller gets an outcome.
* An audit append failure (``AuditAppendError``) propagates out of the
  operation; nothing executes after a failed ``received`` append.
* Resubmitting a command id that was already processed replays the prior
  outcome and writes no new events.
* An unexpected exception during execution is audited as
  ``execution_failed`` before it propagates.

**Human gates:** the pipeline never executes a NEEDS_APPROVAL command
until its approval record is APPROVED, and only actors whose role the
policy allows may resolve it.

DISCLAIMER: The pipeline governs *whether and when* an AI proposal
reaches the record store.  It does not judge the clinical content of the
proposal; that remains the reviewing clinician's responsibility.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict

from chartguard.approval import ApprovalStateMachine
from chartguard.audit import (
    TERMINAL_EVENT_TYPES,
    AuditEvent,
    AuditEventType,
    AuditLog,
    AuditOutcome,
)
from chartguard.config import PolicyProvider, SafetyPolicy
from chartguard.errors import ExecutionError, InvalidStateTransition, ValidationError
from chartguard.executor import CommandExecutor
from chartguard.models import ApprovalRecord, ApprovalStatus, Command, Decision, Role
from chartguard.policy_engine import Routing, RoutingDecision, classify
from chartguard.rbac import require_permission, require_resolver
from chartguard.review import ApprovalReviewSummary, generate_review_summary, to_task_resource
from chartguard.store import ApprovalStore, InMemoryApprovalStore
from chartguard.validation import command_id_of, subject_id_of, validate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class PipelineStatus(str, enum.Enum):
    EXECUTED = "executed"
    BLOCKED = "blocked"
    QUEUED = "queued"
    FAILED = "failed"


class PipelineOutcome(BaseModel):
    """What ``submit()`` reports back to the proposing agent."""

    model_config = ConfigDict(frozen=True)

    status: PipelineStatus
    command_id: Optional[str] = None
    resource_id: Optional[str] = None
    approval_id: Optional[str] = None
    reason: str = ""
    message: str = ""
    replayed: bool = False
    warnings: tuple[str, ...] = ()


class ResolutionOutcome(BaseModel):
    """What ``resolve_approval()`` reports back to the reviewer.

    ``error`` is set when the approved command failed to execute; the
    approval itself stands.
    """

    model_config = ConfigDict(frozen=True)

    record: ApprovalRecord
    resource_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def status(self) -> ApprovalStatus:
        return self.record.status

    @property
    def executed(self) -> bool:
        return self.resource_id is not None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class GovernancePipeline:
    """Orchestrates validation, routing, approval, execution and audit.

    Every collaborator is injected so that several pipeline instances can
    share the same approval store, execution ledger and audit store.

    Args:
        executor: Applies commands to the record store.
        policy: A ``PolicyProvider`` (hot-reloadable) or a fixed
            ``SafetyPolicy``; defaults to ``DEFAULT_POLICY``.
        approval_store: Shared approval store.
        audit_log: Shared audit log.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        policy: Union[PolicyProvider, SafetyPolicy, None] = None,
        approval_store: Optional[ApprovalStore] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        if isinstance(policy, SafetyPolicy):
            policy = PolicyProvider(policy)
        self._policy_provider = policy if policy is not None else PolicyProvider()
        self._executor = executor
        self._approvals = ApprovalStateMachine(
            approval_store if approval_store is not None else InMemoryApprovalStore(),
            clock=self._clock,
        )
        self._audit = audit_log if audit_log is not None else AuditLog(clock=self._clock)

    @property
    def audit_log(self) -> AuditLog:
        return self._audit

    @property
    def policy_provider(self) -> PolicyProvider:
        return self._policy_provider

    # -- submission --

    def submit(self, raw: Any, role: Optional[Role] = None) -> PipelineOutcome:
        """Govern one candidate command.

        Args:
            raw: Untrusted JSON-like mapping from an upstream agent.
            role: When given, must hold the ``submit_command`` permission.

        Returns:
            A ``PipelineOutcome``.  Malformed input is reported as BLOCKED
            with reason ``validation_error``.

        Raises:
            PermissionError: If ``role`` may not submit commands.
            AuditAppendError: If the audit trail could not be written.
        """
        if role is not None:
            require_permission(role, "submit_command")
        result = validate(raw)
        command_id = result.command.command_id if result.ok else command_id_of(raw)

        if command_id is not None:
            prior = self._audit.events_for_command(command_id)
            if prior:
                return self._replay(command_id, prior)

        if not result.ok:
            return self._reject_invalid(raw, command_id, result.error)

        command = result.command
        policy = self._policy_provider.current()
        routing = classify(command, policy, self._clock())
        logger.info(
            "Command %s (%s, confidence %.2f) routed %s",
            command.command_id, command.kind, command.confidence, routing.decision.value,
        )

        details: dict[str, Any] = {
            "kind": command.kind,
            "source_model": command.source_model,
            "confidence": command.confidence,
            "policy": policy.name,
        }
        if routing.warnings:
            logger.warning("Command %s: %s", command.command_id, "; ".join(routing.warnings))
            details["warnings"] = "; ".join(routing.warnings)
        received = self._event(AuditEventType.RECEIVED, command, details=details)

        if routing.blocked:
            self._audit.record_batch([
                received,
                self._event(
                    AuditEventType.BLOCKED, command,
                    outcome=AuditOutcome.MINOR_FAILURE,
                    details={"reason": routing.reason, "rule_name": routing.rule_name},
                ),
            ])
            return PipelineOutcome(
                status=PipelineStatus.BLOCKED,
                command_id=command.command_id,
                reason=routing.reason,
                message=str(routing.to_exception()),
            )

        self._audit.append(received)

        if routing.decision is RoutingDecision.NEEDS_APPROVAL:
            return self._queue(command, routing, policy)
        return self._auto_execute(command, routing)

    def _reject_invalid(
        self, raw: Any, command_id: Optional[str], error: ValidationError
    ) -> PipelineOutcome:
        logger.warning("Rejected malformed command %s: %s", command_id or "<no id>", error)
        if command_id is not None:
            subject_id = subject_id_of(raw)
            self._audit.record_batch([
                self._audit.new_event(
                    AuditEventType.RECEIVED, command_id, subject_id=subject_id,
                    details={"kind": raw.get("kind", "")},
                ),
                self._audit.new_event(
                    AuditEventType.BLOCKED, command_id, subject_id=subject_id,
                    outcome=AuditOutcome.MINOR_FAILURE,
                    details={
                        "reason": "validation_error",
                        "field": error.field,
                        "error": error.reason,
                    },
                ),
            ])
        return PipelineOutcome(
            status=PipelineStatus.BLOCKED,
            command_id=command_id,
            reason="validation_error",
            message=str(error),
        )

    def _queue(self, command: Command, routing: Routing, policy: SafetyPolicy) -> PipelineOutcome:
        record = self._approvals.create(command, routing, policy)
        self._audit.append(self._event(
            AuditEventType.QUEUED, command, approval_id=record.id,
            details={
                "reason": routing.reason,
                "required_approvals": record.required_approvals,
                "expires_at": record.expires_at.isoformat(),
            },
        ))
        return PipelineOutcome(
            status=PipelineStatus.QUEUED,
            command_id=command.command_id,
            approval_id=record.id,
            reason=routing.reason,
            message=f"Awaiting {record.required_approvals} approval(s) until "
                    f"{record.expires_at.isoformat()}",
            warnings=routing.warnings,
        )

    def _auto_execute(self, command: Command, routing: Routing) -> PipelineOutcome:
        resource_id, error = self._execute_and_audit(command)
        if error is not None:
            return PipelineOutcome(
                status=PipelineStatus.FAILED,
                command_id=command.command_id,
                reason=type(error).__name__,
                message=str(error),
                warnings=routing.warnings,
            )
        return PipelineOutcome(
            status=PipelineStatus.EXECUTED,
            command_id=command.command_id,
            resource_id=resource_id,
            warnings=routing.warnings,
        )

    def _replay(self, command_id: str, events: list[AuditEvent]) -> PipelineOutcome:
        """Rebuild the outcome of an already-processed command from its audit trail."""
        last = events[-1]
        approval_id = next((e.approval_id for e in events if e.approval_id), None)
        kind = last.event_type
        logger.info("Command %s resubmitted; replaying %s", command_id, kind.value)

        if kind is AuditEventType.EXECUTED:
            status = PipelineStatus.EXECUTED
        elif kind is AuditEventType.EXECUTION_FAILED:
            status = PipelineStatus.FAILED
        elif kind in TERMINAL_EVENT_TYPES:
            status = PipelineStatus.BLOCKED
        elif kind in (AuditEventType.RECEIVED, AuditEventType.APPROVED):
            # a previous run stopped before reaching an outcome
            status = PipelineStatus.FAILED
        else:
            status = PipelineStatus.QUEUED

        resource_id = last.details.get("resource_id") if status is PipelineStatus.EXECUTED else None
        if kind is AuditEventType.APPROVED:
            reason = "approved_not_executed"
        elif kind is AuditEventType.RECEIVED:
            reason = "interrupted_after_received"
        else:
            reason = last.details.get("reason") or (
                last.details.get("error_type", "") if status is PipelineStatus.FAILED else kind.value
            )
        return PipelineOutcome(
            status=status,
            command_id=command_id,
            resource_id=resource_id,
            approval_id=approval_id,
            reason=reason,
            message=f"Command {command_id} was already processed ({kind.value})",
            replayed=True,
        )

    # -- approvals --

    def resolve_approval(
        self,
        approval_id: str,
        decision: Decision | str,
        actor_id: str,
        note: str = "",
        actor_role: Role = Role.PRACTITIONER,
    ) -> ResolutionOutcome:
        """Record a human decision and execute the command once APPROVED.

        Raises:
            NotFoundError: If the approval id is unknown.
            PermissionError: If ``actor_role`` may not resolve this kind.
            InvalidStateTransition: If the record is no longer PENDING (an
                expiry discovered here is audited before re-raising).
            DuplicateApproverError: If the actor already approved.
            ValueError: For a missing actor id or a rejection without a note.
            AuditAppendError: If the audit trail could not be written.
        """
        decision = Decision(decision)
        record = self._approvals.get(approval_id)
        require_resolver(actor_role, record.command.command_kind, self._policy_provider.current())

        try:
            updated = self._approvals.resolve(approval_id, decision, actor_id, note)
        except InvalidStateTransition as exc:
            if exc.expired_record is not None:
                self._audit_timeouts([exc.expired_record])
            raise

        command = updated.command
        if updated.status is ApprovalStatus.PENDING:
            self._audit.append(self._event(
                AuditEventType.APPROVAL_RECORDED, command, approval_id=updated.id,
                actor=actor_id,
                details={
                    "approvals": len(updated.approvals),
                    "required_approvals": updated.required_approvals,
                },
            ))
            return ResolutionOutcome(record=updated)

        if updated.status is ApprovalStatus.REJECTED:
            self._audit.append(self._event(
                AuditEventType.REJECTED, command, approval_id=updated.id,
                actor=actor_id, details={"note": note},
            ))
            return ResolutionOutcome(record=updated)

        details: dict[str, Any] = {"approvers": ",".join(updated.approver_ids)}
        if note:
            details["note"] = note
        self._audit.append(self._event(
            AuditEventType.APPROVED, command, approval_id=updated.id,
            actor=actor_id, details=details,
        ))

        resource_id, error = self._execute_and_audit(
            command, approval_id=updated.id, approved_by=updated.approver_ids,
        )
        if error is not None:
            return ResolutionOutcome(record=updated, error=str(error))
        updated = self._approvals.attach_execution(updated.id, resource_id)
        return ResolutionOutcome(record=updated, resource_id=resource_id)

    def sweep_expired(
        self, now: Optional[datetime] = None, role: Optional[Role] = None
    ) -> list[ApprovalRecord]:
        """Expire overdue approvals and audit each exactly once.

        When ``role`` is given it must hold the ``sweep_approvals`` permission.

        Returns:
            The records this call expired.
        """
        if role is not None:
            require_permission(role, "sweep_approvals")
        expired = self._approvals.sweep(now)
        self._audit_timeouts(expired)
        return expired

    def get_approval(self, approval_id: str, role: Optional[Role] = None) -> ApprovalRecord:
        if role is not None:
            require_permission(role, "view_approval")
        return self._approvals.get(approval_id)

    def list_pending(self, role: Optional[Role] = None) -> list[ApprovalRecord]:
        if role is not None:
            require_permission(role, "view_approval")
        return self._approvals.list_pending()

    def review_summary(
        self, approval_id: str, role: Optional[Role] = None
    ) -> ApprovalReviewSummary:
        record = self.get_approval(approval_id, role)
        return generate_review_summary(
            record, self._audit.events_for_command(record.command_id), now=self._clock()
        )

    def approval_task(self, approval_id: str, role: Optional[Role] = None) -> dict[str, Any]:
        return to_task_resource(self.get_approval(approval_id, role))

    # -- policy administration --

    def update_policy(self, policy: SafetyPolicy, role: Role) -> None:
        """Activate ``policy`` for subsequent submissions."""
        require_permission(role, "manage_policy")
        self._policy_provider.update(policy)

    def reload_policy(self, role: Role) -> SafetyPolicy:
        """Re-read the provider's policy file; see ``PolicyProvider.reload``."""
        require_permission(role, "manage_policy")
        return self._policy_provider.reload()

    # -- audit access --

    def query_audit(
        self,
        command_id: Optional[str] = None,
        approval_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        role: Optional[Role] = None,
    ) -> list[AuditEvent]:
        """Read-only audit query in timestamp order.

        When ``role`` is given it must hold the ``query_audit`` permission.
        """
        if role is not None:
            require_permission(role, "query_audit")
        return self._audit.query(
            command_id=command_id,
            approval_id=approval_id,
            subject_id=subject_id,
            actor_id=actor_id,
            event_type=event_type,
            time_start=time_start,
            time_end=time_end,
        )

    def export_audit(
        self,
        role: Role,
        subject_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """PHI-redacted audit export for compliance review."""
        require_permission(role, "export_audit")
        return self._audit.export_for_review(subject_id, time_start, time_end)

    # -- helpers --

    def _event(
        self,
        event_type: AuditEventType,
        command: Command,
        *,
        approval_id: Optional[str] = None,
        actor: Optional[str] = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        return self._audit.new_event(
            event_type,
            command.command_id,
            subject_id=command.subject_id,
            approval_id=approval_id,
            actor=actor,
            outcome=outcome,
            details=details,
        )

    def _execute_and_audit(
        self,
        command: Command,
        approval_id: Optional[str] = None,
        approved_by: tuple[str, ...] = (),
    ) -> tuple[Optional[str], Optional[ExecutionError]]:
        try:
            resource_id = self._executor.execute(command, approval_id, approved_by)
        except ExecutionError as exc:
            logger.error(
                "Execution of command %s failed after %d attempt(s): %s",
                command.command_id, exc.attempts, exc,
            )
            self._audit.append(self._event(
                AuditEventType.EXECUTION_FAILED, command, approval_id=approval_id,
                outcome=AuditOutcome.SERIOUS_FAILURE,
                details={
                    "error_type": type(exc).__name__,
                    "error": exc.cause,
                    "attempts": exc.attempts,
                    "retryable": exc.retryable,
                },
            ))
            return None, exc
        except Exception as exc:
            # close the trail before the unexpected error propagates
            logger.exception("Execution of command %s raised unexpectedly", command.command_id)
            self._audit.append(self._event(
                AuditEventType.EXECUTION_FAILED, command, approval_id=approval_id,
                outcome=AuditOutcome.SERIOUS_FAILURE,
                details={
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "retryable": False,
                },
            ))
            raise

        self._audit.append(self._event(
            AuditEventType.EXECUTED, command, approval_id=approval_id,
            details={"resource_id": resource_id},
        ))
        return resource_id, None

    def _audit_timeouts(self, records: list[ApprovalRecord]) -> None:
        self._audit.record_batch([
            self._event(
                AuditEventType.EXPIRED, record.command, approval_id=record.id,
                outcome=AuditOutcome.MINOR_FAILURE,
                details={"expires_at": record.expires_at.isoformat()},
            )
            for record in records
        ])
