"""
Reviewer Summary and Approval Task Representation.

Builds the material a clinician sees when reviewing a queued command: the
proposal itself, why it was routed to review, the approvals recorded so
far, and a timeline assembled from the audit trail.  Also renders an
approval record as a task-like resource for hand-off to external task
queues.

DISCLAIMER: Review summaries are decision-support material for clinician
review.  They do not constitute clinical assessments or recommendations.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from chartguard.audit import AuditEvent
from chartguard.models import ApprovalRecord, ApprovalStatus


_TASK_STATUS = {
    ApprovalStatus.PENDING: "requested",
    ApprovalStatus.APPROVED: "accepted",
    ApprovalStatus.REJECTED: "rejected",
    ApprovalStatus.EXPIRED: "cancelled",
}

_EVENT_DESCRIPTIONS = {
    "received": "Command received from {source}.",
    "queued": "Queued for clinician review.",
    "approval_recorded": "Approval recorded by {actor}.",
    "approved": "Approved by {actor}.",
    "rejected": "Rejected by {actor}.",
    "approval_timeout": "Approval window elapsed without a decision.",
    "executed": "Applied to the record store.",
    "execution_failed": "Execution failed.",
    "blocked": "Blocked by safety policy.",
}


class ApprovalReviewSummary(BaseModel):
    """A structured summary of one approval record for clinician review."""

    model_config = ConfigDict(frozen=True)

    approval_id: str
    command_id: str
    command_kind: str
    subject_id: str
    status: str
    confidence: float
    source_model: str
    required_approvals: int
    approvers: list[str]
    expires_at: str
    routing_reasons: list[str]
    reasoning: Optional[str] = None
    timeline: list[dict[str, str]]
    generated_at: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize the summary to a dictionary."""
        return {
            "report_type": "Approval Review Summary",
            "disclaimer": (
                "This summary is decision-support material for clinician review. "
                "The proposal was generated by an AI model and has not been "
                "clinically assessed."
            ),
            "approval_id": self.approval_id,
            "command_id": self.command_id,
            "command_kind": self.command_kind,
            "subject_id": self.subject_id,
            "status": self.status,
            "confidence": self.confidence,
            "source_model": self.source_model,
            "required_approvals": self.required_approvals,
            "approvers": self.approvers,
            "expires_at": self.expires_at,
            "routing_reasons": self.routing_reasons,
            "model_reasoning": self.reasoning,
            "timeline": self.timeline,
            "generated_at": self.generated_at,
        }


def generate_review_summary(
    record: ApprovalRecord,
    audit_events: list[AuditEvent] | None = None,
    routing_reasons: list[str] | None = None,
    now: datetime | None = None,
) -> ApprovalReviewSummary:
    """Generate a review summary from an approval record.

    Args:
        record: The approval record under review.
        audit_events: Audit events for the record's command, in timestamp
            order.  When omitted the timeline is built from the record alone.
        routing_reasons: Optional reasons from the policy engine.
        now: Generation timestamp; defaults to the current UTC time.

    Returns:
        An ``ApprovalReviewSummary`` ready for clinician review.
    """
    command = record.command
    reasons = routing_reasons or _reasons_from_events(audit_events or []) or [
        f"{command.kind} requires clinician sign-off "
        f"({record.required_approvals} approver(s))"
    ]
    timeline = (
        _timeline_from_events(audit_events, command.source_model)
        if audit_events
        else _timeline_from_record(record)
    )
    return ApprovalReviewSummary(
        approval_id=record.id,
        command_id=command.command_id,
        command_kind=command.kind,
        subject_id=command.subject_id,
        status=record.status.value,
        confidence=command.confidence,
        source_model=command.source_model,
        required_approvals=record.required_approvals,
        approvers=list(record.approver_ids),
        expires_at=record.expires_at.isoformat(),
        routing_reasons=reasons,
        reasoning=command.reasoning,
        timeline=timeline,
        generated_at=(now or datetime.now(timezone.utc)).isoformat(),
    )


def to_task_resource(record: ApprovalRecord) -> dict[str, Any]:
    """Render an approval record as a task-like resource.

    The serialized command is embedded verbatim so an external queue can
    reconstruct the exact snapshot the reviewer saw.
    """
    command = record.command
    task: dict[str, Any] = {
        "resourceType": "Task",
        "id": record.id,
        "status": _TASK_STATUS[record.status],
        "intent": "proposal",
        "priority": "urgent" if record.required_approvals > 1 else "routine",
        "description": f"Review AI-proposed {command.kind.replace('_', ' ')}",
        "for": command.subject_id,
        "authoredOn": record.created_at.isoformat(),
        "restriction": {"period": {"end": record.expires_at.isoformat()}},
        "input": [
            {"type": "commandId", "value": command.command_id},
            {"type": "commandKind", "value": command.kind},
            {"type": "confidence", "value": command.confidence},
            {"type": "sourceModel", "value": command.source_model},
            {"type": "requiredApprovals", "value": record.required_approvals},
            {"type": "command", "value": json.dumps(
                command.model_dump(mode="json", by_alias=True), sort_keys=True
            )},
        ],
    }
    if record.resolution_note:
        task["note"] = [{"text": record.resolution_note}]
    if record.executed_resource_id:
        task["output"] = [{"type": "resource", "value": record.executed_resource_id}]
    return task


def _reasons_from_events(events: list[AuditEvent]) -> list[str]:
    for event in events:
        if event.event_type.value == "queued" and event.details.get("reason"):
            return [event.details["reason"]]
    return []


def _timeline_from_events(events: list[AuditEvent], source: str) -> list[dict[str, str]]:
    """Build a chronological timeline from audit events."""
    timeline: list[dict[str, str]] = []
    for event in events:
        template = _EVENT_DESCRIPTIONS.get(event.event_type.value, event.event_type.value)
        description = template.format(source=source, actor=event.actor or "system")
        if event.details.get("error"):
            description += f" {event.details['error']}"
        timeline.append({
            "event": event.event_type.value,
            "timestamp": event.timestamp.isoformat(),
            "description": description,
        })
    return timeline


def _timeline_from_record(record: ApprovalRecord) -> list[dict[str, str]]:
    timeline = [{
        "event": "queued",
        "timestamp": record.created_at.isoformat(),
        "description": "Queued for clinician review.",
    }]
    for vote in record.approvals:
        timeline.append({
            "event": "approval_recorded",
            "timestamp": vote.approved_at.isoformat(),
            "description": f"Approval recorded by {vote.actor_id}.",
        })
    if record.status is ApprovalStatus.REJECTED and record.resolved_at:
        timeline.append({
            "event": "rejected",
            "timestamp": record.resolved_at.isoformat(),
            "description": f"Rejected by {record.resolved_by}. Notes: {record.resolution_note}",
        })
    elif record.status is ApprovalStatus.EXPIRED and record.resolved_at:
        timeline.append({
            "event": "approval_timeout",
            "timestamp": record.resolved_at.isoformat(),
            "description": "Approval window elapsed without a decision.",
        })
    return timeline
