"""
Safety Policy Engine -- routing of candidate commands.

``classify()`` is a pure function of ``(command, policy, now)``.  It has
no side effects, touches no store, and is fully deterministic; the
pipeline supplies ``now`` from its injected clock.

Evaluation order (first match wins):

1. confidence below ``min_confidence``        -> BLOCKED ``low_confidence``
2. kind in ``blocked_kinds``                  -> BLOCKED ``kind_blocked``
3. ``now`` inside ``restricted_hours`` and the
   kind is not exempt                         -> BLOCKED ``restricted_hours``
4. kind in ``dual_approval_kinds`` or
   ``approval_required_kinds``, or the command
   sets ``requires_approval``                 -> NEEDS_APPROVAL
5. otherwise                                  -> AUTO_EXECUTE

A routing that is not blocked carries ``warnings`` when ``now`` falls in
the policy's ``quiet_hours``; warnings never change the decision.

DISCLAIMER: Routing decides *who must look at a proposal*, not whether the
proposal is clinically appropriate.
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from chartguard.config import SafetyPolicy
from chartguard.errors import SafetyBlocked
from chartguard.models import Command, CommandKind


class RoutingDecision(str, enum.Enum):
    BLOCKED = "BLOCKED"
    AUTO_EXECUTE = "AUTO_EXECUTE"
    NEEDS_APPROVAL = "NEEDS_APPROVAL"


class Routing(BaseModel):
    """Result of classifying a command against a safety policy."""

    model_config = ConfigDict(frozen=True)

    decision: RoutingDecision
    reason: str = ""
    rule_name: str = ""
    required_approvals: int = Field(default=1, ge=1)
    policy_name: str = ""
    warnings: tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return self.decision is RoutingDecision.BLOCKED

    def to_exception(self) -> SafetyBlocked:
        """Express a BLOCKED routing as the ``SafetyBlocked`` error."""
        if not self.blocked:
            raise ValueError(f"Routing {self.decision.value} is not a block")
        return SafetyBlocked(reason=self.reason, rule_name=self.rule_name)


def blocked(reason: str, rule_name: str, policy_name: str = "") -> Routing:
    return Routing(
        decision=RoutingDecision.BLOCKED, reason=reason, rule_name=rule_name,
        policy_name=policy_name,
    )


# Rule names reported alongside block reasons.
_RULE_NAMES = {
    "low_confidence": "LowConfidenceBlock",
    "kind_blocked": "BlockedKind",
    "restricted_hours": "RestrictedHours",
}

# Which kinds carry a risk profile the engine knows how to route.  Every
# CommandKind must appear here; tests assert exhaustiveness.
HANDLED_KINDS: frozenset[CommandKind] = frozenset({
    CommandKind.FLAG_ABNORMAL_RESULT,
    CommandKind.CREATE_NOTE_DRAFT,
    CommandKind.PROPOSE_PROBLEM_UPDATE,
    CommandKind.SUGGEST_BILLING_CODES,
    CommandKind.SUGGEST_MEDICATION_CHANGE,
    CommandKind.QUEUE_REFERRAL_LETTER,
    CommandKind.SUMMARIZE_PATIENT_HISTORY,
})


def _warnings(command: Command, policy: SafetyPolicy, now: datetime) -> tuple[str, ...]:
    quiet = policy.quiet_hours
    if quiet is None or command.command_kind in quiet.exempt_kinds:
        return ()
    if not quiet.contains(now.timetz()):
        return ()
    return (
        f"Proposed during quiet hours ({quiet.start:%H:%M}-{quiet.end:%H:%M})",
    )


def classify(command: Command, policy: SafetyPolicy, now: datetime) -> Routing:
    """Route a validated command according to ``policy`` at time ``now``.

    Args:
        command: A command produced by ``chartguard.validation.validate``.
        policy: The policy snapshot for this evaluation.
        now: Evaluation time; compared against ``restricted_hours``.

    Returns:
        A ``Routing``.  NEEDS_APPROVAL routings for dual-approval kinds
        carry ``required_approvals = policy.required_approvers``.
    """
    kind = command.command_kind
    if kind not in HANDLED_KINDS:
        # A new kind added to the model without routing support is never
        # allowed through silently.
        return blocked("unsupported_kind", "UnsupportedKind", policy.name)

    if command.confidence < policy.min_confidence:
        return blocked("low_confidence", _RULE_NAMES["low_confidence"], policy.name)

    if kind in policy.blocked_kinds:
        return blocked("kind_blocked", _RULE_NAMES["kind_blocked"], policy.name)

    window = policy.restricted_hours
    if (
        window is not None
        and kind not in window.exempt_kinds
        and window.contains(now.timetz())
    ):
        return blocked("restricted_hours", _RULE_NAMES["restricted_hours"], policy.name)

    warnings = _warnings(command, policy, now)
    if kind in policy.dual_approval_kinds:
        return Routing(
            decision=RoutingDecision.NEEDS_APPROVAL,
            reason="dual_approval_kind",
            required_approvals=policy.required_approvers,
            policy_name=policy.name,
            warnings=warnings,
        )
    if kind in policy.approval_required_kinds:
        # the producer's requires_approval flag cannot waive this
        return Routing(
            decision=RoutingDecision.NEEDS_APPROVAL,
            reason="approval_required_kind",
            policy_name=policy.name,
            warnings=warnings,
        )
    if command.requires_approval:
        return Routing(
            decision=RoutingDecision.NEEDS_APPROVAL,
            reason="approval_requested",
            policy_name=policy.name,
            warnings=warnings,
        )
    return Routing(
        decision=RoutingDecision.AUTO_EXECUTE, policy_name=policy.name, warnings=warnings,
    )
