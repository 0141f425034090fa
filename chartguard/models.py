"""
Core data models for the ChartGuard command governance pipeline.

A *candidate command* is an action proposed by an AI agent against the
clinical record store.  Commands form a closed, discriminated union over
``kind`` -- one frozen model per kind sharing ``CommandBase`` -- so the
policy engine and executor can match on kind exhaustively instead of
inspecting loosely-typed mappings.

Wire input uses the camelCase names of the agent-facing schema
(``requiresApproval``, ``sourceModel``, ``subjectId``); snake_case field
names are accepted as well.

DISCLAIMER: Commands are proposals for clinician review.  Nothing in this
module performs clinical assessment or writes to a patient record.
"""

from __future__ import annotations

import enum
import math
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CommandKind(str, enum.Enum):
    """Every command kind the pipeline knows how to govern."""

    FLAG_ABNORMAL_RESULT = "flag_abnormal_result"
    CREATE_NOTE_DRAFT = "create_note_draft"
    PROPOSE_PROBLEM_UPDATE = "propose_problem_update"
    SUGGEST_BILLING_CODES = "suggest_billing_codes"
    SUGGEST_MEDICATION_CHANGE = "suggest_medication_change"
    QUEUE_REFERRAL_LETTER = "queue_referral_letter"
    SUMMARIZE_PATIENT_HISTORY = "summarize_patient_history"


class ApprovalStatus(str, enum.Enum):
    """Lifecycle states of an approval record.

    ``PENDING`` is the only non-terminal state.  A record moves to exactly
    one of the terminal states and never leaves it.
    """

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class Decision(str, enum.Enum):
    """A human reviewer's decision on a pending approval."""

    APPROVE = "approve"
    REJECT = "reject"


class Role(str, enum.Enum):
    """Roles used for approver checks and audit access.

    ``SYSTEM`` is the pipeline itself (sweeps, auto-execution).
    """

    PRACTITIONER = "PRACTITIONER"
    NURSE = "NURSE"
    PHARMACIST = "PHARMACIST"
    BILLING_SPECIALIST = "BILLING_SPECIALIST"
    ADMIN = "ADMIN"
    AUDITOR = "AUDITOR"
    SYSTEM = "SYSTEM"


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


def _check_unit_interval(value: Any) -> Any:
    # bool is an int subclass; "0.9" would be coerced in lax mode
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("must be a number between 0 and 1")
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ValueError(f"must be within [0, 1], got {value}")
    return float(value)


def _new_command_id() -> str:
    return f"cmd-{uuid.uuid4().hex}"


class CodedConcept(_WireModel):
    """A coded clinical concept (condition, medication)."""

    code: str = Field(..., min_length=1)
    system: str = Field(..., min_length=1)
    display: str = Field(default="")


class BillingCode(_WireModel):
    """One suggested billing code with its own model confidence."""

    code: str = Field(..., min_length=1)
    system: Literal["CPT", "ICD-10-CM", "ICD-10-PCS", "HCPCS"]
    display: str = Field(default="")
    confidence: float
    rationale: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def confidence_in_range(cls, v: Any) -> float:
        return _check_unit_interval(v)


class MedicationInteraction(_WireModel):
    medication: str
    severity: Literal["minor", "moderate", "major"]
    description: str = ""


class NoteSections(_WireModel):
    chief_complaint: Optional[str] = None
    history_of_present_illness: Optional[str] = None
    review_of_systems: Optional[str] = None
    physical_exam: Optional[str] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None


# ---------------------------------------------------------------------------
# Command variants
# ---------------------------------------------------------------------------

class CommandBase(_WireModel):
    """Fields shared by every candidate command.

    ``command_id`` is the idempotency key for execution; it is generated
    when the upstream producer does not supply one.
    """

    command_id: str = Field(
        default_factory=_new_command_id,
        min_length=1,
        description="Stable identifier; idempotency key for execution.",
    )
    confidence: float = Field(
        ...,
        description="Model confidence in [0, 1].",
    )
    requires_approval: bool = Field(
        default=True,
        description="Whether the producer asks for explicit human sign-off.",
    )
    source_model: str = Field(
        ...,
        min_length=1,
        description="Identifier of the model that proposed the command.",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp at which the command was proposed.",
    )
    subject_id: str = Field(
        ...,
        min_length=1,
        description="Patient / record reference the command acts on.",
    )
    reasoning: Optional[str] = Field(
        default=None,
        description="Free-text explanation supplied by the model.",
    )
    prompt_template: Optional[str] = None
    retrieval_sources: tuple[str, ...] = ()

    @field_validator("confidence", mode="before")
    @classmethod
    def confidence_in_range(cls, v: Any) -> float:
        return _check_unit_interval(v)

    @field_validator("created_at")
    @classmethod
    def created_at_is_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def command_kind(self) -> CommandKind:
        return CommandKind(self.kind)  # type: ignore[attr-defined]


class FlagAbnormalResult(CommandBase):
    kind: Literal["flag_abnormal_result"]
    observation_id: str = Field(..., min_length=1)
    severity: Literal["low", "medium", "high", "critical"]
    interpretation: str = Field(..., min_length=1)
    suggested_actions: tuple[str, ...] = ()
    requires_approval: bool = False


class CreateNoteDraft(CommandBase):
    kind: Literal["create_note_draft"]
    encounter_id: str = Field(..., min_length=1)
    note_type: Literal["progress", "discharge", "consultation", "procedure", "history"]
    content: str = Field(..., min_length=1)
    sections: Optional[NoteSections] = None


class ProposeProblemUpdate(CommandBase):
    kind: Literal["propose_problem_update"]
    action: Literal["add", "resolve", "update"]
    condition: CodedConcept
    condition_id: Optional[str] = Field(
        default=None,
        description="Existing condition to resolve or update.",
    )
    clinical_status: Optional[
        Literal["active", "recurrence", "relapse", "inactive", "remission", "resolved"]
    ] = None
    verification_status: Optional[
        Literal["unconfirmed", "provisional", "differential", "confirmed"]
    ] = None
    severity: Optional[Literal["mild", "moderate", "severe"]] = None
    onset_date: Optional[str] = None


class SuggestBillingCodes(CommandBase):
    kind: Literal["suggest_billing_codes"]
    encounter_id: str = Field(..., min_length=1)
    suggested_codes: tuple[BillingCode, ...] = Field(..., min_length=1)


class SuggestMedicationChange(CommandBase):
    kind: Literal["suggest_medication_change"]
    action: Literal["start", "stop", "modify", "substitute"]
    medication: CodedConcept
    current_medication_id: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    rationale: str = Field(..., min_length=1)
    interactions: tuple[MedicationInteraction, ...] = ()


class QueueReferralLetter(CommandBase):
    kind: Literal["queue_referral_letter"]
    referring_practitioner_id: str = Field(..., min_length=1)
    recipient_practitioner_id: Optional[str] = None
    specialty: str = Field(..., min_length=1)
    urgency: Literal["routine", "urgent", "emergent"]
    reason_for_referral: str = Field(..., min_length=1)
    clinical_summary: str = Field(..., min_length=1)
    specific_questions: tuple[str, ...] = ()


class SummarizePatientHistory(CommandBase):
    kind: Literal["summarize_patient_history"]
    summary_type: Literal[
        "comprehensive", "problem-focused", "medication", "surgical", "social"
    ]
    summary: str = Field(..., min_length=1)
    key_findings: tuple[str, ...] = ()
    requires_approval: bool = False


Command = Annotated[
    Union[
        FlagAbnormalResult,
        CreateNoteDraft,
        ProposeProblemUpdate,
        SuggestBillingCodes,
        SuggestMedicationChange,
        QueueReferralLetter,
        SummarizePatientHistory,
    ],
    Field(discriminator="kind"),
]
"""The closed union of candidate commands, discriminated by ``kind``."""

COMMAND_TYPES: dict[CommandKind, type[CommandBase]] = {
    CommandKind.FLAG_ABNORMAL_RESULT: FlagAbnormalResult,
    CommandKind.CREATE_NOTE_DRAFT: CreateNoteDraft,
    CommandKind.PROPOSE_PROBLEM_UPDATE: ProposeProblemUpdate,
    CommandKind.SUGGEST_BILLING_CODES: SuggestBillingCodes,
    CommandKind.SUGGEST_MEDICATION_CHANGE: SuggestMedicationChange,
    CommandKind.QUEUE_REFERRAL_LETTER: QueueReferralLetter,
    CommandKind.SUMMARIZE_PATIENT_HISTORY: SummarizePatientHistory,
}


# ---------------------------------------------------------------------------
# Approval records
# ---------------------------------------------------------------------------

class ApprovalVote(BaseModel):
    """One approving actor on a (possibly dual-approval) record."""

    model_config = ConfigDict(frozen=True)

    actor_id: str
    approved_at: datetime
    note: str = ""


class ApprovalRecord(BaseModel):
    """Durable human-review lifecycle for a single command.

    Owned by ``ApprovalStateMachine``.  Records are immutable values: every
    transition produces a new record with ``version`` incremented, which
    the store accepts only through a compare-and-swap on
    ``(status == PENDING, version)``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: f"apr-{uuid.uuid4().hex}",
        description="Unique approval identifier.",
    )
    command: Command = Field(
        ...,
        description="Immutable snapshot of the validated command; source of truth for execution.",
    )
    status: ApprovalStatus = Field(default=ApprovalStatus.PENDING)
    created_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    executed_resource_id: Optional[str] = None
    required_approvals: int = Field(
        default=1,
        ge=1,
        description="Distinct approving actors needed before APPROVED.",
    )
    approvals: tuple[ApprovalVote, ...] = Field(
        default=(),
        description="Approving actors recorded so far (partial approval state).",
    )
    version: int = Field(default=0, ge=0)

    @property
    def command_id(self) -> str:
        return self.command.command_id

    @property
    def approver_ids(self) -> tuple[str, ...]:
        return tuple(v.actor_id for v in self.approvals)

    @property
    def approvals_remaining(self) -> int:
        return max(self.required_approvals - len(self.approvals), 0)
