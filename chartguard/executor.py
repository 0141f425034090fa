"""
Command Executor -- applies governed commands to the record store.

Only the pipeline calls the executor, and only for commands routed
AUTO_EXECUTE or whose approval record reached APPROVED.  Each kind maps to
exactly one resource builder; ``RESOURCE_BUILDERS`` covers every
``CommandKind`` (tests assert exhaustiveness).

**Idempotency:** keyed by ``command_id``.  Before creating anything the
executor consults its ``ExecutionLedger`` and then the record store's
identifier index, so a retried execution -- including one where the
resource was created but the ledger write never happened -- returns the
original resource id instead of creating a duplicate.

**Failure taxonomy:**

* transient store unavailability -> retried with exponential backoff
  (default 3 attempts), then ``TerminalExecutionError``;
* execution-time validation failures (subject missing, unsupported
  action) and unexpected record-store exceptions ->
  ``NonRetryableExecutionError``, never retried.

Every resource carries ``Provenance``: source model, confidence, prompt
template, retrieval sources, approval id and approving actors.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from chartguard.errors import (
    ExecutionError,
    NonRetryableExecutionError,
    RetryableExecutionError,
    SubjectNotFoundError,
    TerminalExecutionError,
    TransientStoreError,
)
from chartguard.models import (
    Command,
    CommandKind,
    CreateNoteDraft,
    FlagAbnormalResult,
    ProposeProblemUpdate,
    QueueReferralLetter,
    SuggestBillingCodes,
    SuggestMedicationChange,
    SummarizePatientHistory,
)
from chartguard.record_store import ClinicalResource, Provenance, RecordStore
from chartguard.retry import RetryPolicy
from chartguard.store import ExecutionLedger, InMemoryExecutionLedger

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resource builders
# ---------------------------------------------------------------------------

def _flag(cmd: FlagAbnormalResult) -> tuple[str, dict[str, Any]]:
    return "Flag", {
        "status": "active",
        "category": "clinical",
        "code": f"AI Alert: {cmd.interpretation}",
        "severity": cmd.severity,
        "observation": f"Observation/{cmd.observation_id}",
        "suggested_actions": list(cmd.suggested_actions),
    }


def _note(cmd: CreateNoteDraft) -> tuple[str, dict[str, Any]]:
    body: dict[str, Any] = {
        "status": "current",
        "doc_status": "preliminary",
        "type": f"{cmd.note_type} note",
        "encounter": f"Encounter/{cmd.encounter_id}",
        "content": cmd.content,
    }
    if cmd.sections is not None:
        body["sections"] = cmd.sections.model_dump(exclude_none=True)
    return "DocumentReference", body


def _problem(cmd: ProposeProblemUpdate) -> tuple[str, dict[str, Any]]:
    body: dict[str, Any] = {
        "code": cmd.condition.model_dump(),
        "verification_status": cmd.verification_status or "provisional",
    }
    if cmd.action == "add":
        body["clinical_status"] = cmd.clinical_status or "active"
    else:
        if not cmd.condition_id:
            raise NonRetryableExecutionError(
                f"Problem '{cmd.action}' requires an existing condition id"
            )
        body["replaces"] = f"Condition/{cmd.condition_id}"
        body["clinical_status"] = (
            "resolved" if cmd.action == "resolve" else cmd.clinical_status or "active"
        )
    if cmd.severity:
        body["severity"] = cmd.severity
    if cmd.onset_date:
        body["onset"] = cmd.onset_date
    return "Condition", body


def _billing(cmd: SuggestBillingCodes) -> tuple[str, dict[str, Any]]:
    diagnosis = [c for c in cmd.suggested_codes if c.system == "ICD-10-CM"]
    procedures = [c for c in cmd.suggested_codes if c.system == "ICD-10-PCS"]
    items = [c for c in cmd.suggested_codes if c.system in ("CPT", "HCPCS")]
    return "Claim", {
        "status": "draft",
        "use": "claim",
        "encounter": f"Encounter/{cmd.encounter_id}",
        "diagnosis": [{"sequence": i + 1, "code": c.code, "display": c.display}
                      for i, c in enumerate(diagnosis)],
        "procedure": [{"sequence": i + 1, "code": c.code, "display": c.display}
                      for i, c in enumerate(procedures)],
        "item": [{"sequence": i + 1, "system": c.system, "code": c.code, "display": c.display}
                 for i, c in enumerate(items)],
    }


def _medication(cmd: SuggestMedicationChange) -> tuple[str, dict[str, Any]]:
    body: dict[str, Any] = {
        "status": "draft",
        "intent": "proposal",
        "action": cmd.action,
        "medication": cmd.medication.model_dump(),
        "reason": cmd.rationale,
    }
    for key in ("current_medication_id", "dosage", "frequency", "duration"):
        value = getattr(cmd, key)
        if value:
            body[key] = value
    if cmd.interactions:
        body["interactions"] = [i.model_dump() for i in cmd.interactions]
    return "MedicationRequest", body


_REFERRAL_PRIORITY = {"routine": "routine", "urgent": "urgent", "emergent": "stat"}


def _referral(cmd: QueueReferralLetter) -> tuple[str, dict[str, Any]]:
    body: dict[str, Any] = {
        "status": "draft",
        "intent": "proposal",
        "priority": _REFERRAL_PRIORITY[cmd.urgency],
        "code": f"Referral to {cmd.specialty}",
        "requester": f"Practitioner/{cmd.referring_practitioner_id}",
        "reason": cmd.reason_for_referral,
        "note": cmd.clinical_summary,
        "questions": list(cmd.specific_questions),
    }
    if cmd.recipient_practitioner_id:
        body["performer"] = f"Practitioner/{cmd.recipient_practitioner_id}"
    return "ServiceRequest", body


def _summary(cmd: SummarizePatientHistory) -> tuple[str, dict[str, Any]]:
    return "DocumentReference", {
        "status": "current",
        "type": f"AI-generated {cmd.summary_type} summary",
        "content": cmd.summary,
        "key_findings": list(cmd.key_findings),
    }


RESOURCE_BUILDERS: dict[CommandKind, Callable[[Any], tuple[str, dict[str, Any]]]] = {
    CommandKind.FLAG_ABNORMAL_RESULT: _flag,
    CommandKind.CREATE_NOTE_DRAFT: _note,
    CommandKind.PROPOSE_PROBLEM_UPDATE: _problem,
    CommandKind.SUGGEST_BILLING_CODES: _billing,
    CommandKind.SUGGEST_MEDICATION_CHANGE: _medication,
    CommandKind.QUEUE_REFERRAL_LETTER: _referral,
    CommandKind.SUMMARIZE_PATIENT_HISTORY: _summary,
}


def build_resource(
    command: Command,
    approval_id: Optional[str] = None,
    approved_by: tuple[str, ...] = (),
) -> ClinicalResource:
    """Translate a command into the resource it would create.

    Raises:
        NonRetryableExecutionError: If the command cannot be expressed as a
            resource (unsupported kind or action).
    """
    builder = RESOURCE_BUILDERS.get(command.command_kind)
    if builder is None:
        raise NonRetryableExecutionError(f"No resource builder for kind '{command.kind}'")
    resource_type, body = builder(command)
    provenance = Provenance(
        command_id=command.command_id,
        command_kind=command.kind,
        source_model=command.source_model,
        confidence=command.confidence,
        prompt_template=command.prompt_template,
        retrieval_sources=command.retrieval_sources,
        approval_id=approval_id,
        approved_by=approved_by,
        clinician_action="accepted" if approval_id else "auto",
    )
    return ClinicalResource(
        resource_type=resource_type,
        subject_id=command.subject_id,
        identifier=command.command_id,
        body=body,
        provenance=provenance,
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class CommandExecutor:
    """Performs governed mutations against a ``RecordStore``.

    Args:
        record_store: External record store.
        ledger: Idempotency ledger shared by all pipeline instances.
        max_attempts: Attempts for transient failures (default 3).
        base_delay: First backoff delay in seconds.
        sleep: Injectable sleep, for tests.
    """

    def __init__(
        self,
        record_store: RecordStore,
        ledger: Optional[ExecutionLedger] = None,
        max_attempts: int = 3,
        base_delay: float = 0.2,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._record_store = record_store
        self._ledger = ledger if ledger is not None else InMemoryExecutionLedger()
        retry_kwargs: dict[str, Any] = {}
        if sleep is not None:
            retry_kwargs["sleep"] = sleep
        self._retry = RetryPolicy(
            max_attempts=max_attempts,
            base_delay=base_delay,
            exceptions=(RetryableExecutionError,),
            **retry_kwargs,
        )

    @property
    def ledger(self) -> ExecutionLedger:
        return self._ledger

    def execute(
        self,
        command: Command,
        approval_id: Optional[str] = None,
        approved_by: tuple[str, ...] = (),
    ) -> str:
        """Apply ``command`` and return the resulting resource id.

        Re-invoking with the same ``command_id`` returns the original
        resource id.

        Raises:
            TerminalExecutionError: Transient failures exhausted the retries.
            NonRetryableExecutionError: The command cannot be applied.
        """
        command_id = command.command_id
        existing = self._ledger.get(command_id)
        if existing is not None:
            logger.info("Command %s already executed as %s", command_id, existing)
            return existing

        resource = build_resource(command, approval_id, approved_by)
        attempts = 0

        def attempt() -> str:
            nonlocal attempts
            attempts += 1
            try:
                prior = self._record_store.find_by_identifier(command_id)
                if prior is not None:
                    return prior
                if not self._record_store.subject_exists(command.subject_id):
                    raise NonRetryableExecutionError(
                        f"Subject '{command.subject_id}' no longer exists", attempts
                    )
                return self._record_store.create(resource)
            except TransientStoreError as exc:
                raise RetryableExecutionError(str(exc), attempts) from exc
            except SubjectNotFoundError as exc:
                raise NonRetryableExecutionError(str(exc), attempts) from exc
            except ExecutionError:
                raise
            except Exception as exc:
                # unknown client or driver failure; not known to be safe to retry
                logger.exception("Record store raised unexpectedly for command %s", command_id)
                raise NonRetryableExecutionError(
                    f"{type(exc).__name__}: {exc}", attempts
                ) from exc

        try:
            resource_id = self._retry.call(attempt)
        except RetryableExecutionError as exc:
            raise TerminalExecutionError(
                f"Record store unavailable after {attempts} attempt(s): {exc.cause}",
                attempts,
            ) from exc
        stored = self._ledger.put_if_absent(command_id, resource_id)
        logger.info("Executed command %s (%s) -> %s", command_id, command.kind, stored)
        return stored
