"""
Error taxonomy for the ChartGuard governance pipeline.

Validation failures are *values* (``ValidationError``) returned by
``chartguard.validation.validate`` -- malformed model output is expected
and never raises.  Everything else is an exception raised where the
failure happens and handled by the pipeline, which turns it into an audit
event and a caller-facing outcome.

The one exception that must never be swallowed is ``AuditAppendError``:
an operation whose audit trail cannot be written is treated as failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ValidationError:
    """A malformed candidate command.

    ``field`` is the dotted path of the first offending field (``"kind"``
    for unknown or missing kinds, ``""`` when the input is not a mapping).
    """

    field: str
    reason: str

    def __str__(self) -> str:
        if self.field:
            return f"{self.field}: {self.reason}"
        return self.reason


class GovernanceError(Exception):
    """Base class for all ChartGuard errors."""


class SafetyBlocked(GovernanceError):
    """Raised when a command is rejected by the safety policy."""

    def __init__(self, reason: str, rule_name: str) -> None:
        super().__init__(f"Command blocked by rule '{rule_name}': {reason}")
        self.reason = reason
        self.rule_name = rule_name


class NotFoundError(GovernanceError, KeyError):
    """Raised when a command, approval, or resource id is unknown."""

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(f"{entity} '{identifier}' not found")
        self.entity = entity
        self.identifier = identifier

    def __str__(self) -> str:
        return self.args[0]


class InvalidStateTransition(GovernanceError):
    """Raised when an approval record cannot move to the requested state.

    ``expired_record`` is set when the attempted resolution found the
    record past its expiry and expired it; the caller is responsible for
    auditing that timeout.
    """

    def __init__(
        self,
        current: str,
        attempted: str,
        message: str = "",
        expired_record: Optional[object] = None,
    ) -> None:
        super().__init__(
            message or f"Cannot transition approval from {current} to {attempted}"
        )
        self.current = current
        self.attempted = attempted
        self.expired_record = expired_record


class DuplicateApproverError(InvalidStateTransition):
    """Raised when the same actor approves a dual-approval record twice."""


class ExecutionError(GovernanceError):
    """Base class for failures while applying a command to the record store."""

    retryable = False

    def __init__(self, cause: str, attempts: int = 1) -> None:
        super().__init__(cause)
        self.cause = cause
        self.attempts = attempts


class RetryableExecutionError(ExecutionError):
    """Transient failure; the executor retries it with backoff."""

    retryable = True


class TerminalExecutionError(ExecutionError):
    """A retryable failure that exhausted its retry budget."""


class NonRetryableExecutionError(ExecutionError):
    """Execution-time validation failure (e.g. the subject no longer exists)."""


class TransientStoreError(GovernanceError):
    """Raised by a record store when it is temporarily unavailable."""


class SubjectNotFoundError(GovernanceError):
    """Raised by a record store when the referenced subject does not exist."""


class AuditAppendError(GovernanceError):
    """Raised when an audit event could not be durably appended.

    This is fatal to the enclosing operation.
    """


class ParseError(GovernanceError):
    """Raised when model output cannot be turned into a candidate command."""
