"""
Append-Only, Tamper-Evident Audit Log (Hash-Chained).

Every decision the governance pipeline makes -- command received, blocked,
queued, approved, rejected, timed out, executed, execution failed -- is
recorded as an immutable ``AuditEvent``.  Events are linked via a SHA-256
hash chain: if any stored event is modified after the fact,
``AuditLog.verify_chain()`` detects the inconsistency.

**Storage:** ``AuditLog`` is a facade over an injected ``AuditStore``.
``InMemoryAuditStore`` serves tests and single-process use;
``chartguard.sql_store.SqlAuditStore`` is the durable backend shared by
several pipeline instances.  Stores assign ``sequence`` and
``previous_hash`` atomically with the insert, so concurrent appenders
cannot fork the chain.

**Failure policy:** the audit append path must never fail silently.  Any
store error is re-raised as ``AuditAppendError`` and aborts the enclosing
operation.

**Batch semantics:** ``record_batch()`` is all-or-nothing.  Either every
event in the batch is appended (contiguously, in order) or none is.

DISCLAIMER: Audit events support governance review.  They must not carry
free-text PHI beyond identifiers; exports are redacted.
"""

from __future__ import annotations

import abc
import enum
import hashlib
import json
import logging
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from chartguard.errors import AuditAppendError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Every auditable transition of a command.

    Valid paths per ``command_id``::

        received -> blocked
        received -> executed | execution_failed
        received -> queued -> approval_recorded* ->
            approved -> executed | execution_failed
            rejected
            approval_timeout
    """

    RECEIVED = "received"
    BLOCKED = "blocked"
    QUEUED = "queued"
    APPROVAL_RECORDED = "approval_recorded"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "approval_timeout"
    EXECUTED = "executed"
    EXECUTION_FAILED = "execution_failed"


TERMINAL_EVENT_TYPES = frozenset({
    AuditEventType.BLOCKED,
    AuditEventType.REJECTED,
    AuditEventType.EXPIRED,
    AuditEventType.EXECUTED,
    AuditEventType.EXECUTION_FAILED,
})


class AuditOutcome(str, enum.Enum):
    SUCCESS = "success"
    MINOR_FAILURE = "minor_failure"
    SERIOUS_FAILURE = "serious_failure"


# ---------------------------------------------------------------------------
# Audit event model
# ---------------------------------------------------------------------------

class AuditEvent(BaseModel):
    """A single immutable audit event.

    ``sequence`` and ``previous_hash`` are assigned by the store when the
    event is appended.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit event (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the event.",
    )
    event_type: AuditEventType
    command_id: str = Field(..., description="Command the event belongs to.")
    approval_id: Optional[str] = None
    subject_id: str = Field(default="", description="Patient / record reference.")
    actor: Optional[str] = Field(
        default=None,
        description="Human actor, or None for system transitions.",
    )
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    details: dict[str, str] = Field(default_factory=dict)
    sequence: int = Field(default=-1, description="Position in the chain.")
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous event's canonical representation. "
            "Empty string for the first event in the chain."
        ),
    )

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing.

        Uses sorted JSON serialization to ensure consistent ordering.
        """
        data = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "command_id": self.command_id,
            "approval_id": self.approval_id,
            "subject_id": self.subject_id,
            "actor": self.actor,
            "outcome": self.outcome.value,
            "details": self.details,
            "sequence": self.sequence,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        """Compute the SHA-256 hash of this event's canonical representation."""
        return hashlib.sha256(self.canonical_bytes()).hexdigest()

    def chained(self, sequence: int, previous_hash: str) -> "AuditEvent":
        """Return a copy positioned in the chain."""
        return self.model_copy(
            update={"sequence": sequence, "previous_hash": previous_hash}
        )


class AuditQuery(BaseModel):
    """Filters for ``AuditLog.query``.  All filters are ANDed."""

    model_config = ConfigDict(frozen=True)

    command_id: Optional[str] = None
    approval_id: Optional[str] = None
    subject_id: Optional[str] = None
    actor_id: Optional[str] = None
    event_type: Optional[AuditEventType] = None
    time_start: Optional[datetime] = None
    time_end: Optional[datetime] = None

    def matches(self, event: AuditEvent) -> bool:
        if self.command_id is not None and event.command_id != self.command_id:
            return False
        if self.approval_id is not None and event.approval_id != self.approval_id:
            return False
        if self.subject_id is not None and event.subject_id != self.subject_id:
            return False
        if self.actor_id is not None and event.actor != self.actor_id:
            return False
        if self.event_type is not None and event.event_type != self.event_type:
            return False
        if self.time_start is not None and event.timestamp < self.time_start:
            return False
        if self.time_end is not None and event.timestamp > self.time_end:
            return False
        return True


# ---------------------------------------------------------------------------
# PHI redaction patterns
# ---------------------------------------------------------------------------

# Patterns that might appear in details and should be redacted before export.
_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "dob": re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),  # ISO date as potential DOB
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
}

# Keys that are likely to contain PII/PHI and should be fully redacted.
_PHI_KEYS = {"name", "full_name", "first_name", "last_name", "dob", "date_of_birth",
             "ssn", "social_security", "email", "phone", "address", "zip_code"}


def redact_phi(details: dict[str, Any]) -> dict[str, Any]:
    """Strip values matching PHI patterns from event details before export.

    Sensitive fields are replaced with ``[REDACTED]`` markers.  Apply this
    before any audit export that leaves the secure environment.
    """
    redacted: dict[str, Any] = {}
    for key, value in details.items():
        if key.lower() in _PHI_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted_value = value
            for pattern_name, pattern in _PHI_PATTERNS.items():
                redacted_value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", redacted_value)
            redacted[key] = redacted_value
        elif isinstance(value, dict):
            redacted[key] = redact_phi(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class AuditStore(abc.ABC):
    """Append-only storage for audit events.

    Implementations must make each append (and each batch) atomic with
    respect to the chain head: ``sequence`` and ``previous_hash`` are
    derived from the last stored event inside the same critical section or
    transaction as the insert.
    """

    @abc.abstractmethod
    def append(self, event: AuditEvent) -> AuditEvent:
        """Chain and persist one event; return the stored copy."""

    @abc.abstractmethod
    def append_batch(self, events: list[AuditEvent]) -> list[AuditEvent]:
        """Chain and persist all events, or none of them."""

    @abc.abstractmethod
    def all(self) -> list[AuditEvent]:
        """Every stored event in chain (sequence) order."""

    def stored_hash(self, index: int) -> Optional[str]:
        """Hash recorded at append time for position ``index``, if the store keeps one."""
        return None

    def query(self, query: AuditQuery) -> list[AuditEvent]:
        return [e for e in self.all() if query.matches(e)]

    def __len__(self) -> int:
        return len(self.all())


class InMemoryAuditStore(AuditStore):
    """Process-local audit store guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[AuditEvent] = []
        self._hashes: list[str] = []  # parallel list of computed hashes

    def append(self, event: AuditEvent) -> AuditEvent:
        with self._lock:
            return self._append_locked(event)

    def append_batch(self, events: list[AuditEvent]) -> list[AuditEvent]:
        with self._lock:
            chained: list[AuditEvent] = []
            previous = self._hashes[-1] if self._hashes else ""
            base = len(self._events)
            # build the whole batch before touching state
            for offset, event in enumerate(events):
                item = event.chained(base + offset, previous)
                previous = item.compute_hash()
                chained.append(item)
            self._events.extend(chained)
            self._hashes.extend(e.compute_hash() for e in chained)
            return list(chained)

    def _append_locked(self, event: AuditEvent) -> AuditEvent:
        previous = self._hashes[-1] if self._hashes else ""
        stored = event.chained(len(self._events), previous)
        self._events.append(stored)
        self._hashes.append(stored.compute_hash())
        return stored

    def stored_hash(self, index: int) -> Optional[str]:
        with self._lock:
            return self._hashes[index] if index < len(self._hashes) else None

    def all(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        return len(self._events)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only, tamper-evident audit log with SHA-256 hash chaining.

    This class provides:

    * **Append-only writes** -- there are no ``update()`` or ``delete()``
      methods.
    * **Fatal append failures** -- any store error surfaces as
      ``AuditAppendError``.
    * **Hash chain verification** -- ``verify_chain()`` walks the full log
      and reports the first broken link.
    * **Filtered queries** by command, approval, subject, actor, event type
      and time range, returned in timestamp order.
    * **PHI redaction on export** -- ``export_for_review()``.
    """

    def __init__(
        self,
        store: Optional[AuditStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store if store is not None else InMemoryAuditStore()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def store(self) -> AuditStore:
        return self._store

    def new_event(
        self,
        event_type: AuditEventType,
        command_id: str,
        *,
        subject_id: str = "",
        approval_id: Optional[str] = None,
        actor: Optional[str] = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        """Build (but do not append) an event stamped with the log's clock."""
        return AuditEvent(
            timestamp=self._clock(),
            event_type=event_type,
            command_id=command_id,
            approval_id=approval_id,
            subject_id=subject_id,
            actor=actor,
            outcome=outcome,
            details={k: str(v) for k, v in (details or {}).items()},
        )

    def record(self, event_type: AuditEventType, command_id: str, **kwargs: Any) -> AuditEvent:
        """Build and append one event.

        Raises:
            AuditAppendError: If the store could not persist the event.
        """
        return self.append(self.new_event(event_type, command_id, **kwargs))

    def append(self, event: AuditEvent) -> AuditEvent:
        try:
            stored = self._store.append(event)
        except Exception as exc:
            logger.critical(
                "Audit append failed for %s/%s: %s",
                event.command_id, event.event_type.value, exc,
            )
            raise AuditAppendError(
                f"Failed to append audit event {event.event_type.value} "
                f"for command {event.command_id}: {exc}"
            ) from exc
        logger.debug(
            "audit #%d %s command=%s approval=%s",
            stored.sequence, stored.event_type.value, stored.command_id, stored.approval_id,
        )
        return stored

    def record_batch(self, events: Iterable[AuditEvent]) -> list[AuditEvent]:
        """Append several events atomically (all-or-nothing).

        Raises:
            AuditAppendError: If the batch could not be persisted; no event
                from the batch is stored in that case.
        """
        batch = list(events)
        if not batch:
            return []
        try:
            return self._store.append_batch(batch)
        except Exception as exc:
            logger.critical("Audit batch append of %d events failed: %s", len(batch), exc)
            raise AuditAppendError(
                f"Failed to append audit batch of {len(batch)} events: {exc}"
            ) from exc

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            A tuple of ``(valid, broken_at)`` where ``valid`` is True if
            the entire chain is intact, and ``broken_at`` is the sequence
            index of the first broken link (or None if valid).
        """
        events = self._store.all()
        if not events:
            return (True, None)

        for i, event in enumerate(events):
            if event.sequence != i:
                return (False, i)
            if i == 0:
                if event.previous_hash != "":
                    return (False, 0)
            else:
                expected_prev_hash = events[i - 1].compute_hash()
                if event.previous_hash != expected_prev_hash:
                    return (False, i)
            stored_hash = self._store.stored_hash(i)
            if stored_hash is not None and stored_hash != event.compute_hash():
                return (False, i)

        return (True, None)

    def query(
        self,
        command_id: Optional[str] = None,
        approval_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEvent]:
        """Read-only filtered query, in timestamp order."""
        query = AuditQuery(
            command_id=command_id,
            approval_id=approval_id,
            subject_id=subject_id,
            actor_id=actor_id,
            event_type=event_type,
            time_start=time_start,
            time_end=time_end,
        )
        results = self._store.query(query)
        return sorted(results, key=lambda e: (e.timestamp, e.sequence))

    def events_for_command(self, command_id: str) -> list[AuditEvent]:
        return self.query(command_id=command_id)

    def event_types_for_command(self, command_id: str) -> list[AuditEventType]:
        return [e.event_type for e in self.events_for_command(command_id)]

    def export_for_review(
        self,
        subject_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable export bundle for compliance review.

        Applies PHI redaction to all details and includes the chain
        verification result in the bundle.
        """
        events = self.query(
            subject_id=subject_id, time_start=time_start, time_end=time_end
        )

        redacted_events = []
        for event in events:
            event_dict = event.model_dump(mode="json")
            event_dict["details"] = redact_phi(event.details)
            redacted_events.append(event_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "subject_id": subject_id,
                "exported_at": self._clock().isoformat(),
                "event_count": len(redacted_events),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "events": redacted_events,
        }

    def __len__(self) -> int:
        return len(self._store)
