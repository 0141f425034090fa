"""
Repository abstractions for approval records and executions.

Pending approvals and execution results live behind injected store
handles so that several pipeline instances can share state.  Correctness
relies on the store's per-record conditional update:

* ``ApprovalStore.compare_and_swap`` replaces a record only if the stored
  copy is still ``PENDING`` *and* at the expected ``version``.  Exactly one
  of two racing transitions (``resolve`` vs ``sweep``, or two reviewers)
  wins; the loser re-reads and observes the winner's state.
* ``ExecutionLedger.put_if_absent`` records the resource produced for a
  ``command_id`` at most once.

The in-memory implementations below use a ``threading.Lock`` for that
atomicity.  ``chartguard.sql_store`` provides the durable equivalents.
"""

from __future__ import annotations

import abc
import threading
from datetime import datetime
from typing import Optional

from chartguard.models import ApprovalRecord, ApprovalStatus


# ---------------------------------------------------------------------------
# Approval store
# ---------------------------------------------------------------------------

class ApprovalStore(abc.ABC):
    """Durable home of ``ApprovalRecord`` values."""

    @abc.abstractmethod
    def insert(self, record: ApprovalRecord) -> None:
        """Persist a new record.

        Raises:
            ValueError: If a record with the same id already exists.
        """

    @abc.abstractmethod
    def get(self, approval_id: str) -> Optional[ApprovalRecord]:
        """Return the current record, or None if unknown."""

    @abc.abstractmethod
    def compare_and_swap(self, updated: ApprovalRecord, expected_version: int) -> bool:
        """Replace the stored record iff it is PENDING at ``expected_version``.

        Returns:
            True if this call installed ``updated``.
        """

    @abc.abstractmethod
    def list_pending(self, expiring_at_or_before: Optional[datetime] = None) -> list[ApprovalRecord]:
        """Pending records, optionally only those with ``expires_at <= t``."""

    @abc.abstractmethod
    def attach_execution(self, approval_id: str, resource_id: str) -> Optional[ApprovalRecord]:
        """Record the resource produced for an APPROVED record.

        Only fills ``executed_resource_id`` when it is unset; never changes
        ``status``.  Returns the stored record (None if unknown).
        """

    @abc.abstractmethod
    def find_by_command(self, command_id: str) -> Optional[ApprovalRecord]:
        """Return the record whose snapshot has ``command_id``, if any."""


class InMemoryApprovalStore(ApprovalStore):
    """Process-local approval store; every operation holds one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ApprovalRecord] = {}

    def insert(self, record: ApprovalRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Approval record '{record.id}' already exists")
            self._records[record.id] = record

    def get(self, approval_id: str) -> Optional[ApprovalRecord]:
        with self._lock:
            return self._records.get(approval_id)

    def compare_and_swap(self, updated: ApprovalRecord, expected_version: int) -> bool:
        with self._lock:
            current = self._records.get(updated.id)
            if current is None:
                return False
            if current.status.is_terminal:
                return False
            if current.version != expected_version:
                return False
            self._records[updated.id] = updated
            return True

    def list_pending(self, expiring_at_or_before: Optional[datetime] = None) -> list[ApprovalRecord]:
        with self._lock:
            records = [
                r for r in self._records.values()
                if r.status is ApprovalStatus.PENDING
                and (expiring_at_or_before is None or r.expires_at <= expiring_at_or_before)
            ]
        return sorted(records, key=lambda r: (r.expires_at, r.id))

    def attach_execution(self, approval_id: str, resource_id: str) -> Optional[ApprovalRecord]:
        with self._lock:
            current = self._records.get(approval_id)
            if current is None:
                return None
            if current.status is ApprovalStatus.APPROVED and current.executed_resource_id is None:
                current = current.model_copy(update={"executed_resource_id": resource_id})
                self._records[approval_id] = current
            return current

    def find_by_command(self, command_id: str) -> Optional[ApprovalRecord]:
        with self._lock:
            for record in self._records.values():
                if record.command.command_id == command_id:
                    return record
        return None

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Execution ledger
# ---------------------------------------------------------------------------

class ExecutionLedger(abc.ABC):
    """Maps ``command_id`` (the idempotency key) to the produced resource id."""

    @abc.abstractmethod
    def get(self, command_id: str) -> Optional[str]:
        """Return the resource id already produced for a command, if any."""

    @abc.abstractmethod
    def put_if_absent(self, command_id: str, resource_id: str) -> str:
        """Record ``resource_id`` unless one exists; return the stored id."""


class InMemoryExecutionLedger(ExecutionLedger):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, str] = {}

    def get(self, command_id: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(command_id)

    def put_if_absent(self, command_id: str, resource_id: str) -> str:
        with self._lock:
            return self._entries.setdefault(command_id, resource_id)

    def __len__(self) -> int:
        return len(self._entries)
