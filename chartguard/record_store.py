"""
Record store boundary.

The clinical record store (e.g. a FHIR server) is an external
collaborator.  The executor talks to it only through ``RecordStore``:
create a resource, look one up by business identifier, and check that a
subject exists.  ``InMemoryRecordStore`` backs tests and the demo
scenario; it can be told to fail transiently to exercise retries.

Stores signal failures with ``TransientStoreError`` (worth retrying) and
``SubjectNotFoundError`` (never worth retrying).
"""

from __future__ import annotations

import abc
import threading
import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from chartguard.errors import SubjectNotFoundError, TransientStoreError


class Provenance(BaseModel):
    """Who and what produced an executed mutation."""

    model_config = ConfigDict(frozen=True)

    command_id: str
    command_kind: str
    source_model: str
    confidence: float
    prompt_template: Optional[str] = None
    retrieval_sources: tuple[str, ...] = ()
    approval_id: Optional[str] = None
    approved_by: tuple[str, ...] = ()
    clinician_action: str = Field(
        default="auto",
        description="'auto' for auto-executed commands, 'accepted' after sign-off.",
    )


class ClinicalResource(BaseModel):
    """A resource to be written, in store-neutral form."""

    model_config = ConfigDict(frozen=True)

    resource_type: str
    subject_id: str
    identifier: str = Field(..., description="Business identifier; the command id.")
    body: dict[str, Any] = Field(default_factory=dict)
    provenance: Provenance


class RecordStore(abc.ABC):
    @abc.abstractmethod
    def create(self, resource: ClinicalResource) -> str:
        """Persist a resource and return its id (``"<Type>/<id>"``).

        Raises:
            TransientStoreError: If the store is temporarily unavailable.
            SubjectNotFoundError: If ``resource.subject_id`` does not exist.
        """

    @abc.abstractmethod
    def find_by_identifier(self, identifier: str) -> Optional[str]:
        """Return the id of a resource created with ``identifier``, if any."""

    @abc.abstractmethod
    def subject_exists(self, subject_id: str) -> bool:
        """Whether the referenced patient / record exists."""


class InMemoryRecordStore(RecordStore):
    """Record store for tests and demos.

    ``fail_next(n)`` makes the next ``n`` ``create`` calls raise
    ``TransientStoreError``.
    """

    def __init__(self, subjects: Optional[set[str]] = None) -> None:
        self._lock = threading.Lock()
        self._subjects: set[str] = set(subjects or ())
        self._resources: dict[str, ClinicalResource] = {}
        self._by_identifier: dict[str, str] = {}
        self._failures_remaining = 0
        self.create_calls = 0

    def add_subject(self, subject_id: str) -> None:
        with self._lock:
            self._subjects.add(subject_id)

    def remove_subject(self, subject_id: str) -> None:
        with self._lock:
            self._subjects.discard(subject_id)

    def fail_next(self, count: int) -> None:
        with self._lock:
            self._failures_remaining = count

    def create(self, resource: ClinicalResource) -> str:
        with self._lock:
            self.create_calls += 1
            if self._failures_remaining > 0:
                self._failures_remaining -= 1
                raise TransientStoreError("record store unavailable")
            if resource.subject_id not in self._subjects:
                raise SubjectNotFoundError(
                    f"Subject '{resource.subject_id}' does not exist"
                )
            existing = self._by_identifier.get(resource.identifier)
            if existing is not None:
                return existing
            resource_id = f"{resource.resource_type}/{uuid.uuid4().hex[:12]}"
            self._resources[resource_id] = resource
            self._by_identifier[resource.identifier] = resource_id
            return resource_id

    def find_by_identifier(self, identifier: str) -> Optional[str]:
        with self._lock:
            return self._by_identifier.get(identifier)

    def subject_exists(self, subject_id: str) -> bool:
        with self._lock:
            return subject_id in self._subjects

    def get(self, resource_id: str) -> Optional[ClinicalResource]:
        with self._lock:
            return self._resources.get(resource_id)

    def __len__(self) -> int:
        return len(self._resources)
