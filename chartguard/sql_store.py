"""
SQL-backed stores for approvals, audit events and the execution ledger.

Several pipeline instances share these tables.  Atomicity comes from the
database rather than process locks:

* approval transitions are a conditional
  ``UPDATE ... WHERE id = ? AND status = 'PENDING' AND version = ?`` whose
  row count tells the caller whether its compare-and-swap won;
* the audit chain head is protected by the primary key on ``sequence`` --
  two appenders that read the same head collide on insert and the loser
  re-reads and retries;
* the execution ledger's primary key on ``command_id`` makes
  ``put_if_absent`` first-writer-wins.

Audit queries filter on indexed columns (command, approval, subject, actor,
time) instead of loading the whole chain.

Records are stored as their pydantic JSON form in ``payload`` next to the
columns the queries filter on.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    DateTime,
    Integer,
    String,
    Text,
    create_engine as sa_create_engine,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from chartguard.audit import AuditEvent, AuditQuery, AuditStore
from chartguard.models import ApprovalRecord, ApprovalStatus
from chartguard.store import ApprovalStore, ExecutionLedger

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class ApprovalRow(Base):
    __tablename__ = "approval_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    command_id: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    executed_resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)


class AuditEventRow(Base):
    __tablename__ = "audit_events"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    command_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    approval_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    subject_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False, default="")
    actor: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)


class ExecutionRow(Base):
    __tablename__ = "executions"

    command_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)


def create_engine(database_url: str = "sqlite://", **kwargs: Any) -> Engine:
    """Create an engine and make sure the ChartGuard tables exist.

    An in-memory SQLite URL gets a single shared connection so every
    session sees the same database.
    """
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)
    engine = sa_create_engine(database_url, **kwargs)
    Base.metadata.create_all(engine)
    return engine


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Approval store
# ---------------------------------------------------------------------------

class SqlApprovalStore(ApprovalStore):
    """``ApprovalStore`` on a SQL table with conditional-update CAS."""

    def __init__(self, engine: Engine) -> None:
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def insert(self, record: ApprovalRecord) -> None:
        row = ApprovalRow(
            id=record.id,
            command_id=record.command_id,
            status=record.status.value,
            version=record.version,
            expires_at=_naive_utc(record.expires_at),
            executed_resource_id=record.executed_resource_id,
            payload=record.model_dump_json(),
        )
        try:
            with self._session_factory() as session, session.begin():
                session.add(row)
        except IntegrityError as exc:
            raise ValueError(
                f"Approval record '{record.id}' (command {record.command_id}) already exists"
            ) from exc

    def get(self, approval_id: str) -> Optional[ApprovalRecord]:
        with self._session_factory() as session:
            row = session.get(ApprovalRow, approval_id)
            return None if row is None else ApprovalRecord.model_validate_json(row.payload)

    def compare_and_swap(self, updated: ApprovalRecord, expected_version: int) -> bool:
        stmt = (
            update(ApprovalRow)
            .where(
                ApprovalRow.id == updated.id,
                ApprovalRow.status == ApprovalStatus.PENDING.value,
                ApprovalRow.version == expected_version,
            )
            .values(
                status=updated.status.value,
                version=updated.version,
                expires_at=_naive_utc(updated.expires_at),
                payload=updated.model_dump_json(),
            )
        )
        with self._session_factory() as session, session.begin():
            won = session.execute(stmt).rowcount == 1
        if not won:
            logger.debug("CAS lost for approval %s at version %d", updated.id, expected_version)
        return won

    def list_pending(self, expiring_at_or_before: Optional[datetime] = None) -> list[ApprovalRecord]:
        stmt = select(ApprovalRow).where(ApprovalRow.status == ApprovalStatus.PENDING.value)
        if expiring_at_or_before is not None:
            stmt = stmt.where(ApprovalRow.expires_at <= _naive_utc(expiring_at_or_before))
        stmt = stmt.order_by(ApprovalRow.expires_at, ApprovalRow.id)
        with self._session_factory() as session:
            rows = session.scalars(stmt).all()
            return [ApprovalRecord.model_validate_json(r.payload) for r in rows]

    def attach_execution(self, approval_id: str, resource_id: str) -> Optional[ApprovalRecord]:
        current = self.get(approval_id)
        if current is None:
            return None
        if current.status is not ApprovalStatus.APPROVED or current.executed_resource_id:
            return current
        attached = current.model_copy(update={"executed_resource_id": resource_id})
        stmt = (
            update(ApprovalRow)
            .where(
                ApprovalRow.id == approval_id,
                ApprovalRow.status == ApprovalStatus.APPROVED.value,
                ApprovalRow.executed_resource_id.is_(None),
            )
            .values(executed_resource_id=resource_id, payload=attached.model_dump_json())
        )
        with self._session_factory() as session, session.begin():
            attached_now = session.execute(stmt).rowcount == 1
        if attached_now:
            return attached
        return self.get(approval_id)

    def find_by_command(self, command_id: str) -> Optional[ApprovalRecord]:
        with self._session_factory() as session:
            row = session.scalars(
                select(ApprovalRow).where(ApprovalRow.command_id == command_id)
            ).first()
            return None if row is None else ApprovalRecord.model_validate_json(row.payload)


# ---------------------------------------------------------------------------
# Audit store
# ---------------------------------------------------------------------------

class SqlAuditStore(AuditStore):
    """Hash-chained audit table; the primary key on ``sequence`` serializes appenders."""

    def __init__(self, engine: Engine, max_append_attempts: int = 5) -> None:
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._max_append_attempts = max_append_attempts

    def append(self, event: AuditEvent) -> AuditEvent:
        return self.append_batch([event])[0]

    def append_batch(self, events: list[AuditEvent]) -> list[AuditEvent]:
        last_error: Optional[IntegrityError] = None
        for _ in range(self._max_append_attempts):
            try:
                with self._session_factory() as session, session.begin():
                    head = session.scalars(
                        select(AuditEventRow).order_by(AuditEventRow.sequence.desc()).limit(1)
                    ).first()
                    sequence = head.sequence + 1 if head is not None else 0
                    previous = head.hash if head is not None else ""
                    chained: list[AuditEvent] = []
                    for offset, event in enumerate(events):
                        item = event.chained(sequence + offset, previous)
                        previous = item.compute_hash()
                        session.add(AuditEventRow(
                            sequence=item.sequence,
                            id=item.id,
                            command_id=item.command_id,
                            approval_id=item.approval_id,
                            subject_id=item.subject_id,
                            actor=item.actor,
                            event_type=item.event_type.value,
                            occurred_at=_naive_utc(item.timestamp),
                            hash=previous,
                            payload=item.model_dump_json(),
                        ))
                        chained.append(item)
                return chained
            except IntegrityError as exc:
                # another appender took the chain head; re-read and retry
                last_error = exc
                logger.debug("Audit chain head contention; retrying append")
        raise RuntimeError(
            f"Could not append audit events after {self._max_append_attempts} attempts"
        ) from last_error

    def all(self) -> list[AuditEvent]:
        with self._session_factory() as session:
            rows = session.scalars(select(AuditEventRow).order_by(AuditEventRow.sequence)).all()
            return [AuditEvent.model_validate_json(r.payload) for r in rows]

    def query(self, query: AuditQuery) -> list[AuditEvent]:
        stmt = select(AuditEventRow)
        if query.command_id is not None:
            stmt = stmt.where(AuditEventRow.command_id == query.command_id)
        if query.approval_id is not None:
            stmt = stmt.where(AuditEventRow.approval_id == query.approval_id)
        if query.subject_id is not None:
            stmt = stmt.where(AuditEventRow.subject_id == query.subject_id)
        if query.actor_id is not None:
            stmt = stmt.where(AuditEventRow.actor == query.actor_id)
        if query.event_type is not None:
            stmt = stmt.where(AuditEventRow.event_type == query.event_type.value)
        if query.time_start is not None:
            stmt = stmt.where(AuditEventRow.occurred_at >= _naive_utc(query.time_start))
        if query.time_end is not None:
            stmt = stmt.where(AuditEventRow.occurred_at <= _naive_utc(query.time_end))
        stmt = stmt.order_by(AuditEventRow.occurred_at, AuditEventRow.sequence)
        with self._session_factory() as session:
            rows = session.scalars(stmt).all()
            return [AuditEvent.model_validate_json(r.payload) for r in rows]

    def stored_hash(self, index: int) -> Optional[str]:
        with self._session_factory() as session:
            row = session.get(AuditEventRow, index)
            return None if row is None else row.hash

    def __len__(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(AuditEventRow)) or 0


# ---------------------------------------------------------------------------
# Execution ledger
# ---------------------------------------------------------------------------

class SqlExecutionLedger(ExecutionLedger):
    def __init__(self, engine: Engine) -> None:
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def get(self, command_id: str) -> Optional[str]:
        with self._session_factory() as session:
            row = session.get(ExecutionRow, command_id)
            return None if row is None else row.resource_id

    def put_if_absent(self, command_id: str, resource_id: str) -> str:
        try:
            with self._session_factory() as session, session.begin():
                session.add(ExecutionRow(command_id=command_id, resource_id=resource_id))
        except IntegrityError:
            existing = self.get(command_id)
            if existing is None:
                raise
            return existing
        return resource_id
