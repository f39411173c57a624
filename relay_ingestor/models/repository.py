"""SQLAlchemy-backed state store."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, sessionmaker

from ..engine.state import PollLogEntry
from ..schemas.results import ThreadRef
from .base import build_engine, build_session_factory, session_scope
from .records import AdapterStateRecord, PollLogRecord, ThreadRecord, WorkItemRecord


class SqlStateStore:
    """
    :class:`~relay_ingestor.engine.state.StateStore` persisted with SQLAlchemy.

    Each call runs in its own transaction, so a cursor write is durable as
    soon as :meth:`set_adapter_state` returns.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self._engine = engine or build_engine()
        self._session_factory = session_factory or build_session_factory(self._engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlStateStore":
        return cls(build_engine(database_url))

    def get_adapter_state(self, source_id: str) -> dict[str, Any]:
        with session_scope(self._session_factory) as session:
            record = session.get(AdapterStateRecord, source_id)
            return copy.deepcopy(record.state) if record is not None else {}

    def set_adapter_state(self, source_id: str, state: dict[str, Any]) -> None:
        with session_scope(self._session_factory) as session:
            record = session.get(AdapterStateRecord, source_id)
            if record is None:
                session.add(AdapterStateRecord(source_id=source_id, state=copy.deepcopy(state)))
            else:
                record.state = copy.deepcopy(state)

    def record_work_item(
        self, source_id: str, item_id: str, task_id: str, title: str | None = None
    ) -> None:
        with session_scope(self._session_factory) as session:
            existing = session.scalar(
                select(WorkItemRecord).where(
                    WorkItemRecord.source_id == source_id, WorkItemRecord.item_id == item_id
                )
            )
            if existing is None:
                session.add(
                    WorkItemRecord(source_id=source_id, item_id=item_id, task_id=task_id, title=title)
                )
            else:
                existing.task_id = task_id
                existing.title = title

    def lookup_work_item(self, source_id: str, item_id: str) -> str | None:
        with session_scope(self._session_factory) as session:
            return session.scalar(
                select(WorkItemRecord.task_id).where(
                    WorkItemRecord.source_id == source_id, WorkItemRecord.item_id == item_id
                )
            )

    def _thread(self, session: Session, source_id: str, parent_item_id: str) -> ThreadRecord | None:
        return session.scalar(
            select(ThreadRecord).where(
                ThreadRecord.source_id == source_id,
                ThreadRecord.parent_item_id == parent_item_id,
            )
        )

    def register_thread(self, source_id: str, parent_item_id: str, task_id: str) -> None:
        with session_scope(self._session_factory) as session:
            if self._thread(session, source_id, parent_item_id) is None:
                session.add(
                    ThreadRecord(source_id=source_id, parent_item_id=parent_item_id, task_id=task_id)
                )

    def active_threads(self, source_id: str, limit: int) -> list[ThreadRef]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(ThreadRecord)
                .where(ThreadRecord.source_id == source_id, ThreadRecord.active.is_(True))
                .order_by(ThreadRecord.updated_at.desc(), ThreadRecord.id.desc())
                .limit(max(limit, 0))
            ).all()
            return [
                ThreadRef(
                    source_id=row.source_id,
                    parent_item_id=row.parent_item_id,
                    task_id=row.task_id,
                    last_reply_id=row.last_reply_id,
                )
                for row in rows
            ]

    def update_thread_cursor(
        self, source_id: str, parent_item_id: str, last_reply_id: str, reply_count: int = 1
    ) -> None:
        with session_scope(self._session_factory) as session:
            thread = self._thread(session, source_id, parent_item_id)
            if thread is not None:
                thread.last_reply_id = last_reply_id
                thread.reply_count += reply_count
                thread.updated_at = datetime.now(timezone.utc)

    def deactivate_thread(self, source_id: str, parent_item_id: str) -> None:
        with session_scope(self._session_factory) as session:
            thread = self._thread(session, source_id, parent_item_id)
            if thread is not None:
                thread.active = False

    def log_poll(self, entry: PollLogEntry) -> None:
        with session_scope(self._session_factory) as session:
            session.add(
                PollLogRecord(
                    source_id=entry.source_id,
                    status=entry.status,
                    items_found=entry.items_found,
                    items_new=entry.items_new,
                    error=entry.error,
                    duration_ms=entry.duration_ms,
                    polled_at=entry.polled_at,
                )
            )

    def recent_polls(self, source_id: str, limit: int = 20) -> list[PollLogEntry]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(PollLogRecord)
                .where(PollLogRecord.source_id == source_id)
                .order_by(PollLogRecord.polled_at.desc(), PollLogRecord.id.desc())
                .limit(limit)
            ).all()
            return [
                PollLogEntry(
                    source_id=row.source_id,
                    status=row.status,
                    items_found=row.items_found,
                    items_new=row.items_new,
                    error=row.error,
                    duration_ms=row.duration_ms,
                    polled_at=row.polled_at,
                )
                for row in rows
            ]
