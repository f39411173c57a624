"""SQLAlchemy model definitions for engine state."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdapterStateRecord(Base):
    """Opaque cursor blob of one source, replaced wholesale after each poll."""

    __tablename__ = "adapter_state"

    source_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    state: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<AdapterStateRecord source={self.source_id}>"


class WorkItemRecord(Base):
    """Maps an ingested item id to the work item created for it."""

    __tablename__ = "work_item_index"
    __table_args__ = (UniqueConstraint("source_id", "item_id", name="uq_work_item_source_item"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    item_id: Mapped[str] = mapped_column(String(512), nullable=False)
    task_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class ThreadRecord(Base):
    """A materialized item whose replies are followed."""

    __tablename__ = "thread_replies"
    __table_args__ = (UniqueConstraint("source_id", "parent_item_id", name="uq_thread_source_parent"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    parent_item_id: Mapped[str] = mapped_column(String(512), nullable=False)
    task_id: Mapped[str] = mapped_column(String(255), nullable=False)
    last_reply_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    reply_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class PollLogRecord(Base):
    """History of poll attempts per source."""

    __tablename__ = "poll_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    items_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_new: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    polled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<PollLogRecord id={self.id} source={self.source_id} status={self.status}>"
