"""Cursor, work-item index, thread and poll-log storage."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol, runtime_checkable

from ..schemas.results import ThreadRef


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class PollLogEntry:
    """One row of the poll history."""

    source_id: str
    status: str
    items_found: int = 0
    items_new: int = 0
    error: str | None = None
    duration_ms: int | None = None
    polled_at: datetime = field(default_factory=_utcnow)


@runtime_checkable
class StateStore(Protocol):
    """Persistence used by the engine; adapter state is stored verbatim."""

    def get_adapter_state(self, source_id: str) -> dict[str, Any]: ...

    def set_adapter_state(self, source_id: str, state: dict[str, Any]) -> None: ...

    def record_work_item(
        self, source_id: str, item_id: str, task_id: str, title: str | None = None
    ) -> None: ...

    def lookup_work_item(self, source_id: str, item_id: str) -> str | None: ...

    def register_thread(self, source_id: str, parent_item_id: str, task_id: str) -> None: ...

    def active_threads(self, source_id: str, limit: int) -> list[ThreadRef]: ...

    def update_thread_cursor(
        self, source_id: str, parent_item_id: str, last_reply_id: str, reply_count: int = 1
    ) -> None: ...

    def deactivate_thread(self, source_id: str, parent_item_id: str) -> None: ...

    def log_poll(self, entry: PollLogEntry) -> None: ...

    def recent_polls(self, source_id: str, limit: int = 20) -> list[PollLogEntry]: ...


@dataclass
class _Thread:
    task_id: str
    last_reply_id: str | None = None
    reply_count: int = 0
    active: bool = True
    updated_at: datetime = field(default_factory=_utcnow)


class InMemoryStateStore:
    """Process-local :class:`StateStore`; nothing survives a restart."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._states: dict[str, dict[str, Any]] = {}
        self._work_items: dict[tuple[str, str], tuple[str, str | None]] = {}
        self._threads: dict[tuple[str, str], _Thread] = {}
        self._polls: list[PollLogEntry] = []

    def get_adapter_state(self, source_id: str) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._states.get(source_id, {}))

    def set_adapter_state(self, source_id: str, state: dict[str, Any]) -> None:
        with self._lock:
            self._states[source_id] = copy.deepcopy(state)

    def record_work_item(
        self, source_id: str, item_id: str, task_id: str, title: str | None = None
    ) -> None:
        with self._lock:
            self._work_items[(source_id, item_id)] = (task_id, title)

    def lookup_work_item(self, source_id: str, item_id: str) -> str | None:
        with self._lock:
            entry = self._work_items.get((source_id, item_id))
        return entry[0] if entry else None

    def register_thread(self, source_id: str, parent_item_id: str, task_id: str) -> None:
        with self._lock:
            self._threads.setdefault((source_id, parent_item_id), _Thread(task_id=task_id))

    def active_threads(self, source_id: str, limit: int) -> list[ThreadRef]:
        with self._lock:
            matching = [
                (parent, thread)
                for (owner, parent), thread in self._threads.items()
                if owner == source_id and thread.active
            ]
        matching.sort(key=lambda pair: pair[1].updated_at, reverse=True)
        return [
            ThreadRef(
                source_id=source_id,
                parent_item_id=parent,
                task_id=thread.task_id,
                last_reply_id=thread.last_reply_id,
            )
            for parent, thread in matching[: max(limit, 0)]
        ]

    def update_thread_cursor(
        self, source_id: str, parent_item_id: str, last_reply_id: str, reply_count: int = 1
    ) -> None:
        with self._lock:
            thread = self._threads.get((source_id, parent_item_id))
            if thread is None:
                return
            thread.last_reply_id = last_reply_id
            thread.reply_count += reply_count
            thread.updated_at = _utcnow()

    def deactivate_thread(self, source_id: str, parent_item_id: str) -> None:
        with self._lock:
            thread = self._threads.get((source_id, parent_item_id))
            if thread is not None:
                thread.active = False

    def log_poll(self, entry: PollLogEntry) -> None:
        with self._lock:
            self._polls.append(entry)

    def recent_polls(self, source_id: str, limit: int = 20) -> list[PollLogEntry]:
        with self._lock:
            entries = [entry for entry in self._polls if entry.source_id == source_id]
        return list(reversed(entries))[:limit]
