"""Bounded per-source record of emitted item ids."""

from __future__ import annotations

from threading import Lock

from cachetools import FIFOCache


class DedupLedger:
    """
    Remembers the ids emitted for one source.

    Retention is count based: once ``max_items`` ids are held, adding a new id
    evicts the oldest-emitted one. All access goes through a lock so the set
    can be inspected from other threads (API, CLI) while the source's own
    invoker mutates it.
    """

    def __init__(self, max_items: int = 10_000) -> None:
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self.max_items = max_items
        self._ids: FIFOCache = FIFOCache(maxsize=max_items)
        self._lock = Lock()

    def __contains__(self, item_id: object) -> bool:
        with self._lock:
            return item_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def add(self, item_id: str) -> None:
        """Commit an id; re-adding a known id does not refresh its age."""
        with self._lock:
            if item_id not in self._ids:
                self._ids[item_id] = True

    def snapshot(self) -> list[str]:
        """Ids in emission order, oldest first."""
        with self._lock:
            return list(self._ids.keys())

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()


class LedgerBook:
    """Lazily creates one :class:`DedupLedger` per source id."""

    def __init__(self, max_items: int = 10_000) -> None:
        self.max_items = max_items
        self._ledgers: dict[str, DedupLedger] = {}
        self._lock = Lock()

    def for_source(self, source_id: str) -> DedupLedger:
        with self._lock:
            ledger = self._ledgers.get(source_id)
            if ledger is None:
                ledger = DedupLedger(self.max_items)
                self._ledgers[source_id] = ledger
            return ledger

    def drop(self, source_id: str) -> None:
        with self._lock:
            self._ledgers.pop(source_id, None)

    def sizes(self) -> dict[str, int]:
        with self._lock:
            ledgers = dict(self._ledgers)
        return {source_id: len(ledger) for source_id, ledger in ledgers.items()}
