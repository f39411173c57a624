"""Tests for the bounded per-source deduplication ledger."""

from __future__ import annotations

import pytest

from relay_ingestor.engine.dedup import DedupLedger, LedgerBook


def test_ledger_evicts_oldest_emitted_id() -> None:
    """Once full, adding an id drops the oldest one first."""

    ledger = DedupLedger(max_items=3)
    for item_id in ("a", "b", "c", "d"):
        ledger.add(item_id)

    assert len(ledger) == 3
    assert "a" not in ledger
    assert ledger.snapshot() == ["b", "c", "d"]


def test_readding_known_id_does_not_refresh_age() -> None:
    ledger = DedupLedger(max_items=2)
    ledger.add("a")
    ledger.add("b")
    ledger.add("a")
    ledger.add("c")

    assert "a" not in ledger
    assert ledger.snapshot() == ["b", "c"]


def test_ledger_rejects_non_positive_bound() -> None:
    with pytest.raises(ValueError):
        DedupLedger(max_items=0)


def test_ledger_book_keeps_sources_apart() -> None:
    book = LedgerBook(max_items=10)
    book.for_source("one").add("x")

    assert "x" in book.for_source("one")
    assert "x" not in book.for_source("two")
    assert book.sizes() == {"one": 1, "two": 0}

    book.drop("one")
    assert "x" not in book.for_source("one")


def test_clear_empties_ledger() -> None:
    ledger = DedupLedger(max_items=5)
    ledger.add("a")
    ledger.clear()

    assert len(ledger) == 0
