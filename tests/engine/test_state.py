"""Tests for the in-memory state store."""

from __future__ import annotations

from relay_ingestor.engine.state import InMemoryStateStore, PollLogEntry, StateStore


def test_satisfies_state_store_protocol() -> None:
    assert isinstance(InMemoryStateStore(), StateStore)


def test_adapter_state_is_copied_both_ways() -> None:
    store = InMemoryStateStore()
    state = {"since": "1", "channels": {"C1": "10"}}

    store.set_adapter_state("src", state)
    state["channels"]["C1"] = "99"
    loaded = store.get_adapter_state("src")
    loaded["since"] = "mutated"

    assert store.get_adapter_state("src") == {"since": "1", "channels": {"C1": "10"}}
    assert store.get_adapter_state("other") == {}


def test_work_item_index_is_scoped_per_source() -> None:
    store = InMemoryStateStore()
    store.record_work_item("a", "item-1", "task-1", title="Deploy failed")

    assert store.lookup_work_item("a", "item-1") == "task-1"
    assert store.lookup_work_item("b", "item-1") is None


def test_threads_ordered_by_recent_activity_and_limited() -> None:
    store = InMemoryStateStore()
    for parent in ("p1", "p2", "p3"):
        store.register_thread("src", parent, f"task-{parent}")

    store.update_thread_cursor("src", "p1", "r9")
    threads = store.active_threads("src", limit=2)

    assert [thread.parent_item_id for thread in threads][0] == "p1"
    assert threads[0].last_reply_id == "r9"
    assert len(threads) == 2


def test_register_thread_keeps_existing_cursor() -> None:
    store = InMemoryStateStore()
    store.register_thread("src", "p1", "task-1")
    store.update_thread_cursor("src", "p1", "r1")
    store.register_thread("src", "p1", "task-other")

    (thread,) = store.active_threads("src", limit=5)
    assert thread.task_id == "task-1"
    assert thread.last_reply_id == "r1"


def test_deactivated_threads_are_hidden() -> None:
    store = InMemoryStateStore()
    store.register_thread("src", "p1", "task-1")
    store.deactivate_thread("src", "p1")
    store.update_thread_cursor("src", "missing", "r1")

    assert store.active_threads("src", limit=5) == []


def test_recent_polls_newest_first() -> None:
    store = InMemoryStateStore()
    store.log_poll(PollLogEntry(source_id="src", status="success", items_found=2, items_new=1))
    store.log_poll(PollLogEntry(source_id="other", status="success"))
    store.log_poll(PollLogEntry(source_id="src", status="error", error="boom"))

    polls = store.recent_polls("src")

    assert [entry.status for entry in polls] == ["error", "success"]
    assert store.recent_polls("src", limit=1)[0].error == "boom"
