"""Tests for the single-flight poll invoker."""

from __future__ import annotations

import asyncio

import pytest

from relay_ingestor.engine.dedup import LedgerBook
from relay_ingestor.engine.pipeline import IngestPipeline
from relay_ingestor.engine.poller import PollInvoker
from relay_ingestor.exceptions import AuthenticationError, ProtocolError
from relay_ingestor.schemas.results import PollResult


@pytest.fixture
def invoker(pipeline, state_store, secrets, settings) -> PollInvoker:
    return PollInvoker(pipeline, state_store, secrets, settings)


@pytest.mark.asyncio
async def test_slack_eng_scenario(invoker, state_store, materializer, fake_adapter, make_source, make_item) -> None:
    """Cursor {since: 100} -> one work item for slack-msg-101 -> cursor {since: 101}."""

    source = make_source(
        "slack-eng",
        filter=[{"field": "channel", "operator": "equals", "value": "eng"}],
    )
    state_store.set_adapter_state(source.id, {"since": "100"})
    fake_adapter.results.append(
        PollResult(items=[make_item("slack-msg-101", channel="eng")], state={"since": "101"})
    )

    outcome = await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    assert outcome.status == "success"
    assert fake_adapter.poll_states == [{"since": "100"}]
    assert len(materializer.created) == 1
    assert materializer.created[0].item_id == "slack-msg-101"
    assert state_store.get_adapter_state(source.id) == {"since": "101"}


@pytest.mark.asyncio
async def test_second_poll_without_new_data_is_empty(
    invoker, materializer, fake_adapter, make_source, make_item
) -> None:
    source = make_source()
    batch = PollResult(items=[make_item("a")], state={"cursor": 1})
    fake_adapter.results.extend([batch, batch])

    first = await invoker.tick(source, fake_adapter, fake_adapter.metadata)
    second = await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    assert first.items_new == 1
    assert second.items_new == 0
    assert second.items_duplicate == 1
    assert len(materializer.created) == 1


@pytest.mark.asyncio
async def test_overlapping_tick_is_dropped(invoker, fake_adapter, make_source) -> None:
    source = make_source()
    fake_adapter.gate = asyncio.Event()

    first = asyncio.create_task(invoker.tick(source, fake_adapter, fake_adapter.metadata))
    await asyncio.sleep(0)
    assert invoker.is_polling(source.id)

    skipped = await invoker.tick(source, fake_adapter, fake_adapter.metadata)
    fake_adapter.gate.set()
    completed = await first

    assert skipped.status == "skipped"
    assert completed.status == "success"
    assert len(fake_adapter.poll_states) == 1
    assert not invoker.is_polling(source.id)


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_poll(invoker, fake_adapter, make_source) -> None:
    source = make_source()
    fake_adapter.gate = asyncio.Event()

    caller = asyncio.create_task(invoker.tick(source, fake_adapter, fake_adapter.metadata))
    await asyncio.sleep(0)
    caller.cancel()
    await asyncio.gather(caller, return_exceptions=True)

    assert invoker.is_polling(source.id)
    fake_adapter.gate.set()
    await invoker.wait_idle(source.id, timeout=1)
    assert not invoker.is_polling(source.id)


@pytest.mark.asyncio
async def test_adapter_error_keeps_cursor_and_backs_off(
    invoker, state_store, fake_adapter, make_source
) -> None:
    source = make_source()
    state_store.set_adapter_state(source.id, {"since": "5"})
    fake_adapter.results.extend([AuthenticationError("bad token"), ProtocolError("garbled")])

    first = await invoker.tick(source, fake_adapter, fake_adapter.metadata)
    second = await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    assert first.status == "error"
    assert "bad token" in first.error
    assert second.status == "error"
    assert state_store.get_adapter_state(source.id) == {"since": "5"}
    assert invoker.backoff_seconds(source.id) == 0.05

    polls = state_store.recent_polls(source.id)
    assert [entry.status for entry in polls] == ["error", "error"]


@pytest.mark.asyncio
async def test_success_resets_backoff(invoker, fake_adapter, make_source) -> None:
    source = make_source(poll_interval_seconds=30)
    fake_adapter.results.append(RuntimeError("adapter bug"))

    failed = await invoker.tick(source, fake_adapter, fake_adapter.metadata)
    assert failed.error == "RuntimeError: adapter bug"
    assert invoker.backoff_seconds(source.id) > 0

    await invoker.tick(source, fake_adapter, fake_adapter.metadata)
    assert invoker.backoff_seconds(source.id) == 0
    assert invoker.next_delay(source) == 30


@pytest.mark.asyncio
async def test_materialization_failure_keeps_cursor(
    state_store, fake_adapter, make_source, make_item, secrets, settings
) -> None:
    class BrokenMaterializer:
        async def create_work_item(self, source, item):
            raise RuntimeError("store down")

        async def add_reply(self, task_id, source, item):
            raise RuntimeError("store down")

    invoker = PollInvoker(
        IngestPipeline(state_store, BrokenMaterializer(), LedgerBook(10)), state_store, secrets, settings
    )
    source = make_source()
    state_store.set_adapter_state(source.id, {"since": "1"})
    fake_adapter.results.append(PollResult(items=[make_item("a")], state={"since": "2"}))

    outcome = await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    assert outcome.status == "error"
    assert "Failed to materialize item 'a'" in outcome.error
    assert state_store.get_adapter_state(source.id) == {"since": "1"}


@pytest.mark.asyncio
async def test_poll_timeout_is_an_error(invoker, state_store, fake_adapter, make_source, settings) -> None:
    settings.poll_timeout_seconds = 0.05
    source = make_source()
    fake_adapter.gate = asyncio.Event()

    outcome = await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    assert outcome.status == "error"
    assert "timed out" in outcome.error
    assert state_store.get_adapter_state(source.id) == {}


@pytest.mark.asyncio
async def test_replies_polled_after_successful_poll(
    invoker, state_store, materializer, fake_adapter, make_source, make_item
) -> None:
    source = make_source()
    fake_adapter.results.append(PollResult(items=[make_item("p1")], state={"since": "1"}))
    await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    fake_adapter.replies = [make_item("r1", reply_to="p1")]
    outcome = await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    assert outcome.replies == 1
    assert fake_adapter.reply_threads[-1][0].parent_item_id == "p1"
    assert materializer.replies[0].task_id == "task-1"


@pytest.mark.asyncio
async def test_reply_failure_does_not_fail_poll(
    invoker, state_store, fake_adapter, make_source, make_item, monkeypatch
) -> None:
    source = make_source()
    state_store.register_thread(source.id, "p1", "task-1")

    async def broken_replies(*args, **kwargs):
        raise ProtocolError("thread listing broke")

    monkeypatch.setattr(fake_adapter, "poll_replies", broken_replies)
    outcome = await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    assert outcome.status == "success"
    assert outcome.replies == 0


@pytest.mark.asyncio
async def test_drain_cancels_stragglers(invoker, fake_adapter, make_source) -> None:
    source = make_source()
    fake_adapter.gate = asyncio.Event()
    caller = asyncio.create_task(invoker.tick(source, fake_adapter, fake_adapter.metadata))
    await asyncio.sleep(0)

    await invoker.drain(timeout=0.01)

    assert not invoker.is_polling(source.id)
    caller.cancel()
    await asyncio.gather(caller, return_exceptions=True)


@pytest.mark.asyncio
async def test_state_store_failures_become_error_outcomes(
    flaky_store, materializer, fake_adapter, make_source, make_item, secrets, settings
) -> None:
    invoker = PollInvoker(IngestPipeline(flaky_store, materializer, LedgerBook(10)), flaky_store, secrets, settings)
    source = make_source()
    flaky_store.failures = {"get_adapter_state": 1, "log_poll": 1}

    failed = await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    assert failed.status == "error"
    assert "database is locked" in failed.error
    assert fake_adapter.poll_states == []
    assert flaky_store.recent_polls(source.id) == []

    fake_adapter.results.append(PollResult(items=[make_item("a")], state={"since": "1"}))
    recovered = await invoker.tick(source, fake_adapter, fake_adapter.metadata)

    assert recovered.status == "success"
    assert flaky_store.get_adapter_state(source.id) == {"since": "1"}
    assert [entry.status for entry in flaky_store.recent_polls(source.id)] == ["success"]
