"""Scripted adapters and item factories for engine tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from relay_ingestor.adapters.base import BaseAdapter, LongPollRealtimeMixin
from relay_ingestor.engine.dedup import LedgerBook
from relay_ingestor.engine.materializer import InMemoryTaskMaterializer
from relay_ingestor.engine.pipeline import IngestPipeline
from relay_ingestor.engine.state import InMemoryStateStore
from relay_ingestor.schemas.items import IngestItem
from relay_ingestor.schemas.plugin import Capabilities, ItemField, PluginMetadata
from relay_ingestor.schemas.results import PollResult, TestResult


class FakeAdapter(BaseAdapter):
    """Returns queued poll results; an exception in the queue is raised."""

    metadata = PluginMetadata(
        type="fake",
        name="Fake",
        description="Scripted adapter for tests",
        version="1.0.0",
        item_fields=[
            ItemField(key="channel", label="Channel", type="string"),
            ItemField(key="priority", label="Priority", type="number"),
            ItemField(key="status", label="Status", type="enum", values=["open", "closed"]),
        ],
        capabilities=Capabilities(send=True, threads=True),
    )

    def __init__(self, settings: Any = None, *, transport: Any = None) -> None:
        super().__init__(settings, transport=transport)
        self.results: list[PollResult | Exception] = []
        self.replies: list[IngestItem] = []
        self.poll_states: list[dict[str, Any]] = []
        self.reply_threads: list[list[Any]] = []
        self.sent: list[tuple[Any, Any]] = []
        self.gate: asyncio.Event | None = None

    async def poll(self, source, state, get_secret) -> PollResult:
        self.poll_states.append(dict(state))
        if self.gate is not None:
            await self.gate.wait()
        if not self.results:
            return PollResult(items=[], state=state)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def test(self, source, get_secret) -> TestResult:
        return TestResult(ok=True, message="fake ok")

    async def poll_replies(self, source, threads, get_secret) -> list[IngestItem]:
        self.reply_threads.append(list(threads))
        replies, self.replies = self.replies, []
        return replies

    async def send(self, target, message, get_secret) -> None:
        self.sent.append((target, message))


class FakeStreamAdapter(LongPollRealtimeMixin, BaseAdapter):
    """Long-poll adapter whose receive() results are scripted per call."""

    metadata = PluginMetadata(
        type="fakestream",
        name="Fake Stream",
        description="Scripted realtime adapter for tests",
        version="1.0.0",
        item_fields=[ItemField(key="channel", label="Channel", type="string")],
        capabilities=Capabilities(realtime=True, send=True),
    )

    def __init__(self, settings: Any = None, *, transport: Any = None) -> None:
        super().__init__(settings, transport=transport)
        self.start_cursor = "c0"
        self.script: list[tuple[str, list[IngestItem]] | Exception] = []
        self.receive_cursors: list[str] = []
        self.open_calls = 0
        self.sent: list[tuple[Any, Any]] = []

    def secret_name(self, source) -> str:
        return "stream"

    async def open_stream(self, source, token: str) -> str:
        self.open_calls += 1
        return self.start_cursor

    async def receive(self, source, token: str, cursor: str, timeout: float):
        self.receive_cursors.append(cursor)
        if not self.script:
            # Idle long-poll until disconnect() cancels it.
            await asyncio.Event().wait()
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    async def poll(self, source, state, get_secret) -> PollResult:
        return PollResult(items=[], state=state)

    async def test(self, source, get_secret) -> TestResult:
        return TestResult(ok=True, message="fake ok")

    async def send(self, target, message, get_secret) -> None:
        self._require_session(source_id="fakestream")
        self.sent.append((target, message))


class FlakyStateStore(InMemoryStateStore):
    """In-memory store whose named methods raise for a set number of calls."""

    def __init__(self) -> None:
        super().__init__()
        self.failures: dict[str, int] = {}

    def _maybe_fail(self, method: str) -> None:
        if self.failures.get(method, 0) > 0:
            self.failures[method] -= 1
            raise RuntimeError("database is locked")

    def get_adapter_state(self, source_id):
        self._maybe_fail("get_adapter_state")
        return super().get_adapter_state(source_id)

    def record_work_item(self, source_id, item_id, task_id, title=None):
        self._maybe_fail("record_work_item")
        super().record_work_item(source_id, item_id, task_id, title)

    def log_poll(self, entry):
        self._maybe_fail("log_poll")
        super().log_poll(entry)


@pytest.fixture
def fake_adapter(settings) -> FakeAdapter:
    return FakeAdapter(settings)


@pytest.fixture
def stream_adapter(settings) -> FakeStreamAdapter:
    return FakeStreamAdapter(settings)


@pytest.fixture
def fake_adapter_class() -> type[FakeAdapter]:
    return FakeAdapter


@pytest.fixture
def make_item() -> Callable[..., IngestItem]:
    def _make(item_id: str, *, reply_to: str | None = None, **fields: Any) -> IngestItem:
        return IngestItem(
            id=item_id,
            title=f"Title {item_id}",
            description=f"Body of {item_id}",
            author="alice",
            timestamp="2024-01-01T00:00:00+00:00",
            fields=fields,
            reply_to=reply_to,
        )

    return _make


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def materializer() -> InMemoryTaskMaterializer:
    return InMemoryTaskMaterializer()


@pytest.fixture
def pipeline(state_store, materializer) -> IngestPipeline:
    return IngestPipeline(state_store, materializer, LedgerBook(100))


@pytest.fixture
def flaky_store() -> FlakyStateStore:
    return FlakyStateStore()
