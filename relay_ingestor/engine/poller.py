"""Single-flight poll driver with per-source failure isolation."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from ..adapters.base import BaseAdapter
from ..exceptions import RelayIngestorError
from ..monitoring.metrics import (
    observe_poll_duration,
    record_dropped_tick,
    record_ingest_error,
    record_poll_attempt,
)
from ..schemas.plugin import PluginMetadata
from ..schemas.source import IntegrationSource
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import log_poll_outcome, setup_logger
from ..utils.secrets import SecretGetter
from .pipeline import BatchOutcome, IngestPipeline
from .state import PollLogEntry, StateStore

logger = setup_logger(__name__, component="poller")


@dataclass
class PollOutcome:
    """Result of one scheduling tick."""

    source_id: str
    status: str
    items_found: int = 0
    items_new: int = 0
    items_duplicate: int = 0
    items_filtered: int = 0
    replies: int = 0
    error: str | None = None
    duration_ms: int = 0

    @classmethod
    def skipped(cls, source_id: str) -> "PollOutcome":
        return cls(source_id=source_id, status="skipped")

    def absorb(self, batch: BatchOutcome) -> None:
        self.items_found = batch.items_found
        self.items_new = batch.items_new
        self.items_duplicate = batch.items_duplicate
        self.items_filtered = batch.items_filtered


class PollInvoker:
    """
    Calls ``adapter.poll`` for sources in poll mode.

    At most one poll per source is in flight; a tick that arrives meanwhile is
    dropped. The stored cursor is replaced only after the whole batch went
    through the pipeline. Failures keep the old cursor, are logged with the
    source id and lengthen the next interval (2^n seconds, capped).
    """

    def __init__(
        self,
        pipeline: IngestPipeline,
        state_store: StateStore,
        get_secret: SecretGetter,
        settings: GlobalSettings | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.state_store = state_store
        self.get_secret = get_secret
        self.settings = settings or get_settings()
        self._inflight: dict[str, asyncio.Task] = {}
        self._consecutive_errors: dict[str, int] = {}

    def is_polling(self, source_id: str) -> bool:
        task = self._inflight.get(source_id)
        return task is not None and not task.done()

    def backoff_seconds(self, source_id: str) -> float:
        errors = self._consecutive_errors.get(source_id, 0)
        if errors == 0:
            return 0.0
        return min(float(2**errors), self.settings.realtime_max_backoff_seconds)

    def next_delay(self, source: IntegrationSource) -> float:
        interval = source.poll_interval_seconds or self.settings.default_poll_interval_seconds
        return max(interval, self.backoff_seconds(source.id))

    async def tick(
        self,
        source: IntegrationSource,
        adapter: BaseAdapter,
        metadata: PluginMetadata,
    ) -> PollOutcome:
        """
        Run one poll unless one is already in flight for this source.

        Cancelling the caller does not cancel a started poll; it finishes in
        the background and :meth:`drain` can wait for it.
        """
        if self.is_polling(source.id):
            record_dropped_tick(metadata.type)
            logger.debug(
                "Poll still in flight, dropping tick",
                extra={"source_id": source.id, "adapter_type": metadata.type, "status": "skipped"},
            )
            return PollOutcome.skipped(source.id)

        task = asyncio.create_task(self._poll(source, adapter, metadata))
        self._inflight[source.id] = task
        task.add_done_callback(lambda _: self._release(source.id, task))
        return await asyncio.shield(task)

    def _release(self, source_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(source_id) is task:
            del self._inflight[source_id]

    async def _poll(
        self,
        source: IntegrationSource,
        adapter: BaseAdapter,
        metadata: PluginMetadata,
    ) -> PollOutcome:
        outcome = PollOutcome(source_id=source.id, status="success")
        start = time.perf_counter()

        try:
            state = self.state_store.get_adapter_state(source.id)
            result = await asyncio.wait_for(
                adapter.poll(source, state, self.get_secret),
                timeout=self.settings.poll_timeout_seconds,
            )
            outcome.absorb(await self.pipeline.process(source, metadata, result.items))
            self.state_store.set_adapter_state(source.id, result.state)
        except asyncio.TimeoutError:
            outcome.status = "error"
            outcome.error = f"Poll timed out after {self.settings.poll_timeout_seconds}s"
            record_ingest_error("TimeoutError")
        except RelayIngestorError as exc:
            outcome.status = "error"
            outcome.error = str(exc)
            record_ingest_error(type(exc).__name__)
        except Exception as exc:
            # A misbehaving adapter degrades only its own source.
            outcome.status = "error"
            outcome.error = f"{type(exc).__name__}: {exc}"
            record_ingest_error(type(exc).__name__)
            logger.exception(
                "Unexpected poll failure",
                extra={"source_id": source.id, "adapter_type": metadata.type, "status": "error"},
            )

        if outcome.status == "success":
            self._consecutive_errors.pop(source.id, None)
            if metadata.capabilities.threads and source.track_replies:
                outcome.replies = await self._poll_replies(source, adapter, metadata)
        else:
            self._consecutive_errors[source.id] = self._consecutive_errors.get(source.id, 0) + 1

        elapsed = time.perf_counter() - start
        outcome.duration_ms = int(elapsed * 1000)
        self._finish(source, metadata, outcome, elapsed)
        return outcome

    async def _poll_replies(
        self,
        source: IntegrationSource,
        adapter: BaseAdapter,
        metadata: PluginMetadata,
    ) -> int:
        try:
            threads = self.state_store.active_threads(source.id, self.settings.max_tracked_threads)
            if not threads:
                return 0
            replies = await asyncio.wait_for(
                adapter.poll_replies(source, threads, self.get_secret),
                timeout=self.settings.poll_timeout_seconds,
            )
            return await self.pipeline.process_replies(source, metadata, threads, replies)
        except asyncio.TimeoutError:
            logger.warning(
                "Thread reply polling timed out",
                extra={"source_id": source.id, "adapter_type": metadata.type},
            )
        except Exception as exc:
            logger.warning(
                f"Thread reply processing failed: {exc}",
                exc_info=not isinstance(exc, RelayIngestorError),
                extra={"source_id": source.id, "adapter_type": metadata.type},
            )
        return 0

    def _finish(
        self,
        source: IntegrationSource,
        metadata: PluginMetadata,
        outcome: PollOutcome,
        elapsed: float,
    ) -> None:
        record_poll_attempt(metadata.type, outcome.status)
        observe_poll_duration(metadata.type, elapsed)
        log_poll_outcome(
            logger,
            source.id,
            metadata.type,
            outcome.duration_ms,
            outcome.status,
            items_found=outcome.items_found,
            items_new=outcome.items_new,
            error=outcome.error,
        )
        if outcome.status == "error":
            backoff = self.backoff_seconds(source.id)
            if backoff > (source.poll_interval_seconds or self.settings.default_poll_interval_seconds):
                logger.warning(f"Backoff: {int(backoff)}s", extra={"source_id": source.id})
        entry = PollLogEntry(
            source_id=source.id,
            status=outcome.status,
            items_found=outcome.items_found,
            items_new=outcome.items_new,
            error=outcome.error,
            duration_ms=outcome.duration_ms,
        )
        try:
            self.state_store.log_poll(entry)
        except Exception as exc:
            logger.warning(
                f"Failed to record poll log entry: {exc}",
                exc_info=True,
                extra={"source_id": source.id, "adapter_type": metadata.type},
            )

    async def wait_idle(self, source_id: str, timeout: float | None = None) -> None:
        """Wait for the in-flight poll of one source, if any."""
        task = self._inflight.get(source_id)
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=timeout)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait (bounded) for every in-flight poll; stragglers are cancelled."""
        pending = {task for task in self._inflight.values() if not task.done()}
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} poll(s) still running at shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)
