"""Ingestion engine: routes sources to the poll or realtime driver."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from ..adapters.base import BaseAdapter
from ..adapters.registry import PluginRegistry
from ..exceptions import ConfigurationError, SessionNotConnectedError
from ..schemas.plugin import PluginMetadata
from ..schemas.results import OutboundMessage, SendTarget, ValidationResult
from ..schemas.source import ConnectionMode, IntegrationSource
from ..utils.config import GlobalSettings, enabled_sources, get_settings
from ..utils.logging import setup_logger
from ..utils.reload import SourceFileReloader
from ..utils.secrets import SecretGetter
from .dedup import LedgerBook
from .materializer import TaskMaterializer
from .pipeline import IngestPipeline
from .poller import PollInvoker, PollOutcome
from .realtime import RealtimeSessionManager
from .state import StateStore

logger = setup_logger(__name__, component="engine")


@dataclass
class _PollSource:
    source: IntegrationSource
    adapter: BaseAdapter
    metadata: PluginMetadata
    loop: asyncio.Task | None = None


class IngestionEngine:
    """
    Runs every enabled source in exactly one concurrency domain.

    Poll-mode sources get a scheduler loop that ticks immediately and then
    every ``poll_interval_seconds``; realtime-mode sources are handed to the
    :class:`RealtimeSessionManager`. Invalid sources are logged and skipped.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        state_store: StateStore,
        materializer: TaskMaterializer,
        get_secret: SecretGetter,
        settings: GlobalSettings | None = None,
    ) -> None:
        self.registry = registry
        self.state_store = state_store
        self.materializer = materializer
        self.get_secret = get_secret
        self.settings = settings or get_settings()

        self.ledgers = LedgerBook(self.settings.dedup_max_items)
        self.pipeline = IngestPipeline(state_store, materializer, self.ledgers)
        self.poller = PollInvoker(self.pipeline, state_store, get_secret, self.settings)
        self.realtime = RealtimeSessionManager(self.pipeline, get_secret, self.settings)

        self._poll_sources: dict[str, _PollSource] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def check_source(self, source: IntegrationSource) -> ValidationResult:
        return self.registry.validate_source(source)

    def active_source_ids(self) -> set[str]:
        return set(self._poll_sources) | set(self.realtime.sessions)

    async def start(self, sources: list[IntegrationSource]) -> list[str]:
        """
        Start every enabled, valid source; returns the ids that were started.

        Startup is staggered by ``startup_stagger_seconds`` per source.
        """
        self._running = True
        self.realtime.start_health_monitor()

        candidates = enabled_sources(sources)
        if not candidates:
            logger.warning("No enabled sources found")
        started: list[str] = []
        for index, source in enumerate(candidates):
            delay = index * self.settings.startup_stagger_seconds
            if await self._start_source(source, delay=delay):
                started.append(source.id)
        logger.info(f"Started {len(started)} of {len(candidates)} source(s)")
        return started

    async def _start_source(self, source: IntegrationSource, *, delay: float = 0.0) -> bool:
        if source.id in self.active_source_ids():
            return False

        result = self.check_source(source)
        if not result.valid:
            logger.error(
                f"Skipping invalid source: {result.error}",
                extra={"source_id": source.id, "adapter_type": source.type, "status": "invalid"},
            )
            return False

        plugin = self.registry.get(source.type)
        adapter = self.registry.create(source.type).bind(source)

        if ConnectionMode(source.connection_mode) is ConnectionMode.REALTIME:
            logger.info("Starting in realtime mode", extra={"source_id": source.id})
            await self.realtime.start(source, adapter, plugin.metadata, delay=delay)
            return True

        entry = _PollSource(source=source, adapter=adapter, metadata=plugin.metadata)
        entry.loop = asyncio.create_task(self._schedule(entry, delay), name=f"poll-loop:{source.id}")
        self._poll_sources[source.id] = entry
        return True

    async def _schedule(self, entry: _PollSource, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        while self._running:
            try:
                await self.poller.tick(entry.source, entry.adapter, entry.metadata)
            except Exception:
                logger.exception(
                    "Poll tick failed",
                    extra={"source_id": entry.source.id, "adapter_type": entry.metadata.type, "status": "error"},
                )
            await asyncio.sleep(self.poller.next_delay(entry.source))

    async def poll_now(self, source_id: str) -> PollOutcome:
        """
        Issue one scheduling tick for a poll-mode source.

        Raises:
            ConfigurationError: If the source is not running in poll mode
        """
        entry = self._poll_sources.get(source_id)
        if entry is None:
            raise ConfigurationError(f"Source '{source_id}' is not running in poll mode")
        return await self.poller.tick(entry.source, entry.adapter, entry.metadata)

    async def send(self, source_id: str, target: SendTarget, message: OutboundMessage) -> None:
        """
        Send an outbound message through a source.

        Realtime sources need a connected session. Poll-mode sources whose
        adapter declares ``send`` deliver directly over their request API.

        Raises:
            SessionNotConnectedError: If no connection can carry the message
        """
        if self.realtime.has_session(source_id):
            await self.realtime.send(source_id, target, message)
            return
        entry = self._poll_sources.get(source_id)
        if entry is None or not entry.metadata.capabilities.send:
            raise SessionNotConnectedError(source_id)
        await entry.adapter.send(target, message, self.get_secret)

    async def stop_source(self, source_id: str) -> None:
        """Stop one source: in-flight polls finish, realtime sessions disconnect."""
        entry = self._poll_sources.pop(source_id, None)
        if entry is not None:
            if entry.loop is not None:
                entry.loop.cancel()
                await asyncio.gather(entry.loop, return_exceptions=True)
            await self.poller.wait_idle(source_id, timeout=self.settings.shutdown_timeout_seconds)
        await self.realtime.stop(source_id)
        logger.info("Source stopped", extra={"source_id": source_id})

    async def reconcile(self, sources: list[IntegrationSource]) -> None:
        """Stop removed, disabled or changed sources and start new ones."""
        fresh = {source.id: source for source in enabled_sources(sources)}
        for source_id in sorted(self.active_source_ids()):
            current = self._current_source(source_id)
            replacement = fresh.get(source_id)
            if replacement is None:
                logger.info("Source removed/disabled, stopping", extra={"source_id": source_id})
                await self.stop_source(source_id)
            elif current is not None and replacement != current:
                logger.info("Source configuration changed, restarting", extra={"source_id": source_id})
                await self.stop_source(source_id)

        for source in fresh.values():
            if source.id not in self.active_source_ids():
                logger.info("New source detected, starting", extra={"source_id": source.id})
                await self._start_source(source)

    def _current_source(self, source_id: str) -> IntegrationSource | None:
        entry = self._poll_sources.get(source_id)
        if entry is not None:
            return entry.source
        session = self.realtime.sessions.get(source_id)
        return session.source if session is not None else None

    async def watch_config(self, reloader: SourceFileReloader, interval: float | None = None) -> None:
        """Reconcile whenever the sources file changes; runs until cancelled."""
        period = interval or self.settings.config_check_interval_seconds
        while self._running:
            await asyncio.sleep(period)
            changed = reloader.check()
            if changed is not None:
                await self.reconcile(changed)

    async def stop(self) -> None:
        """Stop every source; bounded by the shutdown and realtime timeouts."""
        self._running = False
        entries = list(self._poll_sources.values())
        self._poll_sources.clear()
        for entry in entries:
            if entry.loop is not None:
                entry.loop.cancel()
        await asyncio.gather(
            *(entry.loop for entry in entries if entry.loop is not None), return_exceptions=True
        )
        await self.poller.drain(timeout=self.settings.shutdown_timeout_seconds)
        await self.realtime.stop_all()
        logger.info("Ingestion engine stopped")

    def status(self) -> dict[str, dict[str, Any]]:
        """Per-source mode, connection details and ledger size."""
        sizes = self.ledgers.sizes()
        report: dict[str, dict[str, Any]] = {}
        for source_id, entry in self._poll_sources.items():
            recent = self.state_store.recent_polls(source_id, limit=1)
            report[source_id] = {
                "mode": ConnectionMode.POLL.value,
                "adapter": entry.metadata.type,
                "polling": self.poller.is_polling(source_id),
                "last_poll": recent[0].status if recent else None,
                "dedup_size": sizes.get(source_id, 0),
            }
        for source_id, snapshot in self.realtime.status().items():
            report[source_id] = {
                "mode": ConnectionMode.REALTIME.value,
                "adapter": self.realtime.sessions[source_id].metadata.type,
                **snapshot,
                "dedup_size": sizes.get(source_id, 0),
            }
        return report

