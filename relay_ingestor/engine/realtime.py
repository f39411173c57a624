"""Lifecycle of persistent realtime connections, one session per source."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..adapters.base import BaseAdapter, RealtimeCallbacks
from ..exceptions import RelayIngestorError, SessionNotConnectedError
from ..monitoring.metrics import record_ingest_error, record_reconnect, set_session_connected
from ..schemas.items import IngestItem
from ..schemas.plugin import PluginMetadata
from ..schemas.results import OutboundMessage, SendTarget
from ..schemas.source import IntegrationSource
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import setup_logger
from ..utils.secrets import SecretGetter
from .pipeline import IngestPipeline

logger = setup_logger(__name__, component="realtime")

_END_OF_STREAM = object()


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class RealtimeSession:
    """Cancellable handle for one source's connection and its delivery queue."""

    source: IntegrationSource
    adapter: BaseAdapter
    metadata: PluginMetadata
    status: SessionStatus = SessionStatus.DISCONNECTED
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    runner: asyncio.Task | None = None
    consumer: asyncio.Task | None = None
    connected_at: datetime | None = None
    last_message_at: datetime | None = None
    last_disconnect_reason: str | None = None
    last_error: str | None = None
    reconnect_count: int = 0
    attempt: int = 0
    restart_requested: bool = False

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "connected_at": _iso(self.connected_at),
            "last_message_at": _iso(self.last_message_at),
            "reconnect_count": self.reconnect_count,
            "last_error": self.last_error,
            "last_disconnect_reason": self.last_disconnect_reason,
        }


class RealtimeSessionManager:
    """
    Owns connect, stream and reconnect for sources in realtime mode.

    Adapters push items through ``on_message``; each session queues them and a
    single consumer task feeds the pipeline, so delivery per source keeps the
    adapter's order without running the pipeline inside the adapter's loop.
    When ``connect`` returns without a stop request the session reconnects
    after 2^n seconds (capped).
    """

    def __init__(
        self,
        pipeline: IngestPipeline,
        get_secret: SecretGetter,
        settings: GlobalSettings | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.get_secret = get_secret
        self.settings = settings or get_settings()
        self.sessions: dict[str, RealtimeSession] = {}
        self._health_task: asyncio.Task | None = None

    def has_session(self, source_id: str) -> bool:
        return source_id in self.sessions

    async def start(
        self,
        source: IntegrationSource,
        adapter: BaseAdapter,
        metadata: PluginMetadata,
        *,
        delay: float = 0.0,
    ) -> RealtimeSession:
        """Create the session and launch its connection and consumer tasks."""
        existing = self.sessions.get(source.id)
        if existing is not None:
            logger.warning("Session already exists, skipping", extra={"source_id": source.id})
            return existing

        adapter.bind(source)
        session = RealtimeSession(source=source, adapter=adapter, metadata=metadata)
        self.sessions[source.id] = session
        session.consumer = asyncio.create_task(
            self._consume(session), name=f"realtime-consumer:{source.id}"
        )
        session.runner = asyncio.create_task(
            self._run(session, delay), name=f"realtime-session:{source.id}"
        )
        return session

    def _callbacks(self, session: RealtimeSession) -> RealtimeCallbacks:
        source_id = session.source.id
        adapter_type = session.metadata.type

        async def on_message(item: IngestItem) -> None:
            session.last_message_at = _utcnow()
            await session.queue.put(item)

        def on_error(exc: BaseException) -> None:
            session.last_error = str(exc)
            record_ingest_error(type(exc).__name__)
            logger.error(
                f"Realtime error: {exc}",
                extra={"source_id": source_id, "adapter_type": adapter_type, "status": "error"},
            )

        def on_disconnect(reason: str) -> None:
            was_connected = session.status is SessionStatus.CONNECTED
            session.last_disconnect_reason = reason
            session.status = SessionStatus.DISCONNECTED
            if was_connected:
                set_session_connected(adapter_type, False)
            logger.info(
                f"Disconnected: {reason}",
                extra={"source_id": source_id, "adapter_type": adapter_type, "status": "disconnected"},
            )

        def on_status(value: str) -> None:
            if value == SessionStatus.CONNECTED.value:
                session.status = SessionStatus.CONNECTED
                session.connected_at = _utcnow()
                session.last_message_at = None
                session.attempt = 0
                set_session_connected(adapter_type, True)
                logger.info(
                    "Connected",
                    extra={"source_id": source_id, "adapter_type": adapter_type, "status": "connected"},
                )
            elif value == SessionStatus.CONNECTING.value:
                session.status = SessionStatus.CONNECTING

        return RealtimeCallbacks(
            on_message=on_message,
            on_error=on_error,
            on_disconnect=on_disconnect,
            on_status=on_status,
        )

    async def _wait_or_stop(self, session: RealtimeSession, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(session.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return

    async def _run(self, session: RealtimeSession, delay: float) -> None:
        source_id = session.source.id
        await self._wait_or_stop(session, delay)
        callbacks = self._callbacks(session)

        while not session.stopping:
            logger.info("Connecting realtime...", extra={"source_id": source_id})
            try:
                await session.adapter.connect(session.source, self.get_secret, callbacks)
            except Exception as exc:
                callbacks.on_error(exc)
                if session.status is SessionStatus.CONNECTED:
                    callbacks.on_disconnect("error")

            if session.stopping:
                break

            if session.restart_requested:
                session.restart_requested = False
                backoff = 0.0
            else:
                session.attempt += 1
                backoff = min(float(2**session.attempt), self.settings.realtime_max_backoff_seconds)
            session.reconnect_count += 1
            session.status = SessionStatus.RECONNECTING
            record_reconnect(session.metadata.type)
            logger.info(
                f"Reconnecting in {int(backoff)}s (attempt {session.reconnect_count})",
                extra={"source_id": source_id, "status": "reconnecting"},
            )
            await self._wait_or_stop(session, backoff)

        session.status = SessionStatus.STOPPED

    async def _consume(self, session: RealtimeSession) -> None:
        source_id = session.source.id
        while True:
            item = await session.queue.get()
            try:
                if item is _END_OF_STREAM:
                    return
                await self.pipeline.process(session.source, session.metadata, [item])
            except RelayIngestorError as exc:
                record_ingest_error(type(exc).__name__)
                logger.error(
                    f"Failed to process realtime item: {exc}",
                    extra={"source_id": source_id, "status": "error"},
                )
            except Exception as exc:
                record_ingest_error(type(exc).__name__)
                logger.error(
                    f"Unexpected failure processing realtime item: {exc}",
                    exc_info=True,
                    extra={"source_id": source_id, "status": "error"},
                )
            finally:
                session.queue.task_done()

    async def stop(self, source_id: str) -> None:
        """
        Disconnect a source and wait, bounded, for its loop to acknowledge.

        Queued items are still delivered before the session is removed.
        """
        session = self.sessions.get(source_id)
        if session is None:
            return

        timeout = self.settings.realtime_request_timeout_seconds
        session.stop_event.set()
        try:
            await session.adapter.disconnect()
        except Exception as exc:
            logger.warning(f"Disconnect error: {exc}", extra={"source_id": source_id})

        if session.runner is not None:
            _, pending = await asyncio.wait({session.runner}, timeout=timeout)
            if pending:
                logger.warning(
                    f"Session did not acknowledge disconnect within {timeout}s, cancelling",
                    extra={"source_id": source_id},
                )
                session.runner.cancel()
                await asyncio.gather(session.runner, return_exceptions=True)
                if session.status is SessionStatus.CONNECTED:
                    set_session_connected(session.metadata.type, False)

        if session.consumer is not None:
            await session.queue.put(_END_OF_STREAM)
            _, pending = await asyncio.wait({session.consumer}, timeout=timeout)
            if pending:
                session.consumer.cancel()
                await asyncio.gather(session.consumer, return_exceptions=True)

        session.status = SessionStatus.STOPPED
        self.sessions.pop(source_id, None)
        logger.info("Realtime session stopped", extra={"source_id": source_id, "status": "stopped"})

    async def stop_all(self) -> None:
        await self.stop_health_monitor()
        await asyncio.gather(*(self.stop(source_id) for source_id in list(self.sessions)))

    async def send(self, source_id: str, target: SendTarget, message: OutboundMessage) -> None:
        """
        Send through a connected session.

        Raises:
            SessionNotConnectedError: If the source has no connected session or
                its adapter cannot send
        """
        session = self.sessions.get(source_id)
        if (
            session is None
            or session.status is not SessionStatus.CONNECTED
            or not session.metadata.capabilities.send
        ):
            raise SessionNotConnectedError(source_id)
        await session.adapter.send(target, message, self.get_secret)

    def status(self) -> dict[str, dict[str, Any]]:
        return {source_id: session.snapshot() for source_id, session in self.sessions.items()}

    def _stale_threshold(self, session: RealtimeSession) -> float:
        configured = session.source.stale_timeout_seconds
        if configured is None:
            return self.settings.realtime_stale_seconds
        return configured

    async def check_health(self) -> list[str]:
        """Restart connected sessions that went quiet; returns the restarted ids."""
        now = _utcnow()
        restarted: list[str] = []
        for source_id, session in list(self.sessions.items()):
            if session.status is not SessionStatus.CONNECTED or session.last_message_at is None:
                continue
            threshold = self._stale_threshold(session)
            if threshold <= 0:
                continue
            idle = (now - session.last_message_at).total_seconds()
            if idle > threshold:
                logger.warning(
                    f"Connection stale (no messages for {int(idle)}s), reconnecting",
                    extra={"source_id": source_id, "status": "stale"},
                )
                session.restart_requested = True
                await session.adapter.disconnect()
                restarted.append(source_id)
        return restarted

    def start_health_monitor(self, interval: float | None = None) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        period = interval or self.settings.realtime_health_interval_seconds
        self._health_task = asyncio.create_task(self._health_loop(period), name="realtime-health")

    async def _health_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_health()
            except Exception:
                logger.exception("Realtime health check failed")

    async def stop_health_monitor(self) -> None:
        if self._health_task is None:
            return
        self._health_task.cancel()
        await asyncio.gather(self._health_task, return_exceptions=True)
        self._health_task = None
