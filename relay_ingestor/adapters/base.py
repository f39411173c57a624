"""Base adapter abstract class for all protocol integrations."""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, ClassVar, TypeVar

from ..exceptions import (
    AccessError,
    ConfigurationError,
    ProtocolError,
    SecretNotFoundError,
    SessionNotConnectedError,
    TransientTransportError,
)
from ..schemas.items import IngestItem
from ..schemas.plugin import Capabilities, PluginMetadata
from ..schemas.results import (
    OutboundMessage,
    PollResult,
    SendTarget,
    TestResult,
    ThreadRef,
    ValidationResult,
)
from ..schemas.source import IntegrationSource
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import setup_logger
from ..utils.retry import ReconnectPolicy, reconnect_retrying
from ..utils.secrets import SecretGetter

logger = setup_logger(__name__, component="adapter")

T = TypeVar("T")


async def maybe_await(value: Any) -> Any:
    """Await ``value`` when a callback returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class RealtimeCallbacks:
    """Hooks a realtime adapter reports through while connected."""

    on_message: Callable[[IngestItem], Any]
    on_error: Callable[[BaseException], Any]
    on_disconnect: Callable[[str], Any]
    on_status: Callable[[str], Any] | None = None

    async def status(self, value: str) -> None:
        if self.on_status is not None:
            await maybe_await(self.on_status(value))


class BaseAdapter(ABC):
    """
    Abstract base class for all protocol adapters.

    Each adapter must declare ``metadata`` and implement validate(), poll() and
    test(). The optional methods stay unimplemented unless the matching
    capability flag is set; the registry checks that at load time.
    """

    metadata: ClassVar[PluginMetadata]

    def __init__(
        self,
        settings: GlobalSettings | None = None,
        *,
        transport: Any | None = None,
    ):
        """
        Initialize the adapter.

        Args:
            settings: Global settings (defaults to the cached process settings)
            transport: Optional transport injected into network clients (tests)
        """
        self.settings = settings or get_settings()
        self.transport = transport
        self.bound_source: IntegrationSource | None = None
        self.logger = setup_logger(
            f"{type(self).__module__}.{type(self).__name__}",
            component="adapter",
            context={"adapter_type": self.type},
        )

    def bind(self, source: IntegrationSource) -> "BaseAdapter":
        """Attach the source this instance serves; used by outbound send."""
        self.bound_source = source
        self.logger = self.logger.bind(source_id=source.id)
        return self

    @property
    def type(self) -> str:
        return self.metadata.type

    @property
    def capabilities(self) -> Capabilities:
        return self.metadata.capabilities

    async def _run_in_thread(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Execute a blocking function in a thread to avoid blocking the event loop.

        Args:
            func: Callable to execute
            *args: Positional arguments for callable
            **kwargs: Keyword arguments for callable

        Returns:
            Result of the callable
        """

        return await asyncio.to_thread(func, *args, **kwargs)

    async def resolve_secret(self, get_secret: SecretGetter, name: str) -> str:
        """Resolve a credential off the event loop; resolvers may do network I/O."""
        return await self._run_in_thread(get_secret, name)

    def validate(self, source: IntegrationSource) -> ValidationResult:
        """
        Check a source configuration without touching the network.

        The base implementation checks that every required config field is
        present; subclasses call it first and add format checks.
        """
        for field in self.metadata.config_fields:
            if not field.required:
                continue
            value = source.setting(field.key)
            if value is None or (isinstance(value, str) and not value.strip()):
                return ValidationResult.fail(f"{field.key} is required ({field.label})")
        return ValidationResult.ok()

    @abstractmethod
    async def poll(
        self,
        source: IntegrationSource,
        state: dict[str, Any],
        get_secret: SecretGetter,
    ) -> PollResult:
        """
        Perform one bounded round-trip and return new items plus the next state.

        Raises:
            AccessError: Credential, scope or missing-resource failures
            TransientTransportError: Timeouts, rate limits, disconnects
            ProtocolError: Malformed payloads
        """

    @abstractmethod
    async def test(self, source: IntegrationSource, get_secret: SecretGetter) -> TestResult:
        """Make one real request and diagnose connectivity for an operator."""

    async def poll_replies(
        self,
        source: IntegrationSource,
        threads: list[ThreadRef],
        get_secret: SecretGetter,
    ) -> list[IngestItem]:
        """Fetch new replies to tracked threads (``capabilities.threads``)."""
        raise NotImplementedError(f"{self.type}: poll_replies() not implemented")

    async def connect(
        self,
        source: IntegrationSource,
        get_secret: SecretGetter,
        callbacks: RealtimeCallbacks,
    ) -> None:
        """Run a realtime session until disconnected (``capabilities.realtime``)."""
        raise NotImplementedError(f"{self.type}: connect() not implemented")

    async def disconnect(self) -> None:
        raise NotImplementedError(f"{self.type}: disconnect() not implemented")

    async def send(
        self,
        target: SendTarget,
        message: OutboundMessage,
        get_secret: SecretGetter,
    ) -> None:
        """Deliver an outbound message (``capabilities.send``)."""
        raise NotImplementedError(f"{self.type}: send() not implemented")

    def secret_name(self, source: IntegrationSource) -> str:
        """Name of the secret holding this source's credential."""
        name = source.setting("secret_name")
        if not name:
            raise ConfigurationError(f"Source {source.id} has no secret_name configured")
        return str(name)

    def diagnose(self, exc: Exception, *, resource: str | None = None) -> TestResult:
        """Translate an exception raised during test() into an operator-facing result."""
        if isinstance(exc, SecretNotFoundError):
            return TestResult(
                ok=False,
                category="configuration",
                message=f"{exc}. Store the credential and retry.",
            )
        if isinstance(exc, AccessError):
            return TestResult(ok=False, category=exc.category, message=exc.describe())
        if isinstance(exc, ConfigurationError):
            return TestResult(ok=False, category="configuration", message=str(exc))
        if isinstance(exc, TransientTransportError):
            return TestResult(
                ok=False,
                category="transport",
                message=f"Connection failed: {exc}. Check network access to {resource or 'the service'}.",
            )
        if isinstance(exc, ProtocolError):
            return TestResult(
                ok=False,
                category="protocol",
                message=f"Unexpected response from {resource or 'the service'}: {exc}",
            )
        raise exc


class _StreamAborted(Exception):
    """The in-flight receive was cancelled by disconnect()."""


class LongPollRealtimeMixin:
    """
    Generic blocking-receive loop for realtime adapters.

    Subclasses implement :meth:`open_stream` (handshake returning the starting
    cursor) and :meth:`receive` (one long-poll returning the next cursor and
    items). The mixin owns the running flag, cooperative abort of the
    in-flight receive, the fixed reconnect delay and the cursor commit: a
    cursor is committed only after every item of its iteration was emitted.

    Must precede :class:`BaseAdapter` in the bases.
    """

    settings: GlobalSettings
    logger: Any

    _running: bool = False
    _stop_event: asyncio.Event | None = None
    _inflight: asyncio.Task | None = None
    _session_source: IntegrationSource | None = None
    _session_token: str | None = None

    async def open_stream(self, source: IntegrationSource, token: str) -> str:
        raise NotImplementedError

    async def receive(
        self,
        source: IntegrationSource,
        token: str,
        cursor: str,
        timeout: float,
    ) -> tuple[str, list[IngestItem]]:
        raise NotImplementedError

    @property
    def is_connected(self) -> bool:
        return self._running and self._session_token is not None

    def _reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(delay_seconds=self.settings.realtime_reconnect_delay_seconds)

    async def _abortable(self, coro: Any) -> Any:
        """Run one request so that disconnect() can cancel it immediately."""
        task = asyncio.ensure_future(coro)
        self._inflight = task
        try:
            done, _ = await asyncio.wait(
                {task}, timeout=self.settings.realtime_request_timeout_seconds
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._inflight = None

        if not done:
            task.cancel()
            raise TransientTransportError(
                f"No response within {self.settings.realtime_request_timeout_seconds}s"
            )
        if task.cancelled():
            raise _StreamAborted()
        return task.result()

    async def connect(
        self,
        source: IntegrationSource,
        get_secret: SecretGetter,
        callbacks: RealtimeCallbacks,
    ) -> None:
        self._running = True
        self._stop_event = asyncio.Event()
        reason = "stopped"
        try:
            await callbacks.status("connecting")
            try:
                token = await self.resolve_secret(get_secret, self.secret_name(source))  # type: ignore[attr-defined]
                cursor = await self._abortable(self.open_stream(source, token))
            except _StreamAborted:
                return
            except Exception as exc:
                reason = "handshake_failed"
                await maybe_await(callbacks.on_error(exc))
                return

            self._session_source = source
            self._session_token = token
            await callbacks.status("connected")
            cursor = await self._receive_loop(source, token, cursor, callbacks)
        finally:
            self._running = False
            self._session_source = None
            self._session_token = None
            await maybe_await(callbacks.on_disconnect(reason))

    async def _receive_loop(
        self,
        source: IntegrationSource,
        token: str,
        cursor: str,
        callbacks: RealtimeCallbacks,
    ) -> str:
        assert self._stop_event is not None
        retrying = reconnect_retrying(
            self._reconnect_policy(),
            stop_event=self._stop_event,
            on_error=callbacks.on_error,
        )
        timeout = self.settings.realtime_long_poll_seconds

        while self._running:
            try:
                async for attempt in retrying:
                    with attempt:
                        next_cursor, items = await self._abortable(
                            self.receive(source, token, cursor, timeout)
                        )
                        for item in items:
                            await maybe_await(callbacks.on_message(item))
                        cursor = next_cursor
            except _StreamAborted:
                break
            except Exception as exc:
                if self._running:
                    raise
                self.logger.debug(f"Receive loop exiting after stop: {exc}")
                break
        return cursor

    async def disconnect(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

    def _require_session(self, source_id: str) -> tuple[IntegrationSource, str]:
        if not self.is_connected or self._session_source is None or self._session_token is None:
            raise SessionNotConnectedError(source_id)
        return self._session_source, self._session_token
