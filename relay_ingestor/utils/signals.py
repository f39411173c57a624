"""Signal wiring for the long-running ingestion process."""

from __future__ import annotations

import asyncio
import signal
import sys
import threading
from collections.abc import Awaitable, Callable
from typing import Any

from ..utils.logging import setup_logger

logger = setup_logger(__name__, component="signals")


class ShutdownCoordinator:
    """
    Turns SIGTERM/SIGINT into a single awaited engine shutdown.

    Handlers run in reverse registration order. A second signal while a
    shutdown is in progress is ignored.
    """

    def __init__(self) -> None:
        self._handlers: list[Callable[[], Any]] = []
        self._shutting_down = False
        self._stop_requested = asyncio.Event()
        self._done = asyncio.Event()

    def register_handler(self, handler: Callable[[], Any]) -> None:
        """Register a sync or async callable to run on shutdown."""
        self._handlers.append(handler)
        logger.debug(f"Registered shutdown handler: {getattr(handler, '__name__', handler)!r}")

    def request_stop(self) -> None:
        """Mark that the process should stop; safe to call from a signal handler."""
        self._stop_requested.set()

    async def wait_for_stop_request(self) -> None:
        await self._stop_requested.wait()

    async def shutdown(self) -> None:
        """Run every registered handler once."""
        if self._shutting_down:
            logger.warning("Shutdown already in progress")
            return

        self._shutting_down = True
        self._stop_requested.set()
        logger.info("Starting graceful shutdown...")

        for handler in reversed(self._handlers):
            name = getattr(handler, "__name__", repr(handler))
            try:
                result = handler()
                if isinstance(result, Awaitable):
                    await result
            except Exception as exc:
                logger.error(f"Error in shutdown handler {name}: {exc}", exc_info=True)

        self._done.set()
        logger.info("Graceful shutdown complete")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_for_shutdown(self) -> None:
        await self._done.wait()


def install_signal_handlers(
    coordinator: ShutdownCoordinator,
    loop: asyncio.AbstractEventLoop,
    *,
    reload_fn: Callable[[], Any] | None = None,
) -> None:
    """
    Route termination signals, and SIGHUP when ``reload_fn`` is given, into ``loop``.

    Args:
        coordinator: Receives stop requests on SIGTERM and SIGINT
        loop: Running event loop the handlers are attached to
        reload_fn: Optional callable invoked on SIGHUP
    """
    if threading.current_thread() is not threading.main_thread():
        logger.info("Skipping signal handler installation outside main thread")
        return
    if sys.platform == "win32":
        logger.warning("Signal handlers are not supported on Windows event loops")
        return

    def _on_terminate(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, initiating graceful shutdown...")
        coordinator.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _on_terminate, sig)

    if reload_fn is not None:

        def _on_hangup() -> None:
            logger.info("Received SIGHUP, reloading sources...")
            result = reload_fn()
            if asyncio.iscoroutine(result):
                loop.create_task(result)

        loop.add_signal_handler(signal.SIGHUP, _on_hangup)
