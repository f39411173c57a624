"""Fixed-delay reconnect policy for realtime receive loops."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception

from ..exceptions import TransientTransportError

logger = logging.getLogger(__name__)


class ReconnectPolicy(BaseModel):
    """How long a realtime loop waits after a failed receive before retrying."""

    model_config = ConfigDict(extra="forbid")

    delay_seconds: float = Field(default=5.0, ge=0)
    respect_retry_after: bool = True
    max_retry_after: float = Field(default=300.0, gt=0)


def interruptible_sleep(stop_event: asyncio.Event) -> Callable[[float], Awaitable[None]]:
    """Return a sleep function that wakes early once ``stop_event`` is set."""

    async def _sleep(seconds: float) -> None:
        if seconds <= 0 or stop_event.is_set():
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return

    return _sleep


def _wait_strategy(policy: ReconnectPolicy) -> Callable[[RetryCallState], float]:
    def _wait(retry_state: RetryCallState) -> float:
        delay = policy.delay_seconds
        outcome = retry_state.outcome
        if policy.respect_retry_after and outcome is not None and outcome.failed:
            exception = outcome.exception()
            if isinstance(exception, TransientTransportError) and exception.retry_after:
                delay = max(delay, min(exception.retry_after, policy.max_retry_after))
        return delay

    return _wait


def reconnect_retrying(
    policy: ReconnectPolicy,
    *,
    stop_event: asyncio.Event,
    on_error: Callable[[BaseException], Any],
) -> AsyncRetrying:
    """
    Build a tenacity controller that retries a receive until it succeeds or stops.

    Every failure is reported through ``on_error`` before the fixed delay. Once
    ``stop_event`` is set, or the attempt was cancelled, the exception is
    re-raised instead of retried.

    Args:
        policy: Delay configuration
        stop_event: Event signalling that the loop should exit
        on_error: Callback receiving each retried exception

    Returns:
        AsyncRetrying instance to drive with ``async for attempt in ...``
    """

    def _should_retry(exc: BaseException) -> bool:
        if isinstance(exc, asyncio.CancelledError):
            return False
        return not stop_event.is_set()

    def _report(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return
        exception = outcome.exception()
        if exception is not None:
            on_error(exception)

    return AsyncRetrying(
        wait=_wait_strategy(policy),
        retry=retry_if_exception(_should_retry),
        stop=lambda _state: stop_event.is_set(),
        sleep=interruptible_sleep(stop_event),
        before_sleep=_report,
        reraise=True,
    )
