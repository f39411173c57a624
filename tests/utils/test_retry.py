"""Tests for the realtime reconnect policy."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from relay_ingestor.exceptions import ProtocolError, TransientTransportError
from relay_ingestor.utils.retry import (
    ReconnectPolicy,
    _wait_strategy,
    interruptible_sleep,
    reconnect_retrying,
)


def _failed_state(exc: BaseException) -> SimpleNamespace:
    return SimpleNamespace(outcome=SimpleNamespace(failed=True, exception=lambda: exc))


class TestWaitStrategy:
    def test_fixed_delay(self):
        wait = _wait_strategy(ReconnectPolicy(delay_seconds=5))

        assert wait(_failed_state(ProtocolError("garbled"))) == 5
        assert wait(_failed_state(TransientTransportError("blip"))) == 5

    def test_retry_after_extends_delay(self):
        wait = _wait_strategy(ReconnectPolicy(delay_seconds=5, max_retry_after=60))

        assert wait(_failed_state(TransientTransportError("slow down", retry_after=12))) == 12
        assert wait(_failed_state(TransientTransportError("slow down", retry_after=600))) == 60
        assert wait(_failed_state(TransientTransportError("slow down", retry_after=1))) == 5

    def test_retry_after_ignored_when_disabled(self):
        wait = _wait_strategy(ReconnectPolicy(delay_seconds=2, respect_retry_after=False))

        assert wait(_failed_state(TransientTransportError("slow down", retry_after=30))) == 2


@pytest.mark.asyncio
async def test_interruptible_sleep_wakes_on_stop():
    stop_event = asyncio.Event()
    sleep = interruptible_sleep(stop_event)
    loop = asyncio.get_running_loop()

    started = loop.time()
    asyncio.get_running_loop().call_later(0.02, stop_event.set)
    await sleep(5)

    assert loop.time() - started < 1
    await asyncio.wait_for(sleep(5), timeout=0.1)


@pytest.mark.asyncio
async def test_interruptible_sleep_times_out():
    sleep = interruptible_sleep(asyncio.Event())

    await asyncio.wait_for(sleep(0.01), timeout=1)


@pytest.mark.asyncio
async def test_reconnect_retrying_reports_each_failure():
    errors: list[BaseException] = []
    attempts = 0

    retrying = reconnect_retrying(
        ReconnectPolicy(delay_seconds=0), stop_event=asyncio.Event(), on_error=errors.append
    )
    async for attempt in retrying:
        with attempt:
            attempts += 1
            if attempts < 3:
                raise TransientTransportError(f"failure {attempts}")

    assert attempts == 3
    assert [str(error) for error in errors] == ["failure 1", "failure 2"]


@pytest.mark.asyncio
async def test_reconnect_retrying_reraises_once_stopped():
    stop_event = asyncio.Event()
    errors: list[BaseException] = []

    retrying = reconnect_retrying(
        ReconnectPolicy(delay_seconds=0), stop_event=stop_event, on_error=errors.append
    )
    with pytest.raises(TransientTransportError, match="closing"):
        async for attempt in retrying:
            with attempt:
                stop_event.set()
                raise TransientTransportError("closing")

    assert errors == []
