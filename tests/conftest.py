"""Pytest configuration - no path manipulation, rely on proper package installation."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from relay_ingestor.models.base import reset_engine
from relay_ingestor.schemas.source import IntegrationSource
from relay_ingestor.utils.config import GlobalSettings, get_settings


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory):
    """Keep every test away from the developer's plugin dir, database and env."""

    plugin_dir = tmp_path_factory.mktemp("plugins")
    monkeypatch.setenv("RELAY_PLUGIN_DIR", str(plugin_dir))
    monkeypatch.setenv("RELAY_ATTACHMENT_DIR", str(tmp_path_factory.mktemp("attachments")))
    monkeypatch.delenv("RELAY_DATABASE_URL", raising=False)
    monkeypatch.delenv("RELAY_KAFKA_BOOTSTRAP_SERVERS", raising=False)

    get_settings(reload=True)
    yield
    reset_engine()
    get_settings(reload=True)


@pytest.fixture
def settings(tmp_path) -> GlobalSettings:
    """Settings with short timings so engine tests finish quickly."""

    return GlobalSettings(
        plugin_dir=tmp_path / "plugins",
        attachment_dir=tmp_path / "attachments",
        dedup_max_items=100,
        default_poll_interval_seconds=60,
        poll_timeout_seconds=2,
        startup_stagger_seconds=0,
        realtime_long_poll_seconds=0.5,
        realtime_request_timeout_seconds=1,
        realtime_reconnect_delay_seconds=0.01,
        realtime_max_backoff_seconds=0.05,
        shutdown_timeout_seconds=1,
    )


@pytest.fixture
def secrets() -> Callable[[str], str]:
    """In-memory ``get_secret`` returning ``token-<name>``."""

    def _get_secret(name: str) -> str:
        return f"token-{name}"

    return _get_secret


@pytest.fixture
def make_source() -> Callable[..., IntegrationSource]:
    """Factory for integration sources with adapter-specific keys."""

    def _make(source_id: str = "src-1", adapter_type: str = "fake", **extra: Any) -> IntegrationSource:
        return IntegrationSource.model_validate({"id": source_id, "type": adapter_type, **extra})

    return _make
