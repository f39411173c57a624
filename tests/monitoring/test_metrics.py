"""Tests for Prometheus metric helpers."""

from __future__ import annotations

from prometheus_client import REGISTRY

from relay_ingestor.monitoring.metrics import (
    observe_poll_duration,
    record_dropped_tick,
    record_ingest_error,
    record_item_outcome,
    record_poll_attempt,
    record_reconnect,
    set_session_connected,
)


def _get_metric_value(metric_name: str, labels: dict[str, str] | None = None) -> float:
    """Helper to retrieve current metric value from registry."""
    value = REGISTRY.get_sample_value(metric_name, labels or {})
    return float(value) if value is not None else 0.0


class TestPollMetrics:
    def test_record_poll_attempt_increments_counter(self) -> None:
        labels = {"adapter": "metrics-test", "status": "success"}
        before = _get_metric_value("relay_poll_attempts_total", labels)

        record_poll_attempt("metrics-test", "success")

        assert _get_metric_value("relay_poll_attempts_total", labels) == before + 1

    def test_negative_duration_is_clamped(self) -> None:
        labels = {"adapter": "metrics-test"}
        before_count = _get_metric_value("relay_poll_duration_seconds_count", labels)
        before_sum = _get_metric_value("relay_poll_duration_seconds_sum", labels)

        observe_poll_duration("metrics-test", -1.0)

        assert _get_metric_value("relay_poll_duration_seconds_count", labels) == before_count + 1
        assert _get_metric_value("relay_poll_duration_seconds_sum", labels) == before_sum

    def test_dropped_tick_and_errors(self) -> None:
        before_dropped = _get_metric_value("relay_poll_ticks_dropped_total", {"adapter": "metrics-test"})
        before_errors = _get_metric_value("relay_ingest_errors_total", {"error_type": "ProtocolError"})

        record_dropped_tick("metrics-test")
        record_ingest_error("ProtocolError")

        assert _get_metric_value("relay_poll_ticks_dropped_total", {"adapter": "metrics-test"}) == before_dropped + 1
        assert _get_metric_value("relay_ingest_errors_total", {"error_type": "ProtocolError"}) == before_errors + 1


class TestItemMetrics:
    def test_zero_count_is_not_recorded(self) -> None:
        labels = {"adapter": "metrics-zero", "outcome": "filtered"}

        record_item_outcome("metrics-zero", "filtered", 0)

        assert REGISTRY.get_sample_value("relay_items_total", labels) is None

    def test_counts_accumulate(self) -> None:
        labels = {"adapter": "metrics-test", "outcome": "created"}
        before = _get_metric_value("relay_items_total", labels)

        record_item_outcome("metrics-test", "created", 3)

        assert _get_metric_value("relay_items_total", labels) == before + 3


def test_realtime_session_gauge_and_reconnects() -> None:
    labels = {"adapter": "metrics-rt"}
    before = _get_metric_value("relay_realtime_sessions", labels)
    before_reconnects = _get_metric_value("relay_realtime_reconnects_total", labels)

    set_session_connected("metrics-rt", True)
    set_session_connected("metrics-rt", True)
    set_session_connected("metrics-rt", False)
    record_reconnect("metrics-rt")

    assert _get_metric_value("relay_realtime_sessions", labels) == before + 1
    assert _get_metric_value("relay_realtime_reconnects_total", labels) == before_reconnects + 1
