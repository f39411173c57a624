"""Prometheus metrics definitions for Relay_Ingestor."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

POLL_ATTEMPTS = Counter(
    "relay_poll_attempts_total",
    "Total poll invocations by adapter and status.",
    labelnames=("adapter", "status"),
)

POLL_DURATION = Histogram(
    "relay_poll_duration_seconds",
    "Distribution of poll durations in seconds.",
    labelnames=("adapter",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120),
)

POLL_TICKS_DROPPED = Counter(
    "relay_poll_ticks_dropped_total",
    "Scheduling ticks dropped because a poll for the source was still in flight.",
    labelnames=("adapter",),
)

INGEST_ERRORS = Counter(
    "relay_ingest_errors_total",
    "Total ingestion errors grouped by error type.",
    labelnames=("error_type",),
)

ITEMS_PROCESSED = Counter(
    "relay_items_total",
    "Items seen by the pipeline grouped by outcome.",
    labelnames=("adapter", "outcome"),
)

REALTIME_SESSIONS = Gauge(
    "relay_realtime_sessions",
    "Number of realtime sessions currently connected.",
    labelnames=("adapter",),
)

REALTIME_RECONNECTS = Counter(
    "relay_realtime_reconnects_total",
    "Realtime reconnection attempts.",
    labelnames=("adapter",),
)


def record_poll_attempt(adapter: str, status: str) -> None:
    """Increment the poll attempts counter with the supplied labels."""

    POLL_ATTEMPTS.labels(adapter=adapter, status=status).inc()


def observe_poll_duration(adapter: str, duration_seconds: float) -> None:
    """Record a poll duration in seconds."""

    POLL_DURATION.labels(adapter=adapter).observe(max(duration_seconds, 0.0))


def record_dropped_tick(adapter: str) -> None:
    """Count a scheduling tick skipped by single-flight protection."""

    POLL_TICKS_DROPPED.labels(adapter=adapter).inc()


def record_ingest_error(error_type: str) -> None:
    """Increment the ingestion errors counter for the provided error type."""

    INGEST_ERRORS.labels(error_type=error_type).inc()


def record_item_outcome(adapter: str, outcome: str, count: int = 1) -> None:
    """
    Count pipeline outcomes for items.

    Args:
        adapter: Adapter type that produced the items
        outcome: One of created, replied, duplicate, filtered
        count: Number of items with this outcome
    """
    if count > 0:
        ITEMS_PROCESSED.labels(adapter=adapter, outcome=outcome).inc(count)


def set_session_connected(adapter: str, connected: bool) -> None:
    """Track connected realtime sessions per adapter."""

    if connected:
        REALTIME_SESSIONS.labels(adapter=adapter).inc()
    else:
        REALTIME_SESSIONS.labels(adapter=adapter).dec()


def record_reconnect(adapter: str) -> None:
    """Count a realtime reconnection attempt."""

    REALTIME_RECONNECTS.labels(adapter=adapter).inc()
