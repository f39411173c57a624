"""Logging configuration for Relay_Ingestor.

Every line carries the same structured columns so a grep for
``source_id=slack-eng`` finds everything one source did, whichever component
logged it.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from threading import Lock
from typing import Any, Final

from .config import get_settings

LOG_FORMAT: Final[str] = (
    "%(asctime)s | %(levelname)s | %(name)s | component=%(component)s | "
    "source_id=%(source_id)s | adapter=%(adapter_type)s | status=%(status)s | "
    "duration_ms=%(duration_ms)s | items=%(items)s | %(message)s"
)

CONTEXT_FIELDS: Final[tuple[str, ...]] = (
    "component",
    "source_id",
    "adapter_type",
    "status",
    "duration_ms",
    "items",
)

_configured = False
_configure_lock: Final = Lock()


class StructuredFormatter(logging.Formatter):
    """Formatter that renders ``-`` for any structured column a record lacks."""

    def __init__(self, fmt: str = LOG_FORMAT, placeholder: str = "-") -> None:
        super().__init__(fmt)
        self._placeholder = placeholder

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        for field in CONTEXT_FIELDS:
            if getattr(record, field, None) is None:
                setattr(record, field, self._placeholder)
        return super().format(record)


def configure_logging(level: str | None = None, *, force: bool = False) -> None:
    """
    Install the structured formatter on the root logger.

    Runs once per process unless ``force`` is given. Existing root handlers
    (pytest's capture handler, uvicorn's) keep their stream and only get the
    formatter.

    Args:
        level: Level name; defaults to ``settings.log_level``
        force: Re-apply even when logging was already configured
    """
    global _configured
    with _configure_lock:
        if _configured and not force:
            return

        level_name = (level or get_settings().log_level).upper()
        root = logging.getLogger()
        root.setLevel(getattr(logging, level_name, logging.INFO))

        formatter = StructuredFormatter()
        if not root.handlers:
            root.addHandler(logging.StreamHandler(sys.stderr))
        for handler in root.handlers:
            handler.setFormatter(formatter)

        _configured = True


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Merges bound context with per-call ``extra``; the call wins on conflicts."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:  # type: ignore[override]
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context: Any) -> StructuredLoggerAdapter:
        """Return a logger for the same name with extra bound context."""
        return StructuredLoggerAdapter(self.logger, {**(self.extra or {}), **context})


def setup_logger(
    name: str,
    *,
    component: str | None = None,
    level: str | None = None,
    context: Mapping[str, Any] | None = None,
) -> StructuredLoggerAdapter:
    """Return a structured logger, configuring the root logger on first use.

    Args:
        name: Logger name, usually ``__name__``.
        component: Value for the ``component`` column (engine, api, cli, ...).
        level: Optional level override for this logger only.
        context: Further structured fields bound to every entry.
    """

    configure_logging()
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    bound: dict[str, Any] = dict(context or {})
    if component is not None:
        bound["component"] = component
    return StructuredLoggerAdapter(logger, bound)


def log_poll_outcome(
    logger: logging.Logger | logging.LoggerAdapter,
    source_id: str,
    adapter_type: str,
    duration_ms: int,
    status: str,
    **counts: Any,
) -> None:
    """
    Write the one summary line each poll produces.

    Args:
        logger: Logger instance
        source_id: Source identifier
        adapter_type: Type of adapter polled
        duration_ms: Poll duration in milliseconds
        status: ``success`` or ``error``
        **counts: Item counters and an optional ``error`` message
    """
    error = counts.pop("error", None)
    found = counts.get("items_found", 0)
    new = counts.get("items_new", 0)

    extra: dict[str, Any] = {
        key: value for key, value in counts.items() if key not in CONTEXT_FIELDS
    }
    extra.update(
        source_id=source_id,
        adapter_type=adapter_type,
        duration_ms=duration_ms,
        status=status,
        items=f"{new}/{found}",
    )

    if (status or "").lower() == "success":
        logger.info(f"Polled: {new} new, {found - new} skipped", extra=extra)
    else:
        logger.error(f"Poll {status or 'unknown'}: {error or 'unknown error'}", extra=extra)
