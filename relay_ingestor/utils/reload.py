"""Change detection for the sources configuration file."""

from __future__ import annotations

from pathlib import Path

from ..exceptions import ConfigurationError
from ..schemas.source import IntegrationSource
from ..utils.config import load_sources
from ..utils.logging import setup_logger

logger = setup_logger(__name__, component="config")


class SourceFileReloader:
    """
    Re-reads the sources file when its modification time changes.

    A file that fails to parse is logged and the last good list is kept, so a
    half-saved edit never tears down running sources.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._mtime: float | None = None
        self._sources: list[IntegrationSource] = []

    @property
    def path(self) -> Path:
        return self._path

    @property
    def sources(self) -> list[IntegrationSource]:
        return list(self._sources)

    def load(self) -> list[IntegrationSource]:
        """Load unconditionally; raises on an invalid file."""
        self._sources = load_sources(self._path)
        self._mtime = self._current_mtime()
        logger.info(f"Loaded {len(self._sources)} source(s) from {self._path}")
        return self.sources

    def _current_mtime(self) -> float | None:
        try:
            return self._path.stat().st_mtime
        except FileNotFoundError:
            return None

    def check(self) -> list[IntegrationSource] | None:
        """Return the new source list if the file changed, otherwise ``None``."""
        mtime = self._current_mtime()
        if mtime is None or mtime == self._mtime:
            return None

        try:
            sources = load_sources(self._path)
        except ConfigurationError as exc:
            logger.error(f"Ignoring invalid sources file {self._path}: {exc}")
            self._mtime = mtime
            return None

        self._mtime = mtime
        self._sources = sources
        logger.info(f"Sources file changed, {len(sources)} source(s) configured")
        return self.sources
