"""Tests for sources file change detection."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from relay_ingestor.exceptions import ConfigurationError
from relay_ingestor.utils.reload import SourceFileReloader

ONE_SOURCE = "sources:\n  - id: feed\n    type: rss\n    feed_url: https://example.com/a.xml\n"
TWO_SOURCES = ONE_SOURCE + "  - id: feed-b\n    type: rss\n    feed_url: https://example.com/b.xml\n"


def _rewrite(path: Path, content: str, bump: float) -> None:
    path.write_text(content)
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + bump))


@pytest.fixture
def sources_path(tmp_path: Path) -> Path:
    path = tmp_path / "sources.yaml"
    path.write_text(ONE_SOURCE)
    return path


def test_load_then_unchanged(sources_path: Path) -> None:
    reloader = SourceFileReloader(sources_path)

    assert [source.id for source in reloader.load()] == ["feed"]
    assert reloader.check() is None


def test_changed_file_returns_new_sources(sources_path: Path) -> None:
    reloader = SourceFileReloader(sources_path)
    reloader.load()

    _rewrite(sources_path, TWO_SOURCES, bump=5)

    changed = reloader.check()
    assert [source.id for source in changed] == ["feed", "feed-b"]
    assert reloader.check() is None
    assert len(reloader.sources) == 2


def test_invalid_edit_keeps_last_good_sources(sources_path: Path) -> None:
    reloader = SourceFileReloader(sources_path)
    reloader.load()

    _rewrite(sources_path, "sources: [broken\n", bump=5)

    assert reloader.check() is None
    assert [source.id for source in reloader.sources] == ["feed"]
    with pytest.raises(ConfigurationError):
        reloader.load()


def test_missing_file_is_not_a_change(tmp_path: Path) -> None:
    reloader = SourceFileReloader(tmp_path / "absent.yaml")

    assert reloader.check() is None
    assert reloader.path == tmp_path / "absent.yaml"
