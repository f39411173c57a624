"""Adapter for RSS and Atom feeds."""

from __future__ import annotations

import calendar
import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import feedparser
from bs4 import BeautifulSoup

from ..exceptions import ProtocolError, RelayIngestorError
from ..schemas.items import Attachment, IngestItem
from ..schemas.plugin import ConfigField, ItemField, PluginMetadata
from ..schemas.results import PollResult, TestResult, ValidationResult
from ..schemas.source import IntegrationSource
from ..utils.secrets import SecretGetter
from .base import BaseAdapter
from .http import build_client, send_request
from .normalizer import ItemNormalizer, NativeMessage, content_hash, html_to_text, make_attachment

DESCRIPTION_LIMIT = 1000
_IMAGE_URL = re.compile(r"\.(jpg|jpeg|png|gif|webp|svg|avif)(\?|$)", re.IGNORECASE)


def is_image_url(url: str | None) -> bool:
    return bool(url) and bool(_IMAGE_URL.search(url or ""))


def _entry_datetime(entry: Any) -> datetime | None:
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
    return None


def _entry_id(entry: Any) -> str | None:
    return entry.get("id") or entry.get("guid") or entry.get("link")


def _entry_html(entry: Any) -> str:
    contents = entry.get("content") or []
    if contents:
        return contents[0].get("value", "")
    return entry.get("summary", "")


def extract_images(entry: Any) -> list[Attachment]:
    urls: list[str] = []
    for enclosure in entry.get("enclosures") or []:
        href = enclosure.get("href")
        if not href:
            continue
        if is_image_url(href) or str(enclosure.get("type", "")).startswith("image/"):
            urls.append(href)
    for media in entry.get("media_content") or []:
        if is_image_url(media.get("url")):
            urls.append(media["url"])

    markup = _entry_html(entry)
    if markup:
        image = BeautifulSoup(markup, "html.parser").find("img", src=True)
        if image is not None:
            urls.append(str(image["src"]))

    return [make_attachment(url, "image") for url in dict.fromkeys(urls)]


def build_description(entry: Any) -> str:
    parts = []
    text = html_to_text(entry.get("summary") or _entry_html(entry))
    if text:
        parts.append(text[:DESCRIPTION_LIMIT])
    if entry.get("link"):
        parts.append(f"\nSource: {entry['link']}")
    return "\n".join(parts) or "No description"


class RSSAdapter(BaseAdapter):
    """Fetches a feed with conditional GET and emits entries newer than the cursor."""

    metadata = PluginMetadata(
        type="rss",
        name="RSS Feed",
        description="Ingest items from RSS and Atom feeds",
        version="1.0.0",
        config_fields=[
            ConfigField(
                key="feed_url",
                label="Feed URL",
                type="string",
                required=True,
                placeholder="https://example.com/feed.xml",
                help_text="The URL of the RSS or Atom feed",
            )
        ],
        item_fields=[
            ItemField(key="category", label="Category", type="string"),
            ItemField(key="author", label="Author", type="string"),
            ItemField(key="has_image", label="Has Image", type="boolean"),
        ],
    )

    def validate(self, source: IntegrationSource) -> ValidationResult:
        result = super().validate(source)
        if not result.valid:
            return result
        feed_url = str(source.setting("feed_url"))
        parsed = urlparse(feed_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ValidationResult.fail(f"Invalid feed_url: {feed_url}")
        return ValidationResult.ok()

    async def _fetch(self, feed_url: str, state: dict[str, Any]) -> tuple[Any | None, dict[str, str]]:
        """Return the parsed feed (``None`` on 304) and the validators to store."""
        headers: dict[str, str] = {}
        if state.get("etag"):
            headers["If-None-Match"] = state["etag"]
        if state.get("last_modified"):
            headers["If-Modified-Since"] = state["last_modified"]

        async with build_client(transport=self.transport, timeout=15.0) as client:
            response = await send_request(client, "GET", feed_url, resource=f"Feed {feed_url}", headers=headers)

        validators = {}
        if response.headers.get("etag"):
            validators["etag"] = response.headers["etag"]
        if response.headers.get("last-modified"):
            validators["last_modified"] = response.headers["last-modified"]
        if response.status_code == 304:
            return None, validators

        feed = await self._run_in_thread(feedparser.parse, response.content)
        if feed.get("bozo") and not feed.get("entries"):
            raise ProtocolError(f"Feed {feed_url} could not be parsed: {feed.get('bozo_exception')}")
        return feed, validators

    async def poll(
        self,
        source: IntegrationSource,
        state: dict[str, Any],
        get_secret: SecretGetter,
    ) -> PollResult:
        feed, validators = await self._fetch(str(source.setting("feed_url")), state)
        if feed is None:
            return PollResult(items=[], state={**state, **validators})

        last_seen_id = state.get("last_seen_id")
        last_seen_date = state.get("last_seen_date")
        cutoff = datetime.fromisoformat(last_seen_date) if last_seen_date else None
        normalizer = ItemNormalizer("rss", fallback_title="Untitled")

        items: list[IngestItem] = []
        newest_id: str | None = None
        newest_date: str | None = None
        # Feeds list newest entries first.
        for entry in feed.entries:
            entry_id = _entry_id(entry)
            if not entry_id:
                continue
            if entry_id == last_seen_id:
                break
            published = _entry_datetime(entry)
            if cutoff is not None and published is not None and published <= cutoff:
                continue

            if newest_id is None:
                newest_id = entry_id
                newest_date = (published or datetime.now(timezone.utc)).isoformat()

            attachments = extract_images(entry)
            author = entry.get("author") or ""
            tags = entry.get("tags") or []
            category = tags[0].get("term", "") if tags else ""
            description = build_description(entry)
            item = normalizer.normalize(
                NativeMessage(
                    native_id=entry_id,
                    title=entry.get("title") or "Untitled",
                    body=description,
                    author=author or None,
                    timestamp=published.isoformat() if published else None,
                    attachments=attachments,
                    fields={"category": category, "author": author, "has_image": bool(attachments)},
                    channel_id=str(source.setting("feed_url")),
                    permalink=entry.get("link"),
                    hash=content_hash(entry_id, entry.get("title"), description),
                )
            )
            if item is not None:
                items.append(item)

        new_state = {
            **state,
            **validators,
            "last_seen_id": newest_id or last_seen_id,
            "last_seen_date": newest_date or last_seen_date,
        }
        return PollResult(items=items, state=new_state)

    async def test(self, source: IntegrationSource, get_secret: SecretGetter) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, category="configuration", message=validation.error or "invalid")

        feed_url = str(source.setting("feed_url"))
        try:
            feed, _ = await self._fetch(feed_url, {})
        except RelayIngestorError as exc:
            return self.diagnose(exc, resource=feed_url)

        entries = feed.entries if feed is not None else []
        samples = [
            {
                "id": _entry_id(entry) or "unknown",
                "title": entry.get("title") or "Untitled",
                "description": html_to_text(entry.get("summary", ""))[:200],
            }
            for entry in entries[:3]
        ]
        title = (feed.feed.get("title") if feed is not None else None) or feed_url
        return TestResult(ok=True, message=f"Feed '{title}' has {len(entries)} item(s)", sample_items=samples)
