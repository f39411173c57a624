"""Test suite for RSSAdapter using HTTPX MockTransport."""

from __future__ import annotations

import httpx
import pytest

from relay_ingestor.adapters.rss_adapter import RSSAdapter, is_image_url
from relay_ingestor.exceptions import ProtocolError, ResourceNotFoundError

FEED_URL = "https://status.example.com/feed.xml"

FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Status</title>
    <item>
      <guid>post-3</guid>
      <title>API latency elevated</title>
      <link>https://status.example.com/posts/3</link>
      <description>&lt;p&gt;Latency is &lt;b&gt;high&lt;/b&gt;&lt;/p&gt;&lt;img src="https://cdn.example.com/chart.png"/&gt;</description>
      <author>ops@example.com</author>
      <category>incident</category>
      <pubDate>Tue, 02 Jan 2024 10:00:00 GMT</pubDate>
    </item>
    <item>
      <guid>post-2</guid>
      <title>Maintenance window</title>
      <link>https://status.example.com/posts/2</link>
      <description>Planned maintenance</description>
      <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate>
    </item>
    <item>
      <guid>post-1</guid>
      <title>All systems go</title>
      <pubDate>Sun, 31 Dec 2023 10:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""


def build_transport(status_code: int = 200, content: bytes = FEED, seen: list[httpx.Request] | None = None):
    async def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(
            status_code,
            headers={"ETag": '"v2"', "Last-Modified": "Tue, 02 Jan 2024 10:00:00 GMT"},
            content=content if status_code == 200 else b"",
        )

    return httpx.MockTransport(handler)


@pytest.fixture
def rss_source(make_source):
    return make_source("status-feed", "rss", feed_url=FEED_URL)


@pytest.mark.asyncio
async def test_poll_emits_entries_newer_than_last_seen(settings, rss_source, secrets) -> None:
    adapter = RSSAdapter(settings, transport=build_transport())

    result = await adapter.poll(rss_source, {"last_seen_id": "post-1"}, secrets)

    assert [item.id for item in result.items] == ["rss-post-3", "rss-post-2"]
    latest = result.items[0]
    assert latest.title == "API latency elevated"
    assert latest.description == "Latency is high\n\nSource: https://status.example.com/posts/3"
    assert latest.fields == {"category": "incident", "author": "ops@example.com", "has_image": True}
    assert latest.attachments[0].url == "https://cdn.example.com/chart.png"
    assert latest.timestamp == "2024-01-02T10:00:00+00:00"
    assert result.state == {
        "last_seen_id": "post-3",
        "last_seen_date": "2024-01-02T10:00:00+00:00",
        "etag": '"v2"',
        "last_modified": "Tue, 02 Jan 2024 10:00:00 GMT",
    }


@pytest.mark.asyncio
async def test_date_cutoff_skips_old_entries(settings, rss_source, secrets) -> None:
    adapter = RSSAdapter(settings, transport=build_transport())

    result = await adapter.poll(rss_source, {"last_seen_date": "2024-01-01T10:00:00+00:00"}, secrets)

    assert [item.id for item in result.items] == ["rss-post-3"]


@pytest.mark.asyncio
async def test_not_modified_keeps_cursor(settings, rss_source, secrets) -> None:
    seen: list[httpx.Request] = []
    adapter = RSSAdapter(settings, transport=build_transport(304, seen=seen))
    state = {"last_seen_id": "post-3", "etag": '"v1"'}

    result = await adapter.poll(rss_source, state, secrets)

    assert result.items == []
    assert result.state["last_seen_id"] == "post-3"
    assert result.state["etag"] == '"v2"'
    assert seen[0].headers["If-None-Match"] == '"v1"'


@pytest.mark.asyncio
async def test_missing_feed_is_not_found(settings, rss_source, secrets) -> None:
    adapter = RSSAdapter(settings, transport=build_transport(404))

    with pytest.raises(ResourceNotFoundError):
        await adapter.poll(rss_source, {}, secrets)


@pytest.mark.asyncio
async def test_unparseable_feed_is_protocol_error(settings, rss_source, secrets) -> None:
    adapter = RSSAdapter(settings, transport=build_transport(content=b"<html><body>oops"))

    with pytest.raises(ProtocolError):
        await adapter.poll(rss_source, {}, secrets)


@pytest.mark.asyncio
async def test_connection_test_lists_samples(settings, rss_source, secrets) -> None:
    adapter = RSSAdapter(settings, transport=build_transport())

    result = await adapter.test(rss_source, secrets)

    assert result.ok
    assert result.message == "Feed 'Status' has 3 item(s)"
    assert [sample["id"] for sample in result.sample_items] == ["post-3", "post-2", "post-1"]


@pytest.mark.asyncio
async def test_connection_test_rejects_bad_url(settings, make_source, secrets) -> None:
    result = await RSSAdapter(settings).test(make_source("f", "rss", feed_url="ftp://x"), secrets)

    assert not result.ok
    assert result.category == "configuration"


def test_is_image_url() -> None:
    assert is_image_url("https://cdn.example.com/a.PNG?size=2")
    assert not is_image_url("https://cdn.example.com/a.pdf")
    assert not is_image_url(None)


HREFLESS_ENCLOSURE_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Status</title>
    <item>
      <guid>post-9</guid>
      <title>Chart unavailable</title>
      <description>Plain text only</description>
      <enclosure type="image/png" length="1"/>
    </item>
  </channel>
</rss>
"""


@pytest.mark.asyncio
async def test_image_enclosure_without_url_is_ignored(settings, rss_source, secrets) -> None:
    adapter = RSSAdapter(settings, transport=build_transport(content=HREFLESS_ENCLOSURE_FEED))

    result = await adapter.poll(rss_source, {}, secrets)

    assert [item.id for item in result.items] == ["rss-post-9"]
    assert result.items[0].attachments == []
    assert result.items[0].fields.get("has_image") is not True
