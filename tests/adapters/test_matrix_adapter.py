"""Test suite for MatrixAdapter sync handling using HTTPX MockTransport."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from relay_ingestor.adapters.base import RealtimeCallbacks
from relay_ingestor.adapters.matrix_adapter import MatrixAdapter, build_sync_filter, mxc_to_http
from relay_ingestor.exceptions import AuthenticationError, ProtocolError, SessionNotConnectedError
from relay_ingestor.schemas.results import OutboundMessage, SendTarget

HOMESERVER = "https://matrix.example.org"
ROOM = "!ops:example.org"


def message_event(event_id: str, body: str, *, sender: str = "@alice:example.org", **content: Any) -> dict[str, Any]:
    return {
        "type": "m.room.message",
        "event_id": event_id,
        "sender": sender,
        "origin_server_ts": 1704067200000,
        "content": {"msgtype": "m.text", "body": body, **content},
    }


def sync_payload(next_batch: str, events: list[dict[str, Any]], room: str = ROOM) -> dict[str, Any]:
    return {
        "next_batch": next_batch,
        "rooms": {
            "join": {
                room: {
                    "state": {"events": [{"type": "m.room.name", "content": {"name": "Ops"}}]},
                    "timeline": {"events": events},
                }
            }
        },
    }


def build_transport(responses: list[Any], calls: list[httpx.Request]) -> httpx.MockTransport:
    """Serve queued sync responses; once drained, answer empty syncs slowly."""

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.method == "PUT":
            return httpx.Response(200, json={"event_id": "$sent"})
        if responses:
            response = responses.pop(0)
            if isinstance(response, httpx.Response):
                return response
            return httpx.Response(200, json=response)
        await asyncio.sleep(0.02)
        return httpx.Response(200, json={"next_batch": request.url.params.get("since", "s0")})

    return httpx.MockTransport(handler)


@pytest.fixture
def matrix_source(make_source):
    return make_source(
        "matrix-ops",
        "matrix",
        homeserver=HOMESERVER,
        secret_name="matrix-bot",
        user_id="@relay:example.org",
        room_ids=ROOM,
    )


@pytest.mark.asyncio
async def test_poll_returns_room_messages(settings, matrix_source, secrets) -> None:
    events = [
        message_event("$1", "Disk full on db-1\nsee graphs"),
        message_event("$2", "my own status", sender="@relay:example.org"),
        {"type": "m.room.encrypted", "event_id": "$3", "sender": "@bob:example.org", "content": {}},
        message_event("$4", "graph.png", msgtype="m.image", url="mxc://example.org/abc"),
        message_event("$5", "on it", **{"m.relates_to": {"m.in_reply_to": {"event_id": "$1"}}}),
    ]
    calls: list[httpx.Request] = []
    adapter = MatrixAdapter(settings, transport=build_transport([sync_payload("s2", events)], calls))

    result = await adapter.poll(matrix_source, {"since": "s1"}, secrets)

    assert result.state == {"since": "s2"}
    assert [item.id for item in result.items] == ["matrix-$1", "matrix-$4", "matrix-$5"]
    first, image, reply = result.items
    assert first.title == "Disk full on db-1"
    assert first.fields["room_name"] == "Ops"
    assert first.timestamp == "2024-01-01T00:00:00+00:00"
    assert image.attachments[0].url == f"{HOMESERVER}/_matrix/media/v3/download/example.org/abc"
    assert image.fields["has_media"] is True
    assert reply.reply_to == "matrix-$1"

    (request,) = calls
    assert request.url.params["since"] == "s1"
    assert request.url.params["timeout"] == "0"
    assert request.headers["Authorization"] == "Bearer token-matrix-bot"


@pytest.mark.asyncio
async def test_encrypted_messages_become_placeholders_when_enabled(settings, make_source, secrets) -> None:
    source = make_source(
        "matrix-e2e",
        "matrix",
        homeserver=HOMESERVER,
        secret_name="matrix-bot",
        user_id="@relay:example.org",
        include_encrypted=True,
    )
    events = [{"type": "m.room.encrypted", "event_id": "$9", "sender": "@bob:example.org", "content": {}}]
    adapter = MatrixAdapter(settings, transport=build_transport([sync_payload("s2", events)], []))

    (item,) = (await adapter.poll(source, {}, secrets)).items

    assert item.title == "[Encrypted message]"
    assert item.fields["is_encrypted"] is True
    assert "m.room.encrypted" in build_sync_filter(source)["room"]["timeline"]["types"]


@pytest.mark.asyncio
async def test_rooms_outside_filter_are_ignored(settings, matrix_source, secrets) -> None:
    payload = sync_payload("s2", [message_event("$1", "elsewhere")], room="!other:example.org")
    adapter = MatrixAdapter(settings, transport=build_transport([payload], []))

    assert (await adapter.poll(matrix_source, {}, secrets)).items == []


@pytest.mark.asyncio
async def test_sync_errors_are_classified(settings, matrix_source, secrets) -> None:
    responses = [httpx.Response(401, json={"errcode": "M_UNKNOWN_TOKEN"}), {"rooms": {}}]
    adapter = MatrixAdapter(settings, transport=build_transport(responses, []))

    with pytest.raises(AuthenticationError):
        await adapter.poll(matrix_source, {}, secrets)
    with pytest.raises(ProtocolError):
        await adapter.poll(matrix_source, {}, secrets)


@pytest.mark.asyncio
async def test_realtime_session_streams_and_sends(settings, matrix_source, secrets) -> None:
    calls: list[httpx.Request] = []
    responses = [{"next_batch": "s1"}, sync_payload("s2", [message_event("$7", "paged")])]
    adapter = MatrixAdapter(settings, transport=build_transport(responses, calls)).bind(matrix_source)
    received: list[str] = []
    disconnects: list[str] = []
    callbacks = RealtimeCallbacks(
        on_message=lambda item: received.append(item.id),
        on_error=lambda exc: None,
        on_disconnect=disconnects.append,
    )

    target = SendTarget(channel_id=ROOM, thread_id="matrix-$7")
    with pytest.raises(SessionNotConnectedError):
        await adapter.send(target, OutboundMessage(text="ack"), secrets)

    task = asyncio.create_task(adapter.connect(matrix_source, secrets, callbacks))
    deadline = asyncio.get_running_loop().time() + 2
    while not received and asyncio.get_running_loop().time() < deadline:
        await asyncio.sleep(0.01)
    await adapter.send(target, OutboundMessage(text="ack"), secrets)
    await adapter.disconnect()
    await asyncio.wait_for(task, timeout=2)

    assert received == ["matrix-$7"]
    assert disconnects == ["stopped"]
    assert "since" not in calls[0].url.params
    assert calls[1].url.params["since"] == "s1"
    assert calls[1].url.params["timeout"] == "500"
    put = next(call for call in calls if call.method == "PUT")
    assert put.url.path.startswith(f"/_matrix/client/v3/rooms/{ROOM}/send/m.room.message/relay-")
    assert json.loads(put.content)["m.relates_to"] == {"m.in_reply_to": {"event_id": "$7"}}


def test_validate_checks_homeserver_and_user(settings, make_source) -> None:
    adapter = MatrixAdapter(settings)
    base = {"secret_name": "bot", "homeserver": HOMESERVER, "user_id": "@relay:example.org"}

    assert adapter.validate(make_source("m", "matrix", **base)).valid
    assert not adapter.validate(make_source("m", "matrix", **{**base, "homeserver": "matrix.org"})).valid
    assert not adapter.validate(make_source("m", "matrix", **{**base, "user_id": "relay"})).valid


def test_mxc_passthrough_for_plain_urls() -> None:
    assert mxc_to_http("https://cdn.example.org/x.png", HOMESERVER) == "https://cdn.example.org/x.png"
