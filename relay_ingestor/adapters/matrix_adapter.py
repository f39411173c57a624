"""Adapter for Matrix rooms over the client-server API."""

from __future__ import annotations

import json
import re
import uuid
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from ..exceptions import ProtocolError, RelayIngestorError
from ..schemas.items import IngestItem
from ..schemas.plugin import Capabilities, ConfigField, ItemField, PluginMetadata
from ..schemas.results import (
    OutboundMessage,
    PollResult,
    SendTarget,
    TestResult,
    ValidationResult,
)
from ..schemas.source import IntegrationSource
from ..utils.secrets import SecretGetter
from .base import BaseAdapter, LongPollRealtimeMixin
from .http import build_client, decode_json, send_request
from .normalizer import ItemNormalizer, NativeMessage, make_attachment, native_id, to_iso_timestamp

SYNC_PATH = "/_matrix/client/v3/sync"
MEDIA_MSGTYPES = frozenset({"m.image", "m.file", "m.video", "m.audio"})
_MXC_PATTERN = re.compile(r"^mxc://([^/]+)/(.+)$")


def parse_room_ids(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(room).strip() for room in value if str(room).strip()]


def mxc_to_http(mxc_url: str, homeserver: str) -> str:
    """Resolve an ``mxc://server/media`` URI to a download URL."""
    match = _MXC_PATTERN.match(mxc_url)
    if not match:
        return mxc_url
    return f"{homeserver}/_matrix/media/v3/download/{match.group(1)}/{match.group(2)}"


def build_sync_filter(source: IntegrationSource) -> dict[str, Any]:
    timeline_types = ["m.room.message"]
    if source.setting("include_encrypted", False):
        timeline_types.append("m.room.encrypted")
    sync_filter: dict[str, Any] = {
        "room": {
            "timeline": {"limit": 50, "types": timeline_types},
            "state": {"types": ["m.room.name"]},
            "ephemeral": {"types": []},
        },
        "presence": {"types": []},
        "account_data": {"types": []},
    }
    rooms = parse_room_ids(source.setting("room_ids"))
    if rooms:
        sync_filter["room"]["rooms"] = rooms
    return sync_filter


def _room_name(room_data: dict[str, Any]) -> str | None:
    for event in (room_data.get("state") or {}).get("events") or []:
        if event.get("type") == "m.room.name":
            return (event.get("content") or {}).get("name")
    return None


def _reply_target(content: dict[str, Any]) -> str | None:
    relates_to = content.get("m.relates_to") or {}
    return (relates_to.get("m.in_reply_to") or {}).get("event_id")


class MatrixAdapter(LongPollRealtimeMixin, BaseAdapter):
    """Polls ``/sync`` with a zero timeout, or long-polls it in realtime mode."""

    metadata = PluginMetadata(
        type="matrix",
        name="Matrix",
        description="Ingest messages from Matrix rooms via client-server API",
        version="1.0.0",
        config_fields=[
            ConfigField(
                key="homeserver",
                label="Homeserver URL",
                type="string",
                required=True,
                placeholder="https://matrix.org",
                help_text="Matrix homeserver base URL",
            ),
            ConfigField(
                key="secret_name",
                label="Access Token Secret",
                type="secret",
                required=True,
                help_text="Name of the secret containing the Matrix access token",
            ),
            ConfigField(
                key="user_id",
                label="User ID",
                type="string",
                required=True,
                placeholder="@bot:matrix.org",
                help_text="Full Matrix user ID of the bot account",
            ),
            ConfigField(
                key="room_ids",
                label="Room IDs",
                type="string",
                placeholder="!abc123:matrix.org, !def456:matrix.org",
                help_text="Comma-separated room IDs to monitor (empty for all joined rooms)",
            ),
            ConfigField(
                key="include_encrypted",
                label="Include Encrypted Messages",
                type="boolean",
                default=False,
                help_text="Include encrypted messages as opaque items",
            ),
        ],
        item_fields=[
            ItemField(key="sender", label="Sender", type="string"),
            ItemField(key="room_name", label="Room", type="string"),
            ItemField(key="room_id", label="Room ID", type="string"),
            ItemField(key="is_encrypted", label="Encrypted", type="boolean"),
            ItemField(key="has_media", label="Has Media", type="boolean"),
        ],
        capabilities=Capabilities(realtime=True, send=True),
    )

    @staticmethod
    def _homeserver(source: IntegrationSource) -> str:
        return str(source.setting("homeserver")).rstrip("/")

    def _client(self, source: IntegrationSource, token: str, timeout: float) -> httpx.AsyncClient:
        return build_client(
            transport=self.transport,
            timeout=timeout,
            base_url=self._homeserver(source),
            headers={"Authorization": f"Bearer {token}"},
        )

    def validate(self, source: IntegrationSource) -> ValidationResult:
        result = super().validate(source)
        if not result.valid:
            return result
        parsed = urlparse(str(source.setting("homeserver")))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ValidationResult.fail("homeserver must be a valid http(s) URL")
        user_id = str(source.setting("user_id"))
        if not user_id.startswith("@") or ":" not in user_id:
            return ValidationResult.fail("user_id must look like @bot:matrix.org")
        return ValidationResult.ok()

    async def _sync(
        self,
        source: IntegrationSource,
        token: str,
        *,
        since: str | None,
        timeout_ms: int,
    ) -> dict[str, Any]:
        params = {"timeout": str(timeout_ms), "filter": json.dumps(build_sync_filter(source))}
        if since:
            params["since"] = since
        async with self._client(source, token, self.settings.realtime_request_timeout_seconds) as client:
            response = await send_request(client, "GET", SYNC_PATH, resource="Matrix sync", params=params)
            payload = decode_json(response, resource="Matrix sync")
        if not isinstance(payload, dict) or "next_batch" not in payload:
            raise ProtocolError("Matrix sync response has no next_batch")
        return payload

    def _items_from_sync(self, source: IntegrationSource, payload: dict[str, Any]) -> list[IngestItem]:
        homeserver = self._homeserver(source)
        target_rooms = parse_room_ids(source.setting("room_ids"))
        normalizer = ItemNormalizer(
            "matrix",
            self_identity=source.setting("user_id"),
            include_encrypted=bool(source.setting("include_encrypted", False)),
        )

        items: list[IngestItem] = []
        joined = (payload.get("rooms") or {}).get("join") or {}
        for room_id, room_data in joined.items():
            if target_rooms and room_id not in target_rooms:
                continue
            room_name = _room_name(room_data) or room_id
            for event in (room_data.get("timeline") or {}).get("events") or []:
                message = self._event_to_native(event, room_id, room_name, homeserver)
                if message is None:
                    continue
                item = normalizer.normalize(message)
                if item is not None:
                    items.append(item)
        return items

    @staticmethod
    def _event_to_native(
        event: dict[str, Any],
        room_id: str,
        room_name: str,
        homeserver: str,
    ) -> NativeMessage | None:
        event_type = event.get("type")
        event_id = event.get("event_id")
        if not event_id or event_type not in ("m.room.message", "m.room.encrypted"):
            return None

        content = event.get("content") or {}
        sender = event.get("sender")
        common: dict[str, Any] = {
            "native_id": event_id,
            "author": sender,
            "sender_id": sender,
            "timestamp": to_iso_timestamp(event.get("origin_server_ts"), unit="ms"),
            "reply_to_native_id": _reply_target(content),
            "channel_id": room_id,
            "thread_id": event_id,
            "metadata": {"homeserver": homeserver},
        }
        fields: dict[str, Any] = {
            "sender": sender,
            "room_name": room_name,
            "room_id": room_id,
            "is_encrypted": event_type == "m.room.encrypted",
            "has_media": False,
        }
        if event_type == "m.room.encrypted":
            return NativeMessage(encrypted=True, fields=fields, **common)

        body = content.get("body") or ""
        attachments = []
        if content.get("msgtype") in MEDIA_MSGTYPES:
            fields["has_media"] = True
            if content.get("url"):
                kind = "image" if content.get("msgtype") == "m.image" else "file"
                attachments.append(make_attachment(mxc_to_http(content["url"], homeserver), kind, body or None))
        return NativeMessage(body=body, attachments=attachments, fields=fields, **common)

    async def poll(
        self,
        source: IntegrationSource,
        state: dict[str, Any],
        get_secret: SecretGetter,
    ) -> PollResult:
        token = await self.resolve_secret(get_secret, self.secret_name(source))
        payload = await self._sync(source, token, since=state.get("since"), timeout_ms=0)
        items = self._items_from_sync(source, payload)
        return PollResult(items=items, state={**state, "since": payload["next_batch"]})

    async def open_stream(self, source: IntegrationSource, token: str) -> str:
        # Initial sync only establishes the cursor so history is not replayed.
        payload = await self._sync(source, token, since=None, timeout_ms=0)
        return payload["next_batch"]

    async def receive(
        self,
        source: IntegrationSource,
        token: str,
        cursor: str,
        timeout: float,
    ) -> tuple[str, list[IngestItem]]:
        payload = await self._sync(source, token, since=cursor, timeout_ms=int(timeout * 1000))
        return payload["next_batch"], self._items_from_sync(source, payload)

    async def send(
        self,
        target: SendTarget,
        message: OutboundMessage,
        get_secret: SecretGetter,
    ) -> None:
        source_id = self.bound_source.id if self.bound_source is not None else "matrix"
        source, token = self._require_session(source_id)
        room = quote(target.channel_id, safe="")
        txn_id = f"relay-{uuid.uuid4().hex}"
        body: dict[str, Any] = {"msgtype": "m.text", "body": message.text}
        if target.thread_id:
            body["m.relates_to"] = {
                "m.in_reply_to": {"event_id": native_id("matrix", target.thread_id)}
            }
        async with self._client(source, token, 15.0) as client:
            await send_request(
                client,
                "PUT",
                f"/_matrix/client/v3/rooms/{room}/send/m.room.message/{txn_id}",
                resource="Matrix send",
                json=body,
            )

    async def test(self, source: IntegrationSource, get_secret: SecretGetter) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, category="configuration", message=validation.error or "invalid")

        try:
            token = await self.resolve_secret(get_secret, self.secret_name(source))
            async with self._client(source, token, 15.0) as client:
                whoami = decode_json(
                    await send_request(
                        client, "GET", "/_matrix/client/v3/account/whoami", resource="Matrix whoami"
                    ),
                    resource="Matrix whoami",
                )
                joined = decode_json(
                    await send_request(
                        client, "GET", "/_matrix/client/v3/joined_rooms", resource="Matrix joined_rooms"
                    ),
                    resource="Matrix joined_rooms",
                )
        except RelayIngestorError as exc:
            return self.diagnose(exc, resource=self._homeserver(source))

        user = whoami.get("user_id")
        if not user:
            return TestResult(ok=False, category="authentication", message="Invalid access token")
        rooms = joined.get("joined_rooms") or []
        missing = [room for room in parse_room_ids(source.setting("room_ids")) if room not in rooms]
        if missing:
            return TestResult(
                ok=False,
                category="not_found",
                message=f"Authenticated as {user} but not joined to: {', '.join(missing)}",
            )
        return TestResult(ok=True, message=f"Authenticated as {user}. Joined {len(rooms)} room(s).")
