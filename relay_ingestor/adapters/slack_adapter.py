"""Adapter that ingests messages from a Slack channel over the Web API."""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from typing import Any

import httpx
from cachetools import TTLCache

from ..exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    ProtocolError,
    RelayIngestorError,
    ResourceNotFoundError,
    TransientTransportError,
)
from ..schemas.items import Attachment, IngestItem
from ..schemas.plugin import Capabilities, ConfigField, ItemField, PluginMetadata
from ..schemas.results import (
    OutboundMessage,
    PollResult,
    SendTarget,
    TestResult,
    ThreadRef,
    ValidationResult,
)
from ..schemas.source import IntegrationSource
from ..utils.config import GlobalSettings
from ..utils.secrets import SecretGetter
from .base import BaseAdapter
from .http import build_client, decode_json, send_request
from .normalizer import (
    ItemNormalizer,
    NativeMessage,
    attachment_type_for_mime,
    make_attachment,
    native_id,
    to_iso_timestamp,
)

SLACK_API_BASE = "https://slack.com/api"
SKIPPED_SUBTYPES = frozenset({"channel_join", "channel_leave", "channel_topic", "channel_purpose"})
CHANNEL_ID_PATTERN = re.compile(r"^[CGD][A-Z0-9]{2,}$")

_AUTH_ERRORS = frozenset(
    {"invalid_auth", "not_authed", "account_inactive", "token_revoked", "token_expired"}
)
_SCOPE_ERRORS = frozenset({"missing_scope", "not_in_channel", "no_permission", "ekm_access_denied"})
_NOT_FOUND_ERRORS = frozenset({"channel_not_found", "thread_not_found", "user_not_found"})

_USER_MENTION = re.compile(r"<@([UW][A-Z0-9]+)>")
_CHANNEL_REF = re.compile(r"<#[A-Z0-9]+\|([^>]+)>")
_LABELLED_LINK = re.compile(r"<(https?://[^|>]+)\|([^>]+)>")
_BARE_LINK = re.compile(r"<(https?://[^>]+)>")


def raise_for_slack_error(error: str | None, *, method: str) -> None:
    """Map a Slack ``{"ok": false, "error": ...}`` code onto the error taxonomy."""
    code = error or "unknown_error"
    resource = f"Slack {method}"
    if code in _AUTH_ERRORS:
        raise AuthenticationError(f"{resource} rejected the bot token: {code}")
    if code in _SCOPE_ERRORS:
        raise AuthorizationError(f"{resource} denied: {code}")
    if code in _NOT_FOUND_ERRORS:
        raise ResourceNotFoundError(f"{resource} failed: {code}")
    if code == "ratelimited":
        raise TransientTransportError(f"{resource} was rate limited")
    raise ProtocolError(f"{resource} returned error: {code}")


class SlackAdapter(BaseAdapter):
    """Polls ``conversations.history`` and tracks thread replies."""

    metadata = PluginMetadata(
        type="slack",
        name="Slack",
        description="Ingest messages from Slack channels",
        version="1.0.0",
        config_fields=[
            ConfigField(
                key="secret_name",
                label="Bot Token Secret",
                type="secret",
                required=True,
                help_text="Name of the secret containing the Slack bot token",
            ),
            ConfigField(
                key="channel",
                label="Channel ID",
                type="string",
                required=True,
                placeholder="C0123ABCDEF",
                help_text="Slack channel ID (not the channel name)",
            ),
            ConfigField(
                key="include_bots",
                label="Include Bot Messages",
                type="boolean",
                default=False,
                help_text="Whether to ingest messages from bots",
            ),
            ConfigField(
                key="track_replies",
                label="Track Thread Replies",
                type="boolean",
                default=True,
                help_text="Poll for and append thread replies to existing work items",
            ),
        ],
        item_fields=[
            ItemField(key="channel", label="Channel", type="string"),
            ItemField(key="is_thread", label="Is Thread", type="boolean"),
            ItemField(key="has_attachments", label="Has Attachments", type="boolean"),
            ItemField(key="author_name", label="Author", type="string"),
        ],
        capabilities=Capabilities(send=True, threads=True),
    )

    def __init__(
        self,
        settings: GlobalSettings | None = None,
        *,
        transport: Any | None = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(settings, transport=transport)
        self._clock = clock
        self._user_names: TTLCache = TTLCache(maxsize=1024, ttl=3600)
        self._failed_lookups: TTLCache = TTLCache(maxsize=1024, ttl=600)
        self._identity: tuple[str | None, str | None] | None = None

    def _client(self) -> httpx.AsyncClient:
        return build_client(transport=self.transport, timeout=15.0, base_url=SLACK_API_BASE)

    async def _call(
        self,
        client: httpx.AsyncClient,
        method: str,
        token: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"}
        http_method = "POST" if json is not None else "GET"
        response = await send_request(
            client,
            http_method,
            f"/{method}",
            resource=f"Slack {method}",
            headers=headers,
            params=params,
            json=json,
        )
        payload = decode_json(response, resource=f"Slack {method}")
        if not isinstance(payload, dict):
            raise ProtocolError(f"Slack {method} returned a non-object payload")
        if not payload.get("ok"):
            raise_for_slack_error(payload.get("error"), method=method)
        return payload

    def validate(self, source: IntegrationSource) -> ValidationResult:
        result = super().validate(source)
        if not result.valid:
            return result
        channel = str(source.setting("channel"))
        if not CHANNEL_ID_PATTERN.match(channel):
            return ValidationResult.fail(
                f"channel must be a Slack channel ID such as C0123ABCDEF (got {channel!r})"
            )
        return ValidationResult.ok()

    async def _bot_identity(self, client: httpx.AsyncClient, token: str) -> tuple[str | None, str | None]:
        """Return (bot user id, workspace url), looked up once per adapter."""
        if self._identity is None:
            data = await self._call(client, "auth.test", token)
            team_url = data.get("url")
            self._identity = (data.get("user_id"), team_url.rstrip("/") if team_url else None)
        return self._identity

    async def _resolve_user_name(self, client: httpx.AsyncClient, token: str, user_id: str) -> str:
        cached = self._user_names.get(user_id)
        if cached is not None:
            return cached
        if user_id in self._failed_lookups:
            return user_id
        try:
            data = await self._call(client, "users.info", token, params={"user": user_id})
        except RelayIngestorError as exc:
            self.logger.warning(f"users.info failed for {user_id}: {exc}")
            self._failed_lookups[user_id] = True
            return user_id
        user = data.get("user") or {}
        profile = user.get("profile") or {}
        name = profile.get("display_name") or user.get("real_name") or user.get("name") or user_id
        self._user_names[user_id] = name
        return name

    async def _format_text(self, client: httpx.AsyncClient, token: str, text: str) -> str:
        if not text:
            return text
        for user_id in dict.fromkeys(_USER_MENTION.findall(text)):
            name = await self._resolve_user_name(client, token, user_id)
            text = text.replace(f"<@{user_id}>", f"@{name}")
        text = _CHANNEL_REF.sub(r"#\1", text)
        text = _LABELLED_LINK.sub(r"[\2](\1)", text)
        return _BARE_LINK.sub(r"\1", text)

    @staticmethod
    def _attachments(message: dict[str, Any]) -> list[Attachment]:
        attachments = []
        for file_info in message.get("files") or []:
            url = file_info.get("url_private_download") or file_info.get("url_private")
            if not url:
                continue
            attachments.append(
                make_attachment(url, attachment_type_for_mime(file_info.get("mimetype")), file_info.get("name"))
            )
        return attachments

    async def _to_item(
        self,
        client: httpx.AsyncClient,
        token: str,
        source: IntegrationSource,
        normalizer: ItemNormalizer,
        message: dict[str, Any],
        *,
        team_url: str | None,
        reply_to: str | None = None,
    ) -> IngestItem | None:
        ts = message.get("ts")
        if not ts:
            raise ProtocolError("Slack message without a ts")
        channel = str(source.setting("channel"))
        user_id = message.get("user")
        author_name = await self._resolve_user_name(client, token, user_id) if user_id else ""
        text = await self._format_text(client, token, message.get("text") or "")
        attachments = self._attachments(message)
        thread_ts = message.get("thread_ts")
        is_thread = bool(thread_ts and message.get("reply_count"))

        permalink = None
        if team_url:
            permalink = f"{team_url}/archives/{channel}/p{ts.replace('.', '')}"

        return normalizer.normalize(
            NativeMessage(
                native_id=ts,
                body=text,
                author=author_name or user_id,
                sender_id=user_id or message.get("bot_id"),
                timestamp=to_iso_timestamp(ts),
                attachments=attachments,
                fields={
                    "channel": channel,
                    "is_thread": is_thread,
                    "has_attachments": bool(attachments),
                    "author_name": author_name,
                },
                reply_to_native_id=reply_to or (thread_ts if thread_ts != ts else None),
                channel_id=channel,
                thread_id=ts,
                metadata={"has_thread": is_thread},
                permalink=permalink,
            )
        )

    async def poll(
        self,
        source: IntegrationSource,
        state: dict[str, Any],
        get_secret: SecretGetter,
    ) -> PollResult:
        token = await self.resolve_secret(get_secret, self.secret_name(source))
        # First run starts at "now" so channel history is not replayed.
        oldest = state.get("oldest") or f"{self._clock():.6f}"
        include_bots = bool(source.setting("include_bots", False))

        async with self._client() as client:
            bot_user_id, team_url = await self._bot_identity(client, token)
            data = await self._call(
                client,
                "conversations.history",
                token,
                params={
                    "channel": source.setting("channel"),
                    "oldest": oldest,
                    "limit": 100,
                    "inclusive": "false",
                },
            )
            normalizer = ItemNormalizer("slack", self_identity=bot_user_id)

            items: list[IngestItem] = []
            newest = oldest
            # conversations.history lists newest first
            for message in reversed(data.get("messages") or []):
                ts = message.get("ts")
                if ts and float(ts) > float(newest):
                    newest = ts
                subtype = message.get("subtype")
                if subtype == "bot_message" and not include_bots:
                    continue
                if subtype in SKIPPED_SUBTYPES:
                    continue
                item = await self._to_item(client, token, source, normalizer, message, team_url=team_url)
                if item is not None:
                    items.append(item)

        return PollResult(items=items, state={**state, "oldest": newest})

    async def poll_replies(
        self,
        source: IntegrationSource,
        threads: list[ThreadRef],
        get_secret: SecretGetter,
    ) -> list[IngestItem]:
        token = await self.resolve_secret(get_secret, self.secret_name(source))
        replies: list[IngestItem] = []

        async with self._client() as client:
            bot_user_id, team_url = await self._bot_identity(client, token)
            normalizer = ItemNormalizer("slack", self_identity=bot_user_id)
            for thread in threads:
                parent_ts = native_id("slack", thread.parent_item_id)
                last_reply_ts = native_id("slack", thread.last_reply_id) if thread.last_reply_id else None
                params: dict[str, Any] = {
                    "channel": source.setting("channel"),
                    "ts": parent_ts,
                    "limit": 100,
                }
                if last_reply_ts:
                    params.update({"oldest": last_reply_ts, "inclusive": "false"})

                try:
                    data = await self._call(client, "conversations.replies", token, params=params)
                except RelayIngestorError as exc:
                    self.logger.warning(
                        f"Skipping thread {thread.parent_item_id}: {exc}",
                        extra={"source_id": source.id},
                    )
                    continue

                for message in data.get("messages") or []:
                    ts = message.get("ts")
                    if not ts or ts == parent_ts:
                        continue
                    if last_reply_ts and float(ts) <= float(last_reply_ts):
                        continue
                    item = await self._to_item(
                        client,
                        token,
                        source,
                        normalizer,
                        message,
                        team_url=team_url,
                        reply_to=parent_ts,
                    )
                    if item is not None:
                        replies.append(item)
        return replies

    async def send(
        self,
        target: SendTarget,
        message: OutboundMessage,
        get_secret: SecretGetter,
    ) -> None:
        source = self.bound_source
        if source is None:
            raise ConfigurationError("slack: send() requires an adapter bound to a source")
        token = await self.resolve_secret(get_secret, self.secret_name(source))
        body: dict[str, Any] = {"channel": target.channel_id, "text": message.text}
        if target.thread_id:
            body["thread_ts"] = native_id("slack", target.thread_id)
        async with self._client() as client:
            await self._call(client, "chat.postMessage", token, json=body)

    async def test(self, source: IntegrationSource, get_secret: SecretGetter) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, category="configuration", message=validation.error or "invalid")

        try:
            token = await self.resolve_secret(get_secret, self.secret_name(source))
            async with self._client() as client:
                auth = await self._call(client, "auth.test", token)
                history = await self._call(
                    client,
                    "conversations.history",
                    token,
                    params={"channel": source.setting("channel"), "limit": 3},
                )
        except RelayIngestorError as exc:
            return self.diagnose(exc, resource="Slack")

        messages = history.get("messages") or []
        samples = [
            {
                "id": f"slack-{message.get('ts')}",
                "title": (message.get("text") or "")[:100] or "Empty message",
                "timestamp": to_iso_timestamp(message.get("ts")),
            }
            for message in messages[:3]
        ]
        return TestResult(
            ok=True,
            message=(
                f"Connected as {auth.get('user')} to team {auth.get('team')}. "
                f"Channel has {len(messages)} recent message(s)."
            ),
            sample_items=samples,
        )
