"""Conversion of protocol-native messages into canonical ingest items."""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from bs4 import BeautifulSoup

from ..schemas.items import Attachment, FieldValue, IngestItem, ItemOrigin

TITLE_MAX_LENGTH = 200
ENCRYPTED_PLACEHOLDER = "[Encrypted message]"
ENCRYPTED_DESCRIPTION = (
    "This message is end-to-end encrypted and cannot be decrypted by the ingest adapter."
)


def namespaced_id(adapter_type: str, native_id: str | int) -> str:
    """Return ``{adapter_type}-{native_id}``, the only id scheme items use."""
    return f"{adapter_type}-{native_id}"


def native_id(adapter_type: str, item_id: str) -> str:
    """Invert :func:`namespaced_id`; ids without the prefix are returned unchanged."""
    prefix = f"{adapter_type}-"
    if item_id.startswith(prefix):
        return item_id[len(prefix):]
    return item_id


def make_title(body: str | None, fallback: str) -> str:
    """First line of ``body``, cut to 200 characters with a ``...`` marker."""
    first_line = (body or "").strip().split("\n", 1)[0].strip()
    if not first_line:
        return fallback
    if len(first_line) > TITLE_MAX_LENGTH:
        return first_line[:TITLE_MAX_LENGTH] + "..."
    return first_line


def html_to_text(markup: str | None) -> str:
    """Plain text of an HTML fragment with whitespace collapsed."""
    if not markup:
        return ""
    text = BeautifulSoup(markup, "html.parser").get_text(" ", strip=True)
    return re.sub(r"\s+", " ", text).strip()


def content_hash(*parts: str | None) -> str:
    """Short SHA-256 fingerprint over the given parts."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update((part or "").encode("utf-8"))
    return digest.hexdigest()[:16]


def make_attachment(
    url: str,
    type: str = "file",
    filename: str | None = None,
    local_path: str | None = None,
) -> Attachment:
    return Attachment(url=url, type=type, filename=filename, local_path=local_path)


def attachment_type_for_mime(mimetype: str | None) -> str:
    if mimetype and mimetype.lower().startswith("image/"):
        return "image"
    return "file"


def to_iso_timestamp(value: datetime | float | int | str | None, *, unit: str = "s") -> str:
    """
    Normalize a protocol timestamp to ISO-8601 UTC.

    Args:
        value: datetime, epoch number (``unit`` is ``"s"`` or ``"ms"``) or a string
        unit: Unit of numeric epochs

    Returns:
        ISO-8601 string; the current time when ``value`` is missing
    """
    if value is None or value == "":
        return datetime.now(timezone.utc).isoformat()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError:
            return value
        value = numeric
    seconds = float(value) / 1000.0 if unit == "ms" else float(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


def _flatten_fields(fields: dict[str, Any]) -> dict[str, FieldValue]:
    flat: dict[str, FieldValue] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, float) and math.isnan(value):
            continue
        if isinstance(value, bool | int | float | str):
            flat[key] = value
        else:
            flat[key] = str(value)
    return flat


@dataclass
class NativeMessage:
    """Protocol-independent view of a message before normalization."""

    native_id: str
    body: str = ""
    author: str | None = None
    sender_id: str | None = None
    timestamp: str | None = None
    title: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    fields: dict[str, Any] = field(default_factory=dict)
    reply_to_native_id: str | None = None
    channel_id: str | None = None
    thread_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    permalink: str | None = None
    encrypted: bool = False
    hash: str | None = None


class ItemNormalizer:
    """
    Builds :class:`IngestItem` objects for one adapter type and source.

    Messages authored by ``self_identity`` are dropped. Encrypted messages
    are surfaced as placeholder items only when ``include_encrypted`` is set.
    """

    def __init__(
        self,
        adapter_type: str,
        *,
        self_identity: str | None = None,
        include_encrypted: bool = False,
        fallback_title: str | None = None,
    ):
        self.adapter_type = adapter_type
        self.self_identity = self_identity
        self.include_encrypted = include_encrypted
        self.fallback_title = fallback_title or f"{adapter_type.capitalize()} message"

    def is_self_authored(self, message: NativeMessage) -> bool:
        if not self.self_identity:
            return False
        identity = str(self.self_identity).casefold()
        return any(
            candidate is not None and candidate.casefold() == identity
            for candidate in (message.sender_id, message.author)
        )

    def normalize(self, message: NativeMessage) -> IngestItem | None:
        """Return the canonical item, or ``None`` when the message must be dropped."""
        if self.is_self_authored(message):
            return None
        if message.encrypted:
            if not self.include_encrypted:
                return None
            return self._encrypted_item(message)

        if not message.body and not message.attachments and not message.title:
            return None

        return IngestItem(
            id=namespaced_id(self.adapter_type, message.native_id),
            title=message.title or make_title(message.body, self.fallback_title),
            description=message.body,
            hash=message.hash or content_hash(message.native_id, message.body),
            author=message.author,
            timestamp=message.timestamp or to_iso_timestamp(None),
            attachments=list(message.attachments),
            fields=_flatten_fields(message.fields),
            reply_to=self._reply_to(message),
            origin=self._origin(message),
            permalink=message.permalink,
        )

    def _encrypted_item(self, message: NativeMessage) -> IngestItem:
        fields = dict(message.fields)
        fields["is_encrypted"] = True
        return IngestItem(
            id=namespaced_id(self.adapter_type, message.native_id),
            title=ENCRYPTED_PLACEHOLDER,
            description=ENCRYPTED_DESCRIPTION,
            hash=None,
            author=message.author,
            timestamp=message.timestamp or to_iso_timestamp(None),
            fields=_flatten_fields(fields),
            reply_to=self._reply_to(message),
            origin=self._origin(message),
            permalink=message.permalink,
        )

    def _reply_to(self, message: NativeMessage) -> str | None:
        parent = message.reply_to_native_id
        if not parent or parent == message.native_id:
            return None
        return namespaced_id(self.adapter_type, parent)

    def _origin(self, message: NativeMessage) -> ItemOrigin:
        return ItemOrigin(
            adapter_type=self.adapter_type,
            channel_id=message.channel_id,
            sender_id=message.sender_id or message.author,
            thread_id=message.thread_id,
            metadata=dict(message.metadata),
        )
