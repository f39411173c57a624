"""Adapter for IMAP mailboxes (Gmail app passwords or any IMAP4 over TLS server)."""

from __future__ import annotations

import email
import hashlib
import imaplib
import mimetypes
import re
from collections.abc import Callable
from email.message import EmailMessage
from email.policy import default as default_policy
from email.utils import parseaddr, parsedate_to_datetime
from pathlib import Path
from typing import Any

from ..exceptions import (
    AuthenticationError,
    ProtocolError,
    RelayIngestorError,
    ResourceNotFoundError,
    TransientTransportError,
)
from ..schemas.items import Attachment, IngestItem
from ..schemas.plugin import ConfigField, ItemField, PluginMetadata
from ..schemas.results import PollResult, TestResult
from ..schemas.source import IntegrationSource
from ..utils.config import GlobalSettings
from ..utils.secrets import SecretGetter
from .base import BaseAdapter
from .normalizer import (
    ItemNormalizer,
    NativeMessage,
    attachment_type_for_mime,
    content_hash,
    html_to_text,
    to_iso_timestamp,
)

BODY_LIMIT = 5000
_UID_PATTERN = re.compile(rb"UID (\d+)")
_UNSAFE_FILENAME = re.compile(r"[^a-zA-Z0-9._-]")

ImapFactory = Callable[[str, int], Any]


def sanitize_filename(name: str) -> str:
    return _UNSAFE_FILENAME.sub("_", name)[:100]


def _strip_angle(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().strip("<>").strip()
    return cleaned or None


def _first_int(data: Any) -> int | None:
    for entry in data or []:
        if entry is None:
            continue
        text = entry.decode() if isinstance(entry, bytes) else str(entry)
        match = re.search(r"\d+", text)
        if match:
            return int(match.group(0))
    return None


def _message_body(message: EmailMessage) -> str:
    part = message.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    content = part.get_content()
    if part.get_content_type() == "text/html":
        content = html_to_text(content)
    return str(content)[:BODY_LIMIT]


class ImapSession:
    """Synchronous IMAP conversation for one poll; runs in a worker thread."""

    def __init__(self, factory: ImapFactory, source: IntegrationSource, password: str, logger: Any):
        self._factory = factory
        self._logger = logger
        self._source = source
        self._password = password
        self._client: Any | None = None

    def __enter__(self) -> "ImapSession":
        host = str(self._source.setting("host", "imap.gmail.com"))
        port = int(self._source.setting("port", 993))
        try:
            self._client = self._factory(host, port)
        except OSError as exc:
            raise TransientTransportError(f"Cannot reach IMAP server {host}:{port}: {exc}") from exc
        try:
            self._client.login(str(self._source.setting("username")), self._password)
        except imaplib.IMAP4.abort as exc:
            raise TransientTransportError(f"IMAP connection dropped during login: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise AuthenticationError(
                f"IMAP login rejected for {self._source.setting('username')}: {exc}"
            ) from exc
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._client is None:
            return
        try:
            self._client.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            self._logger.debug(f"IMAP logout failed: {exc}", extra={"source_id": self._source.id})

    @property
    def client(self) -> Any:
        if self._client is None:
            raise TransientTransportError("IMAP session is not connected")
        return self._client

    def select(self, folder: str, *, readonly: bool) -> tuple[int | None, int | None, int]:
        """Select ``folder`` and return (uidvalidity, uidnext, message count)."""
        try:
            status, data = self.client.select(_quote_mailbox(folder), readonly=readonly)
        except imaplib.IMAP4.abort as exc:
            raise TransientTransportError(f"IMAP connection dropped: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise ResourceNotFoundError(f"IMAP folder {folder!r} does not exist: {exc}") from exc
        if status != "OK":
            raise ResourceNotFoundError(f"IMAP folder {folder!r} does not exist")
        _, validity = self.client.response("UIDVALIDITY")
        _, uidnext = self.client.response("UIDNEXT")
        return _first_int(validity), _first_int(uidnext), _first_int(data) or 0

    def uid(self, command: str, *args: Any) -> list[Any]:
        try:
            status, data = self.client.uid(command, *args)
        except imaplib.IMAP4.abort as exc:
            raise TransientTransportError(f"IMAP connection dropped: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise ProtocolError(f"IMAP {command} failed: {exc}") from exc
        if status != "OK":
            raise ProtocolError(f"IMAP {command} returned {status}")
        return data or []

    def search_uids(self, criteria: str) -> list[int]:
        data = self.uid("SEARCH", None, criteria)
        raw = data[0] if data else b""
        return sorted(int(uid) for uid in (raw or b"").split())

    def fetch(self, uid: int) -> tuple[bytes, tuple[bytes, ...]] | None:
        data = self.uid("FETCH", str(uid), "(FLAGS RFC822)")
        for entry in data:
            if isinstance(entry, tuple) and len(entry) >= 2:
                return entry[1], imaplib.ParseFlags(entry[0])
        return None


def _quote_mailbox(folder: str) -> str:
    if " " in folder and not folder.startswith('"'):
        return f'"{folder}"'
    return folder


class IMAPAdapter(BaseAdapter):
    """Fetches messages with UIDs above the stored cursor from one folder."""

    metadata = PluginMetadata(
        type="imap",
        name="IMAP Mailbox",
        description="Ingest emails from an IMAP folder (e.g. a Gmail label via App Password)",
        version="1.0.0",
        config_fields=[
            ConfigField(
                key="secret_name",
                label="Password Secret",
                type="secret",
                required=True,
                help_text="Name of the secret holding the IMAP or App Password",
            ),
            ConfigField(
                key="username",
                label="Email Address",
                type="string",
                required=True,
                placeholder="you@gmail.com",
            ),
            ConfigField(
                key="folder",
                label="Folder",
                type="string",
                required=True,
                placeholder="INBOX",
                help_text="Folder or Gmail label to monitor",
            ),
            ConfigField(key="host", label="IMAP Host", type="string", default="imap.gmail.com"),
            ConfigField(key="port", label="IMAP Port", type="number", default=993),
            ConfigField(
                key="filter_from",
                label="Filter by Sender",
                type="string",
                help_text="Only ingest emails whose sender contains this text",
            ),
            ConfigField(
                key="filter_subject",
                label="Filter by Subject",
                type="string",
                help_text="Case-insensitive regex the subject must match",
            ),
            ConfigField(
                key="mark_as_read",
                label="Mark as Read",
                type="boolean",
                default=False,
            ),
        ],
        item_fields=[
            ItemField(key="folder", label="Folder", type="string"),
            ItemField(key="from", label="From", type="string"),
            ItemField(key="has_attachments", label="Has Attachments", type="boolean"),
            ItemField(key="is_read", label="Is Read", type="boolean"),
        ],
    )

    def __init__(
        self,
        settings: GlobalSettings | None = None,
        *,
        transport: Any | None = None,
        imap_factory: ImapFactory | None = None,
    ):
        super().__init__(settings, transport=transport)
        self._imap_factory: ImapFactory = imap_factory or imaplib.IMAP4_SSL

    def _subject_pattern(self, source: IntegrationSource) -> re.Pattern[str] | None:
        pattern = source.setting("filter_subject")
        if not pattern:
            return None
        try:
            return re.compile(str(pattern), re.IGNORECASE)
        except re.error as exc:
            self.logger.warning(
                f"Ignoring invalid filter_subject {pattern!r}: {exc}",
                extra={"source_id": source.id},
            )
            return None

    def _save_attachments(self, source: IntegrationSource, message: EmailMessage) -> list[Attachment]:
        attachments: list[Attachment] = []
        parts = list(message.iter_attachments())
        if not parts:
            return attachments

        directory = Path(self.settings.attachment_dir) / source.id
        directory.mkdir(parents=True, exist_ok=True)
        for part in parts:
            payload = part.get_payload(decode=True) or b""
            content_type = part.get_content_type()
            original = part.get_filename()
            if original:
                filename = sanitize_filename(original)
            else:
                extension = mimetypes.guess_extension(content_type) or ".bin"
                filename = hashlib.md5(payload).hexdigest()[:12] + extension
            path = directory / filename
            try:
                path.write_bytes(payload)
            except OSError as exc:
                self.logger.warning(f"Failed to save attachment {filename}: {exc}", extra={"source_id": source.id})
                continue
            attachments.append(
                Attachment(
                    url=path.resolve().as_uri(),
                    type=attachment_type_for_mime(content_type),
                    filename=original or filename,
                    local_path=str(path),
                )
            )
        return attachments

    def _to_native(
        self,
        source: IntegrationSource,
        uid: int,
        uid_validity: int | None,
        raw: bytes,
        flags: tuple[bytes, ...],
    ) -> NativeMessage | None:
        message = email.message_from_bytes(raw, policy=default_policy)
        if not isinstance(message, EmailMessage):
            self.logger.warning(f"Skipping unparseable message uid {uid}", extra={"source_id": source.id})
            return None
        subject = str(message.get("Subject") or "No subject")
        sender = str(message.get("From") or "")

        filter_from = source.setting("filter_from")
        if filter_from and str(filter_from).lower() not in sender.lower():
            return None
        pattern = self._subject_pattern(source)
        if pattern is not None and not pattern.search(subject):
            return None

        message_id = _strip_angle(message.get("Message-ID"))
        body = _message_body(message)
        date_header = message.get("Date")
        timestamp = None
        if date_header:
            try:
                timestamp = to_iso_timestamp(parsedate_to_datetime(str(date_header)))
            except (TypeError, ValueError):
                timestamp = None

        attachments = self._save_attachments(source, message)
        folder = str(source.setting("folder"))
        return NativeMessage(
            native_id=message_id or f"uid-{uid_validity or 0}-{uid}",
            title=subject[:200],
            body=body,
            author=sender or None,
            sender_id=parseaddr(sender)[1] or None,
            timestamp=timestamp,
            attachments=attachments,
            fields={
                "folder": folder,
                "from": sender,
                "has_attachments": bool(attachments),
                "is_read": b"\\Seen" in flags,
            },
            reply_to_native_id=_strip_angle(message.get("In-Reply-To")),
            channel_id=folder,
            thread_id=message_id,
            metadata={"uid": uid, "uid_validity": uid_validity},
            hash=content_hash(message_id, subject, body[:200]),
        )

    def _poll_sync(self, source: IntegrationSource, password: str, state: dict[str, Any]) -> PollResult:
        folder = str(source.setting("folder"))
        mark_as_read = bool(source.setting("mark_as_read", False))
        normalizer = ItemNormalizer("imap", self_identity=source.setting("username"))

        with ImapSession(self._imap_factory, source, password, self.logger) as session:
            uid_validity, uid_next, _ = session.select(folder, readonly=not mark_as_read)

            last_seen_uid = int(state.get("last_seen_uid") or 0)
            stored_validity = state.get("uid_validity")
            if stored_validity is not None and uid_validity is not None and int(stored_validity) != uid_validity:
                self.logger.warning("UIDVALIDITY changed, resetting cursor", extra={"source_id": source.id})
                last_seen_uid = 0

            if last_seen_uid == 0:
                # First run: start at the current newest message.
                if uid_next:
                    start = uid_next - 1
                else:
                    existing = session.search_uids("ALL")
                    start = existing[-1] if existing else 0
                return PollResult(items=[], state={**state, "last_seen_uid": start, "uid_validity": uid_validity})

            items: list[IngestItem] = []
            max_uid = last_seen_uid
            for uid in session.search_uids(f"UID {last_seen_uid + 1}:*"):
                if uid <= last_seen_uid:
                    continue
                fetched = session.fetch(uid)
                max_uid = max(max_uid, uid)
                if fetched is None:
                    continue
                raw, flags = fetched
                native = self._to_native(source, uid, uid_validity, raw, flags)
                if native is None:
                    continue
                item = normalizer.normalize(native)
                if item is not None:
                    items.append(item)
                if mark_as_read:
                    session.uid("STORE", str(uid), "+FLAGS", "(\\Seen)")

        return PollResult(
            items=items,
            state={**state, "last_seen_uid": max_uid, "uid_validity": uid_validity},
        )

    async def poll(
        self,
        source: IntegrationSource,
        state: dict[str, Any],
        get_secret: SecretGetter,
    ) -> PollResult:
        password = await self.resolve_secret(get_secret, self.secret_name(source))
        return await self._run_in_thread(self._poll_sync, source, password, dict(state))

    def _test_sync(self, source: IntegrationSource, password: str) -> TestResult:
        folder = str(source.setting("folder"))
        samples: list[dict[str, Any]] = []
        with ImapSession(self._imap_factory, source, password, self.logger) as session:
            _, _, total = session.select(folder, readonly=True)
            for uid in session.search_uids("ALL")[-3:]:
                fetched = session.fetch(uid)
                if fetched is None:
                    continue
                message = email.message_from_bytes(fetched[0], policy=default_policy)
                samples.append(
                    {
                        "id": f"imap-{_strip_angle(message.get('Message-ID')) or uid}",
                        "title": str(message.get("Subject") or "No subject")[:100],
                    }
                )
        plural = "" if total == 1 else "s"
        return TestResult(
            ok=True,
            message=f"Connected to {source.setting('username')}. Folder {folder!r} has {total} message{plural}.",
            sample_items=samples,
        )

    async def test(self, source: IntegrationSource, get_secret: SecretGetter) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, category="configuration", message=validation.error or "invalid")
        try:
            password = await self.resolve_secret(get_secret, self.secret_name(source))
            return await self._run_in_thread(self._test_sync, source, password)
        except RelayIngestorError as exc:
            return self.diagnose(exc, resource=str(source.setting("host", "imap.gmail.com")))
