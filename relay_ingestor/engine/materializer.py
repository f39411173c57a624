"""Task materialization: turning accepted items into downstream work items."""

from __future__ import annotations

import asyncio
import io
import itertools
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from fastavro import parse_schema, schemaless_writer
from kafka import KafkaProducer
from kafka.errors import KafkaError
from pydantic import BaseModel, Field

from ..exceptions import ConfigurationError, MaterializationError
from ..schemas.items import IngestItem
from ..schemas.source import IntegrationSource
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import setup_logger

logger = setup_logger(__name__, component="materializer")


class WorkItemDraft(BaseModel):
    """Fields handed to the work-item store for a new item."""

    source_id: str
    item_id: str
    title: str
    description: str
    type: str = "task"
    priority: int = 2
    labels: list[str] = Field(default_factory=list)
    project: str | None = None
    author: str | None = None
    attachments: list[str] = Field(default_factory=list)
    fields: dict[str, Any] = Field(default_factory=dict)


class ReplyDraft(BaseModel):
    """A reply appended to an existing work item."""

    source_id: str
    item_id: str
    task_id: str
    author: str
    timestamp: str
    text: str
    attachments: list[str] = Field(default_factory=list)


def _attachment_refs(item: IngestItem) -> list[str]:
    return [attachment.local_path or attachment.url for attachment in item.attachments]


def build_description(item: IngestItem) -> str:
    """Work-item body: author, text, attachment list, permalink and timestamp."""
    parts: list[str] = []
    if item.author:
        parts.append(f"From: {item.author}")
    if item.description:
        parts.append(item.description)
    refs = _attachment_refs(item)
    if refs:
        parts.append("")
        parts.append("Attachments:")
        parts.extend(f"- {ref}" for ref in refs)
    if item.permalink:
        parts.append("")
        parts.append(f"Link: {item.permalink}")
    if item.timestamp:
        parts.append(f"Source: {item.timestamp}")
    return "\n".join(parts)


def build_work_item(source: IntegrationSource, item: IngestItem) -> WorkItemDraft:
    defaults = source.task_defaults
    return WorkItemDraft(
        source_id=source.id,
        item_id=item.id,
        title=item.title,
        description=build_description(item),
        type=defaults.type,
        priority=defaults.priority,
        labels=list(defaults.labels),
        project=source.project,
        author=item.author,
        attachments=_attachment_refs(item),
        fields=dict(item.fields),
    )


def build_reply(task_id: str, source: IntegrationSource, item: IngestItem) -> ReplyDraft:
    return ReplyDraft(
        source_id=source.id,
        item_id=item.id,
        task_id=task_id,
        author=item.author or "unknown",
        timestamp=item.timestamp or datetime.now(timezone.utc).isoformat(),
        text=item.description or item.title,
        attachments=_attachment_refs(item),
    )


@runtime_checkable
class TaskMaterializer(Protocol):
    """Downstream "create or update work item" collaborator."""

    async def create_work_item(self, source: IntegrationSource, item: IngestItem) -> str | None:
        """Create a work item and return its id (``None`` when nothing was stored)."""
        ...

    async def add_reply(self, task_id: str, source: IntegrationSource, item: IngestItem) -> None:
        """Append ``item`` as a reply to an existing work item."""
        ...


class InMemoryTaskMaterializer:
    """Keeps created work items and replies in lists; used by tests and embedders."""

    def __init__(self, prefix: str = "task") -> None:
        self.prefix = prefix
        self.created: list[WorkItemDraft] = []
        self.replies: list[ReplyDraft] = []
        self._ids = itertools.count(1)

    async def create_work_item(self, source: IntegrationSource, item: IngestItem) -> str | None:
        draft = build_work_item(source, item)
        task_id = f"{self.prefix}-{next(self._ids)}"
        self.created.append(draft)
        logger.info(
            f"Created work item {task_id}: {item.title[:60]}",
            extra={"source_id": source.id, "status": "created"},
        )
        return task_id

    async def add_reply(self, task_id: str, source: IntegrationSource, item: IngestItem) -> None:
        self.replies.append(build_reply(task_id, source, item))


class DryRunMaterializer:
    """Logs what would be created without storing anything."""

    async def create_work_item(self, source: IntegrationSource, item: IngestItem) -> str | None:
        logger.info(
            f"[dry-run] would create: {item.title[:80]}",
            extra={"source_id": source.id, "status": "dry_run"},
        )
        return None

    async def add_reply(self, task_id: str, source: IntegrationSource, item: IngestItem) -> None:
        logger.info(
            f"[dry-run] would append reply {item.id} to {task_id}",
            extra={"source_id": source.id, "status": "dry_run"},
        )


WORK_ITEM_EVENT_SCHEMA: dict[str, Any] = {
    "namespace": "relay.ingestion",
    "type": "record",
    "name": "WorkItemEvent",
    "fields": [
        {"name": "event_type", "type": "string"},
        {"name": "source_id", "type": "string"},
        {"name": "item_id", "type": "string"},
        {"name": "task_id", "type": "string"},
        {"name": "title", "type": "string"},
        {"name": "body", "type": "string"},
        {"name": "author", "type": ["null", "string"], "default": None},
        {"name": "work_type", "type": "string", "default": "task"},
        {"name": "priority", "type": "int", "default": 2},
        {"name": "labels", "type": {"type": "array", "items": "string"}, "default": []},
        {"name": "project", "type": ["null", "string"], "default": None},
        {"name": "attachments", "type": {"type": "array", "items": "string"}, "default": []},
        {"name": "fields", "type": {"type": "map", "values": "string"}, "default": {}},
        {"name": "timestamp", "type": "string"},
    ],
}

_PARSED_SCHEMA = parse_schema(WORK_ITEM_EVENT_SCHEMA)


def serialize_event(record: dict[str, Any]) -> bytes:
    buffer = io.BytesIO()
    schemaless_writer(buffer, _PARSED_SCHEMA, record)
    return buffer.getvalue()


class KafkaTaskMaterializer:
    """
    Publishes ``work_item.create`` / ``work_item.reply`` Avro events.

    The task id of a created item is the item id itself, so a consumer can
    resolve replies without a round-trip back to this engine.
    """

    def __init__(
        self,
        producer: KafkaProducer | None = None,
        *,
        topic: str | None = None,
        settings: GlobalSettings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.topic = topic or self.settings.kafka_topic
        self._producer = producer or self._create_producer(self.settings.kafka_bootstrap_servers)

    @staticmethod
    def _create_producer(bootstrap_servers: str | None) -> KafkaProducer:
        servers = [server.strip() for server in (bootstrap_servers or "").split(",") if server.strip()]
        if not servers:
            raise ConfigurationError("kafka_bootstrap_servers must be set for the Kafka materializer")
        return KafkaProducer(bootstrap_servers=servers)

    def _publish(self, key: str, record: dict[str, Any]) -> None:
        future = self._producer.send(self.topic, key=key.encode("utf-8"), value=serialize_event(record))
        try:
            future.get(timeout=self.settings.kafka_publish_timeout_seconds)
        except KafkaError as exc:
            raise MaterializationError(record["item_id"], f"Kafka publish failed: {exc}") from exc

    async def create_work_item(self, source: IntegrationSource, item: IngestItem) -> str | None:
        draft = build_work_item(source, item)
        record = {
            "event_type": "work_item.create",
            "source_id": source.id,
            "item_id": item.id,
            "task_id": item.id,
            "title": draft.title,
            "body": draft.description,
            "author": draft.author,
            "work_type": draft.type,
            "priority": draft.priority,
            "labels": draft.labels,
            "project": draft.project,
            "attachments": draft.attachments,
            "fields": {key: str(value) for key, value in draft.fields.items()},
            "timestamp": item.timestamp,
        }
        await asyncio.to_thread(self._publish, item.id, record)
        return item.id

    async def add_reply(self, task_id: str, source: IntegrationSource, item: IngestItem) -> None:
        reply = build_reply(task_id, source, item)
        record = {
            "event_type": "work_item.reply",
            "source_id": source.id,
            "item_id": item.id,
            "task_id": task_id,
            "title": item.title,
            "body": reply.text,
            "author": reply.author,
            "work_type": source.task_defaults.type,
            "priority": source.task_defaults.priority,
            "labels": list(source.task_defaults.labels),
            "project": source.project,
            "attachments": reply.attachments,
            "fields": {key: str(value) for key, value in item.fields.items()},
            "timestamp": reply.timestamp,
        }
        await asyncio.to_thread(self._publish, task_id, record)

    def close(self) -> None:
        """Flush and close the producer."""
        self._producer.flush()
        self._producer.close()
