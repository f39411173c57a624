"""Pydantic schemas for canonical ingest items."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

FieldValue = bool | int | float | str


class Attachment(BaseModel):
    """Reference to media attached to an item; content is never embedded inline."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str = Field(..., description="Resolved download URL")
    type: str = Field(default="file", description="Attachment kind: 'image' or 'file'")
    filename: str | None = Field(None, description="Original file name")
    local_path: str | None = Field(None, alias="localPath", description="Path once saved locally")


class ItemOrigin(BaseModel):
    """Where an item came from, used for reply routing."""

    model_config = ConfigDict(populate_by_name=True)

    adapter_type: str = Field(..., alias="adapterType")
    channel_id: str | None = Field(None, alias="channelId")
    sender_id: str | None = Field(None, alias="senderId")
    thread_id: str | None = Field(None, alias="threadId")
    metadata: dict[str, Any] = Field(default_factory=dict)


class IngestItem(BaseModel):
    """Canonical, protocol-agnostic representation of one ingested message."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Adapter-namespaced id, unique within a source")
    title: str = Field(..., description="First line of the body, at most 200 characters")
    description: str = Field(default="", description="Full body text")
    hash: str | None = Field(None, description="Content fingerprint, null when undecryptable")
    author: str | None = Field(None, description="Sender identity")
    timestamp: str = Field(..., description="ISO-8601 timestamp")
    attachments: list[Attachment] = Field(default_factory=list)
    fields: dict[str, FieldValue] = Field(
        default_factory=dict,
        description="Flat map of adapter-declared item fields",
    )
    reply_to: str | None = Field(None, alias="replyTo", description="Id of the item replied to")
    origin: ItemOrigin | None = Field(None, description="Routing metadata")
    permalink: str | None = Field(None, description="Link back to the message, when known")
