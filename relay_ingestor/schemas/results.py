"""Return types of the adapter contract."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .items import IngestItem


class ValidationResult(BaseModel):
    """Outcome of a synchronous, offline source configuration check."""

    valid: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


class PollResult(BaseModel):
    """Items from one poll plus the adapter's next opaque cursor state."""

    items: list[IngestItem] = Field(default_factory=list)
    state: dict[str, Any] = Field(default_factory=dict)


class TestResult(BaseModel):
    """Human-readable connectivity diagnosis returned by ``test()``."""

    __test__ = False

    ok: bool
    message: str
    category: str | None = Field(
        None,
        description=(
            "Failure category: configuration, authentication, authorization, "
            "not_found, transport or protocol"
        ),
    )
    sample_items: list[dict[str, Any]] = Field(default_factory=list)


class ThreadRef(BaseModel):
    """A previously materialized item whose replies are being tracked."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    parent_item_id: str
    task_id: str
    last_reply_id: str | None = None


class SendTarget(BaseModel):
    """Destination of an outbound message."""

    model_config = ConfigDict(populate_by_name=True)

    channel_id: str = Field(..., alias="channelId")
    thread_id: str | None = Field(None, alias="threadId")


class OutboundMessage(BaseModel):
    """Message body sent through an adapter with the ``send`` capability."""

    text: str = Field(..., min_length=1)
