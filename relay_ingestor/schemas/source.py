"""Pydantic schemas for configured integration sources."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .plugin import FilterCondition


class ConnectionMode(str, Enum):
    """How the engine drives a source."""

    POLL = "poll"
    REALTIME = "realtime"


class TaskDefaults(BaseModel):
    """Values stamped onto every work item materialized from a source."""

    model_config = ConfigDict(extra="allow")

    type: str = "task"
    priority: int = Field(default=2, ge=0)
    labels: list[str] = Field(default_factory=list)

    @field_validator("labels", mode="before")
    @classmethod
    def _coerce_labels(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [label.strip() for label in value.split(",") if label.strip()]
        return [str(label) for label in value]


class IntegrationSource(BaseModel):
    """A configured instance of an adapter type.

    Adapter-specific keys are kept as extra fields and read through
    :meth:`setting`; the engine never mutates a source.
    """

    model_config = ConfigDict(
        extra="allow",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    enabled: bool = True
    connection_mode: ConnectionMode = ConnectionMode.POLL
    poll_interval_seconds: float | None = Field(default=None, gt=0)
    task_defaults: TaskDefaults = Field(default_factory=TaskDefaults)
    filter: list[FilterCondition] | None = None
    project: str | None = None
    track_replies: bool = True
    stale_timeout_seconds: float | None = Field(default=None, ge=0)

    def setting(self, key: str, default: Any = None) -> Any:
        """Return an adapter-specific configuration value."""

        extra = self.model_extra or {}
        value = extra.get(key)
        if value is None:
            value = extra.get(to_camel(key))
        if value is None:
            return default
        return value

    def settings_dict(self) -> dict[str, Any]:
        """Return every configured key, core and adapter-specific, by Python name."""

        return self.model_dump()
