"""Pydantic schemas describing adapter plugins and filter conditions."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class FilterOperator(str, Enum):
    """Operators supported by the filter engine."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"


class FilterCondition(BaseModel):
    """A single field/operator/value test; a source filter is an AND of these."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    field: str = Field(..., min_length=1)
    operator: FilterOperator
    value: Any = None


class ConfigFieldOption(BaseModel):
    """Choice offered by a select or multiselect config field."""

    value: str
    label: str


class ConfigField(BaseModel):
    """Declares one source configuration key, driving forms and validation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    type: str
    required: bool = False
    default: Any = None
    placeholder: str | None = None
    help_text: str | None = None
    options: list[ConfigFieldOption] | None = None


class ItemField(BaseModel):
    """Declares one filterable field that an adapter places on its items."""

    key: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    type: str
    values: list[str] | None = None


class Capabilities(BaseModel):
    """Optional behaviours an adapter type supports."""

    model_config = ConfigDict(frozen=True)

    realtime: bool = False
    send: bool = False
    threads: bool = False


class PluginMetadata(BaseModel):
    """Static declaration of an adapter type, loaded once at discovery time."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    type: str
    name: str
    description: str
    version: str
    author: str | None = None
    config_fields: list[ConfigField] = Field(default_factory=list)
    item_fields: list[ItemField] = Field(default_factory=list)
    capabilities: Capabilities = Field(default_factory=Capabilities)
    default_filter: list[FilterCondition] = Field(default_factory=list)


class PluginInfo(BaseModel):
    """Plugin summary exposed to configuration tooling, including broken plugins."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str
    name: str
    description: str = ""
    version: str = ""
    path: str | None = None
    is_builtin: bool = True
    enabled: bool = True
    error: str | None = None
    config_fields: list[ConfigField] = Field(default_factory=list)
    item_fields: list[ItemField] = Field(default_factory=list)
    capabilities: Capabilities = Field(default_factory=Capabilities)
