"""Schemas package initialization."""
from .items import Attachment, FieldValue, IngestItem, ItemOrigin
from .plugin import (
    Capabilities,
    ConfigField,
    ConfigFieldOption,
    FilterCondition,
    FilterOperator,
    ItemField,
    PluginInfo,
    PluginMetadata,
)
from .results import (
    OutboundMessage,
    PollResult,
    SendTarget,
    TestResult,
    ThreadRef,
    ValidationResult,
)
from .source import ConnectionMode, IntegrationSource, TaskDefaults

__all__ = [
    "Attachment",
    "Capabilities",
    "ConfigField",
    "ConfigFieldOption",
    "ConnectionMode",
    "FieldValue",
    "FilterCondition",
    "FilterOperator",
    "IngestItem",
    "IntegrationSource",
    "ItemField",
    "ItemOrigin",
    "OutboundMessage",
    "PluginInfo",
    "PluginMetadata",
    "PollResult",
    "SendTarget",
    "TaskDefaults",
    "TestResult",
    "ThreadRef",
    "ValidationResult",
]
