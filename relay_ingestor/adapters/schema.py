"""Plugin metadata validation and capability consistency checks."""

from __future__ import annotations

import inspect
import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..exceptions import PluginLoadError
from ..schemas.plugin import FilterOperator, PluginMetadata
from .base import BaseAdapter

CONFIG_FIELD_TYPES = ("string", "number", "boolean", "secret", "select", "multiselect")
ITEM_FIELD_TYPES = ("string", "enum", "number", "boolean")
TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+")

# capability -> methods that must be overridden
CAPABILITY_METHODS: dict[str, tuple[str, ...]] = {
    "realtime": ("connect", "disconnect"),
    "send": ("send",),
    "threads": ("poll_replies",),
}


def _pydantic_messages(exc: PydanticValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"metadata.{location}: {error.get('msg')}")
    return messages


def validate_metadata(metadata: PluginMetadata | Mapping[str, Any]) -> list[str]:
    """
    Validate plugin metadata, returning every problem found.

    Args:
        metadata: Parsed metadata model or a raw mapping (camelCase accepted)

    Returns:
        List of error messages; empty when the metadata is valid
    """
    if not isinstance(metadata, PluginMetadata):
        if not isinstance(metadata, Mapping):
            return ["metadata must be a mapping"]
        try:
            metadata = PluginMetadata.model_validate(dict(metadata))
        except PydanticValidationError as exc:
            return _pydantic_messages(exc)

    errors: list[str] = []
    for name in ("type", "name", "description", "version"):
        if not getattr(metadata, name):
            errors.append(f"metadata.{name} is required and must be a non-empty string")

    if metadata.type and not TYPE_PATTERN.match(metadata.type):
        errors.append(
            "metadata.type must be lowercase alphanumeric with hyphens/underscores "
            f"(got {metadata.type!r})"
        )
    if metadata.version and not SEMVER_PATTERN.match(metadata.version):
        errors.append(f"metadata.version must be semver (e.g. '1.0.0'), got {metadata.version!r}")

    for index, config_field in enumerate(metadata.config_fields):
        prefix = f"config_fields[{index}]"
        if config_field.type not in CONFIG_FIELD_TYPES:
            errors.append(
                f"{prefix}.type must be one of: {', '.join(CONFIG_FIELD_TYPES)} "
                f"(got {config_field.type!r})"
            )
        if config_field.type in ("select", "multiselect") and config_field.options is None:
            errors.append(f"{prefix}.options is required for type {config_field.type!r}")

    item_keys: set[str] = set()
    for index, item_field in enumerate(metadata.item_fields):
        prefix = f"item_fields[{index}]"
        item_keys.add(item_field.key)
        if item_field.type not in ITEM_FIELD_TYPES:
            errors.append(
                f"{prefix}.type must be one of: {', '.join(ITEM_FIELD_TYPES)} "
                f"(got {item_field.type!r})"
            )
        if item_field.type == "enum" and item_field.values is None:
            errors.append(f"{prefix}.values is required for type 'enum'")

    operators = {operator.value for operator in FilterOperator}
    for index, condition in enumerate(metadata.default_filter):
        prefix = f"default_filter[{index}]"
        if item_keys and condition.field not in item_keys:
            errors.append(f"{prefix}.field {condition.field!r} does not match any declared item field")
        if condition.operator not in operators:
            errors.append(f"{prefix}.operator {condition.operator!r} is not supported")

    return errors


def _overrides(adapter_class: type[BaseAdapter], method: str) -> bool:
    implementation = getattr(adapter_class, method, None)
    base_implementation = getattr(BaseAdapter, method)
    return implementation is not None and implementation is not base_implementation


def validate_adapter_class(adapter_class: Any) -> PluginMetadata:
    """
    Check that a class is a usable adapter and return its metadata.

    Raises:
        PluginLoadError: Not a concrete BaseAdapter, invalid metadata, or a
            declared capability whose methods are not implemented
    """
    name = getattr(adapter_class, "__name__", repr(adapter_class))
    if not inspect.isclass(adapter_class) or not issubclass(adapter_class, BaseAdapter):
        raise PluginLoadError(f"{name} is not a BaseAdapter subclass")
    if inspect.isabstract(adapter_class):
        missing = ", ".join(sorted(adapter_class.__abstractmethods__))
        raise PluginLoadError(f"{name} does not implement required methods: {missing}")

    metadata = getattr(adapter_class, "metadata", None)
    if metadata is None:
        raise PluginLoadError(f"{name} does not declare metadata")
    errors = validate_metadata(metadata)
    if errors:
        raise PluginLoadError(f"Invalid metadata for {name}: {'; '.join(errors)}")
    if not isinstance(metadata, PluginMetadata):
        metadata = PluginMetadata.model_validate(dict(metadata))

    capabilities = metadata.capabilities.model_dump()
    for capability, methods in CAPABILITY_METHODS.items():
        if not capabilities.get(capability):
            continue
        missing_methods = [method for method in methods if not _overrides(adapter_class, method)]
        if missing_methods:
            raise PluginLoadError(
                f"{metadata.type}: capability '{capability}' declared but "
                f"{', '.join(missing_methods)} not implemented"
            )
    return metadata
