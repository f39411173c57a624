"""Plugin registry: discovery, metadata lookup and source validation."""

from __future__ import annotations

import importlib.util
import inspect
import sys
from dataclasses import dataclass
from importlib.metadata import entry_points
from pathlib import Path
from types import ModuleType
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..exceptions import AdapterNotFoundError, PluginLoadError
from ..schemas.plugin import PluginInfo, PluginMetadata
from ..schemas.results import ValidationResult
from ..schemas.source import ConnectionMode, IntegrationSource
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import setup_logger
from . import get_adapter, list_adapters
from .base import BaseAdapter
from .schema import validate_adapter_class

logger = setup_logger(__name__, component="registry")

ENTRY_POINT_GROUP = "relay_ingestor.adapters"
USER_MODULE_PREFIX = "relay_ingestor_user_plugins"


@dataclass(frozen=True)
class LoadedPlugin:
    """A validated adapter class with where it came from."""

    metadata: PluginMetadata
    adapter_class: type[BaseAdapter]
    path: str | None
    is_builtin: bool

    def info(self) -> PluginInfo:
        return PluginInfo(
            type=self.metadata.type,
            name=self.metadata.name,
            description=self.metadata.description,
            version=self.metadata.version,
            path=self.path,
            is_builtin=self.is_builtin,
            enabled=True,
            config_fields=list(self.metadata.config_fields),
            item_fields=list(self.metadata.item_fields),
            capabilities=self.metadata.capabilities,
        )


class PluginRegistry:
    """
    Discovers adapter implementations and validates sources against them.

    Discovery order is built-in adapters, then installed entry points, then
    modules in the user plugin directory; a later plugin with the same type
    overrides an earlier one. A plugin that fails to load is reported through
    :meth:`infos` with ``enabled=False`` and never aborts discovery.
    """

    def __init__(
        self,
        settings: GlobalSettings | None = None,
        *,
        plugin_dir: str | Path | None = None,
        include_entry_points: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.plugin_dir = Path(plugin_dir) if plugin_dir is not None else self.settings.plugin_dir
        self.include_entry_points = include_entry_points
        self._plugins: dict[str, LoadedPlugin] = {}
        self._failures: list[PluginInfo] = []
        self._discovered = False

    def register(
        self,
        adapter_class: Any,
        *,
        path: str | None = None,
        is_builtin: bool = False,
    ) -> LoadedPlugin:
        """
        Validate and register one adapter class.

        Raises:
            PluginLoadError: If the class or its metadata is invalid
        """
        metadata = validate_adapter_class(adapter_class)
        previous = self._plugins.get(metadata.type)
        if previous is not None:
            logger.info(
                f"Plugin '{metadata.type}' from {path or adapter_class.__module__} "
                f"overrides {previous.path or previous.adapter_class.__module__}"
            )
        plugin = LoadedPlugin(
            metadata=metadata,
            adapter_class=adapter_class,
            path=path,
            is_builtin=is_builtin,
        )
        self._plugins[metadata.type] = plugin
        return plugin

    def _record_failure(self, name: str, path: str | None, is_builtin: bool, error: str) -> None:
        logger.warning(f"Failed to load plugin {name} from {path or 'built-ins'}: {error}")
        self._failures.append(
            PluginInfo(
                type=name,
                name=name,
                path=path,
                is_builtin=is_builtin,
                enabled=False,
                error=error,
            )
        )

    def _try_register(self, name: str, adapter_class: Any, path: str | None, is_builtin: bool) -> None:
        try:
            plugin = self.register(adapter_class, path=path, is_builtin=is_builtin)
        except (PluginLoadError, PydanticValidationError) as exc:
            self._record_failure(name, path, is_builtin, str(exc))
            return
        origin = "built-in" if is_builtin else "user"
        logger.info(
            f"Loaded {origin} plugin: {plugin.metadata.type} "
            f"({plugin.metadata.name} v{plugin.metadata.version})"
        )

    def discover(self) -> None:
        """Load built-in, entry-point and user-directory plugins."""
        self._plugins.clear()
        self._failures.clear()

        for name in list_adapters():
            self._try_register(name, get_adapter(name), None, True)

        if self.include_entry_points:
            self._discover_entry_points()

        self._discover_user_dir()
        self._discovered = True

    def _discover_entry_points(self) -> None:
        for entry_point in entry_points(group=ENTRY_POINT_GROUP):
            try:
                adapter_class = entry_point.load()
            except Exception as exc:
                self._record_failure(entry_point.name, entry_point.value, False, f"import failed: {exc}")
                continue
            self._try_register(entry_point.name, adapter_class, entry_point.value, False)

    def _plugin_files(self) -> list[Path]:
        directory = self.plugin_dir
        if not directory.is_dir():
            return []
        candidates: list[Path] = []
        for entry in sorted(directory.iterdir()):
            if entry.name.startswith((".", "_")):
                continue
            if entry.is_dir() and (entry / "__init__.py").is_file():
                candidates.append(entry / "__init__.py")
            elif entry.is_file() and entry.suffix == ".py":
                candidates.append(entry)
        return candidates

    def _discover_user_dir(self) -> None:
        for plugin_file in self._plugin_files():
            name = plugin_file.parent.name if plugin_file.name == "__init__.py" else plugin_file.stem
            try:
                module = _import_plugin_file(name, plugin_file)
            except Exception as exc:
                self._record_failure(name, str(plugin_file), False, f"import failed: {exc}")
                continue

            adapter_classes = _adapter_classes(module)
            if not adapter_classes:
                self._record_failure(name, str(plugin_file), False, "no BaseAdapter subclass found")
                continue
            for adapter_class in adapter_classes:
                self._try_register(name, adapter_class, str(plugin_file), False)

    def _ensure_discovered(self) -> None:
        if not self._discovered:
            self.discover()

    def get(self, adapter_type: str) -> LoadedPlugin:
        """
        Look up a loaded plugin by type name.

        Raises:
            AdapterNotFoundError: If no enabled plugin has that type
        """
        self._ensure_discovered()
        plugin = self._plugins.get(adapter_type)
        if plugin is None:
            available = ", ".join(sorted(self._plugins)) or "none"
            raise AdapterNotFoundError(
                f"Adapter type '{adapter_type}' is not available. Available types: {available}."
            )
        return plugin

    def create(self, adapter_type: str, **kwargs: Any) -> BaseAdapter:
        """Instantiate a fresh adapter for one source."""
        plugin = self.get(adapter_type)
        kwargs.setdefault("settings", self.settings)
        return plugin.adapter_class(**kwargs)

    def types(self) -> list[str]:
        self._ensure_discovered()
        return sorted(self._plugins)

    def infos(self) -> list[PluginInfo]:
        """Every discovered plugin, loaded or broken, for configuration tooling."""
        self._ensure_discovered()
        loaded = [self._plugins[key].info() for key in sorted(self._plugins)]
        return loaded + list(self._failures)

    def validate_source(self, source: IntegrationSource) -> ValidationResult:
        """
        Validate a source against its plugin without network access.

        Unknown types and realtime mode on a non-realtime adapter are reported
        as validation failures, not raised.
        """
        try:
            plugin = self.get(source.type)
        except AdapterNotFoundError as exc:
            return ValidationResult.fail(str(exc))

        mode = ConnectionMode(source.connection_mode)
        if mode is ConnectionMode.REALTIME and not plugin.metadata.capabilities.realtime:
            return ValidationResult.fail(
                f"Adapter type '{source.type}' does not support connection_mode 'realtime'"
            )

        adapter = plugin.adapter_class(settings=self.settings)
        return adapter.validate(source)


def _import_plugin_file(name: str, path: Path) -> ModuleType:
    module_name = f"{USER_MODULE_PREFIX}.{name}"
    spec = importlib.util.spec_from_file_location(
        module_name,
        path,
        submodule_search_locations=[str(path.parent)] if path.name == "__init__.py" else None,
    )
    if spec is None or spec.loader is None:
        raise PluginLoadError(f"Cannot import {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return module


def _adapter_classes(module: ModuleType) -> list[type[BaseAdapter]]:
    explicit = getattr(module, "ADAPTER", None)
    if explicit is not None:
        return [explicit]
    return [
        obj
        for _, obj in inspect.getmembers(module, inspect.isclass)
        if issubclass(obj, BaseAdapter)
        and obj.__module__ == module.__name__
        and not inspect.isabstract(obj)
    ]
