"""Built-in adapter table used by plugin discovery."""

from ..exceptions import AdapterNotFoundError
from .base import BaseAdapter
from .imap_adapter import IMAPAdapter
from .matrix_adapter import MatrixAdapter
from .rss_adapter import RSSAdapter
from .slack_adapter import SlackAdapter

# Built-in adapters - register new ones here
_ADAPTER_REGISTRY: dict[str, type[BaseAdapter]] = {}


def register_adapter(name: str, adapter_class: type[BaseAdapter]) -> None:
    """
    Register a built-in adapter class.

    Args:
        name: Unique adapter type, matching ``adapter_class.metadata.type``
        adapter_class: Adapter class to register
    """
    _ADAPTER_REGISTRY[name] = adapter_class


def get_adapter(name: str) -> type[BaseAdapter]:
    """
    Get a built-in adapter class by type.

    Raises:
        AdapterNotFoundError: If adapter is not registered
    """
    if name not in _ADAPTER_REGISTRY:
        available = ", ".join(sorted(_ADAPTER_REGISTRY)) or "none"
        raise AdapterNotFoundError(
            f"Adapter '{name}' is not registered. Available adapters: {available}."
        )
    return _ADAPTER_REGISTRY[name]


def list_adapters() -> list[str]:
    """Return registered built-in adapter types."""
    return list(_ADAPTER_REGISTRY.keys())


register_adapter("slack", SlackAdapter)
register_adapter("matrix", MatrixAdapter)
register_adapter("rss", RSSAdapter)
register_adapter("imap", IMAPAdapter)
