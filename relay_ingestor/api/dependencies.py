"""Shared FastAPI dependencies."""

from __future__ import annotations

import secrets
from functools import lru_cache

from fastapi import (
    HTTPException,
    Security,
    status,
)
from fastapi.security import APIKeyHeader

from ..adapters.registry import PluginRegistry
from ..utils.config import get_settings
from ..utils.secrets import SecretGetter, build_secret_resolver

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(x_api_key: str | None = Security(api_key_header)) -> str:
    """Validate the provided API key against configured keys."""

    settings = get_settings()
    configured_keys = settings.api_keys

    if not configured_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API authentication is not configured.",
        )

    if x_api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key.",
        )

    for candidate in configured_keys:
        if secrets.compare_digest(x_api_key, candidate):
            return candidate

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Invalid API key.",
    )


@lru_cache(maxsize=1)
def get_registry() -> PluginRegistry:
    """Return the process-wide plugin registry, discovered on first use."""

    registry = PluginRegistry(get_settings())
    registry.discover()
    return registry


def get_secret_getter() -> SecretGetter:
    """Credential resolver for diagnostic requests; built per request, never cached."""

    return build_secret_resolver(get_settings())
