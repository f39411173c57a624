"""Health check endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from ...adapters.registry import PluginRegistry
from ..dependencies import get_registry

router = APIRouter()


@router.get("/health")
async def health_check(registry: PluginRegistry = Depends(get_registry)) -> dict[str, Any]:
    """Report service health; plugins that failed to load degrade it."""

    infos = registry.infos()
    failed = [info.type for info in infos if not info.enabled]
    loaded = [info.type for info in infos if info.enabled]

    overall_status = "healthy"
    if not loaded:
        overall_status = "unhealthy"
    elif failed:
        overall_status = "degraded"

    return {
        "status": overall_status,
        "service": "relay_ingestor",
        "plugins": {"loaded": loaded, "failed": failed},
    }
