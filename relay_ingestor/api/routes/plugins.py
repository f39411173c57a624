"""Plugin discovery endpoints for configuration tooling."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ...adapters.registry import PluginRegistry
from ...schemas.plugin import PluginInfo
from ..dependencies import get_registry

router = APIRouter()


@router.get("/plugins", response_model=list[PluginInfo], response_model_by_alias=True)
async def list_plugins(registry: PluginRegistry = Depends(get_registry)) -> list[PluginInfo]:
    """Every discovered plugin, including ones that failed to load."""

    return registry.infos()


@router.get("/plugins/{adapter_type}", response_model=PluginInfo, response_model_by_alias=True)
async def get_plugin(adapter_type: str, registry: PluginRegistry = Depends(get_registry)) -> PluginInfo:
    """Metadata of one loaded plugin; unknown types answer 404."""

    return registry.get(adapter_type).info()
