"""Source validation, connectivity test and filter validation endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ...adapters.registry import PluginRegistry
from ...engine.filters import validate_filter
from ...exceptions import AdapterNotFoundError
from ...schemas.results import TestResult, ValidationResult
from ...schemas.source import IntegrationSource
from ...utils.logging import setup_logger
from ...utils.secrets import SecretGetter
from ..dependencies import get_registry, get_secret_getter, require_api_key

logger = setup_logger(__name__, component="api")
router = APIRouter(dependencies=[Depends(require_api_key)])


class FilterValidationRequest(BaseModel):
    """Filter conditions to check against an adapter type's item fields."""

    type: str = Field(..., min_length=1)
    filter: list[dict[str, Any]] = Field(default_factory=list)


def _parse_source(payload: dict[str, Any]) -> IntegrationSource | ValidationResult:
    try:
        return IntegrationSource.model_validate(payload)
    except PydanticValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return ValidationResult.fail(errors)


@router.post("/sources/validate", response_model=ValidationResult)
async def validate_source(
    payload: dict[str, Any] = Body(...),
    registry: PluginRegistry = Depends(get_registry),
) -> ValidationResult:
    """Validate a source configuration without any network access."""

    parsed = _parse_source(payload)
    if isinstance(parsed, ValidationResult):
        return parsed
    return registry.validate_source(parsed)


@router.post("/sources/test", response_model=TestResult)
async def test_source(
    payload: dict[str, Any] = Body(...),
    registry: PluginRegistry = Depends(get_registry),
    get_secret: SecretGetter = Depends(get_secret_getter),
) -> TestResult:
    """Make one real request with the source's credentials and diagnose the outcome."""

    parsed = _parse_source(payload)
    if isinstance(parsed, ValidationResult):
        return TestResult(ok=False, category="configuration", message=parsed.error or "invalid")

    validation = registry.validate_source(parsed)
    if not validation.valid:
        return TestResult(ok=False, category="configuration", message=validation.error or "invalid")

    adapter = registry.create(parsed.type).bind(parsed)
    result = await adapter.test(parsed, get_secret)
    logger.info(
        f"Connectivity test {'passed' if result.ok else 'failed'}: {result.message}",
        extra={
            "source_id": parsed.id,
            "adapter_type": parsed.type,
            "status": "success" if result.ok else result.category or "error",
        },
    )
    return result


@router.post("/filters/validate", response_model=ValidationResult)
async def validate_filter_conditions(
    request: FilterValidationRequest,
    registry: PluginRegistry = Depends(get_registry),
) -> ValidationResult:
    """Check filter conditions against the declared item fields of an adapter type."""

    try:
        plugin = registry.get(request.type)
    except AdapterNotFoundError as exc:
        return ValidationResult.fail(str(exc))
    return validate_filter(request.filter, plugin.metadata.item_fields)
