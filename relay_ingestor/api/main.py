"""FastAPI application for Relay_Ingestor."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..exceptions import AdapterNotFoundError, ConfigurationError, RelayIngestorError
from ..utils.logging import setup_logger
from .dependencies import get_registry

logger = setup_logger(__name__, component="api")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore
    """Discover plugins on startup so broken ones are reported early."""
    registry = get_registry()
    logger.info(f"Relay_Ingestor API starting up with plugins: {', '.join(registry.types()) or 'none'}")
    yield
    logger.info("Relay_Ingestor API shutting down...")


app = FastAPI(
    title="Relay_Ingestor API",
    description="Plugin discovery and source diagnostics for the message ingestion engine",
    version="0.1.0",
    lifespan=lifespan,
)


def _error_status(exc: RelayIngestorError) -> int:
    if isinstance(exc, AdapterNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConfigurationError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(RelayIngestorError)
async def relay_exception_handler(request: Request, exc: RelayIngestorError) -> JSONResponse:
    """Handle custom Relay_Ingestor exceptions."""
    logger.error(
        f"{exc.__class__.__name__}: {exc}",
        extra={"status": "error", "path": request.url.path},
    )
    return JSONResponse(
        status_code=_error_status(exc),
        content={"status": "error", "message": str(exc), "error_type": exc.__class__.__name__},
    )


from .routes import health, metrics, plugins, sources  # noqa: E402

app.include_router(health.router, tags=["health"])
app.include_router(plugins.router, prefix="/api/v1", tags=["plugins"])
app.include_router(sources.router, prefix="/api/v1", tags=["sources"])
app.include_router(metrics.router, tags=["monitoring"])
