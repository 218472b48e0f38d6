"""FastAPI server for vendor bill reconciliation.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import aliases, bills, health
from core import __version__
from core.config import Settings, get_settings
from core.errors import (
    AlreadyPostedError,
    CollaboratorError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ReconciliationError,
    ValidationError,
)
from core.observability.logging import configure_logging, get_logger
from vendor_bills.service import ReconciliationService

logger = get_logger(__name__)

# Most specific first
STATUS_CODES = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (AlreadyPostedError, 409),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (CollaboratorError, 503),
]


def status_for(error: ReconciliationError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    logger.info("Vendor bill reconciliation API starting up...")

    yield

    logger.info("Vendor bill reconciliation API shutting down...")


def create_app(
    service: Optional[ReconciliationService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Service to serve; built from settings on first use when omitted
        settings: Settings override (defaults to the environment)
    """
    app = FastAPI(
        title="Vendor Bill Reconciliation API",
        description="Match vendor bill lines to the catalog, learn aliases and post receipts",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings or (service.settings if service else get_settings())
    app.state.service = service

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(bills.router, prefix="/bills", tags=["Bills"])
    app.include_router(aliases.router, prefix="/aliases", tags=["Aliases"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
