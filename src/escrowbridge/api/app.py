"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from escrowbridge import __version__
from escrowbridge.config import get_settings
from escrowbridge.errors import (
    ConditionNotFound,
    DealNotFound,
    EscrowError,
    ExecutionNotFound,
    ExecutionRejected,
    NoRouteFound,
    ProviderUnavailable,
    StateConflict,
    ValidationError,
)
from escrowbridge.ledger.database import close_db, init_db
from escrowbridge.services.factory import EscrowServices, create_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    if app.state.services is None:
        await init_db()
        app.state.services = create_services()
    yield
    # Shutdown
    await close_db()


def _status_for(exc: EscrowError) -> int:
    if isinstance(exc, (DealNotFound, ConditionNotFound, ExecutionNotFound)):
        return 404
    if isinstance(exc, StateConflict):
        return 409
    if isinstance(exc, (ValidationError, NoRouteFound, ExecutionRejected)):
        return 422
    if isinstance(exc, ProviderUnavailable):
        return 503
    return 400


async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, StateConflict):
        body["current"] = exc.current
        body["requested"] = exc.requested
    return JSONResponse(status_code=status_code, content=body)


def create_app(services: Optional[EscrowServices] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Pre-built services (tests); built on startup if omitted
    """
    settings = services.settings if services else get_settings()

    app = FastAPI(
        title="EscrowBridge API",
        description="Cross-chain escrow deal API",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(EscrowError, escrow_error_handler)

    # Register routes
    from escrowbridge.api.routes import deals, health, networks

    app.include_router(health.router, tags=["Health"])
    app.include_router(deals.router, prefix="/api/v1", tags=["Deals"])
    app.include_router(networks.router, prefix="/api/v1", tags=["Networks"])

    return app
