"""Health check endpoints."""

from fastapi import APIRouter, Request

from escrowbridge import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "escrowbridge"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration info."""
    services = request.app.state.services
    return {
        "status": "healthy",
        "service": "escrowbridge",
        "version": __version__,
        "providers": [p.name for p in services.aggregator.providers],
        "ledger": services.ledger.name,
        "config": services.settings.get_safe_dict(),
    }
