"""Health check endpoints."""

from fastapi import APIRouter
from sqlalchemy import text

from offramp.config import get_settings
from offramp.ledger.database import get_db

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "offramp"}


@router.get("/health/detailed")
async def detailed_health():
    """Detailed health check with database status and redacted configuration."""
    settings = get_settings()

    database = "ok"
    try:
        async with get_db() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        database = f"error: {type(e).__name__}"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "service": "offramp",
        "version": "0.1.0",
        "database": database,
        "config": settings.get_safe_dict(),
    }
