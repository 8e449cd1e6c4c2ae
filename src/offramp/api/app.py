"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from offramp.config import get_settings
from offramp.errors import OfframpError
from offramp.ledger.database import close_db, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    await init_db()
    yield
    # Shutdown
    await close_db()


async def offramp_error_handler(request: Request, exc: OfframpError) -> JSONResponse:
    """Render pipeline errors as ``{success, error}`` with the error's HTTP code."""
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc), "error_type": type(exc).__name__},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Off-ramp API",
        description="Token deposit to NGN bank payout service",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(OfframpError, offramp_error_handler)

    # Register routes
    from offramp.api.routers import admin, offramp, webhook
    from offramp.api.routes import health

    app.include_router(health.router, tags=["Health"])
    app.include_router(offramp.router, tags=["Off-ramp"])
    app.include_router(webhook.router, tags=["Webhooks"])
    app.include_router(admin.router, tags=["Admin"])

    return app
