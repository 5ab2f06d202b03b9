"""FastAPI application for the innsync service.

This module provides:
- Application factory with CORS and lifespan management
- Error rendering for the innsync error hierarchy
- Health check endpoints
- Registration of the amendment and webhook endpoint routers
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from innsync.amendments.coordinator import get_amendment_coordinator
from innsync.errors import InnsyncError
from innsync.logging_config import setup_logging
from innsync.webhooks.dispatcher import get_delivery_engine

logger = structlog.get_logger(__name__)


# ============================================================================
# Application Setup
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    """Application lifespan handler."""
    # Startup
    setup_logging()
    logger.info("application_starting")

    engine = get_delivery_engine()
    await engine.start()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await engine.stop()
    await get_amendment_coordinator().confirmer.drain()


OPENAPI_TAGS = [
    {
        "name": "OTA Ingress",
        "description": "Amendments pushed by online travel agencies.",
    },
    {
        "name": "Amendments",
        "description": "Review, decide and inspect booking amendments.",
    },
    {
        "name": "Webhook Endpoints",
        "description": "Tenant webhook endpoint registration, testing and delivery history.",
    },
    {
        "name": "Health",
        "description": "Liveness and readiness probes.",
    },
]


def error_body(message: str, **extra: Any) -> dict[str, Any]:
    """Standard error response body."""
    return {"status": "error", "message": message, **extra}


def create_app(
    title: str = "Innsync API",
    version: str = "1.0.0",
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        title: API title.
        version: API version.
        cors_origins: Allowed CORS origins.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title=title,
        version=version,
        description="OTA amendment pipeline and outbound webhook delivery.",
        lifespan=lifespan,
        openapi_tags=OPENAPI_TAGS,
    )

    # Configure CORS
    origins = cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add exception handlers
    @app.exception_handler(InnsyncError)
    async def innsync_error_handler(
        request: Request, exc: InnsyncError  # noqa: ARG001
    ) -> JSONResponse:
        log = logger.error if exc.http_status >= 500 else logger.info
        log("request_failed", **exc.to_dict(), http_status=exc.http_status)
        return JSONResponse(status_code=exc.http_status, content=error_body(exc.message))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=error_body("Invalid request", errors=jsonable_encoder(exc.errors())),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.detail if isinstance(exc.detail, str) else str(exc.detail)),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), exc_info=True)
        return JSONResponse(status_code=500, content=error_body("Internal server error"))

    # Register routes
    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all routes on the application.

    Args:
        app: FastAPI application.
    """
    from innsync.api.amendments import ingress_router
    from innsync.api.amendments import router as amendments_router
    from innsync.api.endpoints import router as endpoints_router

    app.include_router(ingress_router)
    app.include_router(amendments_router)
    app.include_router(endpoints_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check."""
        return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}

    @app.get("/health/ready", tags=["Health"])
    async def readiness() -> JSONResponse:
        """Readiness check: delivery workers running, with queue depth."""
        engine_status = get_delivery_engine().status()
        ready = engine_status["running"]
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "ready" if ready else "not_ready",
                "checks": {
                    "delivery_engine": {
                        "running": engine_status["running"],
                        "queued": engine_status["queued"],
                        "in_flight": engine_status["in_flight"],
                    },
                },
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )


# ============================================================================
# Default Application Instance
# ============================================================================


# Create default app instance
app = create_app()
