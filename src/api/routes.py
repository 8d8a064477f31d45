"""FastAPI application for the Integration Hub.

This module provides:
- create_app() factory that builds one IntegrationRegistry at start-up
- Liveness and readiness endpoints
- Integration and inbound webhook routes
- CORS configuration
- Error handling
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.config import configure_logging, settings
from src.integrations.registry import IntegrationRegistry

logger = structlog.get_logger(__name__)


# ============================================================================
# Response Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    detail: str | None = Field(default=None, description="Detailed error information")


# ============================================================================
# Application Setup
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("application_starting", environment=settings.ENVIRONMENT)

    yield

    logger.info("application_shutting_down")
    registry: IntegrationRegistry = app.state.registry
    await registry.shutdown()


OPENAPI_TAGS = [
    {
        "name": "Integrations",
        "description": "Inbound vendor webhooks, adapter listing, aggregated health "
        "and sync operation lookup.",
    },
    {
        "name": "Health",
        "description": "Health check endpoints for monitoring service status and readiness. "
        "Compatible with Kubernetes liveness and readiness checks.",
    },
]

API_DESCRIPTION = """
## Overview

The Integration Hub connects the CRM to third-party services (Slack, Zapier, ...).
Vendors post webhooks to `/integrations/{name}/webhook`; requests are verified
with HMAC-SHA256 before the adapter's handler runs.

## Quick Start

```bash
curl -X POST http://localhost:8000/integrations/zapier/webhook \\
  -H "Content-Type: application/json" \\
  -H "X-Webhook-Signature: <hex hmac of body>" \\
  -d '{"action": "create_contact", "data": {"email": "ada@example.com"}}'
```
"""


def create_app(
    registry: IntegrationRegistry | None = None,
    title: str = "Integration Hub API",
    version: str = "1.0.0",
    description: str | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        registry: Integration registry (a new one is created if omitted).
        title: API title.
        version: API version.
        description: API description (uses default if not provided).
        cors_origins: Allowed CORS origins.

    Returns:
        Configured FastAPI application.
    """
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=title,
        version=version,
        description=description or API_DESCRIPTION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=OPENAPI_TAGS,
    )
    app.state.registry = registry or IntegrationRegistry(settings=settings)

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
    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
                detail=None,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail=str(exc) if app.debug else None,
            ).model_dump(),
        )

    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all routes on the application.

    Args:
        app: FastAPI application.
    """
    from src.api.integrations import router as integrations_router

    app.include_router(integrations_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check."""
        return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}

    @app.get("/health/live", tags=["Health"])
    async def liveness() -> dict[str, Any]:
        """Kubernetes-style liveness check.

        Alias for /health endpoint.
        """
        return await health()

    @app.get("/health/ready", tags=["Health"])
    async def readiness(request: Request) -> JSONResponse:
        """Readiness check.

        Not ready while any enabled integration failed to initialize.
        """
        registry: IntegrationRegistry = request.app.state.registry
        checks = {
            entry.name: entry.ready
            for entry in registry.list_integrations()
            if entry.config.enabled
        }
        ready = all(checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "ready" if ready else "not_ready",
                "checks": checks,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )


# ============================================================================
# Default Application Instance
# ============================================================================


# Create default app instance
app = create_app()
