"""FastAPI application for the Integration Hub.

This module contains:
- Integration and inbound webhook endpoints
- Health check endpoints
- App factory
"""

from src.api.integrations import router as integrations_router
from src.api.routes import ErrorResponse, app, create_app

__all__ = [
    # Routers
    "integrations_router",
    # Response models
    "ErrorResponse",
    # App factory and instance
    "app",
    "create_app",
]
