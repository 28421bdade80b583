"""FastAPI application entrypoint and configuration.

This module provides the FastAPI application factory that configures
logging, sets up CORS middleware, includes the API routers for ingestion,
layers, features and tiles, maps the project's errors to HTTP responses and
exposes a health check endpoint for monitoring. On startup the database
schema is created when ``INITIALIZE_SCHEMA`` is enabled.

Example:
    The application can be run with uvicorn:
        $ uvicorn geolayers.main:app --reload

    Or imported and used programmatically:
        >>> from geolayers.main import create_app
        >>> app = create_app()
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

import fastapi
from fastapi import responses
from fastapi.middleware import cors
from starlette import concurrency

from geolayers.api import features, ingest, layers, tiles
from geolayers.core import config, errors
from geolayers.core.logging import setup_logging
from geolayers.db import database

logger = logging.getLogger(__name__)


def _initialize_schema(settings: config.Settings) -> None:
    with database.connection(settings) as conn:
        database.ensure_schema(conn)


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Prepare the database schema before serving requests."""
    settings = config.get_settings()
    if settings.initialize_schema:
        await concurrency.run_in_threadpool(_initialize_schema, settings)
    yield


async def geolayer_error_handler(
    request: fastapi.Request, exc: Exception
) -> responses.JSONResponse:
    """Translate a GeoLayerError into ``{"detail": message}``."""
    status_code = getattr(exc, "status_code", 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return responses.JSONResponse(
        status_code=status_code, content={"detail": str(exc)}
    )


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    setup_logging(settings.log_level)
    app = fastapi.FastAPI(title="GeoLayers", version="0.1.0", lifespan=lifespan)

    app.include_router(ingest.router)
    app.include_router(features.router)
    app.include_router(layers.router)
    app.include_router(tiles.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(errors.GeoLayerError, geolayer_error_handler)

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
