"""Shared FastAPI dependencies: pooled connection and layer repository.

Endpoints depend on ``get_connection`` for datastore work and on
``get_repo`` for layer lookups. Tests replace both through
``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import Iterator

import fastapi
import psycopg2.extensions

from geolayers.core import config
from geolayers.db import database


def get_connection(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> Iterator[psycopg2.extensions.connection]:
    """Borrow a pooled connection for the duration of one request."""
    with database.connection(settings) as conn:
        yield conn


def get_repo(
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        get_connection
    ),
) -> database.LayerRepositoryProtocol:
    """Resolve the layer repository dependency.

    Args:
        conn: Request connection (injected via FastAPI Depends).

    Returns:
        LayerRepositoryProtocol implementation
            (PostgresLayerRepository in production).
    """
    return database.get_layer_repository(conn)
