"""Database helpers, schema and repositories for layer metadata.

Connections come from a process-wide psycopg2 ThreadedConnectionPool. Every
statement runs through ``cursor()``, which yields a RealDictCursor and turns
driver errors into InfrastructureError so callers only deal with the
project's error taxonomy. Transactions are scoped with ``with conn:``, which
commits on success and rolls back on any exception.
"""

from __future__ import annotations

import contextlib
import datetime
import functools
import logging
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool

from geolayers.core import errors
from geolayers.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from geolayers.core import config

logger = logging.getLogger(__name__)

SCHEMA_SQL = (
    "CREATE EXTENSION IF NOT EXISTS postgis",
    """
    CREATE TABLE IF NOT EXISTS map (
      id SERIAL PRIMARY KEY,
      name TEXT NOT NULL,
      is_active BOOLEAN NOT NULL DEFAULT TRUE,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS layer (
      id SERIAL PRIMARY KEY,
      name VARCHAR(200) NOT NULL,
      description TEXT,
      layer_type VARCHAR(20) NOT NULL,
      total_features INTEGER NOT NULL DEFAULT 0,
      bbox_geometry geometry(Polygon, 4326),
      style JSONB,
      is_active BOOLEAN NOT NULL DEFAULT TRUE,
      is_public BOOLEAN NOT NULL DEFAULT FALSE,
      original_filename TEXT,
      file_size_bytes BIGINT,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS layer_feature (
      id BIGSERIAL PRIMARY KEY,
      layer_id INTEGER NOT NULL REFERENCES layer(id) ON DELETE CASCADE,
      feature_index INTEGER NOT NULL,
      geometry geometry(Geometry, 4326) NOT NULL,
      properties JSONB NOT NULL DEFAULT '{}'::jsonb,
      UNIQUE (layer_id, feature_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS map_layer (
      map_id INTEGER NOT NULL REFERENCES map(id) ON DELETE CASCADE,
      layer_id INTEGER NOT NULL REFERENCES layer(id) ON DELETE CASCADE,
      display_order INTEGER NOT NULL DEFAULT 0,
      is_visible BOOLEAN NOT NULL DEFAULT TRUE,
      opacity DOUBLE PRECISION NOT NULL DEFAULT 1.0,
      PRIMARY KEY (map_id, layer_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_layer_bbox ON layer USING GIST (bbox_geometry)",
)

# Dropped and rebuilt around bulk loads of large layers.
FEATURE_INDEXES = {
    "idx_layer_feature_geometry": (
        "CREATE INDEX IF NOT EXISTS idx_layer_feature_geometry "
        "ON layer_feature USING GIST (geometry)"
    ),
    "idx_layer_feature_layer_id": (
        "CREATE INDEX IF NOT EXISTS idx_layer_feature_layer_id "
        "ON layer_feature (layer_id)"
    ),
}

LAYER_COLUMNS = """
    l.id, l.name, l.description, l.layer_type, l.total_features, l.style,
    l.is_active, l.is_public, l.original_filename, l.file_size_bytes,
    l.created_at,
    ST_XMin(l.bbox_geometry) AS bbox_minx,
    ST_YMin(l.bbox_geometry) AS bbox_miny,
    ST_XMax(l.bbox_geometry) AS bbox_maxx,
    ST_YMax(l.bbox_geometry) AS bbox_maxy
"""


@functools.lru_cache(maxsize=4)
def _pool(
    dsn: str, minconn: int, maxconn: int
) -> psycopg2.pool.ThreadedConnectionPool:
    logger.info("Opening connection pool (%d-%d connections)", minconn, maxconn)
    return psycopg2.pool.ThreadedConnectionPool(minconn, maxconn, dsn)


def get_pool(settings: config.Settings) -> psycopg2.pool.ThreadedConnectionPool:
    """Return the shared pool for the configured database.

    Raises:
        InfrastructureError: If the database cannot be reached.
    """
    try:
        return _pool(
            settings.database_url,
            settings.db_pool_min_size,
            settings.db_pool_max_size,
        )
    except psycopg2.Error as exc:
        raise errors.InfrastructureError(
            f"Database unavailable: {exc}".strip()
        ) from exc


@contextlib.contextmanager
def connection(
    settings: config.Settings,
) -> Iterator[psycopg2.extensions.connection]:
    """Borrow a pooled connection and return it afterwards."""
    pool = get_pool(settings)
    try:
        conn = pool.getconn()
    except psycopg2.Error as exc:
        raise errors.InfrastructureError(
            f"Database unavailable: {exc}".strip()
        ) from exc
    try:
        yield conn
    finally:
        pool.putconn(conn)


@contextlib.contextmanager
def cursor(
    conn: psycopg2.extensions.connection,
) -> Iterator[psycopg2.extras.RealDictCursor]:
    """Open a RealDictCursor, translating driver errors.

    Raises:
        InfrastructureError: Wrapping any psycopg2 error.
    """
    try:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            yield cur
    except psycopg2.Error as exc:
        message = str(exc).strip() or exc.__class__.__name__
        logger.error("Database error: %s", message)
        raise errors.InfrastructureError(message) from exc


def ensure_schema(conn: psycopg2.extensions.connection) -> None:
    """Create the PostGIS extension, tables and indexes when missing."""
    with conn, cursor(conn) as cur:
        for statement in SCHEMA_SQL:
            cur.execute(statement)
        for statement in FEATURE_INDEXES.values():
            cur.execute(statement)
    logger.info("Database schema ready")


class LayerRepositoryProtocol(Protocol):
    """Read access to layer rows.

    Implementations provide an in-memory backend (tests) and a PostgreSQL
    backend bound to one connection (requests).
    """

    def get(self, layer_id: int) -> db_models.Layer | None: ...

    def get_many(self, layer_ids: Iterable[int]) -> list[db_models.Layer]: ...

    def all(self) -> Iterable[db_models.Layer]: ...


class InMemoryLayerRepository(LayerRepositoryProtocol):
    """Dictionary-backed store for tests and local development."""

    def __init__(self) -> None:
        self._store: dict[int, db_models.Layer] = {}

    def add(self, layer: db_models.Layer) -> db_models.Layer:
        self._store[layer.id] = layer
        return layer

    def get(self, layer_id: int) -> db_models.Layer | None:
        return self._store.get(layer_id)

    def get_many(self, layer_ids: Iterable[int]) -> list[db_models.Layer]:
        return [self._store[i] for i in layer_ids if i in self._store]

    def all(self) -> Iterable[db_models.Layer]:
        return sorted(
            self._store.values(), key=lambda layer: layer.created_at, reverse=True
        )


class PostgresLayerRepository(LayerRepositoryProtocol):
    """PostgreSQL/PostGIS-backed repository bound to one connection."""

    def __init__(self, conn: psycopg2.extensions.connection) -> None:
        self.conn = conn

    def get(self, layer_id: int) -> db_models.Layer | None:
        with cursor(self.conn) as cur:
            cur.execute(
                f"SELECT {LAYER_COLUMNS} FROM layer l "
                "WHERE l.id = %(layer_id)s",
                {"layer_id": layer_id},
            )
            row = cur.fetchone()
        if row is None:
            return None
        return self._from_row(cast(dict[str, Any], row))

    def get_many(self, layer_ids: Iterable[int]) -> list[db_models.Layer]:
        with cursor(self.conn) as cur:
            cur.execute(
                f"SELECT {LAYER_COLUMNS} FROM layer l "
                "WHERE l.id = ANY(%(layer_ids)s) ORDER BY l.id",
                {"layer_ids": list(layer_ids)},
            )
            rows = cur.fetchall()
        return [self._from_row(cast(dict[str, Any], row)) for row in rows]

    def all(self) -> Iterable[db_models.Layer]:
        with cursor(self.conn) as cur:
            cur.execute(
                f"SELECT {LAYER_COLUMNS} FROM layer l "
                "ORDER BY l.created_at DESC"
            )
            rows = cur.fetchall()
        return [self._from_row(cast(dict[str, Any], row)) for row in rows]

    @staticmethod
    def _from_row(row: dict[str, Any]) -> db_models.Layer:
        """Convert a database row dictionary to a Layer."""
        bbox = (
            row.get("bbox_minx"),
            row.get("bbox_miny"),
            row.get("bbox_maxx"),
            row.get("bbox_maxy"),
        )
        bbox_tuple = (
            None
            if any(v is None for v in bbox)
            else cast(db_models.BBox, tuple(float(v) for v in bbox))
        )
        created_at = row.get("created_at") or datetime.datetime.now(
            datetime.UTC
        )
        size = row.get("file_size_bytes")
        return db_models.Layer(
            id=int(row["id"]),
            name=str(row["name"]),
            layer_type=cast(db_models.LayerKind, str(row["layer_type"])),
            total_features=int(row.get("total_features") or 0),
            bbox=bbox_tuple,
            description=row.get("description"),
            style=row.get("style"),
            is_active=bool(row.get("is_active", True)),
            is_public=bool(row.get("is_public", False)),
            original_filename=row.get("original_filename"),
            file_size_bytes=int(size) if size is not None else None,
            created_at=created_at,
        )


def get_layer_repository(
    conn: psycopg2.extensions.connection,
) -> LayerRepositoryProtocol:
    """Factory returning the PostgreSQL repository for a connection."""
    return PostgresLayerRepository(conn)


def get_active_layer(
    repo: LayerRepositoryProtocol, layer_id: int
) -> db_models.Layer:
    """Fetch a layer that queries may run against.

    Raises:
        NotFoundError: If the layer does not exist.
        DomainError: If the layer is inactive.
    """
    layer = repo.get(layer_id)
    if layer is None:
        raise errors.NotFoundError(f"Layer {layer_id} not found")
    if not layer.is_active:
        raise errors.DomainError(f"Layer {layer_id} is not active")
    return layer
