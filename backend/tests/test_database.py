"""Tests for the database helpers and layer repositories.

This module covers the in-memory repository, the row conversion and SQL of
the PostgreSQL repository, the cursor error translation, schema creation
and the active-layer guard. A scripted fake connection replaces PostgreSQL.
"""

from __future__ import annotations

import datetime
from typing import TYPE_CHECKING, Any

import psycopg2
import pytest

from geolayers.core import config, errors
from geolayers.db import database

if TYPE_CHECKING:
    from conftest import FakeConnection


def _row(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": 7,
        "name": "Distritos",
        "description": None,
        "layer_type": "multipolygon",
        "total_features": 24,
        "style": {"color": "#3388ff"},
        "is_active": True,
        "is_public": False,
        "original_filename": "distritos.geojson",
        "file_size_bytes": 1024,
        "created_at": datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC),
        "bbox_minx": -91.0,
        "bbox_miny": 14.0,
        "bbox_maxx": -90.0,
        "bbox_maxy": 15.0,
    }
    row.update(overrides)
    return row


def test_in_memory_repository(layer_factory: Any) -> None:
    """Test adding, fetching and listing layers in memory."""
    repo = database.InMemoryLayerRepository()
    older = layer_factory(
        1, created_at=datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
    )
    newer = layer_factory(
        2, created_at=datetime.datetime(2024, 6, 1, tzinfo=datetime.UTC)
    )
    repo.add(older)
    repo.add(newer)
    assert repo.get(1) is older
    assert repo.get(99) is None
    assert [layer.id for layer in repo.all()] == [2, 1]
    assert [layer.id for layer in repo.get_many([2, 99, 1])] == [2, 1]


def test_postgres_repository_from_row() -> None:
    """Test converting a database row to a Layer."""
    layer = database.PostgresLayerRepository._from_row(_row())
    assert layer.id == 7
    assert layer.layer_type == "multipolygon"
    assert layer.bbox == (-91.0, 14.0, -90.0, 15.0)
    assert layer.style == {"color": "#3388ff"}
    assert layer.file_size_bytes == 1024


def test_postgres_repository_from_row_none_bbox() -> None:
    """Test a layer without bbox geometry."""
    layer = database.PostgresLayerRepository._from_row(
        _row(bbox_minx=None, bbox_miny=None, bbox_maxx=None, bbox_maxy=None)
    )
    assert layer.bbox is None


def test_postgres_repository_get(conn: FakeConnection) -> None:
    """Test get binds the layer id and maps the row."""
    conn.on("FROM layer l", [_row()])
    repo = database.get_layer_repository(conn)
    layer = repo.get(7)
    assert layer is not None
    assert layer.name == "Distritos"
    query, params = conn.executed[0]
    assert "l.id = %(layer_id)s" in query
    assert params == {"layer_id": 7}


def test_postgres_repository_get_missing(conn: FakeConnection) -> None:
    """Test get returns None when no row matches."""
    assert database.PostgresLayerRepository(conn).get(7) is None


def test_postgres_repository_get_many(conn: FakeConnection) -> None:
    """Test get_many queries with an id array."""
    conn.on("FROM layer l", [_row(id=1), _row(id=2)])
    layers = database.PostgresLayerRepository(conn).get_many([1, 2])
    assert [layer.id for layer in layers] == [1, 2]
    assert conn.executed[0][1] == {"layer_ids": [1, 2]}


def test_cursor_translates_driver_errors(
    conn: FakeConnection, db_error: psycopg2.Error
) -> None:
    """Test psycopg2 errors surface as InfrastructureError."""
    conn.on("FROM layer l", error=db_error)
    with pytest.raises(errors.InfrastructureError, match="server closed"):
        database.PostgresLayerRepository(conn).get(1)


def test_ensure_schema(conn: FakeConnection) -> None:
    """Test schema creation covers every table and index in one commit."""
    database.ensure_schema(conn)
    executed = " ".join(query for query, _ in conn.executed)
    for table in ("map", "layer", "layer_feature", "map_layer"):
        assert f"CREATE TABLE IF NOT EXISTS {table} " in executed
    assert "CREATE EXTENSION IF NOT EXISTS postgis" in executed
    assert "idx_layer_feature_geometry" in executed
    assert "idx_layer_feature_layer_id" in executed
    assert conn.committed


def test_get_active_layer(repo: database.InMemoryLayerRepository) -> None:
    """Test missing layers are not found and inactive ones refused."""
    assert database.get_active_layer(repo, 1).name == "Distritos"
    with pytest.raises(errors.NotFoundError):
        database.get_active_layer(repo, 99)
    with pytest.raises(errors.DomainError, match="not active"):
        database.get_active_layer(repo, 3)


def test_connection_returns_to_pool(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test borrowed connections are handed back to the pool."""

    class FakePool:
        def __init__(self) -> None:
            self.returned: list[object] = []

        def getconn(self) -> object:
            return "conn"

        def putconn(self, conn: object) -> None:
            self.returned.append(conn)

    pool = FakePool()
    monkeypatch.setattr(database, "get_pool", lambda _settings: pool)
    with database.connection(config.Settings(_env_file=None)) as conn:
        assert conn == "conn"
    assert pool.returned == ["conn"]


def test_get_pool_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test an unreachable database becomes InfrastructureError."""

    def refuse(*_args: object) -> None:
        raise psycopg2.OperationalError("connection refused")

    monkeypatch.setattr(database.psycopg2.pool, "ThreadedConnectionPool", refuse)
    database._pool.cache_clear()
    settings = config.Settings(_env_file=None, database_url="postgresql://nowhere/x")
    try:
        with pytest.raises(errors.InfrastructureError, match="connection refused"):
            database.get_pool(settings)
    finally:
        database._pool.cache_clear()
