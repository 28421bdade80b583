"""API endpoint tests for the XYZ vector tile endpoint."""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING

import pytest
from fastapi import testclient

from geolayers import main
from geolayers.api import dependencies

if TYPE_CHECKING:
    from conftest import FakeConnection

    from geolayers.db import database


@pytest.fixture
def client(
    repo: database.InMemoryLayerRepository, conn: FakeConnection
) -> Iterator[testclient.TestClient]:
    app = main.create_app()
    app.dependency_overrides[dependencies.get_repo] = lambda: repo
    app.dependency_overrides[dependencies.get_connection] = lambda: conn
    try:
        yield testclient.TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_vector_tile(client: testclient.TestClient, conn: FakeConnection) -> None:
    """Test tile endpoint returns protobuf content."""
    conn.on("ST_AsMVT", [{"tile": b"\x1a\x02mvt"}])
    response = client.get("/tiles/vector/1/10/250/480.pbf")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/x-protobuf"
    assert response.content == b"\x1a\x02mvt"


def test_empty_tile(client: testclient.TestClient, conn: FakeConnection) -> None:
    """Test a tile with no features is an empty 200."""
    conn.on("ST_AsMVT", [{"tile": None}])
    response = client.get("/tiles/vector/1/3/1/1.pbf")
    assert response.status_code == 200
    assert response.content == b""


@pytest.mark.parametrize(
    "path", ["/tiles/vector/1/23/0/0.pbf", "/tiles/vector/1/2/4/0.pbf"]
)
def test_tile_out_of_range(client: testclient.TestClient, path: str) -> None:
    """Test invalid tile coordinates are a 400."""
    assert client.get(path).status_code == 400


def test_tile_missing_layer(client: testclient.TestClient) -> None:
    """Test tiles of a missing layer are a 404."""
    assert client.get("/tiles/vector/99/3/1/1.pbf").status_code == 404


def test_tile_datastore_failure(
    client: testclient.TestClient, conn: FakeConnection, db_error: Exception
) -> None:
    """Test datastore failures are a 503."""
    conn.on("ST_AsMVT", error=db_error)
    response = client.get("/tiles/vector/1/3/1/1.pbf")
    assert response.status_code == 503
