"""API endpoint tests for the feature catalog and attribute filters.

Checks that the raw query string reaches the filter engine as attribute
filters and that domain errors map to HTTP status codes.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import pytest
from fastapi import testclient

from geolayers import main
from geolayers.api import dependencies
from geolayers.core import config

if TYPE_CHECKING:
    from conftest import FakeConnection

    from geolayers.db import database

SQUARE = [[[-91, 14], [-90, 14], [-90, 15], [-91, 15], [-91, 14]]]


def _row(row_id: int, **props: Any) -> dict[str, Any]:
    return {
        "id": row_id,
        "feature_index": row_id - 10,
        "properties": props,
        "geometry": {"type": "MultiPolygon", "coordinates": [SQUARE]},
    }


@pytest.fixture
def client(
    repo: database.InMemoryLayerRepository,
    conn: FakeConnection,
    settings: config.Settings,
) -> Iterator[testclient.TestClient]:
    app = main.create_app()
    app.dependency_overrides[config.get_settings] = lambda: settings
    app.dependency_overrides[dependencies.get_repo] = lambda: repo
    app.dependency_overrides[dependencies.get_connection] = lambda: conn
    try:
        yield testclient.TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_filter_layer(client: testclient.TestClient, conn: FakeConnection) -> None:
    """Test query parameters become aliased attribute filters."""
    conn.on("jsonb_object_keys", [{"key": "NO_DISTRIT"}]).on(
        "jsonb_each_text", [_row(10, NO_DISTRIT="5")]
    )
    response = client.get(
        "/api/layers/1/features/filter",
        params=[("CODDISTRITO", "5,7"), ("featureIds", "10")],
    )
    assert response.status_code == 200
    body = response.json()
    assert [f["id"] for f in body["features"]] == [10]
    assert body["metadata"]["appliedFilters"] == {"CODDISTRITO": ["5", "7"]}
    assert body["metadata"]["selectedFeatureIds"] == [10]
    _, params = conn.statements("jsonb_each_text")[0]
    assert params["keys_0"] == ["NO_DISTRIT"]
    assert params["feature_ids"] == [10]


def test_filter_line_layer_is_rejected(client: testclient.TestClient) -> None:
    """Test filtering a non-multipolygon layer is a 400."""
    response = client.get("/api/layers/2/features/filter", params={"A": "1"})
    assert response.status_code == 400
    assert "multipolygon" in response.json()["detail"]


def test_filter_missing_layer(client: testclient.TestClient) -> None:
    """Test filtering a missing layer is a 404."""
    response = client.get("/api/layers/99/features/filter")
    assert response.status_code == 404


def test_filter_bad_feature_ids(client: testclient.TestClient) -> None:
    """Test non-integer feature ids are a 400."""
    response = client.get(
        "/api/layers/1/features/filter", params={"featureIds": "1,abc"}
    )
    assert response.status_code == 400


def test_filter_multiple(client: testclient.TestClient, conn: FakeConnection) -> None:
    """Test the multi-layer route is not shadowed by the layer routes."""
    conn.on("lf.id, lf.feature_index", [_row(10)])
    response = client.get(
        "/api/layers/features/filter-multiple", params={"layerIds": "1,4"}
    )
    assert response.status_code == 200
    metadata = response.json()["metadata"]
    assert metadata["totalLayers"] == 2
    assert metadata["totalFeatures"] == 2


def test_filter_multiple_requires_layers(client: testclient.TestClient) -> None:
    """Test an empty layer list is a 400."""
    response = client.get("/api/layers/features/filter-multiple")
    assert response.status_code == 400


def test_filter_multiple_unknown_layers(client: testclient.TestClient) -> None:
    """Test unknown layer ids are a 404 naming them."""
    response = client.get(
        "/api/layers/features/filter-multiple", params={"layerIds": "1,98,99"}
    )
    assert response.status_code == 404
    assert "98, 99" in response.json()["detail"]


def test_selected_features(
    client: testclient.TestClient, conn: FakeConnection
) -> None:
    """Test repeated featureIds are combined."""
    conn.on("lf.id, lf.feature_index", [_row(10), _row(11)])
    response = client.get(
        "/api/layers/1/features", params=[("featureIds", "10"), ("featureIds", "11")]
    )
    assert response.status_code == 200
    assert response.json()["metadata"]["selectedFeatureIds"] == [10, 11]


def test_all_features_without_ids(
    client: testclient.TestClient, conn: FakeConnection
) -> None:
    """Test the selection endpoint returns every feature without ids."""
    conn.on("lf.id, lf.feature_index", [_row(10), _row(11)])
    response = client.get("/api/layers/1/features")
    assert response.status_code == 200
    assert len(response.json()["features"]) == 2
    _, params = conn.executed[0]
    assert "feature_ids" not in params


def test_catalog(client: testclient.TestClient, conn: FakeConnection) -> None:
    """Test the catalog endpoint."""
    conn.on(
        "ST_Area",
        [
            {
                "id": 10,
                "feature_index": 0,
                "properties": {},
                "bbox_geometry": {"type": "Polygon", "coordinates": SQUARE},
                "centroid": {"type": "Point", "coordinates": [-90.5, 14.5]},
                "area_km2": 11902.4,
                "geometry_type": "MULTIPOLYGON",
            }
        ],
    )
    response = client.get("/api/layers/1/features/catalog")
    assert response.status_code == 200
    assert response.json()["totalFeatures"] == 1


def test_catalog_inactive_layer(client: testclient.TestClient) -> None:
    """Test the catalog of an inactive layer is refused."""
    response = client.get("/api/layers/3/features/catalog")
    assert response.status_code == 400
