"""Tests for alias-aware attribute filtering of multipolygon layers.

Key equivalence is tested directly; filter execution runs against the
in-memory repository and a scripted fake connection that serves the
layer's distinct key set and the matching rows.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from geolayers.core import config, errors
from geolayers.services import property_filter

if TYPE_CHECKING:
    from conftest import FakeConnection

    from geolayers.db import database

SQUARE = [[[-91, 14], [-90, 14], [-90, 15], [-91, 15], [-91, 14]]]
OTHER = [[[-89, 13], [-88, 13], [-88, 16], [-89, 16], [-89, 13]]]


def _row(row_id: int, index: int, coords: list[Any], **props: Any) -> dict[str, Any]:
    return {
        "id": row_id,
        "feature_index": index,
        "properties": props,
        "geometry": {"type": "MultiPolygon", "coordinates": [coords]},
    }


@pytest.mark.parametrize(
    ("left", "right"),
    [
        ("CODDISTRITO", "NO_DISTRIT"),
        ("CODDISTRITO", "Cod_Distrito"),
        ("cod-distrito", "COD DISTRITO"),
        ("NO_DISTRIT", "coddistrito"),
        ("NO_DISTRIT", "NO_DISTRITO_X"),
        # both truncate to the same DBF field name
        ("DEPARTAMEN", "DEPARTAMENTO_ID"),
    ],
)
def test_equivalent_keys(
    left: str, right: str, settings: config.Settings
) -> None:
    """Test separator, case, prefix alias and truncation rules."""
    assert property_filter.keys_equivalent(left, right, settings)
    assert property_filter.keys_equivalent(right, left, settings)


@pytest.mark.parametrize(
    ("left", "right"),
    [
        ("CODDISTRITO", "CODDEPTO"),
        ("CODDISTRITO", "DISTRITO"),
        # truncation only applies to keys of exactly the DBF field length
        ("CODDIST", "CODDISTRITO"),
        # separators count towards the truncated length
        ("CODDISTRIT", "Cod_Distrito_Num"),
        ("NO_DISTRIT", "NO_DIS_TRITO"),
    ],
)
def test_distinct_keys(left: str, right: str, settings: config.Settings) -> None:
    """Test unrelated keys are not equivalent."""
    assert not property_filter.keys_equivalent(left, right, settings)


def test_normalize_key() -> None:
    """Test normalization strips separators and rewrites prefixes."""
    aliases = {"no": "cod"}
    assert property_filter.normalize_key("NO_DISTRIT", aliases) == "coddistrit"
    assert property_filter.normalize_key("Cod_Distrito", aliases) == "coddistrito"
    assert property_filter.normalize_key("Area Km-2") == "areakm2"


def test_resolve_keys(settings: config.Settings) -> None:
    """Test a filter key resolves to every equivalent layer key."""
    layer_keys = ["NO_DISTRIT", "Cod_Distrito", "NOMBRE", "CODDEPTO"]
    assert property_filter.resolve_keys("CODDISTRITO", layer_keys, settings) == [
        "NO_DISTRIT",
        "Cod_Distrito",
    ]


def test_parse_filter_params() -> None:
    """Test repeated and comma-joined values become lists."""
    spec = property_filter.parse_filter_params(
        [
            ("CODDISTRITO", "5, 7"),
            ("CODDISTRITO", "9"),
            ("CODDEPTO", "01"),
            ("featureIds", "10,11"),
            ("featureIds", "12"),
            ("layerIds", "1"),
            ("empty", " , "),
        ]
    )
    assert spec.properties == {"CODDISTRITO": ["5", "7", "9"], "CODDEPTO": ["01"]}
    assert spec.feature_ids == [10, 11, 12]


def test_parse_id_list_rejects_garbage() -> None:
    """Test non-integer ids are rejected."""
    with pytest.raises(errors.ValidationError, match="featureIds"):
        property_filter.parse_id_list(["1,x"], "featureIds")


def test_build_filter_query() -> None:
    """Test one EXISTS clause per key and an id allow-list."""
    spec = property_filter.FilterSpec(
        properties={"CODDISTRITO": [" 5 "]}, feature_ids=[10]
    )
    query, params = property_filter.build_filter_query(
        1, {"CODDISTRITO": ["NO_DISTRIT", "Cod_Distrito"]}, spec
    )
    assert query.count("EXISTS (SELECT 1 FROM jsonb_each_text") == 1
    assert "TRIM(prop.val) = ANY(%(values_1)s)" in query
    assert "lf.id = ANY(%(feature_ids)s)" in query
    assert params == {
        "layer_id": 1,
        "keys_0": ["NO_DISTRIT", "Cod_Distrito"],
        "values_1": ["5"],
        "feature_ids": [10],
    }


def test_filter_layer_matches_aliased_keys(
    repo: database.InMemoryLayerRepository,
    conn: FakeConnection,
    settings: config.Settings,
) -> None:
    """Test CODDISTRITO=5 matches NO_DISTRIT and Cod_Distrito features."""
    conn.on(
        "jsonb_object_keys",
        [{"key": "NO_DISTRIT"}, {"key": "Cod_Distrito"}, {"key": "NOMBRE"}],
    ).on(
        "jsonb_each_text",
        [
            _row(10, 0, SQUARE, NO_DISTRIT=" 5", NOMBRE="Centro"),
            _row(11, 1, OTHER, Cod_Distrito="5"),
        ],
    )
    spec = property_filter.FilterSpec(properties={"CODDISTRITO": ["5"]})

    result = property_filter.filter_layer(repo, conn, 1, spec, settings)

    assert [f["id"] for f in result["features"]] == [10, 11]
    assert result["features"][0]["properties"] == {
        "NO_DISTRIT": " 5",
        "NOMBRE": "Centro",
        "featureIndex": 0,
        "featureId": 10,
    }
    assert result["metadata"] == {
        "layerId": 1,
        "layerName": "Distritos",
        "totalFeatures": 2,
        "appliedFilters": {"CODDISTRITO": ["5"]},
        "selectedFeatureIds": [],
        "bbox": {"minLon": -91.0, "minLat": 13.0, "maxLon": -88.0, "maxLat": 16.0},
    }
    _, params = conn.statements("jsonb_each_text")[0]
    assert params["keys_0"] == ["Cod_Distrito", "NO_DISTRIT"]


def test_filter_key_without_equivalent_matches_nothing(
    repo: database.InMemoryLayerRepository,
    conn: FakeConnection,
    settings: config.Settings,
) -> None:
    """Test an unknown filter key yields an empty result, not all rows."""
    conn.on("jsonb_object_keys", [{"key": "NOMBRE"}])
    spec = property_filter.FilterSpec(properties={"CODDISTRITO": ["5"]})
    result = property_filter.filter_layer(repo, conn, 1, spec, settings)
    assert result["features"] == []
    assert result["metadata"]["bbox"] is None
    assert not conn.statements("jsonb_each_text")


def test_filter_rejects_non_multipolygon_layer(
    repo: database.InMemoryLayerRepository,
    conn: FakeConnection,
    settings: config.Settings,
) -> None:
    """Test filtering a line layer is a domain error."""
    with pytest.raises(errors.DomainError, match="multipolygon"):
        property_filter.filter_layer(
            repo, conn, 2, property_filter.FilterSpec(), settings
        )


def test_filter_layers_unions_results(
    repo: database.InMemoryLayerRepository,
    conn: FakeConnection,
    settings: config.Settings,
) -> None:
    """Test multi-layer filtering tags features and combines the bbox."""

    def rows(_query: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        if params["layer_id"] == 1:
            return [_row(10, 0, SQUARE, CODDEPTO="01")]
        return [_row(20, 0, OTHER, Cod_Depto="01"), _row(21, 1, OTHER, Cod_Depto="01")]

    conn.on("lf.id, lf.feature_index", rows)
    spec = property_filter.FilterSpec(feature_ids=None)

    result = property_filter.filter_layers(repo, conn, [4, 1], spec, settings)

    assert [f["properties"]["layerId"] for f in result["features"]] == [4, 4, 1]
    assert result["features"][0]["properties"]["layerName"] == "Departamentos"
    metadata = result["metadata"]
    assert metadata["totalLayers"] == 2
    assert metadata["totalFeatures"] == 3
    assert metadata["layers"] == [
        {"layerId": 4, "layerName": "Departamentos", "featuresCount": 2},
        {"layerId": 1, "layerName": "Distritos", "featuresCount": 1},
    ]
    assert metadata["bbox"] == {
        "minLon": -91.0,
        "minLat": 13.0,
        "maxLon": -88.0,
        "maxLat": 16.0,
    }


def test_filter_layers_validation(
    repo: database.InMemoryLayerRepository,
    conn: FakeConnection,
    settings: config.Settings,
) -> None:
    """Test missing, inactive and non-multipolygon layers are refused."""
    spec = property_filter.FilterSpec()
    with pytest.raises(errors.ValidationError):
        property_filter.filter_layers(repo, conn, [], spec, settings)
    with pytest.raises(errors.NotFoundError, match="99"):
        property_filter.filter_layers(repo, conn, [1, 99], spec, settings)
    with pytest.raises(errors.DomainError, match="not active"):
        property_filter.filter_layers(repo, conn, [1, 3], spec, settings)
    with pytest.raises(errors.DomainError, match='2 \\("Rivers"\\)'):
        property_filter.filter_layers(repo, conn, [1, 2], spec, settings)
    assert conn.executed == []


def test_select_features(
    repo: database.InMemoryLayerRepository, conn: FakeConnection
) -> None:
    """Test explicit feature selection binds the id list."""
    conn.on("lf.id, lf.feature_index", [_row(10, 0, SQUARE)])
    result = property_filter.select_features(repo, conn, 1, [10])
    assert result["metadata"]["selectedFeatureIds"] == [10]
    _, params = conn.executed[0]
    assert params == {"layer_id": 1, "feature_ids": [10]}


def test_features_catalog(
    repo: database.InMemoryLayerRepository, conn: FakeConnection
) -> None:
    """Test catalog entries carry envelope, centroid and area."""
    conn.on(
        "ST_Area",
        [
            {
                "id": 10,
                "feature_index": 0,
                "properties": {"NOMBRE": "Centro"},
                "bbox_geometry": {"type": "Polygon", "coordinates": SQUARE},
                "centroid": {"type": "Point", "coordinates": [-90.5, 14.5]},
                "area_km2": 11902.4,
                "geometry_type": "MULTIPOLYGON",
            }
        ],
    )
    result = property_filter.features_catalog(repo, conn, 1)
    assert result["totalFeatures"] == 1
    entry = result["features"][0]
    assert entry["featureIndex"] == 0
    assert entry["areaKm2"] == 11902.4
    assert entry["geometryType"] == "MULTIPOLYGON"
    assert entry["centroid"]["coordinates"] == [-90.5, 14.5]


def test_features_catalog_rejects_point_layer(
    repo: database.InMemoryLayerRepository,
    conn: FakeConnection,
    layer_factory: Any,
) -> None:
    """Test the catalog requires a multipolygon layer."""
    repo.add(layer_factory(5, layer_type="point"))
    with pytest.raises(errors.DomainError):
        property_filter.features_catalog(repo, conn, 5)
