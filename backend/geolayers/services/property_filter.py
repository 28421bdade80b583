"""Alias-aware attribute filtering over multipolygon layers.

Administrative boundary datasets name the same attribute differently:
``CODDISTRITO``, ``Cod_Distrito`` and the shapefile-truncated
``NO_DISTRIT`` all hold the district code. Filters are therefore matched
against every attribute key that is *equivalent* to the requested one.

Two keys are equivalent when their normalized forms are identical, or when
one raw key is exactly the DBF field-name length (10 characters), the
other is longer, and the longer key cut to that length normalizes to the
same form as the shorter one. Normalization lower-cases, strips
underscores, hyphens and whitespace, and rewrites configured abbreviation
prefixes (``no`` -> ``cod`` by default).

Truncation cannot be undone, so a 10-character key still matches every
longer key that truncates to it: ``DEPARTAMEN`` is equivalent to both
``DEPARTAMENTO`` and ``DEPARTAMENTO_ID``.

Equivalence is resolved at query time from the distinct key set of each
layer; the SQL then tests the resolved keys with ``jsonb_each_text``.

Example:
    >>> from geolayers.services import property_filter
    >>> spec = property_filter.parse_filter_params(
    ...     [("CODDISTRITO", "5,7"), ("featureIds", "10")]
    ... )
    >>> spec.properties, spec.feature_ids
    ({'CODDISTRITO': ['5', '7']}, [10])
    >>> result = property_filter.filter_layer(repo, conn, 12, spec)
"""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import TYPE_CHECKING, Any

from geolayers.core import config, errors
from geolayers.db import database
from geolayers.db import sql
from geolayers.services import geometry

if TYPE_CHECKING:
    from collections.abc import Iterable

    import psycopg2.extensions

    from geolayers.db import models as db_models
    from geolayers.db.database import LayerRepositoryProtocol

logger = logging.getLogger(__name__)

FILTERABLE_LAYER_TYPE = "multipolygon"
FEATURE_IDS_PARAM = "featureIds"
LAYER_IDS_PARAM = "layerIds"
RESERVED_PARAMS = frozenset({FEATURE_IDS_PARAM, LAYER_IDS_PARAM})

_SEPARATORS = re.compile(r"[_\-\s]+")


@dataclasses.dataclass
class FilterSpec:
    """Attribute filters plus an optional feature-id allow-list.

    Attributes:
        properties: Attribute key to candidate values; values of one key are
            alternatives, keys must all match.
        feature_ids: Feature row ids the result is restricted to, or None.
    """

    properties: dict[str, list[str]] = dataclasses.field(default_factory=dict)
    feature_ids: list[int] | None = None


def normalize_key(key: str, prefix_aliases: dict[str, str] | None = None) -> str:
    """Canonical form of an attribute key.

    Example:
        >>> normalize_key("NO_DISTRIT", {"no": "cod"})
        'coddistrit'
    """
    normalized = _SEPARATORS.sub("", key.lower())
    for prefix, canonical in (prefix_aliases or {}).items():
        if normalized.startswith(prefix) and not normalized.startswith(canonical):
            return canonical + normalized[len(prefix) :]
    return normalized


def keys_equivalent(
    left: str, right: str, settings: config.Settings | None = None
) -> bool:
    """Whether two attribute keys name the same attribute.

    Example:
        >>> keys_equivalent("NO_DISTRIT", "CODDISTRITO")
        True
        >>> keys_equivalent("CODDISTRIT", "Cod_Distrito_Num")
        False
    """
    settings = settings or config.get_settings()
    aliases = settings.property_key_prefix_aliases
    truncated = settings.dbf_field_name_length
    if normalize_key(left, aliases) == normalize_key(right, aliases):
        return True
    short, long_ = sorted((left, right), key=len)
    if len(short) != truncated or len(long_) <= truncated:
        return False
    return normalize_key(long_[:truncated], aliases) == normalize_key(
        short, aliases
    )


def resolve_keys(
    key: str, layer_keys: Iterable[str], settings: config.Settings | None = None
) -> list[str]:
    """Keys of a layer equivalent to a requested filter key."""
    return [k for k in layer_keys if keys_equivalent(key, k, settings)]


def _split_values(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def parse_id_list(values: Iterable[str], name: str) -> list[int]:
    """Parse repeated or comma-joined integer parameters.

    Raises:
        ValidationError: If any value is not an integer.
    """
    ids: list[int] = []
    for raw in values:
        for part in _split_values(raw):
            try:
                ids.append(int(part))
            except ValueError as exc:
                raise errors.ValidationError(
                    f"{name} must be a list of integers, got {part!r}"
                ) from exc
    return list(dict.fromkeys(ids))


def parse_filter_params(items: Iterable[tuple[str, str]]) -> FilterSpec:
    """Build a FilterSpec from query parameter pairs.

    Repeated keys and comma-joined values both become value lists.
    ``featureIds`` becomes the id allow-list; ``layerIds`` is ignored here.
    """
    spec = FilterSpec()
    feature_ids: list[str] = []
    for key, value in items:
        if key == FEATURE_IDS_PARAM:
            feature_ids.append(value)
            continue
        if key in RESERVED_PARAMS:
            continue
        values = spec.properties.setdefault(key, [])
        for item in _split_values(value):
            if item not in values:
                values.append(item)
    spec.properties = {k: v for k, v in spec.properties.items() if v}
    if feature_ids:
        spec.feature_ids = parse_id_list(feature_ids, FEATURE_IDS_PARAM)
    return spec


def _require_multipolygon(layer: db_models.Layer) -> None:
    if layer.layer_type != FILTERABLE_LAYER_TYPE:
        raise errors.DomainError(
            f'Layer {layer.id} ("{layer.name}") is of type '
            f"{layer.layer_type}; this operation requires a multipolygon layer"
        )


def _layer_keys(cur: Any, layer_id: int) -> list[str]:
    cur.execute(
        "SELECT DISTINCT jsonb_object_keys(properties) AS key "
        "FROM layer_feature WHERE layer_id = %(layer_id)s",
        {"layer_id": layer_id},
    )
    return sorted(row["key"] for row in cur.fetchall())


def build_filter_query(
    layer_id: int,
    resolved: dict[str, list[str]],
    spec: FilterSpec,
) -> tuple[str, dict[str, Any]]:
    """SQL selecting the features matching resolved attribute keys.

    Args:
        layer_id: Layer to filter.
        resolved: Requested key to the layer keys equivalent to it.
        spec: Filter values and feature-id allow-list.

    Returns:
        Tuple of (SQL, parameters).
    """
    qb = sql.QueryBuilder()
    clauses = [f"lf.layer_id = {qb.bind('layer_id', layer_id)}"]
    for key, actual_keys in resolved.items():
        values = [v.strip() for v in spec.properties[key]]
        clauses.append(
            "EXISTS (SELECT 1 FROM jsonb_each_text(lf.properties) "
            f"AS prop(key, val) WHERE prop.key = ANY({qb.add(actual_keys, 'keys')}) "
            f"AND TRIM(prop.val) = ANY({qb.add(values, 'values')}))"
        )
    if spec.feature_ids is not None:
        clauses.append(f"lf.id = ANY({qb.bind('feature_ids', spec.feature_ids)})")
    query = (
        "SELECT lf.id, lf.feature_index, lf.properties, "
        "ST_AsGeoJSON(lf.geometry)::json AS geometry "
        "FROM layer_feature lf WHERE "
        + " AND ".join(clauses)
        + " ORDER BY lf.feature_index"
    )
    return query, qb.params


def _bbox_dict(features: list[dict[str, Any]]) -> dict[str, float] | None:
    bbox = geometry.bounds(
        geometry.parse_geometry(f["geometry"]) for f in features if f["geometry"]
    )
    if bbox is None:
        return None
    return {
        "minLon": bbox[0],
        "minLat": bbox[1],
        "maxLon": bbox[2],
        "maxLat": bbox[3],
    }


def _to_feature(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "Feature",
        "id": row["id"],
        "geometry": row["geometry"],
        "properties": {
            **(row["properties"] or {}),
            "featureIndex": row["feature_index"],
            "featureId": row["id"],
        },
    }


def _matching_features(
    conn: psycopg2.extensions.connection,
    layer: db_models.Layer,
    spec: FilterSpec,
    settings: config.Settings,
) -> list[dict[str, Any]]:
    with database.cursor(conn) as cur:
        resolved: dict[str, list[str]] = {}
        if spec.properties:
            layer_keys = _layer_keys(cur, layer.id)
            for key in spec.properties:
                resolved[key] = resolve_keys(key, layer_keys, settings)
                logger.debug(
                    "Layer %d: filter key %r resolved to %s",
                    layer.id,
                    key,
                    resolved[key],
                )
            if not all(resolved.values()):
                return []
        query, params = build_filter_query(layer.id, resolved, spec)
        cur.execute(query, params)
        rows = cur.fetchall()
    return [_to_feature(row) for row in rows]


def filter_layer(
    repo: LayerRepositoryProtocol,
    conn: psycopg2.extensions.connection,
    layer_id: int,
    spec: FilterSpec,
    settings: config.Settings | None = None,
) -> dict[str, Any]:
    """Filter one multipolygon layer by attributes and feature ids.

    Returns:
        FeatureCollection with ``metadata`` holding ``layerId``,
        ``layerName``, ``totalFeatures``, ``appliedFilters``,
        ``selectedFeatureIds`` and ``bbox``.

    Raises:
        NotFoundError: If the layer does not exist.
        DomainError: If the layer is inactive or not a multipolygon layer.
    """
    settings = settings or config.get_settings()
    layer = database.get_active_layer(repo, layer_id)
    _require_multipolygon(layer)

    features = _matching_features(conn, layer, spec, settings)
    return {
        "type": "FeatureCollection",
        "features": features,
        "metadata": {
            "layerId": layer.id,
            "layerName": layer.name,
            "totalFeatures": len(features),
            "appliedFilters": spec.properties,
            "selectedFeatureIds": spec.feature_ids or [],
            "bbox": _bbox_dict(features),
        },
    }


def filter_layers(
    repo: LayerRepositoryProtocol,
    conn: psycopg2.extensions.connection,
    layer_ids: list[int],
    spec: FilterSpec,
    settings: config.Settings | None = None,
) -> dict[str, Any]:
    """Apply one filter to several multipolygon layers and union the results.

    Raises:
        ValidationError: If no layer id is given.
        NotFoundError: If any layer does not exist.
        DomainError: If any layer is inactive or not multipolygon.
    """
    settings = settings or config.get_settings()
    if not layer_ids:
        raise errors.ValidationError("At least one layer id is required")

    layers = repo.get_many(layer_ids)
    found = {layer.id for layer in layers}
    missing = [i for i in layer_ids if i not in found]
    if missing:
        raise errors.NotFoundError(
            f"Layers not found: {', '.join(map(str, missing))}"
        )
    inactive = [layer for layer in layers if not layer.is_active]
    if inactive:
        raise errors.DomainError(
            "Layers not active: "
            + ", ".join(str(layer.id) for layer in inactive)
        )
    invalid = [
        layer for layer in layers if layer.layer_type != FILTERABLE_LAYER_TYPE
    ]
    if invalid:
        raise errors.DomainError(
            "Only multipolygon layers can be filtered. Invalid layers: "
            + ", ".join(f'{layer.id} ("{layer.name}")' for layer in invalid)
        )

    features: list[dict[str, Any]] = []
    summaries = []
    for layer in sorted(layers, key=lambda item: layer_ids.index(item.id)):
        matched = _matching_features(conn, layer, spec, settings)
        for feature in matched:
            feature["properties"]["layerId"] = layer.id
            feature["properties"]["layerName"] = layer.name
        features.extend(matched)
        summaries.append(
            {
                "layerId": layer.id,
                "layerName": layer.name,
                "featuresCount": len(matched),
            }
        )

    return {
        "type": "FeatureCollection",
        "features": features,
        "metadata": {
            "totalLayers": len(layers),
            "totalFeatures": len(features),
            "appliedFilters": spec.properties,
            "selectedFeatureIds": spec.feature_ids or [],
            "bbox": _bbox_dict(features),
            "layers": summaries,
        },
    }


def select_features(
    repo: LayerRepositoryProtocol,
    conn: psycopg2.extensions.connection,
    layer_id: int,
    feature_ids: list[int] | None = None,
) -> dict[str, Any]:
    """Features of a multipolygon layer by row id, or all of them."""
    return filter_layer(repo, conn, layer_id, FilterSpec(feature_ids=feature_ids))


CATALOG_SQL = """
SELECT
    lf.id,
    lf.feature_index,
    lf.properties,
    ST_AsGeoJSON(ST_Envelope(lf.geometry))::json AS bbox_geometry,
    ST_AsGeoJSON(ST_Centroid(lf.geometry))::json AS centroid,
    ST_Area(lf.geometry::geography) / 1000000.0 AS area_km2,
    GeometryType(lf.geometry) AS geometry_type
FROM layer_feature lf
WHERE lf.layer_id = %(layer_id)s
ORDER BY lf.feature_index
"""


def features_catalog(
    repo: LayerRepositoryProtocol,
    conn: psycopg2.extensions.connection,
    layer_id: int,
) -> dict[str, Any]:
    """Per-feature summary of a multipolygon layer for selection lists.

    Each entry carries the row id, feature index, attributes, envelope,
    centroid, area in square kilometres and geometry type.
    """
    layer = database.get_active_layer(repo, layer_id)
    _require_multipolygon(layer)

    with database.cursor(conn) as cur:
        cur.execute(CATALOG_SQL, {"layer_id": layer_id})
        rows = cur.fetchall()
    return {
        "layerId": layer.id,
        "layerName": layer.name,
        "totalFeatures": len(rows),
        "features": [
            {
                "id": row["id"],
                "featureIndex": row["feature_index"],
                "properties": row["properties"] or {},
                "bboxGeometry": row["bbox_geometry"],
                "centroid": row["centroid"],
                "areaKm2": float(row["area_km2"] or 0.0),
                "geometryType": row["geometry_type"],
            }
            for row in rows
        ],
    }
