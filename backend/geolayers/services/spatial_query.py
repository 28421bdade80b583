"""Spatial query engine: viewport, intersection, tiles, clusters and export.

Every operation resolves the target layer through the repository first and
refuses missing (NotFoundError) or inactive (DomainError) layers. Queries
are read-only single statements, or a count followed by a capped select, on
the connection handed in by the caller.

Results are GeoJSON FeatureCollections with a ``metadata`` envelope, except
vector tiles which are raw MVT bytes. Truncation to ``max_features`` is
reported in the metadata, never raised.

Example:
    >>> from geolayers.services import spatial_query
    >>> result = spatial_query.features_in_bbox(
    ...     repo, conn, 7, (-91.0, 14.0, -90.0, 15.0), max_features=5000
    ... )
    >>> result["metadata"]
    {'totalInBounds': 42, 'returned': 42, 'limited': False}
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from geolayers.core import errors
from geolayers.db import database
from geolayers.services import geometry, tiles_postgis

if TYPE_CHECKING:
    import psycopg2.extensions

    from geolayers.db.database import LayerRepositoryProtocol

logger = logging.getLogger(__name__)

DEFAULT_MAX_FEATURES = 5000
QUERY_SIMPLIFY_TOLERANCE = 0.0001
MAX_CLUSTERS = 50

# (minimum zoom, max cluster radius in degrees), highest zoom first
ZOOM_CLUSTER_RADII = ((15, 0.0001), (10, 0.001), (7, 0.01), (0, 0.1))

ENVELOPE_SQL = (
    "ST_MakeEnvelope(%(min_lon)s, %(min_lat)s, %(max_lon)s, %(max_lat)s, 4326)"
)
WKT_SQL = "ST_GeomFromText(%(wkt)s, 4326)"

CLUSTER_SQL = f"""
WITH pts AS (
    SELECT lf.feature_index, lf.properties, ST_Centroid(lf.geometry) AS geom
    FROM layer_feature lf
    WHERE lf.layer_id = %(layer_id)s
      AND ST_Intersects(lf.geometry, {ENVELOPE_SQL})
),
clustered AS (
    SELECT feature_index, properties, geom,
           ST_ClusterKMeans(geom, %(k)s, %(max_radius)s) OVER () AS cid
    FROM pts
)
SELECT
    cid,
    COUNT(*) AS point_count,
    ST_AsGeoJSON(ST_Centroid(ST_Collect(geom)))::json AS geometry,
    (array_agg(properties ORDER BY feature_index))[1] AS sample_properties
FROM clustered
GROUP BY cid
ORDER BY cid
"""


def validate_bbox(bbox: tuple[float, float, float, float]) -> None:
    """Check a (min_lon, min_lat, max_lon, max_lat) viewport rectangle.

    Raises:
        ValidationError: If the rectangle is empty, inverted or out of range.
    """
    min_lon, min_lat, max_lon, max_lat = bbox
    if not (-180 <= min_lon < max_lon <= 180):
        raise errors.ValidationError(
            "Invalid bbox: longitudes must satisfy "
            "-180 <= minLon < maxLon <= 180"
        )
    if not (-90 <= min_lat < max_lat <= 90):
        raise errors.ValidationError(
            "Invalid bbox: latitudes must satisfy -90 <= minLat < maxLat <= 90"
        )


def _validate_max_features(max_features: int) -> None:
    if max_features < 1:
        raise errors.ValidationError("maxFeatures must be at least 1")


def _bbox_params(bbox: tuple[float, float, float, float]) -> dict[str, float]:
    min_lon, min_lat, max_lon, max_lat = bbox
    return {
        "min_lon": min_lon,
        "min_lat": min_lat,
        "max_lon": max_lon,
        "max_lat": max_lat,
    }


def cluster_radius(zoom: int) -> float:
    """Maximum k-means cluster radius in degrees at a zoom level.

    Example:
        >>> cluster_radius(12)
        0.001
    """
    for min_zoom, radius in ZOOM_CLUSTER_RADII:
        if zoom >= min_zoom:
            return radius
    return ZOOM_CLUSTER_RADII[-1][1]


def cluster_count(total: int) -> int:
    """Number of k-means clusters for a viewport holding ``total`` points."""
    return max(1, min(total // 10, MAX_CLUSTERS))


def _row_to_feature(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "Feature",
        "id": row["id"],
        "geometry": row["geometry"],
        "properties": row["properties"] or {},
    }


def _capped_query(
    conn: psycopg2.extensions.connection,
    area_sql: str,
    params: dict[str, Any],
    max_features: int,
    simplify: bool,
) -> tuple[int, list[dict[str, Any]]]:
    geom = "lf.geometry"
    if simplify:
        geom = f"ST_SimplifyPreserveTopology(lf.geometry, {QUERY_SIMPLIFY_TOLERANCE})"
    where = (
        "WHERE lf.layer_id = %(layer_id)s "
        f"AND ST_Intersects(lf.geometry, {area_sql})"
    )
    with database.cursor(conn) as cur:
        cur.execute(f"SELECT COUNT(*) AS total FROM layer_feature lf {where}", params)
        total = int(cur.fetchone()["total"])
        cur.execute(
            f"SELECT lf.id, lf.feature_index, lf.properties, "
            f"ST_AsGeoJSON({geom})::json AS geometry "
            f"FROM layer_feature lf {where} "
            "ORDER BY lf.feature_index LIMIT %(limit)s",
            {**params, "limit": max_features},
        )
        rows = cur.fetchall()
    return total, [_row_to_feature(row) for row in rows]


def _limit_metadata(
    total_key: str, total: int, returned: int, max_features: int
) -> dict[str, Any]:
    limited = total > max_features
    metadata: dict[str, Any] = {
        total_key: total,
        "returned": returned,
        "limited": limited,
    }
    if limited:
        metadata["message"] = (
            f"Showing {returned} of {total} features. Zoom in or narrow the "
            "area to see all of them."
        )
        logger.warning(
            "Query truncated to %d of %d features", returned, total
        )
    return metadata


def features_in_bbox(
    repo: LayerRepositoryProtocol,
    conn: psycopg2.extensions.connection,
    layer_id: int,
    bbox: tuple[float, float, float, float],
    max_features: int = DEFAULT_MAX_FEATURES,
    simplify: bool = True,
) -> dict[str, Any]:
    """Features of a layer intersecting a viewport rectangle.

    Args:
        repo: Layer repository used to resolve the layer.
        conn: Open datastore connection.
        layer_id: Target layer.
        bbox: (min_lon, min_lat, max_lon, max_lat) in EPSG:4326.
        max_features: Maximum number of features returned.
        simplify: Simplify returned geometries with tolerance 0.0001.

    Returns:
        FeatureCollection ordered by feature index, with ``metadata``
        holding ``totalInBounds``, ``returned``, ``limited`` and, only when
        limited, ``message``.

    Raises:
        ValidationError: On an invalid rectangle or cap.
        NotFoundError: If the layer does not exist.
        DomainError: If the layer is inactive.
    """
    validate_bbox(bbox)
    _validate_max_features(max_features)
    database.get_active_layer(repo, layer_id)

    params = {"layer_id": layer_id, **_bbox_params(bbox)}
    total, features = _capped_query(
        conn, ENVELOPE_SQL, params, max_features, simplify
    )
    logger.debug(
        "Layer %d bbox %s: %d in bounds, %d returned",
        layer_id,
        bbox,
        total,
        len(features),
    )
    return {
        "type": "FeatureCollection",
        "features": features,
        "metadata": _limit_metadata(
            "totalInBounds", total, len(features), max_features
        ),
    }


def features_intersecting(
    repo: LayerRepositoryProtocol,
    conn: psycopg2.extensions.connection,
    layer_id: int,
    raw_geometry: Any,
    max_features: int = DEFAULT_MAX_FEATURES,
    simplify: bool = False,
) -> dict[str, Any]:
    """Features of a layer intersecting an arbitrary GeoJSON geometry.

    The geometry is parsed with the typed model, so only the six supported
    kinds are accepted.

    Returns:
        FeatureCollection whose metadata carries ``layerId``, ``layerName``,
        ``totalIntersecting``, ``returned``, ``limited`` and ``message``
        when limited.
    """
    _validate_max_features(max_features)
    geom = geometry.parse_geometry(raw_geometry)
    layer = database.get_active_layer(repo, layer_id)

    params = {"layer_id": layer_id, "wkt": geometry.to_wkt(geom)}
    total, features = _capped_query(conn, WKT_SQL, params, max_features, simplify)
    return {
        "type": "FeatureCollection",
        "features": features,
        "metadata": {
            "layerId": layer.id,
            "layerName": layer.name,
            **_limit_metadata(
                "totalIntersecting", total, len(features), max_features
            ),
        },
    }


def get_tile(
    repo: LayerRepositoryProtocol,
    conn: psycopg2.extensions.connection,
    layer_id: int,
    z: int,
    x: int,
    y: int,
) -> bytes:
    """Encode one XYZ vector tile of a layer.

    Returns:
        MVT bytes; empty when no feature intersects the tile.

    Raises:
        ValidationError: On an invalid tile coordinate.
    """
    tiles_postgis.validate_tile(z, x, y)
    database.get_active_layer(repo, layer_id)

    query = tiles_postgis.build_mvt_sql(tiles_postgis.tile_tolerance(z))
    with database.cursor(conn) as cur:
        cur.execute(query, tiles_postgis.tile_params(layer_id, z, x, y))
        row = cur.fetchone()
    if row is None or row["tile"] is None:
        return b""
    return bytes(row["tile"])


def get_clusters(
    repo: LayerRepositoryProtocol,
    conn: psycopg2.extensions.connection,
    layer_id: int,
    bbox: tuple[float, float, float, float],
    zoom: int,
) -> dict[str, Any]:
    """Cluster feature centroids inside a viewport with k-means.

    The number of clusters is ``count // 10`` clamped to [1, 50] and the
    cluster radius shrinks with the zoom level. Each cluster becomes a point
    at the centroid of its members.

    Returns:
        FeatureCollection of cluster points with ``cluster``,
        ``point_count`` and ``sample_properties`` properties.
    """
    validate_bbox(bbox)
    if zoom < 0:
        raise errors.ValidationError("zoom must be non-negative")
    database.get_active_layer(repo, layer_id)

    params: dict[str, Any] = {"layer_id": layer_id, **_bbox_params(bbox)}
    with database.cursor(conn) as cur:
        cur.execute(
            "SELECT COUNT(*) AS total FROM layer_feature lf "
            "WHERE lf.layer_id = %(layer_id)s "
            f"AND ST_Intersects(lf.geometry, {ENVELOPE_SQL})",
            params,
        )
        total = int(cur.fetchone()["total"])
        rows: list[dict[str, Any]] = []
        if total:
            params.update(k=cluster_count(total), max_radius=cluster_radius(zoom))
            cur.execute(CLUSTER_SQL, params)
            rows = cur.fetchall()

    features = [
        {
            "type": "Feature",
            "geometry": row["geometry"],
            "properties": {
                "cluster": True,
                "point_count": int(row["point_count"]),
                "sample_properties": row["sample_properties"] or {},
            },
        }
        for row in rows
    ]
    return {
        "type": "FeatureCollection",
        "features": features,
        "metadata": {
            "layerId": layer_id,
            "zoom": zoom,
            "totalFeatures": total,
            "clusters": len(features),
        },
    }


def export_layer(
    repo: LayerRepositoryProtocol,
    conn: psycopg2.extensions.connection,
    layer_id: int,
) -> dict[str, Any]:
    """All features of a layer as a FeatureCollection, by feature index."""
    layer = database.get_active_layer(repo, layer_id)
    with database.cursor(conn) as cur:
        cur.execute(
            "SELECT lf.id, lf.feature_index, lf.properties, "
            "ST_AsGeoJSON(lf.geometry)::json AS geometry "
            "FROM layer_feature lf WHERE lf.layer_id = %(layer_id)s "
            "ORDER BY lf.feature_index",
            {"layer_id": layer_id},
        )
        rows = cur.fetchall()
    return {
        "type": "FeatureCollection",
        "features": [_row_to_feature(row) for row in rows],
        "metadata": {
            "layerId": layer.id,
            "layerName": layer.name,
            "totalFeatures": len(rows),
        },
    }
