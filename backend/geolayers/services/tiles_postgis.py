"""PostGIS MVT (Mapbox Vector Tiles) SQL query builder and tile math.

This module generates the PostGIS SQL that produces a vector tile for one
layer, plus the XYZ pyramid helpers needed around it. Features are stored in
EPSG:4326; they are pre-filtered against the tile's geographic envelope
(computed here with web-mercator pyramid math) so the spatial index on
``layer_feature.geometry`` is used, then projected into the tile with
ST_AsMVTGeom against ST_TileEnvelope.

Geometries are simplified before encoding with a zoom-tiered tolerance:
none from z14, 0.0001° from z10, 0.001° from z7, 0.01° from z4 and 0.05°
below.

Example:
    Generate MVT SQL for a tile:
        >>> from geolayers.services import tiles_postgis
        >>> tiles_postgis.validate_tile(10, 250, 480)
        >>> sql = tiles_postgis.build_mvt_sql(tiles_postgis.tile_tolerance(10))
        >>> params = tiles_postgis.tile_params(layer_id=7, z=10, x=250, y=480)
        >>> cursor.execute(sql, params)
        >>> mvt_data = cursor.fetchone()["tile"]

    The generated SQL:
     - Uses ST_TileEnvelope to create tile bounds
     - Transforms geometries to 3857 before clipping
     - Clips geometries to the 4096 extent with a 256 buffer
     - Returns MVT binary data via ST_AsMVT (layer name "layer")
"""

from __future__ import annotations

import math
from typing import Any

from geolayers.core import errors

MAX_ZOOM = 22
MVT_EXTENT = 4096
MVT_BUFFER = 256
MVT_LAYER_NAME = "layer"

# (minimum zoom, tolerance in degrees), highest zoom first
ZOOM_TOLERANCES = ((14, 0.0), (10, 0.0001), (7, 0.001), (4, 0.01), (0, 0.05))


def validate_tile(z: int, x: int, y: int) -> None:
    """Check an XYZ tile coordinate.

    Raises:
        ValidationError: Unless ``0 <= z <= 22`` and ``0 <= x, y < 2**z``.
    """
    if not 0 <= z <= MAX_ZOOM:
        raise errors.ValidationError(
            f"Invalid zoom level {z}: must be between 0 and {MAX_ZOOM}"
        )
    limit = 2**z
    if not (0 <= x < limit and 0 <= y < limit):
        raise errors.ValidationError(
            f"Invalid tile coordinates {z}/{x}/{y}: x and y must be between "
            f"0 and {limit - 1}"
        )


def tile_tolerance(z: int) -> float:
    for min_zoom, tolerance in ZOOM_TOLERANCES:
        if z >= min_zoom:
            return tolerance
    return ZOOM_TOLERANCES[-1][1]


def _tile_lon(x: int, n: int) -> float:
    return x / n * 360.0 - 180.0


def _tile_lat(y: int, n: int) -> float:
    return math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y / n))))


def tile_bounds(z: int, x: int, y: int) -> tuple[float, float, float, float]:
    """Geographic envelope of a tile as (min_lon, min_lat, max_lon, max_lat).

    Example:
        >>> [round(v, 4) for v in tile_bounds(0, 0, 0)]
        [-180.0, -85.0511, 180.0, 85.0511]
    """
    n = 2**z
    return (
        _tile_lon(x, n),
        _tile_lat(y + 1, n),
        _tile_lon(x + 1, n),
        _tile_lat(y, n),
    )


def tile_params(layer_id: int, z: int, x: int, y: int) -> dict[str, Any]:
    """Parameters matching the placeholders of ``build_mvt_sql``."""
    min_lon, min_lat, max_lon, max_lat = tile_bounds(z, x, y)
    return {
        "layer_id": layer_id,
        "z": z,
        "x": x,
        "y": y,
        "min_lon": min_lon,
        "min_lat": min_lat,
        "max_lon": max_lon,
        "max_lat": max_lat,
        "tolerance": tile_tolerance(z),
    }


def build_mvt_sql(tolerance: float) -> str:
    """Return an ST_AsMVT query for one layer tile.

    The SQL binds ``layer_id``, ``z``, ``x``, ``y``, the geographic
    envelope (``min_lon``, ``min_lat``, ``max_lon``, ``max_lat``) and, when
    ``tolerance`` is positive, ``tolerance``. The single result column
    ``tile`` holds the MVT bytes.

    Args:
        tolerance: Simplification tolerance in degrees; 0 disables it.

    Returns:
        SQL query string ready for execution with ``tile_params``.
    """
    geom = "lf.geometry"
    if tolerance > 0:
        geom = "ST_SimplifyPreserveTopology(lf.geometry, %(tolerance)s)"
    return f"""
WITH
  bounds AS (
    SELECT ST_TileEnvelope(%(z)s, %(x)s, %(y)s) AS geom
  ),
  area AS (
    SELECT ST_MakeEnvelope(
        %(min_lon)s, %(min_lat)s, %(max_lon)s, %(max_lat)s, 4326
    ) AS geom
  ),
  mvtgeom AS (
    SELECT ST_AsMVTGeom(
        ST_Transform({geom}, 3857),
        bounds.geom,
        {MVT_EXTENT},
        {MVT_BUFFER},
        true
    ) AS geom, lf.id, lf.feature_index, lf.properties
    FROM layer_feature lf, bounds, area
    WHERE lf.layer_id = %(layer_id)s
      AND ST_Intersects(lf.geometry, area.geom)
  )
SELECT ST_AsMVT(mvtgeom.*, '{MVT_LAYER_NAME}', {MVT_EXTENT}, 'geom') AS tile
FROM mvtgeom
WHERE mvtgeom.geom IS NOT NULL
""".strip()
