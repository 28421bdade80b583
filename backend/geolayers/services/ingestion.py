"""Feature ingestion pipeline: persist a normalized collection into PostGIS.

A whole layer is written in one transaction: the ``layer`` row, every
``layer_feature`` row, the derived bounding box and, optionally, the
``map_layer`` association. Any failure rolls everything back, so a layer is
either fully present or absent.

Features are written with multi-row INSERT statements built with named
placeholders. Heavy features (more than 1,000 vertices) are simplified before
storage. Layers above 10,000 features are loaded with the feature indexes
dropped and rebuilt afterwards.

Example:
    >>> from geolayers.db import models
    >>> from geolayers.services import ingestion, normalizer
    >>> collection = normalizer.normalize(raw, settings)
    >>> request = models.IngestionRequest(name="Rivers", map_id=3)
    >>> summary = ingestion.ingest_layer(conn, request, collection)
    >>> summary.summary
    '214 features of type multilinestring'
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import psycopg2.extras

from geolayers.core import errors
from geolayers.db import database
from geolayers.db import models as db_models
from geolayers.db import sql
from geolayers.services import geometry, normalizer

if TYPE_CHECKING:
    import psycopg2.extensions

    from geolayers.services.normalizer import NormalizedFeature

logger = logging.getLogger(__name__)

BATCH_SIZE = 500
LARGE_BATCH_SIZE = 1000
LARGE_LAYER_THRESHOLD = 10000
SIMPLIFY_VERTEX_THRESHOLD = 1000
SIMPLIFY_TOLERANCE = 0.0001
PROGRESS_INTERVAL = 5000
LINE_BBOX_BUFFER = 0.0001
POINT_BBOX_BUFFER = 0.001

INSERT_LAYER_SQL = """
INSERT INTO layer (
    name, description, layer_type, total_features, style, is_active,
    is_public, original_filename, file_size_bytes
) VALUES (
    %(name)s, %(description)s, %(layer_type)s, %(total_features)s,
    %(style)s, TRUE, %(is_public)s, %(original_filename)s,
    %(file_size_bytes)s
)
RETURNING id
"""

UPDATE_BBOX_SQL = f"""
WITH extent AS (
    SELECT ST_Envelope(ST_Collect(geometry)) AS env
    FROM layer_feature
    WHERE layer_id = %(layer_id)s
)
UPDATE layer SET bbox_geometry = (
    SELECT CASE
        WHEN GeometryType(env) = 'POLYGON' THEN env
        WHEN GeometryType(env) = 'LINESTRING'
            THEN ST_Envelope(ST_Buffer(env, {LINE_BBOX_BUFFER}))
        ELSE ST_Envelope(ST_Buffer(env, {POINT_BBOX_BUFFER}))
    END
    FROM extent
)
WHERE id = %(layer_id)s
RETURNING
    ST_XMin(bbox_geometry) AS bbox_minx,
    ST_YMin(bbox_geometry) AS bbox_miny,
    ST_XMax(bbox_geometry) AS bbox_maxx,
    ST_YMax(bbox_geometry) AS bbox_maxy
"""

SELECT_MAP_SQL = "SELECT id, is_active FROM map WHERE id = %(map_id)s"

INSERT_MAP_LAYER_SQL = """
INSERT INTO map_layer (map_id, layer_id, display_order, is_visible, opacity)
VALUES (%(map_id)s, %(layer_id)s, %(display_order)s, TRUE, 1.0)
"""


def batch_size_for(total_features: int) -> int:
    """Rows per INSERT; layers above LARGE_LAYER_THRESHOLD use larger batches."""
    if total_features > LARGE_LAYER_THRESHOLD:
        return LARGE_BATCH_SIZE
    return BATCH_SIZE


def prepare_geometry(geom: geometry.Geometry) -> geometry.Geometry:
    """Simplify a geometry before storage when it is heavy."""
    if geometry.count_vertices(geom) > SIMPLIFY_VERTEX_THRESHOLD:
        return geometry.simplify(geom, SIMPLIFY_TOLERANCE)
    return geom


def build_insert_batch(
    layer_id: int, features: list[NormalizedFeature], start_index: int
) -> tuple[str, dict[str, Any], int]:
    """Build one multi-row INSERT for a slice of features.

    Args:
        layer_id: Owning layer.
        features: Slice of the normalized collection.
        start_index: Feature index of the first element of ``features``.

    Returns:
        Tuple of (SQL, parameters, number of simplified features).
    """
    qb = sql.QueryBuilder()
    layer_param = qb.bind("layer_id", layer_id)
    rows = []
    simplified = 0
    for index, feature in enumerate(features, start=start_index):
        geom = prepare_geometry(feature.geometry)
        if geom is not feature.geometry:
            simplified += 1
        rows.append(
            f"({layer_param}, {qb.add(index, 'idx')}, "
            f"ST_GeomFromText({qb.add(geometry.to_wkt(geom), 'wkt')}, 4326), "
            f"{qb.add(psycopg2.extras.Json(feature.properties), 'props')})"
        )
    query = (
        "INSERT INTO layer_feature (layer_id, feature_index, geometry, "
        "properties) VALUES " + ", ".join(rows)
    )
    return query, qb.params, simplified


def _check_map(cur: Any, map_id: int) -> None:
    """Ensure the target map exists and is active.

    Raises:
        NotFoundError: If the map is missing or inactive.
    """
    cur.execute(SELECT_MAP_SQL, {"map_id": map_id})
    row = cur.fetchone()
    if row is None or not row["is_active"]:
        raise errors.NotFoundError(f"Map {map_id} not found or inactive")


def _drop_feature_indexes(cur: Any) -> None:
    logger.info("Dropping feature indexes for bulk load")
    for name in database.FEATURE_INDEXES:
        cur.execute(f"DROP INDEX IF EXISTS {name}")


def _rebuild_feature_indexes(cur: Any) -> None:
    logger.info("Rebuilding feature indexes")
    for statement in database.FEATURE_INDEXES.values():
        cur.execute(statement)
    cur.execute("ANALYZE layer_feature")


def _insert_features(
    cur: Any, layer_id: int, features: list[NormalizedFeature], large: bool
) -> int:
    total = len(features)
    step = batch_size_for(total)
    simplified = 0
    for offset in range(0, total, step):
        chunk = features[offset : offset + step]
        query, params, count = build_insert_batch(layer_id, chunk, offset)
        cur.execute(query, params)
        simplified += count
        done = offset + len(chunk)
        if large and (done % PROGRESS_INTERVAL == 0 or done == total):
            logger.info("Inserted %d/%d features", done, total)
    return simplified


def ingest_layer(
    conn: psycopg2.extensions.connection,
    request: db_models.IngestionRequest,
    collection: normalizer.NormalizedCollection,
) -> db_models.IngestionSummary:
    """Persist a normalized collection as a new layer.

    Args:
        conn: Open connection; the whole ingestion is one transaction on it.
        request: Layer attributes and optional map association.
        collection: Output of ``normalizer.normalize``.

    Returns:
        IngestionSummary describing the stored layer.

    Raises:
        NotFoundError: If ``request.map_id`` names a missing or inactive map.
        InfrastructureError: If the datastore fails; nothing is persisted.
    """
    metadata = normalizer.extract_metadata(collection)
    features = collection.features
    total = len(features)
    large = total > LARGE_LAYER_THRESHOLD
    style = request.style or db_models.default_style(metadata.layer_type)

    logger.info(
        "Ingesting layer %r: %d features of type %s",
        request.name,
        total,
        metadata.layer_type,
    )

    with conn, database.cursor(conn) as cur:
        if request.map_id is not None:
            _check_map(cur, request.map_id)

        cur.execute(
            INSERT_LAYER_SQL,
            {
                "name": request.name,
                "description": request.description,
                "layer_type": metadata.layer_type,
                "total_features": total,
                "style": psycopg2.extras.Json(style),
                "is_public": request.is_public,
                "original_filename": request.original_filename,
                "file_size_bytes": request.file_size_bytes,
            },
        )
        layer_id = int(cur.fetchone()["id"])

        if large:
            _drop_feature_indexes(cur)
        simplified = _insert_features(cur, layer_id, features, large)
        if large:
            _rebuild_feature_indexes(cur)

        cur.execute(UPDATE_BBOX_SQL, {"layer_id": layer_id})
        row = cur.fetchone()
        bbox = None
        if row is not None and row["bbox_minx"] is not None:
            bbox = (
                float(row["bbox_minx"]),
                float(row["bbox_miny"]),
                float(row["bbox_maxx"]),
                float(row["bbox_maxy"]),
            )

        if request.map_id is not None:
            cur.execute(
                INSERT_MAP_LAYER_SQL,
                {
                    "map_id": request.map_id,
                    "layer_id": layer_id,
                    "display_order": request.display_order,
                },
            )

    logger.info(
        "Layer %d created with %d features (%d simplified)",
        layer_id,
        total,
        simplified,
    )
    return db_models.IngestionSummary(
        layer_id=layer_id,
        name=request.name,
        layer_type=metadata.layer_type,
        total_features=total,
        summary=normalizer.generate_summary(metadata),
        geometry_types=metadata.geometry_types,
        properties=metadata.properties,
        bbox=bbox,
        source_epsg=collection.source_epsg,
        axis_swapped=collection.axis_swapped,
        simplified_features=simplified,
        map_id=request.map_id,
        warnings=list(collection.warnings),
    )
