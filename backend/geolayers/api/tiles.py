"""XYZ vector tile endpoint.

Vector tiles are generated on request by PostGIS (ST_AsMVT) from the
features of one layer and served as Protocol Buffer (.pbf) payloads. A tile
that intersects no feature is served as an empty 200 response.

Example:
    Request a vector tile:
        >>> response = client.get("/tiles/vector/7/10/250/480.pbf")
        >>> response.headers["content-type"]
        'application/x-protobuf'

    Use in MapLibre GL JS:
        >>> map.addSource('distritos', {
        ...     type: 'vector',
        ...     tiles: ['http://api/tiles/vector/7/{z}/{x}/{y}.pbf']
        ... });
"""

from __future__ import annotations

import fastapi
import psycopg2.extensions
from fastapi import responses
from starlette import concurrency

from geolayers.api import dependencies
from geolayers.db import database
from geolayers.services import spatial_query

router = fastapi.APIRouter(prefix="/tiles", tags=["tiles"])

MVT_MEDIA_TYPE = "application/x-protobuf"


@router.get("/vector/{layer_id}/{z}/{x}/{y}.pbf")
async def vector_tile(
    layer_id: int,
    z: int,
    x: int,
    y: int,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> responses.Response:
    """Serve one MVT tile of a layer.

    Args:
        layer_id: Layer to render.
        z: Zoom level (0-22).
        x: Tile X coordinate (0 to 2^z - 1).
        y: Tile Y coordinate (0 to 2^z - 1).
        repo: Layer repository (injected via FastAPI Depends).
        conn: Request connection (injected via FastAPI Depends).

    Returns:
        Protocol Buffer response, possibly empty.

    Raises:
        ValidationError: If the tile coordinate is out of range (400).
        NotFoundError: If the layer does not exist (404).
    """
    tile = await concurrency.run_in_threadpool(
        spatial_query.get_tile, repo, conn, layer_id, z, x, y
    )
    return responses.Response(content=tile, media_type=MVT_MEDIA_TYPE)
