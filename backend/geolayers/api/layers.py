"""Layer listing, export and spatial query API endpoints.

This module exposes read-only views of stored layers (listing, detail,
extent), the full-layer GeoJSON export and the spatial queries of the
query engine: viewport, arbitrary-geometry intersection and point
clustering. Bounding boxes are EPSG:4326 ``[minLon, minLat, maxLon,
maxLat]``.

Example:
    Fetch the features of layer 7 inside the current viewport:
        >>> response = client.get(
        ...     "/api/layers/7/geojson/bbox",
        ...     params={"minLon": -91, "minLat": 14, "maxLon": -90, "maxLat": 15},
        ... )
        >>> response.json()["metadata"]
        {'totalInBounds': 42, 'returned': 42, 'limited': False}

    Cluster the same viewport at zoom 8:
        >>> client.get(
        ...     "/api/layers/7/clusters",
        ...     params={"minLon": -91, "minLat": 14, "maxLon": -90,
        ...             "maxLat": 15, "zoom": 8},
        ... )
"""

from __future__ import annotations

import dataclasses
from typing import Any

import fastapi
import psycopg2.extensions
import pydantic
from starlette import concurrency

from geolayers.api import dependencies
from geolayers.core import config, errors
from geolayers.db import database
from geolayers.db import models as db_models
from geolayers.services import spatial_query

BBox = tuple[float, float, float, float]

router = fastapi.APIRouter(prefix="/api/layers", tags=["layers"])


class IntersectsRequest(pydantic.BaseModel):
    """Body of the intersection query."""

    geometry: dict[str, Any]
    max_features: int | None = pydantic.Field(None, alias="maxFeatures")
    simplify: bool = False


def layer_to_dict(layer: db_models.Layer) -> dict[str, Any]:
    """Convert a Layer to a JSON-ready dictionary."""
    result = dataclasses.asdict(layer)
    result["created_at"] = layer.created_at.isoformat()
    if layer.bbox is not None:
        result["bbox"] = list(layer.bbox)
    return result


@router.get("")
async def list_layers(
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
) -> list[dict[str, Any]]:
    """List all stored layers, newest first."""
    layers = await concurrency.run_in_threadpool(lambda: list(repo.all()))
    return [layer_to_dict(layer) for layer in layers]


@router.get("/{layer_id}")
async def get_layer(
    layer_id: int,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
) -> dict[str, Any]:
    """Get one layer's metadata.

    Raises:
        NotFoundError: If the layer is not found (404 status code).
    """
    layer = await concurrency.run_in_threadpool(repo.get, layer_id)
    if layer is None:
        raise errors.NotFoundError(f"Layer {layer_id} not found")
    return layer_to_dict(layer)


@router.get("/{layer_id}/bbox")
async def get_layer_bbox(
    layer_id: int,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
) -> dict[str, BBox | None]:
    """Get the bounding box of a layer.

    The bbox can be used to zoom the map viewport to the layer's extent.

    Returns:
        Dictionary containing the bounding box as [minLon, minLat, maxLon,
        maxLat], or None if the layer has no bounding box.

    Raises:
        NotFoundError: If the layer is not found (404 status code).

    Example:
        Use bbox to set the map viewport (Leaflet):
            >>> const [minLon, minLat, maxLon, maxLat] = response.bbox;
            >>> map.fitBounds([[minLat, minLon], [maxLat, maxLon]]);
    """
    layer = await concurrency.run_in_threadpool(repo.get, layer_id)
    if layer is None:
        raise errors.NotFoundError(f"Layer {layer_id} not found")
    return {"bbox": layer.bbox}


@router.get("/{layer_id}/geojson")
async def export_layer(
    layer_id: int,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> dict[str, Any]:
    """Export every feature of a layer as a FeatureCollection."""
    return await concurrency.run_in_threadpool(
        spatial_query.export_layer, repo, conn, layer_id
    )


@router.get("/{layer_id}/geojson/bbox")
async def features_in_bbox(
    layer_id: int,
    min_lon: float = fastapi.Query(..., alias="minLon"),
    min_lat: float = fastapi.Query(..., alias="minLat"),
    max_lon: float = fastapi.Query(..., alias="maxLon"),
    max_lat: float = fastapi.Query(..., alias="maxLat"),
    max_features: int | None = fastapi.Query(None, alias="maxFeatures"),
    simplify: bool = True,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> dict[str, Any]:
    """Features of a layer inside a viewport rectangle.

    ``maxFeatures`` defaults to the ``DEFAULT_MAX_FEATURES`` setting.

    Returns:
        FeatureCollection with ``metadata`` holding ``totalInBounds``,
        ``returned``, ``limited`` and, when limited, ``message``.
    """
    if max_features is None:
        max_features = settings.default_max_features
    return await concurrency.run_in_threadpool(
        spatial_query.features_in_bbox,
        repo,
        conn,
        layer_id,
        (min_lon, min_lat, max_lon, max_lat),
        max_features,
        simplify,
    )


@router.post("/{layer_id}/geojson/intersects")
async def features_intersecting(
    layer_id: int,
    body: IntersectsRequest,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> dict[str, Any]:
    """Features of a layer intersecting a GeoJSON geometry."""
    max_features = body.max_features
    if max_features is None:
        max_features = settings.default_max_features
    return await concurrency.run_in_threadpool(
        spatial_query.features_intersecting,
        repo,
        conn,
        layer_id,
        body.geometry,
        max_features,
        body.simplify,
    )


@router.get("/{layer_id}/clusters")
async def clusters(
    layer_id: int,
    zoom: int,
    min_lon: float = fastapi.Query(..., alias="minLon"),
    min_lat: float = fastapi.Query(..., alias="minLat"),
    max_lon: float = fastapi.Query(..., alias="maxLon"),
    max_lat: float = fastapi.Query(..., alias="maxLat"),
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> dict[str, Any]:
    """Point clusters of a layer inside a viewport at a zoom level."""
    return await concurrency.run_in_threadpool(
        spatial_query.get_clusters,
        repo,
        conn,
        layer_id,
        (min_lon, min_lat, max_lon, max_lat),
        zoom,
    )
