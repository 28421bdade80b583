"""Feature catalog and attribute filter API endpoints for multipolygon layers.

Filter endpoints take the attribute filters straight from the query string:
every parameter other than ``featureIds``/``layerIds`` is an attribute key,
and repeated or comma-joined values are alternatives. Keys are matched
against equivalent attribute names of each layer, so ``CODDISTRITO=5``
also matches features keyed ``NO_DISTRIT`` or ``Cod_Distrito``.

Example:
    >>> client.get("/api/layers/12/features/filter?CODDISTRITO=5,7")
    >>> client.get(
    ...     "/api/layers/features/filter-multiple"
    ...     "?layerIds=12,13&CODDEPTO=01&featureIds=40"
    ... )
"""

from __future__ import annotations

from typing import Any

import fastapi
import psycopg2.extensions
from starlette import concurrency

from geolayers.api import dependencies
from geolayers.core import config
from geolayers.db import database
from geolayers.services import property_filter

router = fastapi.APIRouter(prefix="/api/layers", tags=["features"])


@router.get("/features/filter-multiple")
async def filter_multiple_layers(
    request: fastapi.Request,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> dict[str, Any]:
    """Filter several multipolygon layers at once.

    ``layerIds`` (repeated or comma-joined) selects the layers; the rest of
    the query string holds the attribute filters.
    """
    items = request.query_params.multi_items()
    layer_ids = property_filter.parse_id_list(
        (v for k, v in items if k == property_filter.LAYER_IDS_PARAM),
        property_filter.LAYER_IDS_PARAM,
    )
    spec = property_filter.parse_filter_params(items)
    return await concurrency.run_in_threadpool(
        property_filter.filter_layers, repo, conn, layer_ids, spec, settings
    )


@router.get("/{layer_id}/features/catalog")
async def features_catalog(
    layer_id: int,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> dict[str, Any]:
    """Per-feature catalog of a multipolygon layer."""
    return await concurrency.run_in_threadpool(
        property_filter.features_catalog, repo, conn, layer_id
    )


@router.get("/{layer_id}/features")
async def selected_features(
    layer_id: int,
    request: fastapi.Request,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> dict[str, Any]:
    """Features of a multipolygon layer by id, or all when no id is given."""
    raw_ids = request.query_params.getlist(property_filter.FEATURE_IDS_PARAM)
    feature_ids = (
        property_filter.parse_id_list(raw_ids, property_filter.FEATURE_IDS_PARAM)
        if raw_ids
        else None
    )
    return await concurrency.run_in_threadpool(
        property_filter.select_features, repo, conn, layer_id, feature_ids
    )


@router.get("/{layer_id}/features/filter")
async def filter_layer(
    layer_id: int,
    request: fastapi.Request,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    repo: database.LayerRepositoryProtocol = fastapi.Depends(  # noqa: B008
        dependencies.get_repo
    ),
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> dict[str, Any]:
    """Filter a multipolygon layer by attribute values and feature ids."""
    spec = property_filter.parse_filter_params(request.query_params.multi_items())
    return await concurrency.run_in_threadpool(
        property_filter.filter_layer, repo, conn, layer_id, spec, settings
    )
