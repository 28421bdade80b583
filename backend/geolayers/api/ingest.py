"""GeoJSON upload and ingestion API endpoint.

This module provides the REST endpoint that accepts a GeoJSON file as a
multipart upload, normalizes it and stores it as a new layer. The file is
read in chunks and rejected with 413 once it exceeds the configured size.
Normalization (projection detection, axis-order repair, coordinate
validation) and the transactional insert run in the worker thread pool.

Example:
    Upload a GeoJSON file as a new layer attached to map 3:
        >>> response = client.post(
        ...     "/api/layers",
        ...     files={"file": ("distritos.geojson", open("distritos.geojson", "rb"))},
        ...     data={"name": "Distritos", "is_public": "true", "map_id": "3"},
        ... )
        >>> response.json()["summary"]
        '24 features of type multipolygon'
"""

from __future__ import annotations

import dataclasses
import json
from typing import Any

import fastapi
import psycopg2.extensions
from starlette import concurrency

from geolayers.api import dependencies
from geolayers.core import config, errors
from geolayers.db import models as db_models
from geolayers.services import ingestion, normalizer

router = fastapi.APIRouter(prefix="/api/layers", tags=["layers"])

CHUNK_SIZE = 1024 * 1024


def _read_upload(file: fastapi.UploadFile, max_size: int) -> bytes:
    """Read an uploaded file into memory with size validation.

    Args:
        file: FastAPI UploadFile object containing the file data.
        max_size: Maximum allowed file size in bytes.

    Returns:
        The file content.

    Raises:
        HTTPException: If the file exceeds the maximum size limit.
    """
    chunks = []
    size = 0
    for chunk in iter(lambda: file.file.read(CHUNK_SIZE), b""):
        size += len(chunk)
        if size > max_size:
            raise fastapi.HTTPException(
                status_code=413,
                detail="Upload too large",
            )
        chunks.append(chunk)
    return b"".join(chunks)


def _parse_style(style: str | None) -> dict[str, Any] | None:
    if not style:
        return None
    try:
        value = json.loads(style)
    except json.JSONDecodeError as exc:
        raise errors.ValidationError(f"style must be a JSON object: {exc}") from exc
    if not isinstance(value, dict):
        raise errors.ValidationError("style must be a JSON object")
    return value


def _summary_to_dict(summary: db_models.IngestionSummary) -> dict[str, Any]:
    result = dataclasses.asdict(summary)
    if result.get("bbox") is not None:
        result["bbox"] = list(result["bbox"])
    return result


@router.post("", status_code=201)
async def upload_layer(
    file: fastapi.UploadFile,
    name: str = fastapi.Form(...),
    description: str | None = fastapi.Form(None),
    is_public: bool = fastapi.Form(False),
    style: str | None = fastapi.Form(None),
    map_id: int | None = fastapi.Form(None),
    display_order: int = fastapi.Form(0),
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    conn: psycopg2.extensions.connection = fastapi.Depends(  # noqa: B008
        dependencies.get_connection
    ),
) -> dict[str, Any]:
    """Create a layer from an uploaded GeoJSON file.

    The upload is decoded, normalized to EPSG:4326 with [lon, lat] order and
    persisted in one transaction together with the optional map
    association.

    Args:
        file: Uploaded GeoJSON file from multipart form data.
        name: Layer name (1 to 200 characters).
        description: Optional layer description.
        is_public: Whether the layer is public.
        style: Optional JSON object with rendering style; a default style
            for the layer kind is used otherwise.
        map_id: Optional active map to attach the layer to.
        display_order: Position of the layer within the map.
        settings: Application settings (injected via FastAPI Depends).
        conn: Request connection (injected via FastAPI Depends).

    Returns:
        The ingestion summary: layer id, kind, feature count, bbox,
        summary text, detected projection, axis swap flag and warnings.

    Raises:
        HTTPException: 413 if the file exceeds the maximum upload size.
        ValidationError: If the file is not valid GeoJSON.
        NotFoundError: If ``map_id`` names a missing or inactive map.
    """
    data = await concurrency.run_in_threadpool(
        _read_upload, file, settings.max_upload_size_bytes
    )
    request = db_models.IngestionRequest(
        name=name,
        description=description,
        is_public=is_public,
        style=_parse_style(style),
        original_filename=file.filename,
        file_size_bytes=len(data),
        map_id=map_id,
        display_order=display_order,
    )

    def ingest() -> db_models.IngestionSummary:
        raw = normalizer.parse_geojson_bytes(data)
        collection = normalizer.normalize(raw, settings)
        return ingestion.ingest_layer(conn, request, collection)

    summary = await concurrency.run_in_threadpool(ingest)
    return _summary_to_dict(summary)
