"""Data models for layers, ingestion requests and ingestion results.

This module defines the core data structures shared by the repositories,
the ingestion pipeline and the API. A Layer mirrors one row of the ``layer``
table; feature rows are never materialized as objects, they are streamed to
and from PostGIS as GeoJSON mappings.

Example:
    Describe a layer about to be ingested:
        >>> from geolayers.db.models import IngestionRequest
        >>> request = IngestionRequest(
        ...     name="Distritos",
        ...     description="Distritos municipales",
        ...     is_public=True,
        ...     original_filename="distritos.geojson",
        ...     file_size_bytes=48213,
        ... )

    Read back a stored layer:
        >>> layer = repo.get(12)
        >>> layer.layer_type, layer.total_features
        ('multipolygon', 24)
"""

from __future__ import annotations

import copy
import dataclasses
import datetime
from typing import Any, Literal

from geolayers.core import errors

BBox = tuple[float, float, float, float]
LayerKind = Literal[
    "point",
    "linestring",
    "polygon",
    "multipoint",
    "multilinestring",
    "multipolygon",
    "mixed",
]

MAX_LAYER_NAME_LENGTH = 200

_POINT_STYLE = {
    "iconUrl": "/icons/marker-default.png",
    "iconSize": [25, 41],
    "iconAnchor": [12, 41],
    "color": "#3388ff",
}
_LINE_STYLE = {"color": "#3388ff", "weight": 3, "opacity": 0.8}
_POLYGON_STYLE = {
    "fillColor": "#3388ff",
    "fillOpacity": 0.2,
    "color": "#3388ff",
    "weight": 2,
}
DEFAULT_STYLES: dict[str, dict[str, Any]] = {
    "point": _POINT_STYLE,
    "multipoint": _POINT_STYLE,
    "linestring": _LINE_STYLE,
    "multilinestring": _LINE_STYLE,
    "polygon": _POLYGON_STYLE,
    "multipolygon": _POLYGON_STYLE,
    "mixed": {"color": "#3388ff", "weight": 2, "fillOpacity": 0.2},
}


def default_style(layer_type: str) -> dict[str, Any]:
    """Return a fresh copy of the default style for a layer kind."""
    return copy.deepcopy(DEFAULT_STYLES.get(layer_type, DEFAULT_STYLES["mixed"]))


@dataclasses.dataclass
class Layer:
    """A stored vector layer.

    Attributes:
        id: Serial identifier of the layer row.
        name: Human-readable layer name.
        layer_type: Dominant geometry kind, or ``mixed``.
        total_features: Number of persisted feature rows.
        bbox: Extent as (min_lon, min_lat, max_lon, max_lat), or None.
        description: Optional free text.
        style: Rendering style mapping handed to the map client.
        is_active: Inactive layers are refused by every query.
        is_public: Visible without an owning map.
        original_filename: Name of the uploaded file.
        file_size_bytes: Size of the uploaded file.
        created_at: Timestamp of the ingestion commit.
    """

    id: int
    name: str
    layer_type: LayerKind
    total_features: int
    bbox: BBox | None = None
    description: str | None = None
    style: dict[str, Any] | None = None
    is_active: bool = True
    is_public: bool = False
    original_filename: str | None = None
    file_size_bytes: int | None = None
    created_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.UTC)
    )


@dataclasses.dataclass
class IngestionRequest:
    """Caller-supplied attributes of a layer to ingest.

    Raises:
        ValidationError: If the name is blank or longer than 200 characters.
    """

    name: str
    description: str | None = None
    is_public: bool = False
    style: dict[str, Any] | None = None
    original_filename: str | None = None
    file_size_bytes: int | None = None
    map_id: int | None = None
    display_order: int = 0

    def __post_init__(self) -> None:
        self.name = (self.name or "").strip()
        if not self.name:
            raise errors.ValidationError("Layer name is required")
        if len(self.name) > MAX_LAYER_NAME_LENGTH:
            raise errors.ValidationError(
                f"Layer name must be at most {MAX_LAYER_NAME_LENGTH} "
                "characters"
            )


@dataclasses.dataclass
class IngestionSummary:
    """Outcome of one ingestion, returned by the upload endpoint.

    Attributes:
        layer_id: Id of the created layer.
        name: Stored layer name.
        layer_type: Canonical lower-case kind, e.g. ``multipolygon``.
        total_features: Number of features stored.
        summary: Human-readable description of the collection.
        geometry_types: Distinct geometry kinds found in the upload.
        properties: Attribute keys seen across all features.
        bbox: Layer extent in EPSG:4326, degenerate extents buffered.
        source_epsg: EPSG code the upload was reprojected from, if any.
        axis_swapped: Whether latitude/longitude order was corrected.
        simplified_features: Features simplified before storage.
        map_id: Map the layer was attached to, if any.
        warnings: Non-fatal issues found while normalizing.
    """

    layer_id: int
    name: str
    layer_type: str
    total_features: int
    summary: str
    geometry_types: list[str]
    properties: list[str]
    bbox: BBox | None = None
    source_epsg: int | None = None
    axis_swapped: bool = False
    simplified_features: int = 0
    map_id: int | None = None
    warnings: list[str] = dataclasses.field(default_factory=list)
