"""GeoJSON validation, normalization and metadata extraction.

This module turns untrusted GeoJSON into a FeatureCollection that can be
stored as-is: every geometry is one of the six supported kinds, expressed in
EPSG:4326 with [longitude, latitude] axis order, and within the valid
coordinate range. The normalizer is pure and stateless; its only external
dependency is pyproj for reprojection.

Processing order:
    1. Wrap a bare Feature into a FeatureCollection, reject anything else.
    2. Reject collections above the feature-count ceiling.
    3. Parse each feature into the typed geometry model.
    4. Reject features above the vertex ceiling.
    5. Detect projected coordinates and reproject to EPSG:4326.
    6. Detect latitude-first axis order and swap the whole collection.
    7. Validate and clamp coordinates against the tolerance band.

Example:
    Normalize an uploaded document and inspect the metadata:
        >>> from geolayers.core.config import get_settings
        >>> from geolayers.services import normalizer
        >>> raw = normalizer.parse_geojson_bytes(open("data.geojson", "rb").read())
        >>> result = normalizer.normalize(raw, get_settings())
        >>> metadata = normalizer.extract_metadata(result)
        >>> normalizer.generate_summary(metadata)
        '12 features of type multipolygon'
"""

from __future__ import annotations

import dataclasses
import functools
import json
import logging
import math
from typing import TYPE_CHECKING, Any

import pyproj

from geolayers.core import errors
from geolayers.services import geometry

if TYPE_CHECKING:
    from geolayers.core import config

logger = logging.getLogger(__name__)

GEOGRAPHIC_EPSG = 4326


@dataclasses.dataclass(frozen=True)
class NormalizedFeature:
    geometry: geometry.Geometry
    properties: dict[str, Any]

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "geometry": geometry.to_geojson(self.geometry),
            "properties": self.properties,
        }


@dataclasses.dataclass
class NormalizedCollection:
    """A validated FeatureCollection in EPSG:4326, lon/lat order.

    Attributes:
        features: Normalized features in input order.
        source_epsg: EPSG code the collection was reprojected from, or None.
        axis_swapped: Whether latitude-first input was swapped.
        warnings: Non-fatal problems met during normalization.
    """

    features: list[NormalizedFeature]
    source_epsg: int | None = None
    axis_swapped: bool = False
    warnings: list[str] = dataclasses.field(default_factory=list)

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "FeatureCollection",
            "features": [f.to_geojson() for f in self.features],
        }


@dataclasses.dataclass(frozen=True)
class GeoJsonMetadata:
    layer_type: str
    total_features: int
    bbox: geometry.BBox
    bbox_polygon: dict[str, Any]
    centroid: geometry.Position
    geometry_types: list[str]
    properties: list[str]
    sample_feature: dict[str, Any] | None


def parse_geojson_bytes(data: bytes) -> Any:
    """Decode an uploaded file into a JSON value.

    Raises:
        ValidationError: If the payload is not UTF-8 JSON.
    """
    try:
        return json.loads(data)
    except (ValueError, RecursionError) as exc:
        raise errors.ValidationError(
            f"File is not valid JSON. Please upload a GeoJSON file: {exc}"
        ) from exc


def _unwrap_collection(raw: Any) -> list[Any]:
    if not isinstance(raw, dict):
        raise errors.ValidationError("Invalid GeoJSON: expected a JSON object")
    if raw.get("type") == "Feature":
        raw = {"type": "FeatureCollection", "features": [raw]}
    if raw.get("type") != "FeatureCollection":
        raise errors.ValidationError(
            "Invalid GeoJSON: must be a FeatureCollection or Feature. "
            "GeometryCollection is not supported."
        )
    features = raw.get("features")
    if not isinstance(features, list):
        raise errors.ValidationError(
            "Invalid GeoJSON: FeatureCollection must have a features array"
        )
    if not features:
        raise errors.ValidationError(
            "Invalid GeoJSON: FeatureCollection must contain at least one "
            "feature"
        )
    return features


def _parse_feature(raw: Any, index: int) -> NormalizedFeature:
    if not isinstance(raw, dict) or raw.get("type") != "Feature":
        raise errors.ValidationError(f'Feature {index}: type must be "Feature"')
    geom = geometry.parse_geometry(raw.get("geometry"), index)
    properties = raw.get("properties")
    if properties is None:
        properties = {}
    elif not isinstance(properties, dict):
        raise errors.ValidationError(
            f"Feature {index}: properties must be an object or null"
        )
    return NormalizedFeature(geom, properties)


def validate_feature_count(count: int, max_features: int) -> None:
    if count > max_features:
        raise errors.ValidationError(
            f"Too many features. Maximum allowed: {max_features}, "
            f"found: {count}"
        )


def validate_complexity(
    features: list[NormalizedFeature], max_vertices_per_feature: int
) -> None:
    """Reject any feature whose geometry exceeds the vertex ceiling."""
    for index, feature in enumerate(features):
        vertices = geometry.count_vertices(feature.geometry)
        if vertices > max_vertices_per_feature:
            raise errors.ValidationError(
                f"Feature {index} has too many vertices. Maximum allowed: "
                f"{max_vertices_per_feature}, found: {vertices}"
            )


def _is_projected(position: geometry.Position, threshold: float) -> bool:
    return abs(position[0]) > threshold or abs(position[1]) > threshold


def detect_projection(
    position: geometry.Position, settings: config.Settings
) -> int | None:
    """Classify a projected position against the configured candidates.

    Returns:
        EPSG code of the first matching candidate, or None.
    """
    x, y = position
    for candidate in settings.projected_crs_candidates:
        if candidate.matches(x, y):
            logger.debug("Detected EPSG:%s from X=%s, Y=%s", candidate.epsg, x, y)
            return candidate.epsg
    return None


@functools.lru_cache(maxsize=32)
def _transformer(source_epsg: int) -> pyproj.Transformer:
    return pyproj.Transformer.from_crs(
        f"EPSG:{source_epsg}", f"EPSG:{GEOGRAPHIC_EPSG}", always_xy=True
    )


def reproject(
    features: list[NormalizedFeature], source_epsg: int
) -> list[NormalizedFeature]:
    """Reproject every position of every feature into EPSG:4326."""
    transformer = _transformer(source_epsg)

    def transform(position: geometry.Position) -> geometry.Position:
        lon, lat = transformer.transform(position[0], position[1])
        return (float(lon), float(lat))

    return [
        dataclasses.replace(
            f, geometry=geometry.map_positions(f.geometry, transform)
        )
        for f in features
    ]


def should_swap_axes(
    features: list[NormalizedFeature], sample_size: int, threshold: float
) -> bool:
    """Decide, for the whole collection, whether positions are lat/lon.

    Samples the first position of up to ``sample_size`` features. Samples
    that look projected are ignored. A sample is swap evidence when its
    second component is a valid longitude but not a valid latitude while
    the first is a valid latitude.

    Returns:
        True when swap evidence outnumbers samples valid as lon/lat.
    """
    needs_swap = 0
    valid_as_is = 0
    examples: list[str] = []
    for index, feature in enumerate(features[:sample_size]):
        first, second = geometry.first_position(feature.geometry)
        if _is_projected((first, second), threshold):
            continue
        if 90 < abs(second) <= 180 and abs(first) <= 90:
            needs_swap += 1
            if len(examples) < 3:
                examples.append(f"Feature {index}: [{first}, {second}]")
            continue
        if -180 <= first <= 180 and -90 <= second <= 90:
            valid_as_is += 1

    swap = needs_swap > valid_as_is
    if swap:
        logger.warning(
            "Detected [lat, lon] axis order: %d samples need swapping, %d are "
            "valid. Samples: %s",
            needs_swap,
            valid_as_is,
            " | ".join(examples),
        )
    return swap


def _clamp(
    value: float, limit: float, tolerance: float, what: str, index: int
) -> float:
    if value < -limit - tolerance or value > limit + tolerance:
        raise errors.ValidationError(
            f"Feature {index}: {what} {value} out of range "
            f"[{-limit:g}, {limit:g}] (tolerance: ±{tolerance}°)"
        )
    return min(max(value, -limit), limit)


def validate_coordinates(
    feature: NormalizedFeature, index: int, tolerance: float
) -> NormalizedFeature:
    """Check every position is finite and in range, clamping within tolerance.

    Raises:
        ValidationError: If a component is not finite or lies outside the
            tolerance band.
    """

    def check(position: geometry.Position) -> geometry.Position:
        lon, lat = position
        if not (math.isfinite(lon) and math.isfinite(lat)):
            raise errors.ValidationError(
                f"Feature {index}: coordinates must be finite numbers"
            )
        return (
            _clamp(lon, 180.0, tolerance, "longitude", index),
            _clamp(lat, 90.0, tolerance, "latitude", index),
        )

    return dataclasses.replace(
        feature, geometry=geometry.map_positions(feature.geometry, check)
    )


def normalize(raw: Any, settings: config.Settings) -> NormalizedCollection:
    """Validate and normalize a decoded GeoJSON document.

    Args:
        raw: Decoded JSON value (Feature or FeatureCollection).
        settings: Normalizer ceilings, candidate CRS table and tolerances.

    Returns:
        NormalizedCollection in EPSG:4326 with lon/lat axis order.

    Raises:
        ValidationError: On any structural, complexity or coordinate problem.
    """
    raw_features = _unwrap_collection(raw)
    validate_feature_count(len(raw_features), settings.max_features)

    features = [
        _parse_feature(item, index) for index, item in enumerate(raw_features)
    ]
    validate_complexity(features, settings.max_vertices_per_feature)

    result = NormalizedCollection(features)
    threshold = settings.projection_threshold

    sample = geometry.first_position(features[0].geometry)
    if _is_projected(sample, threshold):
        source_epsg = detect_projection(sample, settings)
        if source_epsg is None:
            message = (
                f"Could not detect the coordinate system of [{sample[0]}, "
                f"{sample[1]}]; assuming WGS84, validation may fail."
            )
            logger.warning(message)
            result.warnings.append(message)
        else:
            logger.info(
                "Detected projected coordinates (EPSG:%s). Reprojecting %d "
                "features to WGS84...",
                source_epsg,
                len(features),
            )
            result.features = reproject(result.features, source_epsg)
            result.source_epsg = source_epsg

    if result.source_epsg is None and should_swap_axes(
        result.features, settings.axis_sample_size, threshold
    ):
        result.features = [
            dataclasses.replace(f, geometry=geometry.swap_axes(f.geometry))
            for f in result.features
        ]
        result.axis_swapped = True
        logger.info(
            "Swapped coordinates for all %d features", len(result.features)
        )

    result.features = [
        validate_coordinates(f, index, settings.coordinate_tolerance)
        for index, f in enumerate(result.features)
    ]
    return result


def extract_metadata(collection: NormalizedCollection) -> GeoJsonMetadata:
    """Summarize a normalized collection for the layer record and response."""
    features = collection.features
    bbox = geometry.bounds(f.geometry for f in features)
    if bbox is None:
        raise errors.ValidationError("FeatureCollection has no coordinates")

    geometry_types = list(dict.fromkeys(f.geometry.kind for f in features))
    layer_type = (
        geometry_types[0].lower() if len(geometry_types) == 1 else "mixed"
    )
    properties = list(
        dict.fromkeys(key for f in features for key in f.properties)
    )
    centroid = ((bbox[0] + bbox[2]) / 2, (bbox[1] + bbox[3]) / 2)

    return GeoJsonMetadata(
        layer_type=layer_type,
        total_features=len(features),
        bbox=bbox,
        bbox_polygon=geometry.to_geojson(geometry.bbox_polygon(bbox)),
        centroid=centroid,
        geometry_types=geometry_types,
        properties=properties,
        sample_feature=features[0].to_geojson() if features else None,
    )


def generate_summary(metadata: GeoJsonMetadata) -> str:
    total = metadata.total_features
    summary = f"{total} feature{'s' if total > 1 else ''}"
    if metadata.layer_type != "mixed":
        return f"{summary} of type {metadata.layer_type}"
    return f"{summary} with mixed types: {', '.join(metadata.geometry_types)}"


def simplify_collection(
    collection: NormalizedCollection, tolerance: float = 0.0001
) -> NormalizedCollection:
    """Simplify line and polygon features, leaving the rest untouched."""
    return dataclasses.replace(
        collection,
        features=[
            dataclasses.replace(
                f, geometry=geometry.simplify(f.geometry, tolerance)
            )
            for f in collection.features
        ],
        warnings=list(collection.warnings),
    )
