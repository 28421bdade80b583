"""Typed GeoJSON geometry model and kind-keyed traversal helpers.

Raw GeoJSON geometries are parsed once into small immutable dataclasses, one
per supported kind. Every later traversal (vertex counting, axis swapping,
reprojection, clamping, WKT encoding, bounds) dispatches on the geometry kind
instead of guessing nesting depth from the runtime type of array elements.

Supported kinds: Point, LineString, Polygon, MultiPoint, MultiLineString,
MultiPolygon.

Example:
    >>> from geolayers.services import geometry
    >>> geom = geometry.parse_geometry(
    ...     {"type": "LineString", "coordinates": [[0, 0], [1, 1]]}
    ... )
    >>> geometry.count_vertices(geom)
    2
    >>> geometry.to_wkt(geom)
    'LINESTRING(0 0, 1 1)'
"""

from __future__ import annotations

import dataclasses
import logging
import math
from typing import TYPE_CHECKING, Any

import shapely.errors
import shapely.geometry

from geolayers.core import errors

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

logger = logging.getLogger(__name__)

Position = tuple[float, float]
Ring = tuple[Position, ...]
BBox = tuple[float, float, float, float]

SUPPORTED_KINDS = (
    "Point",
    "LineString",
    "Polygon",
    "MultiPoint",
    "MultiLineString",
    "MultiPolygon",
)
SIMPLIFIABLE_KINDS = frozenset(
    {"LineString", "Polygon", "MultiLineString", "MultiPolygon"}
)


@dataclasses.dataclass(frozen=True)
class Point:
    coordinates: Position
    kind = "Point"


@dataclasses.dataclass(frozen=True)
class LineString:
    coordinates: tuple[Position, ...]
    kind = "LineString"


@dataclasses.dataclass(frozen=True)
class Polygon:
    coordinates: tuple[Ring, ...]
    kind = "Polygon"


@dataclasses.dataclass(frozen=True)
class MultiPoint:
    coordinates: tuple[Position, ...]
    kind = "MultiPoint"


@dataclasses.dataclass(frozen=True)
class MultiLineString:
    coordinates: tuple[tuple[Position, ...], ...]
    kind = "MultiLineString"


@dataclasses.dataclass(frozen=True)
class MultiPolygon:
    coordinates: tuple[tuple[Ring, ...], ...]
    kind = "MultiPolygon"


Geometry = Point | LineString | Polygon | MultiPoint | MultiLineString | MultiPolygon


class _GeometryParser:
    """Structural validator for one raw geometry of one feature."""

    def __init__(self, feature_index: int | None) -> None:
        self.feature_index = feature_index

    def fail(self, message: str) -> errors.ValidationError:
        if self.feature_index is None:
            return errors.ValidationError(message)
        return errors.ValidationError(
            f"Feature {self.feature_index}: {message}"
        )

    def position(self, value: Any) -> Position:
        if not isinstance(value, list | tuple) or len(value) < 2:
            raise self.fail(
                "invalid coordinate, expected [longitude, latitude]"
            )
        x, y = value[0], value[1]
        for component in (x, y):
            if isinstance(component, bool) or not isinstance(
                component, int | float
            ):
                raise self.fail("coordinates must be numbers")
        try:
            return (float(x), float(y))
        except OverflowError as exc:
            raise self.fail("coordinate out of range") from exc

    def positions(self, value: Any, minimum: int, what: str) -> tuple[Position, ...]:
        if not isinstance(value, list | tuple):
            raise self.fail(f"{what} must be an array of positions")
        if len(value) < minimum:
            raise self.fail(
                f"{what} needs at least {minimum} positions, got {len(value)}"
            )
        return tuple(self.position(item) for item in value)

    def ring(self, value: Any) -> Ring:
        ring = self.positions(value, 4, "polygon ring")
        if ring[0] != ring[-1]:
            raise self.fail("polygon ring is not closed")
        return ring

    def rings(self, value: Any) -> tuple[Ring, ...]:
        if not isinstance(value, list | tuple) or not value:
            raise self.fail("polygon needs at least one ring")
        return tuple(self.ring(item) for item in value)

    def parts(self, value: Any, parse: Callable[[Any], Any]) -> tuple[Any, ...]:
        if not isinstance(value, list | tuple) or not value:
            raise self.fail("multi-part geometry has no parts")
        return tuple(parse(item) for item in value)

    def parse(self, raw: Any) -> Geometry:
        if not isinstance(raw, dict):
            raise self.fail("geometry missing or invalid")
        kind = raw.get("type")
        if not kind:
            raise self.fail("geometry.type is required")
        if kind not in SUPPORTED_KINDS:
            raise self.fail(
                f'unsupported geometry type "{kind}". '
                f"Supported types: {', '.join(SUPPORTED_KINDS)}"
            )
        coords = raw.get("coordinates")
        if coords is None:
            raise self.fail("geometry.coordinates is required")

        match kind:
            case "Point":
                return Point(self.position(coords))
            case "LineString":
                return LineString(self.positions(coords, 2, "linestring"))
            case "Polygon":
                return Polygon(self.rings(coords))
            case "MultiPoint":
                return MultiPoint(self.parts(coords, self.position))
            case "MultiLineString":
                return MultiLineString(
                    self.parts(
                        coords,
                        lambda part: self.positions(part, 2, "linestring"),
                    )
                )
            case _:
                return MultiPolygon(self.parts(coords, self.rings))


def parse_geometry(raw: Any, feature_index: int | None = None) -> Geometry:
    """Parse a raw GeoJSON geometry object into the typed model.

    Args:
        raw: Decoded GeoJSON geometry object.
        feature_index: Index of the owning feature, cited in error messages.

    Returns:
        Typed geometry instance.

    Raises:
        ValidationError: If the kind is unsupported or the coordinate
            structure does not match the kind.
    """
    return _GeometryParser(feature_index).parse(raw)


def map_positions(
    geom: Geometry, func: Callable[[Position], Position]
) -> Geometry:
    """Return a copy of ``geom`` with ``func`` applied to every position."""

    def line(coords: tuple[Position, ...]) -> tuple[Position, ...]:
        return tuple(func(p) for p in coords)

    def rings(coords: tuple[Ring, ...]) -> tuple[Ring, ...]:
        return tuple(line(ring) for ring in coords)

    match geom:
        case Point():
            return Point(func(geom.coordinates))
        case LineString():
            return LineString(line(geom.coordinates))
        case Polygon():
            return Polygon(rings(geom.coordinates))
        case MultiPoint():
            return MultiPoint(line(geom.coordinates))
        case MultiLineString():
            return MultiLineString(tuple(line(p) for p in geom.coordinates))
        case MultiPolygon():
            return MultiPolygon(tuple(rings(p) for p in geom.coordinates))
    raise TypeError(f"Unsupported geometry {geom!r}")


def iter_positions(geom: Geometry) -> Iterator[Position]:
    """Yield every position of a geometry in document order."""
    match geom:
        case Point():
            yield geom.coordinates
        case LineString() | MultiPoint():
            yield from geom.coordinates
        case Polygon() | MultiLineString():
            for part in geom.coordinates:
                yield from part
        case MultiPolygon():
            for polygon in geom.coordinates:
                for ring in polygon:
                    yield from ring


def first_position(geom: Geometry) -> Position:
    return next(iter_positions(geom))


def count_vertices(geom: Geometry) -> int:
    match geom:
        case Point():
            return 1
        case LineString() | MultiPoint():
            return len(geom.coordinates)
        case Polygon() | MultiLineString():
            return sum(len(part) for part in geom.coordinates)
        case MultiPolygon():
            return sum(
                len(ring) for polygon in geom.coordinates for ring in polygon
            )
    raise TypeError(f"Unsupported geometry {geom!r}")


def swap_axes(geom: Geometry) -> Geometry:
    return map_positions(geom, lambda p: (p[1], p[0]))


def bounds(geoms: Iterable[Geometry]) -> BBox | None:
    """Compute ``(min_x, min_y, max_x, max_y)`` over several geometries.

    Returns:
        The bounding box, or None when ``geoms`` is empty.
    """
    min_x = min_y = math.inf
    max_x = max_y = -math.inf
    for geom in geoms:
        for x, y in iter_positions(geom):
            min_x, max_x = min(min_x, x), max(max_x, x)
            min_y, max_y = min(min_y, y), max(max_y, y)
    if min_x == math.inf:
        return None
    return (min_x, min_y, max_x, max_y)


def bbox_polygon(bbox: BBox) -> Polygon:
    min_x, min_y, max_x, max_y = bbox
    return Polygon(
        (
            (
                (min_x, min_y),
                (max_x, min_y),
                (max_x, max_y),
                (min_x, max_y),
                (min_x, min_y),
            ),
        )
    )


def _fmt(value: float) -> str:
    # repr keeps full precision; integral floats print without ".0"
    return str(int(value)) if value.is_integer() else repr(value)


def to_wkt(geom: Geometry) -> str:
    """Encode a geometry as WKT for ``ST_GeomFromText``.

    Example:
        >>> to_wkt(Point((-90.5, 14.6)))
        'POINT(-90.5 14.6)'
    """

    def pos(p: Position) -> str:
        return f"{_fmt(p[0])} {_fmt(p[1])}"

    def seq(coords: tuple[Position, ...]) -> str:
        return ", ".join(pos(p) for p in coords)

    def rings(coords: tuple[Ring, ...]) -> str:
        return ", ".join(f"({seq(ring)})" for ring in coords)

    match geom:
        case Point():
            return f"POINT({pos(geom.coordinates)})"
        case LineString():
            return f"LINESTRING({seq(geom.coordinates)})"
        case Polygon():
            return f"POLYGON({rings(geom.coordinates)})"
        case MultiPoint():
            points = ", ".join(f"({pos(p)})" for p in geom.coordinates)
            return f"MULTIPOINT({points})"
        case MultiLineString():
            lines = ", ".join(f"({seq(line)})" for line in geom.coordinates)
            return f"MULTILINESTRING({lines})"
        case MultiPolygon():
            polygons = ", ".join(f"({rings(p)})" for p in geom.coordinates)
            return f"MULTIPOLYGON({polygons})"
    raise TypeError(f"Unsupported geometry {geom!r}")


def to_geojson(geom: Geometry) -> dict[str, Any]:
    """Convert the typed model back into a GeoJSON geometry mapping."""

    def listify(value: Any) -> Any:
        if isinstance(value, tuple) and value and isinstance(value[0], float):
            return list(value)
        return [listify(item) for item in value]

    if isinstance(geom, Point):
        coordinates: Any = list(geom.coordinates)
    else:
        coordinates = listify(geom.coordinates)
    return {"type": geom.kind, "coordinates": coordinates}


def simplify(geom: Geometry, tolerance: float) -> Geometry:
    """Topology-preserving simplification with a fallback to the input.

    Only line and polygon kinds are simplified. If shapely fails, or the
    result is empty or of another kind, the original geometry is returned.

    Args:
        geom: Geometry to simplify.
        tolerance: Distance tolerance in coordinate units (degrees).

    Returns:
        Simplified geometry, or ``geom`` itself.
    """
    if geom.kind not in SIMPLIFIABLE_KINDS or tolerance <= 0:
        return geom
    try:
        shape = shapely.geometry.shape(to_geojson(geom))
        simplified = shape.simplify(tolerance, preserve_topology=True)
        if simplified.is_empty or simplified.geom_type != geom.kind:
            return geom
        return parse_geometry(shapely.geometry.mapping(simplified))
    except (shapely.errors.ShapelyError, errors.ValidationError, ValueError) as exc:
        logger.debug("Simplification failed, keeping original: %s", exc)
        return geom
