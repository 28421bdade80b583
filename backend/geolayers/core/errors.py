"""Error taxonomy shared by the normalizer, ingestion and query engines.

Every error raised on purpose by the core derives from GeoLayerError so the
HTTP layer can map it to a status code in one place:

    - ValidationError: malformed or unsupported GeoJSON, bad coordinates,
      over-complex input, invalid query parameters. Raised before anything
      is persisted.
    - DomainError: the request is well-formed but not applicable, e.g. a
      multipolygon-only operation on a point layer, or an inactive layer.
    - NotFoundError: unknown layer, map or feature target.
    - InfrastructureError: the spatial datastore failed.

Example:
    >>> from geolayers.core import errors
    >>> try:
    ...     raise errors.ValidationError("Feature 3: unsupported geometry")
    ... except errors.GeoLayerError as exc:
    ...     print(exc.status_code, exc)
    400 Feature 3: unsupported geometry
"""


class GeoLayerError(Exception):
    """Base class for expected failures of the geospatial core."""

    status_code = 500


class ValidationError(GeoLayerError):
    """Input rejected before any persistence took place."""

    status_code = 400


class DomainError(GeoLayerError):
    """Operation not applicable to the addressed layer."""

    status_code = 400


class NotFoundError(GeoLayerError):
    """Referenced layer, map or feature does not exist."""

    status_code = 404


class InfrastructureError(GeoLayerError):
    """Spatial datastore failure, propagated with the driver message."""

    status_code = 503
