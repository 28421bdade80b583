"""GeoLayers backend: GeoJSON ingestion and spatial query service.

This package contains a FastAPI service that stores user-uploaded GeoJSON
datasets in PostGIS and serves them back at web-map scale.

- Normalizes untrusted GeoJSON: projected coordinates are detected and
  reprojected, swapped axis order is repaired, coordinates are validated
- Ingests features transactionally with adaptive simplification and a
  derived layer bounding box
- Serves viewport and intersection queries, MVT vector tiles and clusters
- Filters multipolygon layers by attributes whose names differ across
  datasets

See module sub-docstrings for details on architecture and usage.
"""
