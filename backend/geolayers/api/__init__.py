"""API router subpackage for the GeoLayers backend.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - ingest: GeoJSON upload and layer creation.
    - layers: Layer listing, export and spatial queries.
    - features: Feature catalog and attribute filters.
    - tiles: MVT vector tiles.
    - dependencies: Shared connection and repository dependencies.
"""
