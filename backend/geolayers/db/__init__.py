"""Database access: connection pool, schema, repositories and SQL helpers.

Example:
    Use in a service or FastAPI dependency:
        >>> from geolayers.db import database
        >>> with database.connection(settings) as conn:
        ...     repo = database.get_layer_repository(conn)
"""
