"""Named-placeholder SQL parameter builder.

psycopg2 accepts ``%(name)s`` placeholders bound from a mapping. Queries
assembled from variable pieces (multi-row inserts, one clause per filter
key) use QueryBuilder to mint unique placeholder names so that no caller
has to track positional indices.

Example:
    >>> qb = QueryBuilder()
    >>> f"WHERE layer_id = {qb.bind('layer_id', 7)} AND name = {qb.add('x')}"
    'WHERE layer_id = %(layer_id)s AND name = %(p_0)s'
    >>> qb.params
    {'layer_id': 7, 'p_0': 'x'}
"""

from __future__ import annotations

from typing import Any


class QueryBuilder:
    """Collects parameters and returns their placeholders."""

    def __init__(self, params: dict[str, Any] | None = None) -> None:
        self.params: dict[str, Any] = dict(params or {})
        self._counter = 0

    def add(self, value: Any, prefix: str = "p") -> str:
        """Bind ``value`` under a fresh ``<prefix>_<n>`` name."""
        name = f"{prefix}_{self._counter}"
        while name in self.params:
            self._counter += 1
            name = f"{prefix}_{self._counter}"
        self._counter += 1
        self.params[name] = value
        return f"%({name})s"

    def bind(self, name: str, value: Any) -> str:
        """Bind ``value`` under a fixed name.

        Raises:
            ValueError: If ``name`` is already bound to a different value.
        """
        if name in self.params and self.params[name] != value:
            raise ValueError(f"Parameter {name!r} is already bound")
        self.params[name] = value
        return f"%({name})s"
