"""Shared fixtures: settings, in-memory layers and a scripted connection.

FakeConnection stands in for a psycopg2 connection. Tests register rules
mapping a SQL fragment to the rows the statement should return (or to an
error it should raise); every executed statement is recorded with its
parameters so tests can assert on the generated SQL.
"""

from __future__ import annotations

import dataclasses
from typing import Any

import psycopg2
import pytest

from geolayers.core import config
from geolayers.db import database
from geolayers.db import models as db_models


@dataclasses.dataclass
class _Rule:
    fragment: str
    rows: Any = None
    error: Exception | None = None


class FakeCursor:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self._rows: list[dict[str, Any]] = []

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def execute(self, query: str, params: Any = None) -> None:
        self.conn.executed.append((query, params))
        for rule in self.conn.rules:
            if rule.fragment in query:
                if rule.error is not None:
                    raise rule.error
                rows = rule.rows(query, params) if callable(rule.rows) else rule.rows
                self._rows = [dict(row) for row in rows or []]
                return
        self._rows = []

    def fetchone(self) -> dict[str, Any] | None:
        return self._rows.pop(0) if self._rows else None

    def fetchall(self) -> list[dict[str, Any]]:
        rows, self._rows = self._rows, []
        return rows


class FakeConnection:
    def __init__(self) -> None:
        self.rules: list[_Rule] = []
        self.executed: list[tuple[str, Any]] = []
        self.committed = False
        self.rolled_back = False

    def on(
        self, fragment: str, rows: Any = None, error: Exception | None = None
    ) -> FakeConnection:
        """Script the result of statements containing ``fragment``."""
        self.rules.append(_Rule(fragment, rows, error))
        return self

    def cursor(self, cursor_factory: Any = None) -> FakeCursor:
        return FakeCursor(self)

    def __enter__(self) -> FakeConnection:
        return self

    def __exit__(self, exc_type: object, *exc_info: object) -> bool:
        if exc_type is None:
            self.committed = True
        else:
            self.rolled_back = True
        return False

    def statements(self, fragment: str) -> list[tuple[str, Any]]:
        return [item for item in self.executed if fragment in item[0]]


def make_layer(layer_id: int = 1, **overrides: Any) -> db_models.Layer:
    values: dict[str, Any] = {
        "id": layer_id,
        "name": f"layer-{layer_id}",
        "layer_type": "multipolygon",
        "total_features": 3,
        "bbox": (-91.0, 14.0, -90.0, 15.0),
    }
    values.update(overrides)
    return db_models.Layer(**values)


@pytest.fixture
def settings() -> config.Settings:
    return config.Settings(_env_file=None)


@pytest.fixture
def conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def repo() -> database.InMemoryLayerRepository:
    store = database.InMemoryLayerRepository()
    store.add(make_layer(1, name="Distritos"))
    store.add(make_layer(2, name="Rivers", layer_type="multilinestring"))
    store.add(make_layer(3, name="Archived", is_active=False))
    store.add(make_layer(4, name="Departamentos"))
    return store


@pytest.fixture
def db_error() -> psycopg2.Error:
    return psycopg2.OperationalError("server closed the connection unexpectedly")


@pytest.fixture
def layer_factory() -> Any:
    return make_layer
