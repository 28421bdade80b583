"""Tests for the named-placeholder query builder."""

from __future__ import annotations

import pytest

from geolayers.db import sql


def test_add_generates_unique_names() -> None:
    """Test each added value gets its own placeholder."""
    qb = sql.QueryBuilder()
    assert qb.add(1, "idx") == "%(idx_0)s"
    assert qb.add("POINT(0 0)", "wkt") == "%(wkt_1)s"
    assert qb.add(2, "idx") == "%(idx_2)s"
    assert qb.params == {"idx_0": 1, "wkt_1": "POINT(0 0)", "idx_2": 2}


def test_add_skips_names_already_bound() -> None:
    """Test minted names never overwrite seeded parameters."""
    qb = sql.QueryBuilder({"p_0": "seed"})
    assert qb.add("x") == "%(p_1)s"
    assert qb.params == {"p_0": "seed", "p_1": "x"}


def test_bind_fixed_name() -> None:
    """Test fixed names can be reused with the same value only."""
    qb = sql.QueryBuilder()
    assert qb.bind("layer_id", 7) == "%(layer_id)s"
    assert qb.bind("layer_id", 7) == "%(layer_id)s"
    with pytest.raises(ValueError, match="already bound"):
        qb.bind("layer_id", 8)
