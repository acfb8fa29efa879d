from __future__ import annotations

import numpy as np
import pytest

from power_flow.network import BusType, StateIndexer


def test_state_indexer_layout():
    types = np.array([BusType.LOAD, BusType.SLACK, BusType.GENERATOR, BusType.LOAD])
    idx = StateIndexer.from_types(types, slack=1)

    assert idx.pvpq.tolist() == [0, 2, 3]
    assert idx.pq.tolist() == [0, 3]
    assert idx.pv.tolist() == [2]
    assert idx.pvpq_position.tolist() == [0, -1, 1, 2]
    assert idx.pq_position.tolist() == [0, -1, -1, 1]
    # n + n_load - 1
    assert idx.size == 4 + 2 - 1
    assert (idx.n_angle, idx.n_magnitude, idx.bus_count) == (3, 2, 4)


def test_state_indexer_split_returns_views():
    idx = StateIndexer.from_types(np.array([3, 1, 1]), slack=0)
    x = np.arange(idx.size, dtype=float)
    angle, magnitude = idx.split(x)
    assert angle.tolist() == [0.0, 1.0]
    assert magnitude.tolist() == [2.0, 3.0]
    angle[0] = 10.0
    assert x[0] == 10.0

    with pytest.raises(ValueError):
        idx.split(np.zeros(3))


def test_state_indexer_arrays_are_read_only():
    idx = StateIndexer.from_types(np.array([3, 1]), slack=0)
    with pytest.raises(ValueError):
        idx.pq[0] = 0


@pytest.mark.parametrize("slack", [-1, 3, 1])
def test_state_indexer_rejects_bad_slack(slack):
    with pytest.raises(ValueError):
        StateIndexer.from_types(np.array([3, 1, 2]), slack=slack)
