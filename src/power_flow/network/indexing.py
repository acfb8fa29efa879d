from __future__ import annotations

"""
State indexing for the reduced unknown vector.

Newton-type methods solve for voltage angles at every non-slack bus followed by
voltage magnitudes at load buses only:

    x = [theta[pvpq[0]], ..., theta[pvpq[-1]], Vm[pq[0]], ..., Vm[pq[-1]]]

`StateIndexer` holds that bijection. It is derived from bus types and must be
rebuilt whenever a bus changes type (reactive limits, slack hand-off).
"""

import logging
from dataclasses import dataclass

import numpy as np

from power_flow.network.model import BusType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateIndexer:
    """
    Bijection between bus indices and positions in the reduced state vector.

    Attributes
    ----------
    slack:
        Slack bus index.
    pvpq:
        Non-slack bus indices in ascending order (angle unknowns).
    pq:
        Load bus indices in ascending order (magnitude unknowns).
    pv:
        Voltage-controlled bus indices in ascending order.
    pvpq_position:
        Length-n map bus -> position in `pvpq`, -1 for the slack bus.
    pq_position:
        Length-n map bus -> position in `pq`, -1 for non-load buses.
    """

    slack: int
    pvpq: np.ndarray
    pq: np.ndarray
    pv: np.ndarray
    pvpq_position: np.ndarray
    pq_position: np.ndarray

    @classmethod
    def from_types(cls, types: np.ndarray, slack: int) -> "StateIndexer":
        """
        Build the indexer from bus types.

        Raises
        ------
        ValueError
            If `slack` is out of range or the bus at `slack` is not typed as slack.
        """
        bus_type = np.asarray(types, dtype=int)
        n = int(bus_type.size)
        s = int(slack)
        if not 0 <= s < n:
            raise ValueError(f"slack index {s} out of range for n={n}")
        if bus_type[s] != BusType.SLACK:
            raise ValueError(f"bus {s} is not a slack bus (type={int(bus_type[s])})")

        mask = np.ones(n, dtype=bool)
        mask[s] = False
        pvpq = np.flatnonzero(mask)
        pq = np.flatnonzero(bus_type == BusType.LOAD)
        pv = np.flatnonzero(bus_type == BusType.GENERATOR)

        pvpq_position = np.full(n, -1, dtype=int)
        pvpq_position[pvpq] = np.arange(pvpq.size)
        pq_position = np.full(n, -1, dtype=int)
        pq_position[pq] = np.arange(pq.size)

        for arr in (pvpq, pq, pv, pvpq_position, pq_position):
            arr.setflags(write=False)

        logger.debug("StateIndexer: n=%d, slack=%d, pv=%d, pq=%d", n, s, pv.size, pq.size)
        return cls(
            slack=s,
            pvpq=pvpq,
            pq=pq,
            pv=pv,
            pvpq_position=pvpq_position,
            pq_position=pq_position,
        )

    @property
    def bus_count(self) -> int:
        return int(self.pvpq_position.size)

    @property
    def n_angle(self) -> int:
        return int(self.pvpq.size)

    @property
    def n_magnitude(self) -> int:
        return int(self.pq.size)

    @property
    def size(self) -> int:
        """Length of the Newton-Raphson state vector: n + n_load - 1."""
        return self.n_angle + self.n_magnitude

    def split(self, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Split a state-shaped vector into its (angle, magnitude) parts (views)."""
        if x.shape[0] != self.size:
            raise ValueError(f"expected vector of length {self.size}, got {x.shape[0]}")
        return x[: self.n_angle], x[self.n_angle :]
