from __future__ import annotations

"""
Common scaffolding for AC power flow methods.

Iteration protocol (the caller owns the loop)::

    method = NewtonRaphson(system)
    for _ in range(max_iterations):
        max_p, max_q = method.mismatch()
        if max_p < eps and max_q < eps:
            break
        method.solve()

Method instances capture bus types and dimensions at construction. After any
bus type change (reactive limits, slack hand-off) or bus addition, build a new
instance.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Union

import numpy as np

from power_flow.linalg.factorization import Factorization
from power_flow.network.indexing import StateIndexer
from power_flow.network.model import BusType, PowerSystem

logger = logging.getLogger(__name__)


def initialize_voltage(system: PowerSystem) -> tuple[np.ndarray, np.ndarray]:
    """
    Initial voltage estimate for an AC power flow.

    - A voltage-controlled bus without in-service generator is demoted to a load bus.
    - Non-load buses with generators start at their first generator's set-point.
    - If the slack bus has no in-service generator, the first voltage-controlled bus
      with one becomes slack.

    Returns
    -------
    (np.ndarray, np.ndarray)
        Copies of (magnitude, angle); bus data in `system` is not modified except
        for bus types.

    Raises
    ------
    SlackBusError
        Missing or multiple slack buses, or no bus can take over as slack.
    """
    system.check_slack()
    bus = system.bus
    magnitude = np.array(bus.magnitude, dtype=float, copy=True)
    angle = np.array(bus.angle, dtype=float, copy=True)

    for i in range(system.bus_count):
        generators = system.generators_at(i)
        if not generators and bus.type[i] == BusType.GENERATOR:
            bus.type[i] = BusType.LOAD
            logger.info(
                "Bus %s has no in-service generator and is converted to a load bus.",
                bus.label[i],
            )
        if generators and bus.type[i] != BusType.LOAD:
            magnitude[i] = system.generator.magnitude[generators[0]]

    system.ensure_slack_supply()
    return magnitude, angle


class ACPowerFlow(ABC):
    """
    Base class for the AC methods.

    Attributes
    ----------
    system:
        The network. Read by the method; bus types may be adjusted at construction.
    magnitude, angle:
        Current voltage estimate (length n), updated in place by `solve()`.
    indexer:
        Reduced-state bijection captured at construction.
    factorization:
        Factorization kind used by the method's linear solves.
    """

    method_name: str = "AC power flow"

    def __init__(
        self,
        system: PowerSystem,
        factorization: Union[Factorization, str] = Factorization.LU,
    ) -> None:
        self.system = system
        self.factorization = Factorization.parse(factorization)
        system.ac_model()
        self.magnitude, self.angle = initialize_voltage(system)
        self.indexer = StateIndexer.from_types(system.bus.type, system.slack)
        self._bus_count = system.bus_count

        logger.debug(
            "%s: n=%d, pv=%d, pq=%d, slack=%s, factorization=%s",
            self.method_name,
            system.bus_count,
            self.indexer.pv.size,
            self.indexer.pq.size,
            system.bus.label[self.indexer.slack],
            self.factorization.value,
        )

    @abstractmethod
    def mismatch(self) -> tuple[float, float]:
        """Evaluate mismatches at the current estimate; return (max |dP|, max |dQ|)."""

    @abstractmethod
    def solve(self) -> None:
        """Advance the voltage estimate by one iteration."""

    @property
    def voltage(self) -> np.ndarray:
        """Complex bus voltages of the current estimate."""
        return self.magnitude * np.exp(1j * self.angle)

    def set_voltage(
        self,
        magnitude: Optional[np.ndarray] = None,
        angle: Optional[np.ndarray] = None,
    ) -> None:
        """Overwrite the voltage estimate in place (e.g. warm start from another method)."""
        n = self._bus_count
        if magnitude is not None:
            m = np.asarray(magnitude, dtype=float)
            if m.shape != (n,):
                raise ValueError(f"magnitude must have shape ({n},), got {m.shape}")
            self.magnitude[:] = m
        if angle is not None:
            a = np.asarray(angle, dtype=float)
            if a.shape != (n,):
                raise ValueError(f"angle must have shape ({n},), got {a.shape}")
            self.angle[:] = a
        self._voltage_changed()

    def _voltage_changed(self) -> None:
        """Hook for methods that keep another voltage representation."""
        return None

    def _check_system(self) -> None:
        if self.system.bus_count != self._bus_count:
            raise ValueError(
                f"{self.method_name}: bus count changed from {self._bus_count} to "
                f"{self.system.bus_count}; construct a new method instance."
            )
        if self.system.ac.nodal is None:
            self.system.ac_model()
