from __future__ import annotations

"""
DC power flow.

Non-iterative: with the slack row/column removed from the nodal susceptance
matrix B,

    theta_red = B_red^{-1} (Pg - Pd - Gsh - P_shift)_red

and the slack angle is its initial angle (all angles shifted by it).

The reduced matrix is rebuilt only when the network's `dc.model` token moves;
it is fully factorized when `dc.pattern` (or the slack bus) changed and
numerically refactorized otherwise. Repeated solves with identical inputs give
bit-identical angles.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np

from power_flow.linalg.factorization import Factorization, make_solver
from power_flow.network.model import PowerSystem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DCBusPower:
    """Active injection (supply minus demand) and supply per bus."""

    injection: np.ndarray
    supply: np.ndarray


class DCPowerFlow:
    """
    DC power flow solver.

    Parameters
    ----------
    system:
        Network. The DC model is assembled on first use. If the slack bus has no
        in-service generator, the first voltage-controlled bus with one becomes slack.
    factorization:
        "lu" (default), "ldlt" or "qr".

    Attributes
    ----------
    angle:
        Bus voltage angles (rad) from the last `solve()`; initial bus angles before.
    """

    method_name = "DC power flow"

    def __init__(
        self,
        system: PowerSystem,
        factorization: Union[Factorization, str] = Factorization.LU,
    ) -> None:
        self.system = system
        self.factorization = Factorization.parse(factorization)
        system.dc_model()
        system.ensure_slack_supply()

        self.angle = np.array(system.bus.angle, dtype=float, copy=True)
        self._solver = make_solver(self.factorization)
        self._model_token: Optional[int] = None
        self._slack: Optional[int] = None
        self._keep: Optional[np.ndarray] = None

    def _update_matrix(self, slack: int) -> None:
        dc = self.system.dc
        keep = np.ones(self.system.bus_count, dtype=bool)
        keep[slack] = False
        reduced = dc.nodal[keep, :][:, keep].tocsc()

        if self._solver.pattern != dc.pattern or self._slack != slack:
            self._solver.factorize(reduced, pattern=dc.pattern)
        else:
            self._solver.refactorize(reduced)

        self._keep = keep
        self._slack = slack
        self._model_token = dc.model
        logger.debug(
            "DC reduced matrix: n=%d, nnz=%d, model=%d, pattern=%d",
            reduced.shape[0],
            reduced.nnz,
            dc.model,
            dc.pattern,
        )

    def solve(self) -> np.ndarray:
        """
        Compute bus voltage angles.

        Returns
        -------
        np.ndarray
            The `angle` attribute (length n, rad).

        Raises
        ------
        FactorizationError
            If the reduced susceptance matrix is singular (e.g. disconnected network).
        """
        system = self.system
        dc = system.dc_model()
        slack = system.slack
        if dc.model != self._model_token or slack != self._slack:
            self._update_matrix(slack)

        bus = system.bus
        injection = system.supply_active - bus.demand_active - bus.shunt_conductance - dc.shift_power
        reduced = self._solver.solve(injection[self._keep])

        angle = np.zeros(system.bus_count, dtype=float)
        angle[self._keep] = reduced
        angle += bus.angle[slack]
        self.angle[:] = angle
        return self.angle

    def branch_power(self) -> np.ndarray:
        """Active power flow at the from-end of each branch; 0 for out-of-service branches."""
        br = self.system.branch
        dc = self.system.dc_model()
        difference = self.angle[br.from_bus] - self.angle[br.to_bus] - br.shift_angle
        return dc.admittance * difference

    def slack_supply(self) -> float:
        """Active power that the slack bus must supply."""
        system = self.system
        dc = system.dc_model()
        slack = system.slack
        bus = system.bus
        injection = float((dc.nodal[[slack], :] @ self.angle)[0])
        return (
            injection
            + float(bus.demand_active[slack])
            + float(bus.shunt_conductance[slack])
            + float(dc.shift_power[slack])
        )

    def bus_power(self) -> DCBusPower:
        """
        Active injection and supply per bus.

        Non-slack buses report their scheduled generation; the slack bus reports
        `slack_supply()`.
        """
        system = self.system
        bus = system.bus
        slack = system.slack
        supply = system.supply_active.copy()
        supply[slack] = self.slack_supply()
        return DCBusPower(injection=supply - bus.demand_active, supply=supply)

    def generator_power(self) -> np.ndarray:
        """
        Active output of every generator (0 for out-of-service units).

        The first in-service generator at the slack bus takes the slack supply
        less the scheduled output of the other slack generators.
        """
        system = self.system
        gen = system.generator
        on = gen.status == 1
        active = np.where(on, gen.active, 0.0)

        slack_generators = system.generators_at(system.slack)
        if slack_generators:
            first = slack_generators[0]
            others = float(np.sum(active[slack_generators[1:]]))
            active[first] = self.slack_supply() - others
        return active
