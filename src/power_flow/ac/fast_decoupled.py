from __future__ import annotations

"""
Fast decoupled Newton-Raphson (XB and BX schemes).

Two constant matrices replace the Jacobian:

- B1 (n-1 x n-1), active power / angle subproblem over non-slack buses,
- B2 (n_load x n_load), reactive power / magnitude subproblem over load buses.

Scheme XB: B1 from -1/x only (no resistance, charging, tap magnitude);
           B2 from the full series susceptance, no phase shift.
Scheme BX: B1 from the full series admittance (keeps resistance);
           B2 from -1/x, no phase shift.

The mismatch functions are the exact AC ones, scaled by the bus voltage
magnitude; only the iteration matrices are approximate.

Both matrices are rebuilt when the network's `ac.model` token moves (any branch
edit) and fully re-factorized when its `ac.pattern` token moves; a model change
with an unchanged pattern is a numeric refactorization.
"""

import logging
from enum import Enum
from typing import Union

import numpy as np
import scipy.sparse as sp

from power_flow.ac.base import ACPowerFlow
from power_flow.ac.mismatch import complex_voltage, evaluate_mismatch
from power_flow.linalg.factorization import Factorization, make_solver
from power_flow.network.model import PowerSystem

logger = logging.getLogger(__name__)


class Scheme(str, Enum):
    XB = "xb"
    BX = "bx"


class FastNewtonRaphson(ACPowerFlow):
    """
    Fast decoupled Newton-Raphson.

    Attributes
    ----------
    active_jacobian, reactive_jacobian:
        B1 and B2 in CSC form.
    active_mismatch, reactive_mismatch:
        dP/Vm over non-slack buses and dQ/Vm over load buses.
    active_increment, reactive_increment:
        Last angle and magnitude increments.
    """

    def __init__(
        self,
        system: PowerSystem,
        factorization: Union[Factorization, str] = Factorization.LU,
        scheme: Union[Scheme, str] = Scheme.XB,
    ) -> None:
        self.scheme = Scheme(str(getattr(scheme, "value", scheme)).lower())
        self.method_name = f"Fast Newton-Raphson {self.scheme.name}"
        super().__init__(system, factorization)

        idx = self.indexer
        self.active_mismatch = np.zeros(idx.n_angle, dtype=float)
        self.reactive_mismatch = np.zeros(idx.n_magnitude, dtype=float)
        self.active_increment = np.zeros(idx.n_angle, dtype=float)
        self.reactive_increment = np.zeros(idx.n_magnitude, dtype=float)
        self._active_solver = make_solver(self.factorization)
        self._reactive_solver = make_solver(self.factorization)
        self._model_token = -1
        self._update_matrices()

    def _branch_terms(self) -> tuple[np.ndarray, ...]:
        """Per in-service branch (from, to, g1, b1, b2, shift, tau, charging) for the scheme."""
        br = self.system.branch
        on = br.status == 1
        r = br.resistance[on]
        x = br.reactance[on]
        z2 = r**2 + x**2

        if self.scheme is Scheme.BX:
            g1 = r / z2
            b1 = -x / z2
            b2 = -1.0 / x
        else:
            g1 = np.zeros_like(r)
            b1 = -1.0 / x
            b2 = -x / z2

        return (
            br.from_bus[on],
            br.to_bus[on],
            g1,
            b1,
            b2,
            br.shift_angle[on],
            br.turns_ratio[on],
            br.susceptance[on],
        )

    def _assemble(self) -> tuple[sp.csc_matrix, sp.csc_matrix]:
        idx = self.indexer
        f, t, g1, b1, b2, shift, tau, charging = self._branch_terms()
        cos_s = np.cos(shift)
        sin_s = np.sin(shift)

        # B1: explicit zeros on the diagonal keep the structure equal to Y's.
        m = idx.pvpq_position[f]
        k = idx.pvpq_position[t]
        both = (m >= 0) & (k >= 0)
        from_ok = m >= 0
        to_ok = k >= 0
        n_angle = idx.n_angle
        rows = np.concatenate([np.arange(n_angle), m[both], k[both], m[from_ok], k[to_ok]])
        cols = np.concatenate([np.arange(n_angle), k[both], m[both], m[from_ok], k[to_ok]])
        data = np.concatenate(
            [
                np.zeros(n_angle),
                (-g1 * sin_s - b1 * cos_s)[both],
                (g1 * sin_s - b1 * cos_s)[both],
                b1[from_ok],
                b1[to_ok],
            ]
        )
        active = sp.coo_matrix((data, (rows, cols)), shape=(n_angle, n_angle)).tocsc()

        # B2 over load buses.
        m = idx.pq_position[f]
        k = idx.pq_position[t]
        both = (m >= 0) & (k >= 0)
        from_ok = m >= 0
        to_ok = k >= 0
        n_mag = idx.n_magnitude
        pq_shunt = self.system.bus.shunt_susceptance[idx.pq]
        rows = np.concatenate([np.arange(n_mag), m[both], k[both], m[from_ok], k[to_ok]])
        cols = np.concatenate([np.arange(n_mag), k[both], m[both], m[from_ok], k[to_ok]])
        data = np.concatenate(
            [
                pq_shunt,
                (-b2 / tau)[both],
                (-b2 / tau)[both],
                ((b2 + 0.5 * charging) / tau**2)[from_ok],
                (b2 + 0.5 * charging)[to_ok],
            ]
        )
        reactive = sp.coo_matrix((data, (rows, cols)), shape=(n_mag, n_mag)).tocsc()

        for matrix in (active, reactive):
            matrix.sum_duplicates()
            matrix.sort_indices()
        return active, reactive

    def _update_matrices(self) -> None:
        """Rebuild B1/B2 for the current AC model and (re)factorize them."""
        ac = self.system.ac
        self.active_jacobian, self.reactive_jacobian = self._assemble()

        for solver, matrix in (
            (self._active_solver, self.active_jacobian),
            (self._reactive_solver, self.reactive_jacobian),
        ):
            if solver.pattern != ac.pattern:
                solver.factorize(matrix, pattern=ac.pattern)
            else:
                solver.refactorize(matrix)

        self._model_token = ac.model
        logger.debug(
            "%s matrices: B1 nnz=%d, B2 nnz=%d, model=%d, pattern=%d",
            self.method_name,
            self.active_jacobian.nnz,
            self.reactive_jacobian.nnz,
            ac.model,
            ac.pattern,
        )

    def mismatch(self) -> tuple[float, float]:
        self._check_system()
        idx = self.indexer
        result = evaluate_mismatch(
            self.system,
            complex_voltage(self.magnitude, self.angle),
            idx.pvpq,
            idx.pq,
            self.active_mismatch,
            self.reactive_mismatch,
            scale=self.magnitude,
        )
        return result

    def solve(self) -> None:
        """
        Two half-steps: B1 dtheta = dP/Vm, then B2 dVm = dQ/Vm at the new angles.

        Raises
        ------
        FactorizationError
            If B1 or B2 is singular.
        """
        self._check_system()
        if self.system.ac.model != self._model_token:
            self._update_matrices()
        # step from the residual of the current estimate and demand
        self.mismatch()

        idx = self.indexer
        step = self._active_solver.solve(self.active_mismatch)
        self.active_increment[:] = step
        self.angle[idx.pvpq] += step

        evaluate_mismatch(
            self.system,
            complex_voltage(self.magnitude, self.angle),
            idx.pvpq[:0],
            idx.pq,
            self.active_mismatch[:0],
            self.reactive_mismatch,
            scale=self.magnitude,
        )
        step = self._reactive_solver.solve(self.reactive_mismatch)
        self.reactive_increment[:] = step
        self.magnitude[idx.pq] += step


def fast_newton_raphson_xb(
    system: PowerSystem, factorization: Union[Factorization, str] = Factorization.LU
) -> FastNewtonRaphson:
    return FastNewtonRaphson(system, factorization, scheme=Scheme.XB)


def fast_newton_raphson_bx(
    system: PowerSystem, factorization: Union[Factorization, str] = Factorization.LU
) -> FastNewtonRaphson:
    return FastNewtonRaphson(system, factorization, scheme=Scheme.BX)
