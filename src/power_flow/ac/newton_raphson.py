from __future__ import annotations

"""
Full Newton-Raphson AC power flow.

State vector: angles of all non-slack buses followed by magnitudes of load buses.
The Jacobian keeps a fixed sparsity pattern derived from Y:

    J = [ dP/dtheta  dP/dVm ]   rows: pvpq | pq
        [ dQ/dtheta  dQ/dVm ]   cols: pvpq | pq

Its values are scattered from the per-entry derivatives of S = V conj(Y V),
which share the structure of Y (diagonal always stored). While the network's
`ac.pattern` token is unchanged the factorization is refactorized numerically;
otherwise the pattern and scatter map are rebuilt and fully factorized.
"""

import logging
from typing import Union

import numpy as np
import scipy.sparse as sp

from power_flow.ac.base import ACPowerFlow
from power_flow.ac.mismatch import complex_voltage, evaluate_mismatch
from power_flow.linalg.factorization import Factorization, make_solver
from power_flow.network.model import PowerSystem

logger = logging.getLogger(__name__)


class NewtonRaphson(ACPowerFlow):
    """
    Newton-Raphson method.

    Attributes
    ----------
    jacobian:
        CSC Jacobian of size (n + n_load - 1); values from the last `solve()`.
    mismatch_vector:
        [dP(pvpq), dQ(pq)] from the last `mismatch()` call.
    increment:
        Last state increment applied by `solve()`.
    """

    method_name = "Newton-Raphson"

    def __init__(
        self,
        system: PowerSystem,
        factorization: Union[Factorization, str] = Factorization.LU,
    ) -> None:
        super().__init__(system, factorization)
        size = self.indexer.size
        self.mismatch_vector = np.zeros(size, dtype=float)
        self.increment = np.zeros(size, dtype=float)
        self._solver = make_solver(self.factorization)
        self._build_pattern()

    def _build_pattern(self) -> None:
        """Jacobian structure and scatter map for the current Y structure."""
        nodal = self.system.ac.nodal
        idx = self.indexer
        n_angle = idx.n_angle

        rows = nodal.indices.astype(int)
        cols = np.repeat(np.arange(nodal.shape[1]), np.diff(nodal.indptr))
        row_angle = idx.pvpq_position[rows]
        col_angle = idx.pvpq_position[cols]
        row_magnitude = idx.pq_position[rows]
        col_magnitude = idx.pq_position[cols]

        # Block selectors over Y entries (CSC data order).
        self._p_theta = np.flatnonzero((row_angle >= 0) & (col_angle >= 0))
        self._q_theta = np.flatnonzero((row_magnitude >= 0) & (col_angle >= 0))
        self._p_vm = np.flatnonzero((row_angle >= 0) & (col_magnitude >= 0))
        self._q_vm = np.flatnonzero((row_magnitude >= 0) & (col_magnitude >= 0))

        j_rows = np.concatenate(
            [
                row_angle[self._p_theta],
                n_angle + row_magnitude[self._q_theta],
                row_angle[self._p_vm],
                n_angle + row_magnitude[self._q_vm],
            ]
        )
        j_cols = np.concatenate(
            [
                col_angle[self._p_theta],
                col_angle[self._q_theta],
                n_angle + col_magnitude[self._p_vm],
                n_angle + col_magnitude[self._q_vm],
            ]
        )

        size = idx.size
        entries = j_rows.size
        marker = np.arange(1, entries + 1, dtype=float)
        jacobian = sp.coo_matrix((marker, (j_rows, j_cols)), shape=(size, size)).tocsc()
        jacobian.sort_indices()

        # jacobian.data[k] = values[order[k]]
        self._order = jacobian.data.astype(int) - 1
        self._y_rows = rows
        self._y_cols = cols
        self._diagonal = np.flatnonzero(rows == cols)
        jacobian.data = np.zeros(entries, dtype=float)
        self.jacobian = jacobian
        self._pattern_token = self.system.ac.pattern

        logger.debug(
            "Jacobian pattern: size=%d, nnz=%d, pattern=%d", size, entries, self._pattern_token
        )

    def _fill_jacobian(self) -> None:
        nodal = self.system.ac.nodal
        rows = self._y_rows
        cols = self._y_cols
        diagonal = self._diagonal

        voltage = complex_voltage(self.magnitude, self.angle)
        unit = np.exp(1j * self.angle)
        current = nodal @ voltage
        y = nodal.data

        d_angle = -1j * voltage[rows] * np.conj(y * voltage[cols])
        d_magnitude = voltage[rows] * np.conj(y * unit[cols])
        d_angle[diagonal] += 1j * voltage[rows[diagonal]] * np.conj(current[rows[diagonal]])
        d_magnitude[diagonal] += np.conj(current[rows[diagonal]]) * unit[rows[diagonal]]

        values = np.concatenate(
            [
                d_angle.real[self._p_theta],
                d_angle.imag[self._q_theta],
                d_magnitude.real[self._p_vm],
                d_magnitude.imag[self._q_vm],
            ]
        )
        self.jacobian.data[:] = values[self._order]

    def mismatch(self) -> tuple[float, float]:
        self._check_system()
        idx = self.indexer
        n_angle = idx.n_angle
        result = evaluate_mismatch(
            self.system,
            complex_voltage(self.magnitude, self.angle),
            idx.pvpq,
            idx.pq,
            self.mismatch_vector[:n_angle],
            self.mismatch_vector[n_angle:],
        )
        return result

    def solve(self) -> None:
        """
        One Newton step: J dx = -mismatch, theta[pvpq] += dx_theta, Vm[pq] += dx_Vm.

        Raises
        ------
        FactorizationError
            If the Jacobian is singular. The voltage estimate is left unchanged.
        """
        self._check_system()
        # step from the residual of the current estimate and demand
        self.mismatch()

        pattern = self.system.ac.pattern
        if pattern != self._pattern_token:
            logger.debug(
                "Y pattern changed (%d -> %d); rebuilding Jacobian pattern.",
                self._pattern_token,
                pattern,
            )
            self._build_pattern()

        self._fill_jacobian()
        if self._solver.pattern != pattern:
            self._solver.factorize(self.jacobian, pattern=pattern)
        else:
            self._solver.refactorize(self.jacobian)

        step = self._solver.solve(-self.mismatch_vector)

        idx = self.indexer
        self.increment[:] = step
        self.angle[idx.pvpq] += step[: idx.n_angle]
        self.magnitude[idx.pq] += step[idx.n_angle :]
