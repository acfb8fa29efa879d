from __future__ import annotations

"""
Gauss-Seidel AC power flow.

Keeps a complex voltage vector next to the polar arrays exposed to callers and
updates one bus at a time, reusing values already updated within the sweep:

- load bus:     V_i += ((P_i - jQ_i) / conj(V_i) - sum_j Y_ij V_j) / Y_ii
- voltage-controlled bus: Q_i is re-estimated from the present voltages, V_i is
  updated the same way and its magnitude is reset to the set-point.

No factorization is involved. Convergence is linear; the method is mostly used
to produce a starting point for Newton-type methods.
"""

import logging
from typing import Union

import numpy as np

from power_flow.ac.base import ACPowerFlow
from power_flow.ac.mismatch import complex_voltage, evaluate_mismatch, specified_injection
from power_flow.linalg.factorization import Factorization
from power_flow.network.model import PowerSystem

logger = logging.getLogger(__name__)


class GaussSeidel(ACPowerFlow):
    """
    Gauss-Seidel method.

    The factorization argument is accepted for interface symmetry and ignored.
    """

    method_name = "Gauss-Seidel"

    def __init__(
        self,
        system: PowerSystem,
        factorization: Union[Factorization, str] = Factorization.LU,
    ) -> None:
        super().__init__(system, factorization)
        self.complex_voltage = complex_voltage(self.magnitude, self.angle)
        self._setpoint = self.magnitude[self.indexer.pv].copy()
        self._active_buffer = np.zeros(self.indexer.n_angle, dtype=float)
        self._reactive_buffer = np.zeros(self.indexer.n_magnitude, dtype=float)
        self._check_diagonal(system.ac.nodal_rows.diagonal())

    def _check_diagonal(self, diagonal: np.ndarray) -> None:
        pvpq = self.indexer.pvpq
        zero = pvpq[diagonal[pvpq] == 0]
        if zero.size:
            labels = [self.system.bus.label[i] for i in zero]
            raise ValueError(
                f"{self.method_name}: zero diagonal admittance at buses {labels}; "
                "isolated buses cannot be updated."
            )

    def _voltage_changed(self) -> None:
        self.complex_voltage[:] = complex_voltage(self.magnitude, self.angle)

    def mismatch(self) -> tuple[float, float]:
        """dP over load and voltage-controlled buses, dQ over load buses."""
        self._check_system()
        idx = self.indexer
        return evaluate_mismatch(
            self.system,
            self.complex_voltage,
            idx.pvpq,
            idx.pq,
            self._active_buffer,
            self._reactive_buffer,
        )

    def solve(self) -> None:
        """
        One sweep over load buses, then voltage-controlled buses.

        Raises
        ------
        ValueError
            If a load or voltage-controlled bus has a zero diagonal admittance
            (no in-service branch or shunt). The estimate is left unchanged.
        """
        self._check_system()
        rows = self.system.ac.nodal_rows
        indptr = rows.indptr
        indices = rows.indices
        data = rows.data
        diagonal = rows.diagonal()
        self._check_diagonal(diagonal)
        active, reactive = specified_injection(self.system)

        voltage = self.complex_voltage
        magnitude = self.magnitude
        angle = self.angle

        for i in self.indexer.pq:
            lo, hi = indptr[i], indptr[i + 1]
            current = (active[i] - 1j * reactive[i]) / np.conj(voltage[i])
            current -= data[lo:hi] @ voltage[indices[lo:hi]]
            voltage[i] += current / diagonal[i]
            magnitude[i] = abs(voltage[i])
            angle[i] = np.angle(voltage[i])

        for k, i in enumerate(self.indexer.pv):
            lo, hi = indptr[i], indptr[i + 1]
            current = data[lo:hi] @ voltage[indices[lo:hi]]
            conj_v = np.conj(voltage[i])
            injection = active[i] + 1j * (conj_v * current).imag
            voltage[i] += (injection / conj_v - current) / diagonal[i]
            voltage[i] *= self._setpoint[k] / abs(voltage[i])
            magnitude[i] = self._setpoint[k]
            angle[i] = np.angle(voltage[i])
