from __future__ import annotations

"""
Reference solutions computed by pandapower on the same MATPOWER case.

The PPC dict is converted with the same converter as `parsers.to_pandapower`;
pandapower keeps the PPC bus order, so results are aligned by position.
"""

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np

from power_flow.parsers.matpower import to_pandapower

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceDeviation:
    """Largest absolute deviations from a reference solution."""

    magnitude: float
    angle: float

    def within(self, tolerance: float) -> bool:
        return self.magnitude <= tolerance and self.angle <= tolerance


def pandapower_reference(
    ppc: dict[str, Any], *, f_hz: float = 50.0, tolerance_mva: float = 1e-9
) -> tuple[np.ndarray, np.ndarray]:
    """
    Solve `ppc` with pandapower's Newton-Raphson power flow.

    Returns
    -------
    (np.ndarray, np.ndarray)
        Bus voltage magnitudes (p.u.) and angles (rad), in PPC bus order.

    Raises
    ------
    RuntimeError
        If pandapower fails to converge.
    """
    import pandapower as pp

    net = to_pandapower(ppc, f_hz=float(f_hz))
    try:
        pp.runpp(
            net,
            algorithm="nr",
            calculate_voltage_angles=True,
            init="flat",
            tolerance_mva=float(tolerance_mva),
            enforce_q_lims=False,
        )
    except Exception as e:
        logger.exception("pandapower reference power flow failed.")
        raise RuntimeError("pandapower reference power flow failed.") from e

    n = int(np.asarray(ppc["bus"]).shape[0])
    res = net.res_bus.sort_index()
    magnitude = res["vm_pu"].to_numpy(dtype=float)[:n]
    angle = np.deg2rad(res["va_degree"].to_numpy(dtype=float)[:n])
    logger.debug("pandapower reference: n=%d buses", n)
    return magnitude, angle


def compare_with_reference(
    magnitude: np.ndarray,
    angle: np.ndarray,
    reference: tuple[np.ndarray, np.ndarray],
) -> ReferenceDeviation:
    """Compare a voltage estimate with `(magnitude, angle)` from a reference solver."""
    ref_magnitude, ref_angle = reference
    magnitude = np.asarray(magnitude, dtype=float)
    angle = np.asarray(angle, dtype=float)
    if magnitude.shape != ref_magnitude.shape or angle.shape != ref_angle.shape:
        raise ValueError(
            f"Shape mismatch: estimate {magnitude.shape} vs reference {ref_magnitude.shape}"
        )
    return ReferenceDeviation(
        magnitude=float(np.max(np.abs(magnitude - ref_magnitude), initial=0.0)),
        angle=float(np.max(np.abs(angle - ref_angle), initial=0.0)),
    )
