from __future__ import annotations

"""
Power injection mismatch shared by the AC methods.

All methods evaluate the exact AC equations

    S = V * conj(Y V),   dP = Re(S) - (Pg - Pd),   dQ = Im(S) - (Qg - Qd)

and report (max |dP|, max |dQ|) over the buses in scope. Only the buffer layout
differs per method, so the helpers write into caller-provided arrays.
"""

import numpy as np
import scipy.sparse as sp

from power_flow.network.model import PowerSystem


def _max_abs(values: np.ndarray) -> float:
    return float(np.max(np.abs(values))) if values.size else 0.0


def complex_voltage(magnitude: np.ndarray, angle: np.ndarray) -> np.ndarray:
    """Rectangular bus voltages from polar arrays."""
    return magnitude * np.exp(1j * angle)


def power_injection(nodal: sp.spmatrix, voltage: np.ndarray) -> np.ndarray:
    """Complex bus injections S = V * conj(Y V)."""
    return voltage * np.conj(nodal @ voltage)


def specified_injection(system: PowerSystem) -> tuple[np.ndarray, np.ndarray]:
    """Specified net injections (Pg - Pd, Qg - Qd) per bus."""
    return (
        system.supply_active - system.bus.demand_active,
        system.supply_reactive - system.bus.demand_reactive,
    )


def evaluate_mismatch(
    system: PowerSystem,
    voltage: np.ndarray,
    angle_buses: np.ndarray,
    magnitude_buses: np.ndarray,
    active_out: np.ndarray,
    reactive_out: np.ndarray,
    *,
    scale: np.ndarray | None = None,
) -> tuple[float, float]:
    """
    Fill mismatch buffers and return their maximum absolute values.

    Parameters
    ----------
    system:
        Network with an assembled AC model.
    voltage:
        Complex bus voltages.
    angle_buses:
        Buses whose active mismatch is evaluated (written to `active_out` in order).
    magnitude_buses:
        Buses whose reactive mismatch is evaluated (written to `reactive_out` in order).
    active_out, reactive_out:
        Preallocated buffers of matching length; overwritten in place.
    scale:
        Optional per-bus divisor (voltage magnitudes for the fast decoupled methods).

    Returns
    -------
    (float, float)
        (max |dP|, max |dQ|) of the values written.
    """
    injection = power_injection(system.ac.nodal, voltage)
    active, reactive = specified_injection(system)

    dp = injection.real[angle_buses] - active[angle_buses]
    dq = injection.imag[magnitude_buses] - reactive[magnitude_buses]
    if scale is not None:
        dp /= scale[angle_buses]
        dq /= scale[magnitude_buses]

    active_out[:] = dp
    reactive_out[:] = dq
    return _max_abs(active_out), _max_abs(reactive_out)
