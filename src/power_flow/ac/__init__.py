"""
AC power flow methods.

Each method exposes `mismatch()` and `solve()`; the caller drives the iterations.
"""

from .analysis import branch_current, branch_power, bus_current, bus_power, generator_power
from .base import ACPowerFlow, initialize_voltage
from .fast_decoupled import (
    FastNewtonRaphson,
    Scheme,
    fast_newton_raphson_bx,
    fast_newton_raphson_xb,
)
from .gauss_seidel import GaussSeidel
from .newton_raphson import NewtonRaphson
from .reactive_limits import adjust_angle, reactive_limits

__all__ = [
    "ACPowerFlow",
    "FastNewtonRaphson",
    "GaussSeidel",
    "NewtonRaphson",
    "Scheme",
    "adjust_angle",
    "branch_current",
    "branch_power",
    "bus_current",
    "bus_power",
    "fast_newton_raphson_bx",
    "fast_newton_raphson_xb",
    "generator_power",
    "initialize_voltage",
    "reactive_limits",
]
