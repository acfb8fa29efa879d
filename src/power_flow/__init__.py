"""
power_flow package.

The repository uses a `src/` layout. Library code lives under `src/power_flow`.

Public API
----------
- `PowerSystem`: network model (buses, branches, generators, cached Y/B matrices).
- `load_case`: MATPOWER `.m` case -> `PowerSystem`.
- `NewtonRaphson`, `FastNewtonRaphson`, `GaussSeidel`, `DCPowerFlow`: single-step solvers.
- `solve_ac`, `solve_dc`: caller-side iteration drivers.
"""

from __future__ import annotations

from .ac import FastNewtonRaphson, GaussSeidel, NewtonRaphson, reactive_limits
from .config import SolverConfig
from .dc import DCPowerFlow
from .linalg import Factorization, FactorizationError
from .network import BusType, PowerSystem, SlackBusError
from .parsers import load_case
from .workflows import PowerFlowResult, solve_ac, solve_dc

__all__ = [
    "__version__",
    "BusType",
    "DCPowerFlow",
    "Factorization",
    "FactorizationError",
    "FastNewtonRaphson",
    "GaussSeidel",
    "NewtonRaphson",
    "PowerFlowResult",
    "PowerSystem",
    "SlackBusError",
    "SolverConfig",
    "load_case",
    "reactive_limits",
    "solve_ac",
    "solve_dc",
]

__version__ = "0.1.0"
