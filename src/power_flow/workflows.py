from __future__ import annotations

"""
High-level workflows (library API).

The engine primitives never loop; this module owns the iteration loops used by
the CLI and by callers that just want a converged solution.

Public API
----------
- make_method(system, config)
- run_iterations(method, tolerance, max_iterations)
- solve_ac(system, config) -> PowerFlowResult
- solve_dc(system, config) -> DCPowerFlow
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Hashable, Optional

import numpy as np

from power_flow.ac.base import ACPowerFlow
from power_flow.ac.fast_decoupled import fast_newton_raphson_bx, fast_newton_raphson_xb
from power_flow.ac.gauss_seidel import GaussSeidel
from power_flow.ac.newton_raphson import NewtonRaphson
from power_flow.ac.reactive_limits import adjust_angle, reactive_limits
from power_flow.config import DEFAULT_SOLVER, SolverConfig
from power_flow.dc.dc_power_flow import DCPowerFlow
from power_flow.network.model import BusType, PowerSystem

logger = logging.getLogger(__name__)

_METHOD_FACTORIES = {
    "newton_raphson": NewtonRaphson,
    "fast_newton_raphson_xb": fast_newton_raphson_xb,
    "fast_newton_raphson_bx": fast_newton_raphson_bx,
    "gauss_seidel": GaussSeidel,
}


@dataclass
class PowerFlowResult:
    """
    Outcome of `solve_ac`.

    Attributes
    ----------
    method:
        Method key (see `config.AC_METHODS`).
    converged:
        Whether the last solve reached the tolerance.
    iterations:
        Iterations of the last solve (warm-start sweeps excluded).
    mismatch:
        (max |dP|, max |dQ|) per evaluation of the last solve.
    violations:
        Per-round reactive-limit flags (one array per reclassification round).
    rounds:
        Number of reclassification rounds performed.
    magnitude, angle:
        Final voltage estimate.
    slack:
        Label of the slack bus used for the final solve.
    """

    method: str
    converged: bool
    iterations: int
    mismatch: list[tuple[float, float]] = field(default_factory=list)
    violations: list[np.ndarray] = field(default_factory=list)
    rounds: int = 0
    magnitude: np.ndarray = field(default_factory=lambda: np.zeros(0))
    angle: np.ndarray = field(default_factory=lambda: np.zeros(0))
    slack: Optional[Hashable] = None
    compute_time_sec: float = 0.0

    def to_dict(self, system: Optional[PowerSystem] = None) -> dict[str, Any]:
        """JSON-friendly view; bus labels are included when `system` is given."""
        out: dict[str, Any] = {
            "method": str(self.method),
            "converged": bool(self.converged),
            "iterations": int(self.iterations),
            "final_mismatch": [float(x) for x in self.mismatch[-1]] if self.mismatch else None,
            "rounds": int(self.rounds),
            "violations": [[int(v) for v in arr] for arr in self.violations],
            "slack": self.slack if isinstance(self.slack, (int, str)) else str(self.slack),
            "compute_time_sec": float(self.compute_time_sec),
            "magnitude": [float(x) for x in self.magnitude],
            "angle_deg": [float(x) for x in np.rad2deg(self.angle)],
        }
        if system is not None:
            out["bus"] = [b if isinstance(b, (int, str)) else str(b) for b in system.bus.label]
        return out


def make_method(
    system: PowerSystem, config: SolverConfig = DEFAULT_SOLVER
) -> ACPowerFlow:
    """Construct the AC method named by `config.method`."""
    try:
        factory = _METHOD_FACTORIES[config.method]
    except KeyError:
        raise ValueError(
            f"{config.method!r} is not an AC method; expected one of {tuple(_METHOD_FACTORIES)}"
        ) from None
    return factory(system, config.factorization)


def run_iterations(
    method: ACPowerFlow, *, tolerance: float, max_iterations: int
) -> tuple[bool, int, list[tuple[float, float]]]:
    """
    Drive `method` until both maxima drop below `tolerance` or the budget is spent.

    Returns
    -------
    (bool, int, list)
        (converged, iterations performed, mismatch history).
    """
    history: list[tuple[float, float]] = []
    for iteration in range(int(max_iterations) + 1):
        max_p, max_q = method.mismatch()
        history.append((float(max_p), float(max_q)))
        logger.debug(
            "%s iteration %d: max|dP|=%.3e, max|dQ|=%.3e",
            method.method_name,
            iteration,
            max_p,
            max_q,
        )
        if max_p < tolerance and max_q < tolerance:
            return True, iteration, history
        if iteration == max_iterations:
            break
        method.solve()
    return False, int(max_iterations), history


def _warm_start(system: PowerSystem, method: ACPowerFlow, config: SolverConfig) -> None:
    sweeps = int(config.warm_start_iterations)
    if sweeps <= 0 or isinstance(method, GaussSeidel):
        return
    starter = GaussSeidel(system)
    starter.set_voltage(method.magnitude, method.angle)
    converged, done, _ = run_iterations(
        starter, tolerance=config.tolerance, max_iterations=sweeps
    )
    logger.debug("Gauss-Seidel warm start: sweeps=%d, converged=%s", done, converged)
    method.set_voltage(starter.magnitude, starter.angle)


def solve_ac(
    system: PowerSystem, config: SolverConfig = DEFAULT_SOLVER
) -> PowerFlowResult:
    """
    Solve the AC power flow, optionally enforcing generator reactive limits.

    With `config.reactive_limits`, every converged solve is followed by a limit
    check; after a reclassification a new method instance is built (starting from
    the previous solution at load buses) and solved again, up to
    `config.max_reactive_limit_rounds` rounds. Angles are finally re-referenced to
    the original slack bus if the slack moved.

    Raises
    ------
    SlackBusError
        Missing/multiple slack buses, or no bus left to take over as slack.
    FactorizationError
        Singular Jacobian or decoupled matrix.
    """
    if config.method == "dc":
        raise ValueError("solve_ac() does not handle method='dc'; use solve_dc().")

    time_start = time.perf_counter()
    original_slack = system.bus.label[system.check_slack()]
    result = PowerFlowResult(method=config.method, converged=False, iterations=0)

    previous: Optional[ACPowerFlow] = None
    while True:
        method = make_method(system, config)
        if previous is not None:
            load = system.bus.type == BusType.LOAD
            magnitude = np.where(load, previous.magnitude, method.magnitude)
            method.set_voltage(magnitude, previous.angle)
        else:
            _warm_start(system, method, config)

        converged, iterations, history = run_iterations(
            method, tolerance=config.tolerance, max_iterations=config.iteration_budget
        )
        result.converged = converged
        result.iterations = iterations
        result.mismatch = history
        previous = method

        if not converged:
            logger.warning(
                "%s did not converge within %d iterations (max|dP|=%.3e, max|dQ|=%.3e).",
                method.method_name,
                iterations,
                history[-1][0],
                history[-1][1],
            )
        if not (config.reactive_limits and converged):
            break
        if result.rounds >= config.max_reactive_limit_rounds:
            logger.warning(
                "Reactive limits: stopping after %d rounds.", config.max_reactive_limit_rounds
            )
            break

        violate = reactive_limits(system, method)
        if not np.any(violate):
            break
        result.violations.append(violate)
        result.rounds += 1
        logger.info(
            "Reactive limits round %d: %d generator(s) clamped; re-solving.",
            result.rounds,
            int(np.count_nonzero(violate)),
        )

    slack = system.bus.label[system.slack]
    if slack != original_slack:
        adjust_angle(system, previous, original_slack)

    result.magnitude = previous.magnitude.copy()
    result.angle = previous.angle.copy()
    result.slack = slack
    result.compute_time_sec = float(time.perf_counter() - time_start)
    logger.info(
        "%s: converged=%s, iterations=%d, rounds=%d (%.3f sec)",
        previous.method_name,
        result.converged,
        result.iterations,
        result.rounds,
        result.compute_time_sec,
    )
    return result


def solve_dc(
    system: PowerSystem, config: SolverConfig = DEFAULT_SOLVER
) -> DCPowerFlow:
    """Build a `DCPowerFlow` with `config.factorization` and solve it once."""
    analysis = DCPowerFlow(system, config.factorization)
    analysis.solve()
    logger.info(
        "DC power flow solved: n=%d, slack=%s", system.bus_count, system.bus.label[system.slack]
    )
    return analysis
