from __future__ import annotations

import json
import logging

import numpy as np
import pytest

from power_flow.ac import FastNewtonRaphson, GaussSeidel, NewtonRaphson
from power_flow.config import SolverConfig
from power_flow.dc import DCPowerFlow
from power_flow.parsers import load_case
from power_flow.workflows import make_method, run_iterations, solve_ac, solve_dc

# Published MATPOWER solution of case14 (degrees).
CASE14_ANGLE_DEG = [
    0.0, -4.983, -12.725, -10.313, -8.774, -14.221, -13.360,
    -13.360, -14.939, -15.097, -14.791, -15.076, -15.156, -16.034,
]


@pytest.mark.parametrize(
    "method, cls",
    [
        ("newton_raphson", NewtonRaphson),
        ("fast_newton_raphson_xb", FastNewtonRaphson),
        ("fast_newton_raphson_bx", FastNewtonRaphson),
        ("gauss_seidel", GaussSeidel),
    ],
)
def test_make_method(three_bus, method, cls):
    assert isinstance(make_method(three_bus, SolverConfig(method=method)), cls)


def test_make_method_rejects_dc(three_bus):
    with pytest.raises(ValueError):
        make_method(three_bus, SolverConfig(method="dc"))


def test_run_iterations_history(two_bus):
    nr = NewtonRaphson(two_bus)
    converged, iterations, history = run_iterations(nr, tolerance=1e-10, max_iterations=20)
    assert converged
    assert len(history) == iterations + 1
    assert history[0][0] == pytest.approx(0.5)
    assert max(history[-1]) < 1e-10


def test_run_iterations_budget_exhausted(case14_path):
    gs = GaussSeidel(load_case(case14_path))
    converged, iterations, history = run_iterations(gs, tolerance=1e-12, max_iterations=3)
    assert not converged
    assert iterations == 3
    assert len(history) == 4


def test_solve_ac_case14(case14_path):
    system = load_case(case14_path)
    result = solve_ac(system, SolverConfig(tolerance=1e-10))

    assert result.converged
    assert result.rounds == 0
    assert result.slack == 1
    np.testing.assert_allclose(np.rad2deg(result.angle), CASE14_ANGLE_DEG, atol=1e-2)

    payload = result.to_dict(system)
    assert payload["bus"] == list(range(1, 15))
    assert payload["final_mismatch"] == [float(x) for x in result.mismatch[-1]]
    json.dumps(payload)


def test_solve_ac_with_warm_start(case14_path):
    system = load_case(case14_path)
    config = SolverConfig(method="fast_newton_raphson_bx", warm_start_iterations=5, max_iterations=50)
    result = solve_ac(system, config)
    assert result.converged
    np.testing.assert_allclose(np.rad2deg(result.angle), CASE14_ANGLE_DEG, atol=1e-2)


def test_solve_ac_reports_non_convergence(case14_path, caplog):
    system = load_case(case14_path)
    with caplog.at_level(logging.WARNING, logger="power_flow"):
        result = solve_ac(system, SolverConfig(max_iterations=1, tolerance=1e-12))

    assert not result.converged
    assert result.iterations == 1
    assert "did not converge" in caplog.text


def test_solve_ac_round_budget(case14_path):
    system = load_case(case14_path)
    config = SolverConfig(reactive_limits=True, max_reactive_limit_rounds=1)
    result = solve_ac(system, config)
    assert result.rounds == 1
    assert len(result.violations) == 1


def test_solve_ac_rejects_dc(two_bus):
    with pytest.raises(ValueError):
        solve_ac(two_bus, SolverConfig(method="dc"))


def test_solve_dc(two_bus):
    analysis = solve_dc(two_bus, SolverConfig(method="dc", factorization="qr"))
    assert isinstance(analysis, DCPowerFlow)
    assert analysis.angle[1] == pytest.approx(-0.05)
