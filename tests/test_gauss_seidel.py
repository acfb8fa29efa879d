from __future__ import annotations

import numpy as np
import pytest

from conftest import power_residual
from power_flow.ac import GaussSeidel, NewtonRaphson
from power_flow.workflows import run_iterations


def test_two_bus_agrees_with_newton_raphson(two_bus):
    gs = GaussSeidel(two_bus)
    converged, iterations, _ = run_iterations(gs, tolerance=1e-11, max_iterations=1000)
    assert converged
    assert iterations > 1

    nr = NewtonRaphson(two_bus)
    assert run_iterations(nr, tolerance=1e-11, max_iterations=20)[0]

    assert gs.magnitude[1] == pytest.approx(nr.magnitude[1], abs=1e-8)
    assert gs.angle[1] == pytest.approx(nr.angle[1], abs=1e-8)


def test_voltage_controlled_bus_holds_setpoint(three_bus):
    gs = GaussSeidel(three_bus)
    for _ in range(5):
        gs.solve()
        assert gs.magnitude[1] == pytest.approx(1.01, abs=1e-14)
        assert abs(gs.complex_voltage[1]) == pytest.approx(1.01, abs=1e-12)

    converged, _, _ = run_iterations(gs, tolerance=1e-9, max_iterations=1000)
    assert converged
    residual = power_residual(three_bus, gs.magnitude, gs.angle)
    assert np.max(np.abs(residual.real[1:])) < 1e-8
    assert abs(residual.imag[2]) < 1e-8


def test_polar_and_rectangular_states_stay_in_sync(three_bus):
    gs = GaussSeidel(three_bus)
    gs.solve()
    np.testing.assert_allclose(
        gs.complex_voltage, gs.magnitude * np.exp(1j * gs.angle), atol=1e-14
    )

    gs.set_voltage(np.array([1.02, 1.01, 0.97]), np.array([0.0, -0.02, -0.05]))
    np.testing.assert_allclose(
        gs.complex_voltage, gs.magnitude * np.exp(1j * gs.angle), atol=1e-14
    )
    assert gs.magnitude[2] == 0.97


def test_mismatch_scope(three_bus):
    gs = GaussSeidel(three_bus)
    max_p, max_q = gs.mismatch()
    residual = power_residual(three_bus, gs.magnitude, gs.angle)
    assert max_p == pytest.approx(np.max(np.abs(residual.real[1:])), abs=1e-12)
    assert max_q == pytest.approx(abs(residual.imag[2]), abs=1e-12)


def test_set_voltage_rejects_wrong_shape(three_bus):
    gs = GaussSeidel(three_bus)
    with pytest.raises(ValueError):
        gs.set_voltage(magnitude=np.ones(2))


def test_isolated_load_bus_is_rejected_at_construction(two_bus):
    two_bus.add_bus(3, active=0.1)
    with pytest.raises(ValueError, match=r"zero diagonal admittance at buses \[3\]"):
        GaussSeidel(two_bus)


def test_bus_isolated_by_outage_is_rejected_without_touching_state(three_bus):
    gs = GaussSeidel(three_bus)
    gs.solve()
    magnitude = gs.magnitude.copy()
    angle = gs.angle.copy()

    three_bus.set_branch_status(0, 0)
    three_bus.set_branch_status(2, 0)
    with pytest.raises(ValueError, match="zero diagonal admittance"):
        gs.solve()

    np.testing.assert_array_equal(gs.magnitude, magnitude)
    np.testing.assert_array_equal(gs.angle, angle)
    assert np.all(np.isfinite(gs.complex_voltage))
