from __future__ import annotations

import logging

import numpy as np
import pytest

from conftest import power_residual
from power_flow.ac import NewtonRaphson
from power_flow.linalg import FactorizationError
from power_flow.network import BusType, PowerSystem, SlackBusError
from power_flow.parsers import load_case
from power_flow.workflows import run_iterations


def _assert_solved(system, method, tol=1e-8):
    residual = power_residual(system, method.magnitude, method.angle)
    idx = method.indexer
    assert np.max(np.abs(residual.real[idx.pvpq])) < tol
    assert np.max(np.abs(residual.imag[idx.pq]), initial=0.0) < tol


def test_two_bus_matches_analytic_equations(two_bus):
    nr = NewtonRaphson(two_bus)
    converged, iterations, history = run_iterations(nr, tolerance=1e-10, max_iterations=10)

    assert converged
    assert 1 <= iterations <= 6
    assert len(history) == iterations + 1

    v2, t2 = nr.magnitude[1], nr.angle[1]
    # Lossless line, x = 0.1: P2 = 10 V2 sin(t2), Q2 = 10 V2^2 - 10 V2 cos(t2).
    assert 10.0 * v2 * np.sin(t2) == pytest.approx(-0.5, abs=1e-9)
    assert 10.0 * v2**2 - 10.0 * v2 * np.cos(t2) == pytest.approx(-0.2, abs=1e-9)
    assert nr.magnitude[0] == 1.0
    assert nr.angle[0] == 0.0


def test_flat_start_without_load_is_already_solved():
    system = PowerSystem()
    system.add_bus(1, type=BusType.SLACK)
    system.add_bus(2, type=BusType.GENERATOR)
    system.add_bus(3)
    system.add_branch(1, 2, resistance=0.01, reactance=0.1)
    system.add_branch(2, 3, resistance=0.02, reactance=0.2)
    system.add_branch(1, 3, resistance=0.03, reactance=0.15)
    system.add_generator(1)
    system.add_generator(2)

    nr = NewtonRaphson(system)
    nr.solve()

    max_p, max_q = nr.mismatch()
    assert max_p < 1e-12 and max_q < 1e-12
    np.testing.assert_allclose(nr.magnitude, 1.0, atol=1e-12)
    np.testing.assert_allclose(nr.angle, 0.0, atol=1e-12)


def test_case14_matches_published_solution(case14_path):
    system = load_case(case14_path)
    published_magnitude = system.bus.magnitude.copy()
    published_angle = system.bus.angle.copy()

    nr = NewtonRaphson(system)
    converged, iterations, _ = run_iterations(nr, tolerance=1e-8, max_iterations=20)

    assert converged and iterations <= 6
    _assert_solved(system, nr)
    np.testing.assert_allclose(nr.magnitude, published_magnitude, atol=2e-3)
    np.testing.assert_allclose(nr.angle, published_angle, atol=np.deg2rad(0.05))


@pytest.mark.parametrize("factorization", ["lu", "qr"])
def test_case14_modified_converges(case14_modified_path, factorization):
    system = load_case(case14_modified_path)
    nr = NewtonRaphson(system, factorization)
    converged, _, _ = run_iterations(nr, tolerance=1e-8, max_iterations=20)

    assert converged
    _assert_solved(system, nr)


def test_jacobian_matches_finite_differences(case14_modified_path):
    system = load_case(case14_modified_path)
    nr = NewtonRaphson(system)
    magnitude = nr.magnitude.copy()
    angle = nr.angle.copy()
    nr.solve()
    jacobian = nr.jacobian.toarray()

    perturbed = NewtonRaphson(system)
    idx = perturbed.indexer
    h = 1e-6
    numeric = np.zeros_like(jacobian)
    for col in range(idx.size):
        columns = []
        for sign in (1.0, -1.0):
            m = magnitude.copy()
            a = angle.copy()
            if col < idx.n_angle:
                a[idx.pvpq[col]] += sign * h
            else:
                m[idx.pq[col - idx.n_angle]] += sign * h
            perturbed.set_voltage(m, a)
            perturbed.mismatch()
            columns.append(perturbed.mismatch_vector.copy())
        numeric[:, col] = (columns[0] - columns[1]) / (2.0 * h)

    np.testing.assert_allclose(jacobian, numeric, rtol=0, atol=1e-6)


def test_step_solves_linearized_system(three_bus):
    nr = NewtonRaphson(three_bus)
    nr.mismatch()
    mismatch = nr.mismatch_vector.copy()
    nr.solve()
    np.testing.assert_allclose(nr.jacobian @ nr.increment, -mismatch, atol=1e-12)


def test_demand_edit_after_mismatch_is_used_by_next_step(two_bus):
    nr = NewtonRaphson(two_bus)
    nr.mismatch()
    two_bus.update_demand(2, active=1.0)
    nr.solve()

    fresh_system = PowerSystem()
    fresh_system.add_bus(1, type=BusType.SLACK)
    fresh_system.add_bus(2, active=1.0, reactive=0.2)
    fresh_system.add_branch(1, 2, reactance=0.1)
    fresh_system.add_generator(1, magnitude=1.0)
    fresh = NewtonRaphson(fresh_system)
    fresh.solve()

    assert fresh.angle[1] == pytest.approx(-0.1, abs=1e-12)
    np.testing.assert_allclose(nr.angle, fresh.angle, atol=1e-12)
    np.testing.assert_allclose(nr.magnitude, fresh.magnitude, atol=1e-12)


@pytest.mark.parametrize("factorization", ["lu", "qr"])
def test_singular_jacobian_propagates_and_keeps_state(two_bus, factorization):
    two_bus.add_bus(3)
    nr = NewtonRaphson(two_bus, factorization)
    magnitude = nr.magnitude.copy()
    angle = nr.angle.copy()

    with pytest.raises(FactorizationError):
        nr.solve()

    np.testing.assert_array_equal(nr.magnitude, magnitude)
    np.testing.assert_array_equal(nr.angle, angle)


def test_bus_added_after_construction_is_rejected(two_bus):
    nr = NewtonRaphson(two_bus)
    two_bus.add_bus(3)
    with pytest.raises(ValueError, match="bus count changed"):
        nr.mismatch()


def test_missing_and_multiple_slack_buses(two_bus):
    two_bus.bus.type[0] = BusType.LOAD
    with pytest.raises(SlackBusError):
        NewtonRaphson(two_bus)

    two_bus.bus.type[:] = BusType.SLACK
    with pytest.raises(SlackBusError):
        NewtonRaphson(two_bus)


def test_voltage_controlled_bus_without_generator_is_demoted(three_bus, caplog):
    three_bus.set_generator_status(1, 0)
    with caplog.at_level(logging.INFO, logger="power_flow"):
        nr = NewtonRaphson(three_bus)

    assert three_bus.bus.type[1] == BusType.LOAD
    assert nr.indexer.pq.tolist() == [1, 2]
    assert "converted to a load bus" in caplog.text


def test_generator_setpoint_overrides_initial_magnitude(three_bus):
    nr = NewtonRaphson(three_bus)
    assert nr.magnitude[0] == pytest.approx(1.02)
    assert nr.magnitude[1] == pytest.approx(1.01)
    assert nr.magnitude[2] == pytest.approx(1.0)
    assert three_bus.bus.magnitude[0] == 1.0


def test_outage_rebuilds_jacobian_pattern(case14_path):
    system = load_case(case14_path)
    nr = NewtonRaphson(system)
    assert run_iterations(nr, tolerance=1e-10, max_iterations=20)[0]

    generation = system.topology_generation
    pattern = system.ac.pattern
    system.set_branch_status(5, 0)
    assert system.topology_generation == generation + 1
    assert system.ac.pattern == pattern + 1

    converged, _, _ = run_iterations(nr, tolerance=1e-10, max_iterations=20)
    assert converged
    assert nr.jacobian.shape == (nr.indexer.size, nr.indexer.size)
    _assert_solved(system, nr)

    reference_system = load_case(case14_path)
    reference_system.set_branch_status(5, 0)
    reference = NewtonRaphson(reference_system)
    assert run_iterations(reference, tolerance=1e-10, max_iterations=20)[0]

    np.testing.assert_allclose(nr.magnitude, reference.magnitude, atol=1e-8)
    np.testing.assert_allclose(nr.angle, reference.angle, atol=1e-8)
