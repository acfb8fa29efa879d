from __future__ import annotations

import numpy as np
import pytest

from power_flow.ac import NewtonRaphson
from power_flow.parsers import load_case, parse_matpower_case
from power_flow.verification import compare_with_reference, pandapower_reference
from power_flow.workflows import run_iterations


def test_compare_with_reference():
    reference = (np.array([1.0, 0.98]), np.array([0.0, -0.1]))
    deviation = compare_with_reference(
        np.array([1.0, 0.981]), np.array([0.0, -0.1002]), reference
    )
    assert deviation.magnitude == pytest.approx(1e-3)
    assert deviation.angle == pytest.approx(2e-4)
    assert deviation.within(2e-3)
    assert not deviation.within(5e-4)

    with pytest.raises(ValueError):
        compare_with_reference(np.ones(3), np.zeros(3), reference)


def test_newton_raphson_matches_pandapower(case14_path):
    pytest.importorskip("pandapower")

    reference = pandapower_reference(parse_matpower_case(case14_path))

    system = load_case(case14_path)
    nr = NewtonRaphson(system)
    assert run_iterations(nr, tolerance=1e-10, max_iterations=20)[0]

    deviation = compare_with_reference(nr.magnitude, nr.angle, reference)
    assert deviation.within(1e-5), deviation
