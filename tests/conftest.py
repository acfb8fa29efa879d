from __future__ import annotations

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure `src/` is importable when tests are run without installing the package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if SRC.is_dir() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from power_flow.network.model import BusType, PowerSystem  # noqa: E402

DATA_DIR = Path(__file__).resolve().parent / "data"


@pytest.fixture(autouse=True)
def _restore_project_loggers():
    """Undo `setup_logging` side effects so caplog keeps seeing project records."""
    names = ("", "power_flow", "power_flow.fileonly")
    saved = {
        name: (lg.level, lg.propagate, list(lg.handlers))
        for name, lg in ((n, logging.getLogger(n)) for n in names)
    }
    yield
    for name, (level, propagate, handlers) in saved.items():
        lg = logging.getLogger(name)
        for h in lg.handlers:
            if h not in handlers:
                h.close()
        lg.handlers[:] = handlers
        lg.setLevel(level)
        lg.propagate = propagate


@pytest.fixture
def case14_path() -> Path:
    """Standard MATPOWER IEEE 14-bus case (stored solution in Vm/Va columns)."""
    return DATA_DIR / "case14.m"


@pytest.fixture
def case14_modified_path() -> Path:
    """IEEE 14-bus variant with phase shifters, outages, multiple and infinite-limit generators."""
    return DATA_DIR / "case14_modified.m"


@pytest.fixture
def two_bus() -> PowerSystem:
    """Slack (V=1, theta=0) feeding a 0.5 + j0.2 p.u. load through x=0.1."""
    system = PowerSystem(base_mva=100.0)
    system.add_bus(1, type=BusType.SLACK)
    system.add_bus(2, active=0.5, reactive=0.2)
    system.add_branch(1, 2, reactance=0.1)
    system.add_generator(1, magnitude=1.0)
    return system


@pytest.fixture
def three_bus() -> PowerSystem:
    """Meshed slack / voltage-controlled / load network with charging and a shunt."""
    system = PowerSystem(base_mva=100.0)
    system.add_bus(1, type=BusType.SLACK)
    system.add_bus(2, type=BusType.GENERATOR)
    system.add_bus(3, active=0.9, reactive=0.3, susceptance=0.05)
    system.add_branch(1, 2, resistance=0.02, reactance=0.06, susceptance=0.03)
    system.add_branch(1, 3, resistance=0.08, reactance=0.24, susceptance=0.025)
    system.add_branch(2, 3, resistance=0.06, reactance=0.18, susceptance=0.02)
    system.add_generator(1, magnitude=1.02)
    system.add_generator(2, active=0.4, magnitude=1.01)
    return system


def dense_admittance(system: PowerSystem) -> np.ndarray:
    """Nodal admittance matrix assembled branch by branch with dense numpy."""
    n = system.bus_count
    Y = np.zeros((n, n), dtype=complex)
    br = system.branch
    for k in range(system.branch_count):
        if br.status[k] == 0:
            continue
        f = int(br.from_bus[k])
        t = int(br.to_bus[k])
        ys = 1.0 / complex(br.resistance[k], br.reactance[k])
        ysh = complex(br.conductance[k], br.susceptance[k]) / 2.0
        tap = br.turns_ratio[k] * np.exp(1j * br.shift_angle[k])
        Y[f, f] += (ys + ysh) / abs(tap) ** 2
        Y[t, t] += ys + ysh
        Y[f, t] += -ys / np.conj(tap)
        Y[t, f] += -ys / tap
    Y[np.diag_indices(n)] += system.bus.shunt_conductance + 1j * system.bus.shunt_susceptance
    return Y


def power_residual(system: PowerSystem, magnitude: np.ndarray, angle: np.ndarray) -> np.ndarray:
    """Complex residual S_calc - S_scheduled at every bus, computed with dense numpy."""
    V = magnitude * np.exp(1j * angle)
    S = V * np.conj(dense_admittance(system) @ V)
    scheduled = (system.supply_active - system.bus.demand_active) + 1j * (
        system.supply_reactive - system.bus.demand_reactive
    )
    return S - scheduled
