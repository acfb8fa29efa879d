from __future__ import annotations

"""
Post-processing of a converged AC voltage estimate.

Sign conventions
----------------
- Bus injection: S = V conj(Y V), positive when power enters the network.
- Bus shunt: power consumed by the shunt element, |V|^2 (G - jB).
- Branch from/to: power entering the branch at that end.
- Branch charging: reactive power produced by the line charging susceptance.
- Branch losses: |I_series|^2 (r + jx).
- Currents: complex values reported as magnitude and angle (rad); branch
  end currents flow into the branch, the series current from the from-end
  (after the transformer) to the to-end.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from power_flow.ac.mismatch import complex_voltage, power_injection
from power_flow.network.model import BusType, PowerSystem

logger = logging.getLogger(__name__)

_SHARING_EPS = 10 * np.finfo(float).eps


class VoltageState(Protocol):
    magnitude: np.ndarray
    angle: np.ndarray


@dataclass(frozen=True)
class BusPower:
    injection_active: np.ndarray
    injection_reactive: np.ndarray
    supply_active: np.ndarray
    supply_reactive: np.ndarray
    shunt_active: np.ndarray
    shunt_reactive: np.ndarray


@dataclass(frozen=True)
class BranchPower:
    from_active: np.ndarray
    from_reactive: np.ndarray
    to_active: np.ndarray
    to_reactive: np.ndarray
    charging: np.ndarray
    loss_active: np.ndarray
    loss_reactive: np.ndarray


@dataclass(frozen=True)
class BusCurrent:
    """Bus injection current I = Y V in polar form."""

    magnitude: np.ndarray
    angle: np.ndarray


@dataclass(frozen=True)
class BranchCurrent:
    from_magnitude: np.ndarray
    from_angle: np.ndarray
    to_magnitude: np.ndarray
    to_angle: np.ndarray
    series_magnitude: np.ndarray
    series_angle: np.ndarray


@dataclass(frozen=True)
class GeneratorPower:
    active: np.ndarray
    reactive: np.ndarray


def bus_power(system: PowerSystem, analysis: VoltageState) -> BusPower:
    """
    Bus injections, supplies and shunt powers.

    Supply at non-load buses is reconstructed from the injection (reactive) and,
    for the slack bus, also the active injection; load buses report the
    scheduled generator output.
    """
    ac = system.ac_model()
    bus = system.bus
    voltage = complex_voltage(analysis.magnitude, analysis.angle)
    injection = power_injection(ac.nodal, voltage)

    shunt = np.abs(voltage) ** 2 * (bus.shunt_conductance - 1j * bus.shunt_susceptance)

    supply_active = system.supply_active.copy()
    supply_reactive = system.supply_reactive.copy()
    regulated = bus.type != BusType.LOAD
    supply_reactive[regulated] = injection.imag[regulated] + bus.demand_reactive[regulated]
    slack = system.slack
    supply_active[slack] = injection.real[slack] + bus.demand_active[slack]

    return BusPower(
        injection_active=injection.real.copy(),
        injection_reactive=injection.imag.copy(),
        supply_active=supply_active,
        supply_reactive=supply_reactive,
        shunt_active=shunt.real.copy(),
        shunt_reactive=shunt.imag.copy(),
    )


def branch_power(system: PowerSystem, analysis: VoltageState) -> BranchPower:
    """Branch end powers, charging and series losses (zeros for out-of-service branches)."""
    ac = system.ac_model()
    br = system.branch
    voltage = complex_voltage(analysis.magnitude, analysis.angle)
    v_from = voltage[br.from_bus]
    v_to = voltage[br.to_bus]
    on = br.status == 1

    s_from = v_from * np.conj(ac.from_from * v_from + ac.from_to * v_to)
    s_to = v_to * np.conj(ac.to_from * v_from + ac.to_to * v_to)

    shifted = ac.transformer_ratio * v_from
    charging = 0.5 * br.susceptance * (np.abs(shifted) ** 2 + np.abs(v_to) ** 2)
    series = np.abs(ac.admittance * (shifted - v_to))

    def _on(values: np.ndarray) -> np.ndarray:
        return np.where(on, values, 0.0)

    return BranchPower(
        from_active=_on(s_from.real),
        from_reactive=_on(s_from.imag),
        to_active=_on(s_to.real),
        to_reactive=_on(s_to.imag),
        charging=_on(charging),
        loss_active=_on(series**2 * br.resistance),
        loss_reactive=_on(series**2 * br.reactance),
    )


def bus_current(system: PowerSystem, analysis: VoltageState) -> BusCurrent:
    """Magnitude and angle of the current injected into the network at each bus."""
    ac = system.ac_model()
    voltage = complex_voltage(analysis.magnitude, analysis.angle)
    current = ac.nodal @ voltage
    return BusCurrent(magnitude=np.abs(current), angle=np.angle(current))


def branch_current(system: PowerSystem, analysis: VoltageState) -> BranchCurrent:
    """
    From-end, to-end and series currents of every branch.

    The end currents include the charging of that half of the π-model; the
    series current is the one through r + jx. Out-of-service branches report zeros.
    """
    ac = system.ac_model()
    br = system.branch
    voltage = complex_voltage(analysis.magnitude, analysis.angle)
    v_from = voltage[br.from_bus]
    v_to = voltage[br.to_bus]
    on = br.status == 1

    i_from = np.where(on, ac.from_from * v_from + ac.from_to * v_to, 0.0)
    i_to = np.where(on, ac.to_from * v_from + ac.to_to * v_to, 0.0)
    i_series = np.where(on, ac.admittance * (ac.transformer_ratio * v_from - v_to), 0.0)

    return BranchCurrent(
        from_magnitude=np.abs(i_from),
        from_angle=np.angle(i_from),
        to_magnitude=np.abs(i_to),
        to_angle=np.angle(i_to),
        series_magnitude=np.abs(i_series),
        series_angle=np.angle(i_series),
    )


def generator_power(system: PowerSystem, analysis: VoltageState) -> GeneratorPower:
    """
    Active and reactive output of every generator (zeros for out-of-service units).

    The reactive supply of a bus is split between its generators in proportion to
    their reactive capability; infinite limits are replaced by a bound large enough
    not to bind. On the slack bus the first generator takes the active balance.
    """
    ac = system.ac_model()
    bus = system.bus
    gen = system.generator
    voltage = complex_voltage(analysis.magnitude, analysis.angle)
    injection = power_injection(ac.nodal, voltage)
    slack = system.slack

    n_gen = system.generator_count
    active = np.zeros(n_gen, dtype=float)
    reactive = np.zeros(n_gen, dtype=float)
    on = gen.status == 1
    in_service = np.bincount(gen.bus[on], minlength=system.bus_count)
    bus_reactive = injection.imag + bus.demand_reactive

    if np.any(in_service > 1):
        q_min = gen.min_reactive.copy()
        q_max = gen.max_reactive.copy()
        finite_min = np.where(on & np.isfinite(q_min), q_min, 0.0)
        finite_max = np.where(on & np.isfinite(q_max), q_max, 0.0)
        total_min = np.bincount(gen.bus, weights=finite_min, minlength=system.bus_count)
        total_max = np.bincount(gen.bus, weights=finite_max, minlength=system.bus_count)
        bound = np.abs(bus_reactive) + np.abs(total_min) + np.abs(total_max)

        for i in np.flatnonzero(on):
            j = gen.bus[i]
            if np.isinf(q_min[i]):
                q_min[i] = np.sign(q_min[i]) * bound[j]
                total_min[j] += q_min[i]
            if np.isinf(q_max[i]):
                q_max[i] = np.sign(q_max[i]) * bound[j]
                total_max[j] += q_max[i]

        for i in np.flatnonzero(on):
            j = gen.bus[i]
            span = total_max[j] - total_min[j]
            if abs(span) * system.base_mva > _SHARING_EPS:
                reactive[i] = q_min[i] + (bus_reactive[j] - total_min[j]) / span * (q_max[i] - q_min[i])
            else:
                reactive[i] = q_min[i] + (bus_reactive[j] - total_min[j]) / in_service[j]
    else:
        reactive[on] = bus_reactive[gen.bus[on]]

    active[on] = gen.active[on]
    slack_generators = system.generators_at(slack)
    if slack_generators:
        first = slack_generators[0]
        others = sum(float(gen.active[k]) for k in slack_generators[1:])
        active[first] = injection.real[slack] + bus.demand_active[slack] - others

    return GeneratorPower(active=active, reactive=reactive)
