from __future__ import annotations

"""
Generator reactive power limits and slack bus hand-off.

Run after an AC method has converged. A violation turns the generator bus into
a load bus with the generator's reactive output fixed at the violated limit.
Because bus types change, the caller must build a new method instance and
solve again; `adjust_angle` then re-references the angles to the original slack.
"""

import logging
from typing import Hashable

import numpy as np

from power_flow.ac.analysis import VoltageState, generator_power
from power_flow.network.model import BusType, PowerSystem, SlackBusError

logger = logging.getLogger(__name__)


def reactive_limits(system: PowerSystem, analysis: VoltageState) -> np.ndarray:
    """
    Check generator reactive outputs against their limits and reclassify buses.

    Updates generator active/reactive outputs from the solution, clamps violating
    generators to their limit and converts their (non-load) bus to a load bus. If
    the slack bus is converted, the first voltage-controlled bus becomes slack.

    Parameters
    ----------
    system:
        Network; generator outputs and bus types are modified in place.
    analysis:
        Object with `magnitude` and `angle` arrays (a converged AC method).

    Returns
    -------
    np.ndarray
        Per-generator flags: -1 minimum violated, +1 maximum violated, 0 otherwise.

    Raises
    ------
    SlackBusError
        If the slack bus was converted and no voltage-controlled bus can replace it.
        Generator outputs and bus types are left unchanged in that case.
    """
    magnitude = np.asarray(analysis.magnitude, dtype=float)
    if not np.all(np.isfinite(magnitude)):
        raise ValueError("Voltage magnitudes are not finite; solve the power flow first.")

    gen = system.generator
    bus = system.bus
    output = generator_power(system, analysis)
    on = gen.status == 1
    violate = np.zeros(system.generator_count, dtype=int)

    # Work on copies; the system is only written once the new slack is known.
    types = bus.type.copy()
    reactive = gen.reactive.copy()
    reactive[on] = output.reactive[on]

    slack = system.slack
    for i in np.flatnonzero(on):
        q_min = float(gen.min_reactive[i])
        q_max = float(gen.max_reactive[i])
        if not q_min < q_max:
            continue

        j = int(gen.bus[i])
        below = output.reactive[i] < q_min
        above = output.reactive[i] > q_max
        if types[j] == BusType.LOAD or not (below or above):
            continue

        violate[i] = -1 if below else 1
        reactive[i] = q_min if below else q_max
        types[j] = BusType.LOAD
        logger.debug(
            "Generator %s at bus %s: Q=%.6g outside [%.6g, %.6g]; bus converted to load.",
            gen.label[i],
            bus.label[j],
            float(output.reactive[i]),
            q_min,
            q_max,
        )

        if j == slack:
            candidates = np.flatnonzero(types == BusType.GENERATOR)
            if candidates.size:
                k = int(candidates[0])
                types[k] = BusType.SLACK
                slack = k
                logger.info(
                    "Slack bus %s is converted to a load bus; bus %s is the new slack bus.",
                    bus.label[j],
                    bus.label[k],
                )

    if types[slack] != BusType.SLACK:
        raise SlackBusError(
            "The slack bus violated its reactive limits and no generator bus is left "
            "to become the new slack bus."
        )

    gen.active[on] = output.active[on]
    gen.reactive[:] = reactive
    bus.type[:] = types

    if np.any(violate):
        logger.debug("Reactive limit violations: %d generator(s)", int(np.count_nonzero(violate)))
    return violate


def adjust_angle(system: PowerSystem, analysis: VoltageState, slack: Hashable) -> None:
    """
    Shift all angles so that bus `slack` (label) keeps its initial angle.

    Used after a slack hand-off to express the solution relative to the original
    slack bus.
    """
    index = system.bus_position(slack)
    shift = float(system.bus.angle[index] - analysis.angle[index])
    set_voltage = getattr(analysis, "set_voltage", None)
    if set_voltage is not None:
        set_voltage(angle=analysis.angle + shift)
    else:
        analysis.angle += shift
