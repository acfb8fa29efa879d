from __future__ import annotations

"""
Network model consumed by the power flow methods.

The `PowerSystem` container keeps bus, branch and generator data in per-unit,
array-backed records and owns the nodal matrices derived from them:

- `ac`: complex nodal admittance matrix Y (CSC) + its CSR row view,
- `dc`: real nodal susceptance matrix B (CSC) + phase-shifter injections.

Both models carry two integer counters:

- `model`: incremented whenever the matrix is regenerated (any branch edit),
- `pattern`: incremented only when the stored nonzero structure changes.

Methods compare these counters against the values they saw when they last
factorized to decide between a numeric refactorization and a full rebuild.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Hashable, Optional

import numpy as np
import scipy.sparse as sp

logger = logging.getLogger(__name__)

_IMPEDANCE_EPS = 1e-12


class BusType(IntEnum):
    """Bus classification (MATPOWER codes)."""

    LOAD = 1
    GENERATOR = 2
    SLACK = 3


class SlackBusError(ValueError):
    """Raised when the network does not have exactly one usable slack bus."""


def _empty(dtype: Any = float) -> np.ndarray:
    return np.zeros(0, dtype=dtype)


@dataclass
class BusData:
    """Per-bus arrays (positions 0..n-1). Demand and shunt in p.u., angle in rad."""

    label: list[Hashable] = field(default_factory=list)
    type: np.ndarray = field(default_factory=lambda: _empty(int))
    demand_active: np.ndarray = field(default_factory=_empty)
    demand_reactive: np.ndarray = field(default_factory=_empty)
    shunt_conductance: np.ndarray = field(default_factory=_empty)
    shunt_susceptance: np.ndarray = field(default_factory=_empty)
    magnitude: np.ndarray = field(default_factory=_empty)
    angle: np.ndarray = field(default_factory=_empty)


@dataclass
class BranchData:
    """Per-branch arrays; `from_bus`/`to_bus` hold bus positions."""

    label: list[Hashable] = field(default_factory=list)
    from_bus: np.ndarray = field(default_factory=lambda: _empty(int))
    to_bus: np.ndarray = field(default_factory=lambda: _empty(int))
    resistance: np.ndarray = field(default_factory=_empty)
    reactance: np.ndarray = field(default_factory=_empty)
    susceptance: np.ndarray = field(default_factory=_empty)
    conductance: np.ndarray = field(default_factory=_empty)
    turns_ratio: np.ndarray = field(default_factory=_empty)
    shift_angle: np.ndarray = field(default_factory=_empty)
    status: np.ndarray = field(default_factory=lambda: _empty(int))


@dataclass
class GeneratorData:
    """Per-generator arrays; `bus` holds bus positions, `magnitude` the voltage set-point."""

    label: list[Hashable] = field(default_factory=list)
    bus: np.ndarray = field(default_factory=lambda: _empty(int))
    active: np.ndarray = field(default_factory=_empty)
    reactive: np.ndarray = field(default_factory=_empty)
    magnitude: np.ndarray = field(default_factory=_empty)
    min_reactive: np.ndarray = field(default_factory=_empty)
    max_reactive: np.ndarray = field(default_factory=_empty)
    status: np.ndarray = field(default_factory=lambda: _empty(int))


@dataclass
class ACModel:
    """AC nodal model. `nodal` is None until first assembled."""

    nodal: Optional[sp.csc_matrix] = None
    nodal_rows: Optional[sp.csr_matrix] = None
    admittance: np.ndarray = field(default_factory=lambda: _empty(complex))
    transformer_ratio: np.ndarray = field(default_factory=lambda: _empty(complex))
    from_from: np.ndarray = field(default_factory=lambda: _empty(complex))
    from_to: np.ndarray = field(default_factory=lambda: _empty(complex))
    to_from: np.ndarray = field(default_factory=lambda: _empty(complex))
    to_to: np.ndarray = field(default_factory=lambda: _empty(complex))
    model: int = 0
    pattern: int = 0


@dataclass
class DCModel:
    """DC nodal model. `nodal` is None until first assembled."""

    nodal: Optional[sp.csc_matrix] = None
    admittance: np.ndarray = field(default_factory=_empty)
    shift_power: np.ndarray = field(default_factory=_empty)
    model: int = 0
    pattern: int = 0


def _same_structure(a: Optional[sp.spmatrix], b: sp.spmatrix) -> bool:
    """Return True if two compressed matrices store exactly the same positions."""
    if a is None or a.shape != b.shape:
        return False
    return bool(
        np.array_equal(a.indptr, b.indptr) and np.array_equal(a.indices, b.indices)
    )


def _assemble(
    n: int,
    diagonal: np.ndarray,
    from_bus: np.ndarray,
    to_bus: np.ndarray,
    from_to: np.ndarray,
    to_from: np.ndarray,
) -> sp.csc_matrix:
    """Assemble a nodal matrix in canonical CSC form. Diagonal entries are always stored."""
    bus_index = np.arange(n, dtype=int)
    rows = np.concatenate([bus_index, from_bus, to_bus])
    cols = np.concatenate([bus_index, to_bus, from_bus])
    data = np.concatenate([diagonal, from_to, to_from])
    nodal = sp.coo_matrix((data, (rows, cols)), shape=(n, n)).tocsc()
    nodal.sum_duplicates()
    nodal.sort_indices()
    return nodal


class PowerSystem:
    """
    Per-unit power system description and the nodal models derived from it.

    Parameters
    ----------
    base_mva:
        System power base, used only to convert MATPOWER input data.

    Notes
    -----
    Buses, branches and generators are referenced by label in the public
    `add_*` API and by position everywhere else.
    """

    def __init__(self, base_mva: float = 100.0) -> None:
        if not base_mva > 0.0:
            raise ValueError(f"base_mva must be positive; got {base_mva!r}")
        self.base_mva = float(base_mva)
        self.bus = BusData()
        self.branch = BranchData()
        self.generator = GeneratorData()
        self.ac = ACModel()
        self.dc = DCModel()
        self.topology_generation = 0
        self._bus_position: dict[Hashable, int] = {}

    # ------------------------------------------------------------------ sizes

    @property
    def bus_count(self) -> int:
        return int(self.bus.type.size)

    @property
    def branch_count(self) -> int:
        return int(self.branch.status.size)

    @property
    def generator_count(self) -> int:
        return int(self.generator.status.size)

    def bus_position(self, label: Hashable) -> int:
        """Return the position of the bus with `label`."""
        try:
            return self._bus_position[label]
        except KeyError:
            raise ValueError(f"Unknown bus label: {label!r}") from None

    # --------------------------------------------------------------- building

    def add_bus(
        self,
        label: Optional[Hashable] = None,
        *,
        type: BusType | int = BusType.LOAD,  # noqa: A002 - mirrors the data field
        active: float = 0.0,
        reactive: float = 0.0,
        conductance: float = 0.0,
        susceptance: float = 0.0,
        magnitude: float = 1.0,
        angle: float = 0.0,
    ) -> int:
        """
        Add a bus and return its position.

        `active`/`reactive` are the demand, `conductance`/`susceptance` the shunt
        admittance (p.u. at 1 p.u. voltage), `magnitude`/`angle` the initial voltage.
        """
        pos = self.bus_count
        if label is None:
            label = pos + 1
        if label in self._bus_position:
            raise ValueError(f"Duplicate bus label: {label!r}")
        bus_type = BusType(int(type))

        b = self.bus
        b.label.append(label)
        b.type = np.append(b.type, int(bus_type))
        b.demand_active = np.append(b.demand_active, float(active))
        b.demand_reactive = np.append(b.demand_reactive, float(reactive))
        b.shunt_conductance = np.append(b.shunt_conductance, float(conductance))
        b.shunt_susceptance = np.append(b.shunt_susceptance, float(susceptance))
        b.magnitude = np.append(b.magnitude, float(magnitude))
        b.angle = np.append(b.angle, float(angle))
        self._bus_position[label] = pos

        self._branches_changed()
        return pos

    def add_branch(
        self,
        from_bus: Hashable,
        to_bus: Hashable,
        *,
        label: Optional[Hashable] = None,
        resistance: float = 0.0,
        reactance: float = 0.0,
        susceptance: float = 0.0,
        conductance: float = 0.0,
        turns_ratio: float = 1.0,
        shift_angle: float = 0.0,
        status: int = 1,
    ) -> int:
        """
        Add a π-model branch between two bus labels and return its position.

        A `turns_ratio` of 0 is read as 1 (MATPOWER convention for lines).
        `susceptance`/`conductance` are the total charging admittance split evenly
        between both ends; `shift_angle` is in radians.
        """
        f = self.bus_position(from_bus)
        t = self.bus_position(to_bus)
        if f == t:
            raise ValueError(f"Branch connects bus {from_bus!r} to itself.")
        if abs(complex(resistance, reactance)) <= _IMPEDANCE_EPS:
            raise ValueError(
                f"Branch {from_bus!r}->{to_bus!r}: series impedance must be non-zero."
            )
        tau = float(turns_ratio)
        if tau == 0.0:
            tau = 1.0
        if not np.isfinite(tau) or tau <= 0.0:
            raise ValueError(f"turns_ratio must be finite and >0; got {turns_ratio!r}")

        pos = self.branch_count
        br = self.branch
        br.label.append(pos + 1 if label is None else label)
        br.from_bus = np.append(br.from_bus, f)
        br.to_bus = np.append(br.to_bus, t)
        br.resistance = np.append(br.resistance, float(resistance))
        br.reactance = np.append(br.reactance, float(reactance))
        br.susceptance = np.append(br.susceptance, float(susceptance))
        br.conductance = np.append(br.conductance, float(conductance))
        br.turns_ratio = np.append(br.turns_ratio, tau)
        br.shift_angle = np.append(br.shift_angle, float(shift_angle))
        br.status = np.append(br.status, 1 if int(status) else 0)

        self._branches_changed()
        return pos

    def add_generator(
        self,
        bus: Hashable,
        *,
        label: Optional[Hashable] = None,
        active: float = 0.0,
        reactive: float = 0.0,
        magnitude: float = 1.0,
        min_reactive: float = -np.inf,
        max_reactive: float = np.inf,
        status: int = 1,
    ) -> int:
        """Add a generator at bus `bus` (label) and return its position."""
        b = self.bus_position(bus)
        if float(min_reactive) > float(max_reactive):
            raise ValueError(
                f"Generator at bus {bus!r}: min_reactive={min_reactive} > max_reactive={max_reactive}"
            )

        pos = self.generator_count
        g = self.generator
        g.label.append(pos + 1 if label is None else label)
        g.bus = np.append(g.bus, b)
        g.active = np.append(g.active, float(active))
        g.reactive = np.append(g.reactive, float(reactive))
        g.magnitude = np.append(g.magnitude, float(magnitude))
        g.min_reactive = np.append(g.min_reactive, float(min_reactive))
        g.max_reactive = np.append(g.max_reactive, float(max_reactive))
        g.status = np.append(g.status, 1 if int(status) else 0)
        return pos

    @classmethod
    def from_ppc(cls, ppc: dict[str, Any]) -> "PowerSystem":
        """
        Build a system from a MATPOWER case dict (`baseMVA`, `bus`, `gen`, `branch`).

        MW/MVAr quantities are divided by `baseMVA`, angles converted to radians,
        MATPOWER bus numbers become bus labels.
        """
        base_mva = float(ppc["baseMVA"])
        system = cls(base_mva=base_mva)

        bus = np.asarray(ppc["bus"], dtype=float)
        for row in bus:
            bus_type = int(row[1])
            if bus_type == 4:
                raise ValueError(f"Isolated bus {int(row[0])} is not supported.")
            system.add_bus(
                int(row[0]),
                type=bus_type,
                active=row[2] / base_mva,
                reactive=row[3] / base_mva,
                conductance=row[4] / base_mva,
                susceptance=row[5] / base_mva,
                magnitude=row[7],
                angle=np.deg2rad(row[8]),
            )

        gen = np.asarray(ppc.get("gen", []), dtype=float)
        gen = gen.reshape(0, 10) if gen.size == 0 else np.atleast_2d(gen)
        for row in gen:
            system.add_generator(
                int(row[0]),
                active=row[1] / base_mva,
                reactive=row[2] / base_mva,
                max_reactive=row[3] / base_mva,
                min_reactive=row[4] / base_mva,
                magnitude=row[5],
                status=int(row[7] > 0),
            )

        branch = np.asarray(ppc["branch"], dtype=float)
        for row in branch:
            system.add_branch(
                int(row[0]),
                int(row[1]),
                resistance=row[2],
                reactance=row[3],
                susceptance=row[4],
                turns_ratio=row[8] if branch.shape[1] > 8 else 0.0,
                shift_angle=np.deg2rad(row[9]) if branch.shape[1] > 9 else 0.0,
                status=int(row[10] > 0) if branch.shape[1] > 10 else 1,
            )

        logger.debug(
            "PowerSystem from PPC: buses=%d, branches=%d, generators=%d, baseMVA=%.6g",
            system.bus_count,
            system.branch_count,
            system.generator_count,
            base_mva,
        )
        return system

    # ------------------------------------------------------------------ edits

    def set_branch_status(self, index: int, status: int) -> None:
        """Switch a branch in (1) or out (0) of service and regenerate built models."""
        self._check_branch(index)
        new_status = 1 if int(status) else 0
        if int(self.branch.status[index]) == new_status:
            return
        self.branch.status[index] = new_status
        logger.debug("Branch %d status -> %d", int(index), new_status)
        self._branches_changed()

    def update_branch(self, index: int, **parameters: float) -> None:
        """
        Update branch parameters (`resistance`, `reactance`, `susceptance`,
        `conductance`, `turns_ratio`, `shift_angle`) and regenerate built models.
        """
        self._check_branch(index)
        allowed = (
            "resistance",
            "reactance",
            "susceptance",
            "conductance",
            "turns_ratio",
            "shift_angle",
        )
        for name, value in parameters.items():
            if name not in allowed:
                raise ValueError(f"Unknown branch parameter: {name!r}")
            value = float(value)
            if name == "turns_ratio" and value == 0.0:
                value = 1.0
            getattr(self.branch, name)[index] = value

        if abs(complex(self.branch.resistance[index], self.branch.reactance[index])) <= _IMPEDANCE_EPS:
            raise ValueError(f"Branch {index}: series impedance must be non-zero.")
        self._branches_changed()

    def set_generator_status(self, index: int, status: int) -> None:
        """Switch a generator in (1) or out (0) of service."""
        if not 0 <= int(index) < self.generator_count:
            raise ValueError(f"Generator index out of range: {index!r}")
        self.generator.status[index] = 1 if int(status) else 0

        bus = int(self.generator.bus[index])
        if self.bus.type[bus] != BusType.LOAD and not self.generators_at(bus):
            logger.info(
                "Bus %s has no in-service generator left; it will be treated as a load bus.",
                self.bus.label[bus],
            )

    def update_demand(
        self,
        bus: Hashable,
        *,
        active: Optional[float] = None,
        reactive: Optional[float] = None,
    ) -> None:
        """Change the demand at bus `bus` (label). None keeps the current value."""
        pos = self.bus_position(bus)
        if active is not None:
            self.bus.demand_active[pos] = float(active)
        if reactive is not None:
            self.bus.demand_reactive[pos] = float(reactive)

    # ------------------------------------------------------------- derived data

    def generators_at(self, bus: int) -> list[int]:
        """In-service generator positions connected to bus position `bus` (input order)."""
        g = self.generator
        mask = (g.bus == int(bus)) & (g.status == 1)
        return [int(i) for i in np.flatnonzero(mask)]

    @property
    def supply_active(self) -> np.ndarray:
        """Active power supplied at each bus by in-service generators."""
        on = self.generator.status == 1
        return np.bincount(
            self.generator.bus[on], weights=self.generator.active[on], minlength=self.bus_count
        ).astype(float)

    @property
    def supply_reactive(self) -> np.ndarray:
        """Reactive power supplied at each bus by in-service generators."""
        on = self.generator.status == 1
        return np.bincount(
            self.generator.bus[on], weights=self.generator.reactive[on], minlength=self.bus_count
        ).astype(float)

    def check_slack(self) -> int:
        """
        Return the slack bus position.

        Raises
        ------
        SlackBusError
            If there is no slack bus or more than one.
        """
        slack = np.flatnonzero(self.bus.type == BusType.SLACK)
        if slack.size == 0:
            raise SlackBusError("The slack bus is missing.")
        if slack.size > 1:
            labels = [self.bus.label[int(i)] for i in slack]
            raise SlackBusError(f"Multiple slack buses defined: {labels}")
        return int(slack[0])

    @property
    def slack(self) -> int:
        return self.check_slack()

    def ensure_slack_supply(self) -> int:
        """
        Make sure the slack bus has an in-service generator.

        If it has none, the slack bus becomes a load bus and the first
        voltage-controlled bus with an in-service generator becomes the slack.

        Returns
        -------
        int
            Position of the (possibly new) slack bus.

        Raises
        ------
        SlackBusError
            If the slack is missing/ambiguous or no bus can take over.
        """
        slack = self.check_slack()
        if self.generators_at(slack):
            return slack

        self.bus.type[slack] = BusType.LOAD
        for i in np.flatnonzero(self.bus.type == BusType.GENERATOR):
            if self.generators_at(int(i)):
                self.bus.type[i] = BusType.SLACK
                logger.info(
                    "Slack bus %s has no in-service generator; bus %s is the new slack bus.",
                    self.bus.label[slack],
                    self.bus.label[int(i)],
                )
                return int(i)

        raise SlackBusError(
            "No generator bus with an in-service generator found; slack bus definition not possible."
        )

    # ---------------------------------------------------------------- models

    def ac_model(self) -> ACModel:
        """Return the AC model, assembling it on first use."""
        if self.ac.nodal is None:
            self._assemble_ac()
        return self.ac

    def dc_model(self) -> DCModel:
        """Return the DC model, assembling it on first use."""
        if self.dc.nodal is None:
            self._assemble_dc()
        return self.dc

    def _assemble_ac(self) -> None:
        n = self.bus_count
        if n == 0:
            raise ValueError("Network has no buses.")
        br = self.branch
        on = br.status == 1

        admittance = np.zeros(self.branch_count, dtype=complex)
        admittance[on] = 1.0 / (br.resistance[on] + 1j * br.reactance[on])
        ratio = np.exp(-1j * br.shift_angle) / br.turns_ratio
        to_to = admittance + 0.5 * (br.conductance + 1j * br.susceptance) * on
        from_from = to_to / br.turns_ratio**2
        from_to = -np.conj(ratio) * admittance
        to_from = -ratio * admittance

        diagonal = self.bus.shunt_conductance + 1j * self.bus.shunt_susceptance
        np.add.at(diagonal, br.from_bus[on], from_from[on])
        np.add.at(diagonal, br.to_bus[on], to_to[on])

        nodal = _assemble(
            n, diagonal, br.from_bus[on], br.to_bus[on], from_to[on], to_from[on]
        )

        ac = self.ac
        if not _same_structure(ac.nodal, nodal):
            ac.pattern += 1
        ac.model += 1
        ac.nodal = nodal
        ac.nodal_rows = nodal.tocsr()
        ac.admittance = admittance
        ac.transformer_ratio = ratio
        ac.from_from = from_from
        ac.from_to = from_to
        ac.to_from = to_from
        ac.to_to = to_to
        logger.debug(
            "AC model assembled: n=%d, nnz=%d, model=%d, pattern=%d",
            n,
            nodal.nnz,
            ac.model,
            ac.pattern,
        )

    def _assemble_dc(self) -> None:
        n = self.bus_count
        if n == 0:
            raise ValueError("Network has no buses.")
        br = self.branch
        on = br.status == 1

        admittance = np.zeros(self.branch_count, dtype=float)
        admittance[on] = 1.0 / (br.turns_ratio[on] * br.reactance[on])

        shift = br.shift_angle * admittance
        shift_power = np.zeros(n, dtype=float)
        np.add.at(shift_power, br.from_bus, -shift)
        np.add.at(shift_power, br.to_bus, shift)

        diagonal = np.zeros(n, dtype=float)
        np.add.at(diagonal, br.from_bus[on], admittance[on])
        np.add.at(diagonal, br.to_bus[on], admittance[on])

        nodal = _assemble(
            n,
            diagonal,
            br.from_bus[on],
            br.to_bus[on],
            -admittance[on],
            -admittance[on],
        )

        dc = self.dc
        if not _same_structure(dc.nodal, nodal):
            dc.pattern += 1
        dc.model += 1
        dc.nodal = nodal
        dc.admittance = admittance
        dc.shift_power = shift_power
        logger.debug(
            "DC model assembled: n=%d, nnz=%d, model=%d, pattern=%d",
            n,
            nodal.nnz,
            dc.model,
            dc.pattern,
        )

    def _branches_changed(self) -> None:
        # Models already built are regenerated eagerly so their counters stay current.
        self.topology_generation += 1
        if self.ac.nodal is not None:
            self._assemble_ac()
        if self.dc.nodal is not None:
            self._assemble_dc()

    def _check_branch(self, index: int) -> None:
        if not 0 <= int(index) < self.branch_count:
            raise ValueError(f"Branch index out of range: {index!r}")
