from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import numpy as np

from power_flow.network.model import PowerSystem

logger = logging.getLogger(__name__)

# Minimum MATPOWER columns used by the network model.
_MIN_BUS_COLS = 9
_MIN_GEN_COLS = 8
_MIN_BRANCH_COLS = 5


def _strip_matpower_comments(text: str) -> str:
    """Remove MATPOWER comments (% ... end-of-line)."""
    return re.sub(r"%.*$", "", text, flags=re.MULTILINE)


def _extract_scalar(text: str, name: str) -> str:
    """Extract `mpc.<name> = <value>;` scalar assignment from MATPOWER case text."""
    pattern = re.compile(
        rf"\bmpc\.{re.escape(name)}\s*=\s*([^;\[]+?)\s*;", flags=re.MULTILINE
    )
    m = pattern.search(text)
    if not m:
        raise ValueError(f"Could not find scalar 'mpc.{name}' in MATPOWER case.")
    return m.group(1).strip()


def _extract_matrix(text: str, name: str, *, required: bool = True) -> np.ndarray:
    """Extract numeric matrix `mpc.<name> = [ ... ];` as 2D float array."""
    pattern = re.compile(
        rf"\bmpc\.{re.escape(name)}\s*=\s*\[(.*?)\]\s*;",
        flags=re.MULTILINE | re.DOTALL,
    )
    m = pattern.search(text)
    if not m:
        if not required:
            return np.zeros((0, 0), dtype=float)
        raise ValueError(f"Could not find matrix 'mpc.{name}' in MATPOWER case.")

    body = m.group(1)
    body = re.sub(r"\.\.\.[^\n]*\n", " ", body).replace(",", " ")
    # Rows end with ';' or a line break.
    rows_raw = [r.strip() for r in re.split(r"[;\n]", body) if r.strip()]

    rows: list[list[float]] = []
    for r in rows_raw:
        parts = r.split()
        try:
            rows.append([float(x) for x in parts])
        except ValueError as e:
            raise ValueError(f"Failed to parse numeric row in mpc.{name}: {r!r}") from e

    if not rows:
        return np.zeros((0, 0), dtype=float)

    ncols = len(rows[0])
    if any(len(r) != ncols for r in rows):
        raise ValueError(
            f"Inconsistent row lengths in mpc.{name} matrix (expected {ncols})."
        )

    return np.asarray(rows, dtype=float)


def parse_matpower_case(path: str | Path) -> dict[str, Any]:
    """
    Parse a MATPOWER `.m` case file into a minimal PPC dict.

    Fields:
      - version
      - baseMVA
      - bus
      - gen
      - branch

    Raises
    ------
    ValueError
        On missing sections, malformed rows or too few columns.
    """
    text = Path(path).read_text(encoding="utf-8", errors="replace")
    text = _strip_matpower_comments(text)

    version_raw = _extract_scalar(text, "version")
    version = version_raw.strip().strip("'").strip('"')

    base_mva_raw = _extract_scalar(text, "baseMVA")
    try:
        base_mva = float(base_mva_raw)
    except ValueError as e:
        raise ValueError(
            f"Failed to parse mpc.baseMVA={base_mva_raw!r} as float."
        ) from e

    bus = _extract_matrix(text, "bus")
    gen = _extract_matrix(text, "gen", required=False)
    branch = _extract_matrix(text, "branch")

    if bus.size == 0 or branch.size == 0:
        raise ValueError(
            "MATPOWER case must contain non-empty 'bus' and 'branch' matrices."
        )
    for name, matrix, min_cols in (
        ("bus", bus, _MIN_BUS_COLS),
        ("gen", gen, _MIN_GEN_COLS),
        ("branch", branch, _MIN_BRANCH_COLS),
    ):
        if matrix.size and matrix.shape[1] < min_cols:
            raise ValueError(
                f"mpc.{name} has {matrix.shape[1]} columns; at least {min_cols} required."
            )

    logger.debug(
        "Parsed MATPOWER case %s: version=%s, baseMVA=%.6g, bus=%s, gen=%s, branch=%s",
        str(path),
        version,
        base_mva,
        bus.shape,
        gen.shape,
        branch.shape,
    )
    return {
        "version": version,
        "baseMVA": base_mva,
        "bus": bus,
        "gen": gen,
        "branch": branch,
    }


def load_case(file_path: str | Path) -> PowerSystem:
    """
    Load a MATPOWER `.m` case file into a `PowerSystem`.

    Raises
    ------
    FileNotFoundError:
        If file does not exist.
    ValueError:
        If extension is not `.m`.
    RuntimeError:
        If parsing or model construction fails.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(str(path))

    if path.suffix.lower() != ".m":
        raise ValueError(f"Only MATPOWER .m files are supported. Got: {path}")

    try:
        ppc = parse_matpower_case(path)
        system = PowerSystem.from_ppc(ppc)
        logger.debug(
            "Network loaded: %d buses, %d branches, %d generators",
            system.bus_count,
            system.branch_count,
            system.generator_count,
        )
        return system
    except Exception as e:
        logger.exception("Failed to load MATPOWER case: %s", str(path))
        raise RuntimeError(f"Failed to load MATPOWER case: {path}") from e


def to_pandapower(ppc: dict[str, Any], f_hz: float = 50.0):
    """
    Convert a PPC dict to a pandapower network.

    Uses `pandapower.converter.pypower.from_ppc.from_ppc(ppc, f_hz=..., validate_conversion=False)`.
    pandapower is an optional dependency (reference solutions only).
    """
    from pandapower.converter.pypower.from_ppc import from_ppc

    return from_ppc(ppc, f_hz=float(f_hz), validate_conversion=False)
