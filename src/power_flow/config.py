from __future__ import annotations

"""
Central configuration for the project.

Why this module exists
----------------------
Solver settings (tolerance, iteration budgets, factorization kind) are passed
explicitly into workflows and method constructors. There is no process-wide
settings object: the engine never reads hidden global state, so the same
`SolverConfig` value reproduces the same run.

YAML config loading
-------------------
The project uses OmegaConf-compatible YAML files under `conf/`.
A minimal composition mechanism is supported:

- `extends: <path-or-list>` at the top level of a YAML file.
- `extends` paths are resolved relative to the extending file.
- Configs are merged deterministically in the given order, where later configs override earlier ones.
"""

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

try:
    from omegaconf import OmegaConf  # type: ignore

    HAVE_OMEGACONF: bool = True
except ImportError:
    OmegaConf = None  # type: ignore[assignment]
    HAVE_OMEGACONF = False


AC_METHODS: tuple[str, ...] = (
    "newton_raphson",
    "fast_newton_raphson_xb",
    "fast_newton_raphson_bx",
    "gauss_seidel",
)
METHODS: tuple[str, ...] = (*AC_METHODS, "dc")
FACTORIZATIONS: tuple[str, ...] = ("lu", "qr", "ldlt")


@dataclass(frozen=True)
class LoggingConfig:
    """
    Logging- and run-directory-related defaults for CLI/scripts.

    Notes
    -----
    `setup_logging(...)` creates a run directory and configures:
    - a project file logger (runs/<run>/run.log)
    - a console logger

    Run directory mode
    ------------------
    - run_dir_mode="timestamp": create a new unique folder per run (default).
    - run_dir_mode="overwrite": reuse `runs_dir/run_name` (delete/recreate folder).
    """

    runs_dir: str = "runs"
    level_console: str = "INFO"
    level_file: str = "DEBUG"

    run_dir_mode: str = "timestamp"  # "timestamp" | "overwrite"
    run_name: str = "latest"  # used only when run_dir_mode="overwrite"


@dataclass(frozen=True)
class SolverConfig:
    """
    Power flow solver settings.

    Attributes
    ----------
    method:
        One of `METHODS`.
    factorization:
        Linear solver used by the method: "lu" (default), "qr" or "ldlt".
    tolerance:
        Stopping threshold (p.u.) applied to both max |dP| and max |dQ|.
    max_iterations:
        Iteration budget for Newton-type methods.
    gauss_seidel_max_iterations:
        Iteration budget for Gauss-Seidel (linear convergence needs many more sweeps).
    warm_start_iterations:
        Number of Gauss-Seidel sweeps run before a Newton-type method (0 disables).
    reactive_limits:
        Enforce generator reactive power limits after convergence.
    max_reactive_limit_rounds:
        Maximum number of reclassify-and-resolve rounds.
    """

    method: str = "newton_raphson"
    factorization: str = "lu"
    tolerance: float = 1e-8
    max_iterations: int = 20
    gauss_seidel_max_iterations: int = 1000
    warm_start_iterations: int = 0
    reactive_limits: bool = False
    max_reactive_limit_rounds: int = 10

    def __post_init__(self) -> None:
        if self.method not in METHODS:
            raise ValueError(f"method must be one of {METHODS}; got {self.method!r}")
        if str(self.factorization).lower() not in FACTORIZATIONS:
            raise ValueError(
                f"factorization must be one of {FACTORIZATIONS}; got {self.factorization!r}"
            )
        if not self.tolerance > 0.0:
            raise ValueError(f"tolerance must be positive; got {self.tolerance!r}")
        if self.max_iterations <= 0 or self.gauss_seidel_max_iterations <= 0:
            raise ValueError("iteration budgets must be positive")
        if self.warm_start_iterations < 0:
            raise ValueError("warm_start_iterations must be non-negative")
        if self.max_reactive_limit_rounds <= 0:
            raise ValueError("max_reactive_limit_rounds must be positive")

    @property
    def iteration_budget(self) -> int:
        """Iteration budget that applies to the configured method."""
        if self.method == "gauss_seidel":
            return int(self.gauss_seidel_max_iterations)
        return int(self.max_iterations)


DEFAULT_LOGGING = LoggingConfig()
DEFAULT_SOLVER = SolverConfig()


def _resolve_path(p: str | Path, *, base_dir: Path | None) -> Path:
    """Resolve a potentially-relative path against `base_dir` (or CWD if base_dir is None)."""
    path = Path(p).expanduser()
    if path.is_absolute():
        return path.resolve()
    root = base_dir if base_dir is not None else Path.cwd()
    return (root / path).resolve()


def _as_list(value: Any) -> list[str]:
    """Normalize a scalar/list config node into a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        s = value.strip()
        return [s] if s else []
    if isinstance(value, (list, tuple)) or (
        HAVE_OMEGACONF and OmegaConf is not None and OmegaConf.is_list(value)
    ):
        out: list[str] = []
        for x in value:
            if x is None:
                continue
            sx = str(x).strip()
            if sx:
                out.append(sx)
        return out
    raise TypeError(f"extends must be a string or a list of strings; got {type(value)}")


def _load_with_extends(path: Path, *, stack: tuple[Path, ...]) -> Any:
    """Load YAML config at `path`, recursively applying `extends`."""
    if not HAVE_OMEGACONF or OmegaConf is None:
        raise ImportError("OmegaConf is required to load YAML configs (install `omegaconf`).")

    p = path.resolve()
    if p in stack:
        chain = " -> ".join([*(str(x) for x in stack), str(p)])
        raise ValueError(f"Cyclic config extends detected: {chain}")

    cfg_local = OmegaConf.load(str(p))

    extends_list = _as_list(OmegaConf.select(cfg_local, "extends"))

    base_cfgs: list[Any] = []
    for ext in extends_list:
        base_path = _resolve_path(ext, base_dir=p.parent)
        if not base_path.exists():
            raise FileNotFoundError(
                f"Extended config not found: {base_path} (referenced from {p})"
            )
        base_cfgs.append(_load_with_extends(base_path, stack=(*stack, p)))

    local_container = OmegaConf.to_container(cfg_local, resolve=False)
    if not isinstance(local_container, dict):
        raise ValueError(
            f"Config root must be a mapping/object, got {type(local_container)} in {p}"
        )
    local_container.pop("extends", None)
    cfg_no_ext = OmegaConf.create(local_container)

    merged = OmegaConf.merge(*base_cfgs, cfg_no_ext) if base_cfgs else cfg_no_ext

    logger.debug(
        "Loaded config: %s (extends=%s)",
        str(p),
        extends_list if extends_list else "[]",
    )
    return merged


def load_project_config(path: str | Path, *, allow_missing: bool = True) -> Any:
    """
    Load a project YAML config with minimal inheritance support via `extends`.

    Parameters
    ----------
    path:
        Path to the YAML config file. Can be relative (resolved against current working directory).
    allow_missing:
        If True and the file does not exist, returns None (caller may fall back to Python defaults).

    Returns
    -------
    Any
        OmegaConf config object (DictConfig) or None if allow_missing=True and file is missing.

    Raises
    ------
    ImportError
        If OmegaConf is not installed and the file exists.
    FileNotFoundError
        If allow_missing=False and the file does not exist, or if an `extends` target is missing.
    ValueError
        On cyclic `extends` chains or invalid config shapes.
    """
    cfg_path = _resolve_path(path, base_dir=None)

    if not cfg_path.exists():
        if allow_missing:
            logger.info("Config file not found, using built-in defaults: %s", str(cfg_path))
            return None
        raise FileNotFoundError(str(cfg_path))

    return _load_with_extends(cfg_path, stack=())


def cfg_get(cfg: Any, key: str, default: Any) -> Any:
    """Safe dotted-key lookup for OmegaConf-based config objects (None-tolerant)."""
    if cfg is None or not HAVE_OMEGACONF or OmegaConf is None:
        return default
    v = OmegaConf.select(cfg, key)
    return default if v is None else v


def solver_config_from(cfg: Any, **overrides: Any) -> SolverConfig:
    """
    Build a `SolverConfig` from the `solver` section of a loaded config.

    Keys missing from the config keep their `DEFAULT_SOLVER` values; explicit
    keyword `overrides` that are not None win over both.
    """
    values: dict[str, Any] = {}
    for f in fields(SolverConfig):
        default = getattr(DEFAULT_SOLVER, f.name)
        values[f.name] = cfg_get(cfg, f"solver.{f.name}", default)

    for k, v in overrides.items():
        if k not in values:
            raise TypeError(f"Unknown solver option: {k!r}")
        if v is not None:
            values[k] = v

    return SolverConfig(
        method=str(values["method"]),
        factorization=str(values["factorization"]).lower(),
        tolerance=float(values["tolerance"]),
        max_iterations=int(values["max_iterations"]),
        gauss_seidel_max_iterations=int(values["gauss_seidel_max_iterations"]),
        warm_start_iterations=int(values["warm_start_iterations"]),
        reactive_limits=bool(values["reactive_limits"]),
        max_reactive_limit_rounds=int(values["max_reactive_limit_rounds"]),
    )
