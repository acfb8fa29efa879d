from __future__ import annotations

"""
Run folders and logging for power flow runs.

Every run gets a folder holding `run.log`. Handlers live on the "power_flow"
logger only; "power_flow.fileonly" shares the file handler and is used for
per-bus listings that would flood the console.

Folder names:

- timestamp mode: `<YYYY-mm-dd_HH-MM-SS_ffffff>[_<case>][_<method>]`, suffixed
  with `_01`, `_02`, ... if the name is taken.
- overwrite mode: `run_name`, emptied first.
"""

import logging
import shutil
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Union

from power_flow.config import LoggingConfig, SolverConfig

__all__ = ["log_stage", "setup_logging"]

_PROJECT_LOGGER = "power_flow"
_FILE_ONLY_LOGGER = "power_flow.fileonly"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _level(name: str) -> int:
    level = logging.getLevelName(str(name).strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Invalid logging level: {name!r}")
    return level


def _run_folder_name(case: Optional[Path], solver: Optional[SolverConfig]) -> str:
    parts = [datetime.now().strftime("%Y-%m-%d_%H-%M-%S_%f")]
    if case is not None:
        parts.append(case.stem)
    if solver is not None:
        parts.append(solver.method)
    return "_".join(parts)


def _create_run_dir(cfg: LoggingConfig, mode: str, name: str) -> Path:
    runs_dir = Path(str(cfg.runs_dir)).expanduser()
    if not runs_dir.is_absolute():
        runs_dir = Path.cwd() / runs_dir
    runs_dir = runs_dir.resolve()

    if mode == "overwrite":
        run_dir = runs_dir / (str(cfg.run_name).strip() or "latest")
        if run_dir.exists():
            shutil.rmtree(run_dir)
        run_dir.mkdir(parents=True)
        return run_dir

    runs_dir.mkdir(parents=True, exist_ok=True)
    run_dir = runs_dir / name
    attempt = 0
    while True:
        try:
            run_dir.mkdir()
            return run_dir
        except FileExistsError:
            attempt += 1
            run_dir = runs_dir / f"{name}_{attempt:02d}"


def _attach(lg: logging.Logger, *handlers: logging.Handler) -> None:
    for h in list(lg.handlers):
        lg.removeHandler(h)
        h.close()
    lg.setLevel(logging.DEBUG)
    lg.propagate = False
    for h in handlers:
        lg.addHandler(h)


def _log_run_header(
    lg: logging.Logger,
    run_dir: Path,
    case: Optional[Path],
    solver: Optional[SolverConfig],
) -> None:
    lg.info("Run directory: %s", str(run_dir))
    if case is not None:
        lg.info("Case: %s", str(case))
    if solver is None:
        return
    budget = (
        solver.gauss_seidel_max_iterations
        if solver.method == "gauss_seidel"
        else solver.max_iterations
    )
    lg.info(
        "Solver: method=%s, factorization=%s, tolerance=%.1e, max_iterations=%d",
        solver.method,
        solver.factorization,
        float(solver.tolerance),
        int(budget),
    )
    if solver.warm_start_iterations:
        lg.info("Warm start: %d Gauss-Seidel sweep(s)", int(solver.warm_start_iterations))
    if solver.reactive_limits:
        lg.info(
            "Reactive limits enforced (at most %d round(s))",
            int(solver.max_reactive_limit_rounds),
        )


@contextmanager
def log_stage(stage_logger: logging.Logger, stage_name: str) -> Iterator[None]:
    """
    Log the start, end and duration of a run stage.

    Lines are `==> [START] <name>`, `<== [END] <name> (time taken: X.XXX sec)` and,
    when the block raises, `<!! [FAIL] <name> (...)` with the traceback.
    """
    started = time.perf_counter()
    stage_logger.info("==> [START] %s", stage_name)
    try:
        yield
    except Exception:
        stage_logger.exception(
            "<!! [FAIL] %s (time taken: %.3f sec)", stage_name, time.perf_counter() - started
        )
        raise
    stage_logger.info(
        "<== [END] %s (time taken: %.3f sec)", stage_name, time.perf_counter() - started
    )


def setup_logging(
    cfg: LoggingConfig,
    *,
    case: Union[str, Path, None] = None,
    solver: Optional[SolverConfig] = None,
) -> str:
    """
    Create the run folder and route "power_flow" records to it and to the console.

    Parameters
    ----------
    cfg:
        Folder location and naming, console and file levels.
    case:
        Case file of the run; its stem is part of a timestamped folder name.
    solver:
        Settings of the run; the method is part of a timestamped folder name
        and the settings are written at the top of `run.log`.

    Returns
    -------
    str
        Absolute path of the run folder.

    Raises
    ------
    ValueError
        For an unknown `run_dir_mode` or logging level. Nothing is created then.
    """
    mode = str(cfg.run_dir_mode).strip().lower()
    if mode not in ("timestamp", "overwrite"):
        raise ValueError(f"run_dir_mode must be 'timestamp' or 'overwrite', got {mode!r}")
    file_level = _level(cfg.level_file)
    console_level = _level(cfg.level_console)

    case_path = Path(case) if case is not None else None
    run_dir = _create_run_dir(cfg, mode, _run_folder_name(case_path, solver))

    formatter = logging.Formatter(_FORMAT)
    file_handler = logging.FileHandler(run_dir / "run.log", encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(formatter)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)

    # Third-party records only reach the console from WARNING up.
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    root.setLevel(logging.WARNING)

    project = logging.getLogger(_PROJECT_LOGGER)
    _attach(project, file_handler, console_handler)
    _attach(logging.getLogger(_FILE_ONLY_LOGGER), file_handler)

    _log_run_header(project, run_dir, case_path, solver)
    return str(run_dir)
