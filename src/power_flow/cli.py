from __future__ import annotations

"""
Command line interface (argparse + YAML defaults).

Key goals
---------
- Defaults live in `conf/config.yaml` (OmegaConf, supports `extends:`)
- CLI flags override config values
- Each `run` creates a run folder and saves:
  - run.log
  - config.yaml (effective)
  - argv.txt
  - results.json

Commands
--------
  power-flow run CASE.m [--method ...] [--factorization ...]
  power-flow download N [--target ...]
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from power_flow.config import (
    DEFAULT_LOGGING,
    FACTORIZATIONS,
    HAVE_OMEGACONF,
    METHODS,
    LoggingConfig,
    OmegaConf,
    SolverConfig,
    cfg_get,
    load_project_config,
    solver_config_from,
)
from power_flow.parsers.matpower import load_case
from power_flow.utils import log_stage, setup_logging
from power_flow.utils.download import DownloadError, download_ieee_case
from power_flow.workflows import solve_ac, solve_dc

logger = logging.getLogger(__name__)


def _resolve_path(p: str) -> str:
    """Resolve a potentially-relative path against current working directory."""
    path = Path(p)
    if path.is_absolute():
        return str(path)
    return str(path.resolve())


def _preparse_config_path(argv: Sequence[str]) -> str:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", type=str, default="conf/config.yaml")
    ns, _ = pre.parse_known_args(list(argv))
    return str(ns.config)


def _argv_has_explicit_config_flag(argv: Sequence[str]) -> bool:
    """Return True if argv explicitly contains a --config option."""
    for t in argv:
        if t == "--config" or str(t).startswith("--config="):
            return True
    return False


def build_parser(cfg: Any) -> argparse.ArgumentParser:
    """Create CLI parser (defaults are taken from the loaded YAML config)."""
    solver = solver_config_from(cfg)

    parser = argparse.ArgumentParser(
        prog="power-flow",
        description="Steady-state AC/DC power flow for MATPOWER cases.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default="conf/config.yaml",
        help="Path to OmegaConf-compatible YAML config (supports `extends:`).",
    )
    parser.add_argument(
        "--runs-dir",
        type=str,
        default=str(cfg_get(cfg, "logging.runs_dir", DEFAULT_LOGGING.runs_dir)),
        help="Directory where per-run folders and run.log are created.",
    )
    parser.add_argument(
        "--run-dir-mode",
        type=str,
        default=str(cfg_get(cfg, "logging.run_dir_mode", DEFAULT_LOGGING.run_dir_mode)),
        choices=("timestamp", "overwrite"),
        help="Run directory behavior: timestamp (new folder) or overwrite (reuse run-name).",
    )
    parser.add_argument(
        "--run-name",
        type=str,
        default=str(cfg_get(cfg, "logging.run_name", DEFAULT_LOGGING.run_name)),
        help="Run folder name used when --run-dir-mode overwrite.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=str(cfg_get(cfg, "logging.level_console", DEFAULT_LOGGING.level_console)),
        help="Console logging level (INFO/DEBUG/WARNING/ERROR).",
    )
    parser.add_argument(
        "--log-file-level",
        type=str,
        default=str(cfg_get(cfg, "logging.level_file", DEFAULT_LOGGING.level_file)),
        help="File logging level (DEBUG includes per-iteration mismatches).",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Solve the power flow of one MATPOWER case.")
    p_run.add_argument("case", type=str, help="Path to a MATPOWER .m case file.")
    p_run.add_argument(
        "--method",
        type=str,
        default=solver.method,
        choices=METHODS,
        help="Power flow method.",
    )
    p_run.add_argument(
        "--factorization",
        type=str,
        default=solver.factorization,
        choices=FACTORIZATIONS,
        help="Sparse factorization used by the linear solves.",
    )
    p_run.add_argument(
        "--tolerance",
        type=float,
        default=solver.tolerance,
        help="Stopping threshold (p.u.) on max |dP| and max |dQ|.",
    )
    p_run.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Iteration budget (defaults to the method's budget from config).",
    )
    p_run.add_argument(
        "--reactive-limits",
        type=int,
        default=int(solver.reactive_limits),
        help="1: enforce generator reactive limits after convergence, 0: ignore.",
    )
    p_run.add_argument(
        "--warm-start",
        type=int,
        default=solver.warm_start_iterations,
        help="Gauss-Seidel sweeps before a Newton-type method (0 disables).",
    )

    p_dl = sub.add_parser("download", help="Download MATPOWER case<N>.m.")
    p_dl.add_argument("number", type=int, help="Case number, e.g. 14 for case14.m.")
    p_dl.add_argument(
        "--target",
        type=str,
        default=None,
        help="Target path (default: data/input/case<N>.m).",
    )
    p_dl.add_argument(
        "--overwrite", type=int, default=0, help="1: download even if the file exists."
    )
    return parser


def _solver_config_from_args(args: argparse.Namespace, cfg: Any) -> SolverConfig:
    overrides: dict[str, Any] = {
        "method": str(args.method),
        "factorization": str(args.factorization),
        "tolerance": float(args.tolerance),
        "reactive_limits": bool(int(args.reactive_limits)),
        "warm_start_iterations": int(args.warm_start),
    }
    if args.max_iterations is not None:
        key = "gauss_seidel_max_iterations" if args.method == "gauss_seidel" else "max_iterations"
        overrides[key] = int(args.max_iterations)
    return solver_config_from(cfg, **overrides)


def _write_run_artifacts(
    *, run_dir: Path, cfg_used: dict[str, Any], argv: Sequence[str]
) -> None:
    """Write reproducibility artifacts into the run directory."""
    (run_dir / "argv.txt").write_text(" ".join(argv) + "\n", encoding="utf-8")
    if HAVE_OMEGACONF and OmegaConf is not None:
        cfg_yaml = OmegaConf.to_yaml(OmegaConf.create(cfg_used))
    else:
        cfg_yaml = json.dumps(cfg_used, indent=2, sort_keys=True) + "\n"
    (run_dir / "config.yaml").write_text(cfg_yaml, encoding="utf-8")


def _setup_run_and_logging(
    args: argparse.Namespace, *, case: str, solver: SolverConfig
) -> Path:
    """Create the run directory (named after case and method) and configure logging."""
    return Path(
        setup_logging(
            LoggingConfig(
                runs_dir=str(args.runs_dir),
                level_console=str(args.log_level),
                level_file=str(args.log_file_level),
                run_dir_mode=str(args.run_dir_mode),
                run_name=str(args.run_name),
            ),
            case=case,
            solver=solver,
        )
    )


def run_power_flow(
    args: argparse.Namespace, *, cfg_loaded: Any, cfg_path: Path, argv: Sequence[str]
) -> int:
    """Load a case, solve it and write results.json into the run folder."""
    solver = _solver_config_from_args(args, cfg_loaded)
    case_path = _resolve_path(str(args.case))
    run_dir = _setup_run_and_logging(args, case=case_path, solver=solver)

    cfg_used: dict[str, Any] = {
        "config_path": str(cfg_path),
        "command": "run",
        "case": case_path,
        "logging": {
            "runs_dir": str(args.runs_dir),
            "run_dir_mode": str(args.run_dir_mode),
            "run_name": str(args.run_name),
            "level_console": str(args.log_level),
            "level_file": str(args.log_file_level),
        },
        "solver": {
            "method": solver.method,
            "factorization": solver.factorization,
            "tolerance": float(solver.tolerance),
            "max_iterations": int(solver.max_iterations),
            "gauss_seidel_max_iterations": int(solver.gauss_seidel_max_iterations),
            "warm_start_iterations": int(solver.warm_start_iterations),
            "reactive_limits": bool(solver.reactive_limits),
            "max_reactive_limit_rounds": int(solver.max_reactive_limit_rounds),
        },
    }
    _write_run_artifacts(run_dir=run_dir, cfg_used=cfg_used, argv=argv)

    with log_stage(logger, "Read Data"):
        system = load_case(case_path)
        logger.info(
            "Case: %s (%d buses, %d branches, %d generators)",
            Path(case_path).name,
            system.bus_count,
            system.branch_count,
            system.generator_count,
        )

    results: dict[str, Any] = {
        "__meta__": {
            "case": case_path,
            "base_mva": float(system.base_mva),
            "method": solver.method,
            "factorization": solver.factorization,
        }
    }
    if solver.method == "dc":
        with log_stage(logger, "Solve DC Power Flow"):
            analysis = solve_dc(system, solver)
        results["converged"] = True
        results["iterations"] = 0
        results["bus"] = [
            b if isinstance(b, (int, str)) else str(b) for b in system.bus.label
        ]
        results["angle_deg"] = [float(x) for x in np.rad2deg(analysis.angle)]
        results["branch_active"] = [float(x) for x in analysis.branch_power() * system.base_mva]
        bus_power = analysis.bus_power()
        results["bus_injection_active"] = [float(x) for x in bus_power.injection * system.base_mva]
        results["generator_active"] = [
            float(x) for x in analysis.generator_power() * system.base_mva
        ]
    else:
        with log_stage(logger, "Solve AC Power Flow"):
            result = solve_ac(system, solver)
        results.update(result.to_dict(system))
        listing = "\n".join(
            f"{label}: {m:.6f} p.u. {a:.4f} deg"
            for label, m, a in zip(results["bus"], results["magnitude"], results["angle_deg"])
        )
        # Large output: file only.
        logging.getLogger("power_flow.fileonly").debug("Bus voltages:\n%s", listing)

    with log_stage(logger, "Write Results (JSON)"):
        results_path = run_dir / "results.json"
        results_path.write_text(
            json.dumps(results, indent=4, ensure_ascii=False) + "\n", encoding="utf-8"
        )
        logger.info("Results written: %s", str(results_path))

    logger.info("Done. Run directory: %s", str(run_dir))
    return 0 if results["converged"] else 1


def run_download(args: argparse.Namespace) -> int:
    """Download a MATPOWER case file."""
    try:
        path = download_ieee_case(
            int(args.number), args.target, overwrite=bool(int(args.overwrite))
        )
    except DownloadError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    print(path)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entrypoint."""
    argv_list = list(argv) if argv is not None else sys.argv[1:]

    cfg_path = Path(_preparse_config_path(argv_list))
    if not cfg_path.is_absolute():
        cfg_path = (Path.cwd() / cfg_path).resolve()

    # Only an explicitly requested config must exist; the default may be missing.
    user_provided_config = _argv_has_explicit_config_flag(argv_list)
    try:
        cfg_loaded = load_project_config(cfg_path, allow_missing=not user_provided_config)
    except Exception as e:  # noqa: BLE001
        print(f"[ERROR] Failed to load config: {str(cfg_path)} ({e})", file=sys.stderr)
        return 2

    try:
        parser = build_parser(cfg_loaded)
    except ValueError as e:
        print(f"[ERROR] Invalid solver config in {str(cfg_path)}: {e}", file=sys.stderr)
        return 2

    args = parser.parse_args(argv_list)
    logger.debug("CLI command=%s, argv=%s", str(args.command), argv_list)

    if args.command == "run":
        return run_power_flow(args, cfg_loaded=cfg_loaded, cfg_path=cfg_path, argv=argv_list)
    if args.command == "download":
        return run_download(args)

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
