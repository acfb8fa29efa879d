from __future__ import annotations

from pathlib import Path

import pytest

from power_flow.config import DEFAULT_SOLVER, SolverConfig, cfg_get, solver_config_from

ROOT = Path(__file__).resolve().parents[1]


def test_load_project_config_supports_extends(tmp_path: Path) -> None:
    """
    Ensure minimal `extends:` inheritance works and is resolved relative to the child file.
    """
    pytest.importorskip("omegaconf")

    from power_flow.config import load_project_config

    base = tmp_path / "base.yaml"
    base.write_text(
        "\n".join(
            [
                "solver:",
                "  method: newton_raphson",
                "  tolerance: 1.0e-6",
                "",
            ]
        ),
        encoding="utf-8",
    )

    child_dir = tmp_path / "child"
    child_dir.mkdir(parents=True, exist_ok=True)

    child = child_dir / "child.yaml"
    child.write_text(
        "\n".join(
            [
                "extends: ../base.yaml",
                "solver:",
                "  method: gauss_seidel",
                "",
            ]
        ),
        encoding="utf-8",
    )

    cfg = load_project_config(child, allow_missing=False)

    assert cfg is not None
    assert "extends" not in cfg
    solver = solver_config_from(cfg)
    assert solver.method == "gauss_seidel"
    assert solver.tolerance == pytest.approx(1e-6)
    assert solver.max_iterations == DEFAULT_SOLVER.max_iterations


def test_cyclic_extends_is_rejected(tmp_path: Path) -> None:
    pytest.importorskip("omegaconf")

    from power_flow.config import load_project_config

    (tmp_path / "a.yaml").write_text("extends: b.yaml\nx: 1\n", encoding="utf-8")
    (tmp_path / "b.yaml").write_text("extends: a.yaml\ny: 2\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Cyclic"):
        load_project_config(tmp_path / "a.yaml", allow_missing=False)


def test_missing_config(tmp_path: Path) -> None:
    from power_flow.config import load_project_config

    assert load_project_config(tmp_path / "nope.yaml") is None
    with pytest.raises(FileNotFoundError):
        load_project_config(tmp_path / "nope.yaml", allow_missing=False)


def test_shipped_experiment_config() -> None:
    pytest.importorskip("omegaconf")

    from power_flow.config import load_project_config

    cfg = load_project_config(ROOT / "conf" / "experiments" / "fast_decoupled_qlim.yaml")
    solver = solver_config_from(cfg)
    assert solver.method == "fast_newton_raphson_xb"
    assert solver.reactive_limits is True
    assert cfg_get(cfg, "logging.runs_dir", None) == "runs"


def test_solver_config_overrides_and_defaults() -> None:
    solver = solver_config_from(None, method="dc", tolerance=None)
    assert solver.method == "dc"
    assert solver.tolerance == DEFAULT_SOLVER.tolerance
    assert solver.iteration_budget == DEFAULT_SOLVER.max_iterations

    with pytest.raises(TypeError):
        solver_config_from(None, bogus=1)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"method": "newton"},
        {"factorization": "cholesky"},
        {"tolerance": 0.0},
        {"max_iterations": 0},
        {"warm_start_iterations": -1},
        {"max_reactive_limit_rounds": 0},
    ],
)
def test_solver_config_validation(kwargs) -> None:
    with pytest.raises(ValueError):
        SolverConfig(**kwargs)


def test_gauss_seidel_uses_its_own_budget() -> None:
    solver = SolverConfig(method="gauss_seidel", gauss_seidel_max_iterations=123)
    assert solver.iteration_budget == 123
