from __future__ import annotations

import logging
from pathlib import Path

import pytest

from power_flow.config import LoggingConfig, SolverConfig
from power_flow.utils import log_stage, setup_logging


def test_setup_logging_creates_run_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    run_dir = Path(setup_logging(LoggingConfig(runs_dir="runs")))

    assert run_dir.is_dir()
    assert run_dir.parent == (tmp_path / "runs").resolve()
    assert (run_dir / "run.log").exists()

    project = logging.getLogger("power_flow")
    assert project.propagate is False
    assert len(project.handlers) == 2
    assert len(logging.getLogger("power_flow.fileonly").handlers) == 1


def test_timestamp_mode_never_reuses_a_folder(tmp_path):
    cfg = LoggingConfig(runs_dir=str(tmp_path))
    first = setup_logging(cfg)
    second = setup_logging(cfg)
    assert first != second


def test_run_folder_and_header_describe_the_run(tmp_path):
    solver = SolverConfig(method="fast_newton_raphson_xb", tolerance=1e-9, reactive_limits=True)
    run_dir = Path(
        setup_logging(
            LoggingConfig(runs_dir=str(tmp_path)), case=tmp_path / "case14.m", solver=solver
        )
    )
    for h in logging.getLogger("power_flow").handlers:
        h.flush()

    assert run_dir.name.endswith("_case14_fast_newton_raphson_xb")
    text = (run_dir / "run.log").read_text(encoding="utf-8")
    assert "Case: " + str(tmp_path / "case14.m") in text
    assert "method=fast_newton_raphson_xb, factorization=lu, tolerance=1.0e-09" in text
    assert "Reactive limits enforced" in text
    assert "Warm start" not in text


def test_gauss_seidel_header_reports_its_sweep_budget(tmp_path):
    solver = SolverConfig(method="gauss_seidel", gauss_seidel_max_iterations=250)
    run_dir = Path(setup_logging(LoggingConfig(runs_dir=str(tmp_path)), solver=solver))
    for h in logging.getLogger("power_flow").handlers:
        h.flush()

    assert run_dir.name.endswith("_gauss_seidel")
    assert "max_iterations=250" in (run_dir / "run.log").read_text(encoding="utf-8")


def test_overwrite_mode_recreates_named_folder(tmp_path):
    cfg = LoggingConfig(runs_dir=str(tmp_path), run_dir_mode="overwrite", run_name="latest")
    run_dir = Path(setup_logging(cfg))
    (run_dir / "stale.txt").write_text("x", encoding="utf-8")

    again = Path(setup_logging(cfg))
    assert again == run_dir
    assert not (again / "stale.txt").exists()


def test_file_only_logger_skips_console(tmp_path, capsys):
    run_dir = Path(setup_logging(LoggingConfig(runs_dir=str(tmp_path), level_console="INFO")))

    logging.getLogger("power_flow.fileonly").info("only in the file")
    logging.getLogger("power_flow.workflows").info("everywhere")
    for h in logging.getLogger("power_flow").handlers:
        h.flush()

    err = capsys.readouterr().err
    assert "everywhere" in err
    assert "only in the file" not in err
    text = (run_dir / "run.log").read_text(encoding="utf-8")
    assert "only in the file" in text
    assert "everywhere" in text


def test_invalid_settings_are_rejected(tmp_path):
    with pytest.raises(ValueError):
        setup_logging(LoggingConfig(runs_dir=str(tmp_path), run_dir_mode="append"))
    with pytest.raises(ValueError):
        setup_logging(LoggingConfig(runs_dir=str(tmp_path), level_console="LOUD"))
    assert list(tmp_path.iterdir()) == []


def test_log_stage_reports_failures(caplog):
    lg = logging.getLogger("power_flow.test")
    with caplog.at_level(logging.INFO, logger="power_flow"):
        with log_stage(lg, "Solve"):
            pass
        with pytest.raises(RuntimeError):
            with log_stage(lg, "Broken"):
                raise RuntimeError("boom")

    assert "==> [START] Solve" in caplog.text
    assert "<== [END] Solve" in caplog.text
    assert "<!! [FAIL] Broken" in caplog.text
