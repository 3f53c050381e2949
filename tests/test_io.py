"""Run directory, logging and metrics files."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

import pytest

from seqcouple.config import Config
from seqcouple.utils.io import (
    MetricsWriter,
    add_file_logging,
    create_run_dir,
    read_metrics,
    remove_file_logging,
    setup_python_logging,
)


def _cfg(run_dir: Path | None) -> Config:
    cfg = Config()
    return replace(cfg, logging=replace(cfg.logging, run_dir=None if run_dir is None else str(run_dir)))


def test_create_run_dir_writes_config_snapshot(tmp_path: Path) -> None:
    run_dir = create_run_dir(_cfg(tmp_path / "r"), config_path=None)
    snap = json.loads((run_dir / "config_resolved.json").read_text())
    assert snap["train"]["batch_size"] == 20


def test_create_run_dir_resume_keeps_original_snapshot(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path / "r")
    run_dir = create_run_dir(cfg, config_path=None)
    original = (run_dir / "config_resolved.json").read_text()

    create_run_dir(cfg, config_path=None, allow_existing=True)
    assert (run_dir / "config_resolved.json").read_text() == original
    assert (run_dir / "config_resume.json").exists()


def test_timestamped_run_dir_under_project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_dir = create_run_dir(_cfg(None), config_path="configs/default.yaml")
    assert run_dir.parent == Path("runs") / "seqcouple"
    assert run_dir.name.endswith("_default")


def test_metrics_writer_appends_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "m.jsonl"
    with MetricsWriter(path) as mw:
        mw.write({"kind": "train", "iteration": 1, "loss": 2.5})
        mw.write({"kind": "eval", "iteration": 1, "val_loss": 2.0})
    with MetricsWriter(path) as mw:
        mw.write({"kind": "train", "iteration": 2, "loss": 2.0})

    assert len(read_metrics(path)) == 3
    assert [r["iteration"] for r in read_metrics(path, kind="train")] == [1, 2]


def test_file_logging_captures_and_detaches(tmp_path: Path) -> None:
    setup_python_logging("INFO", use_rich=False)
    log_path = tmp_path / "train.log"
    add_file_logging(log_path, level="INFO")
    add_file_logging(log_path, level="INFO")  # idempotent
    logging.getLogger("seqcouple.test").info("hello file")
    remove_file_logging(log_path)
    logging.getLogger("seqcouple.test").info("after detach")

    text = log_path.read_text()
    assert text.count("hello file") == 1
    assert "after detach" not in text
