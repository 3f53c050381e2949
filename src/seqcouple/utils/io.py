"""Run directory, logging and metrics files.

A run directory holds:
- config_resolved.json (plus config_original.yaml when launched from a file)
- train.log, a copy of everything logged while the run was active
- metrics.jsonl, one JSON object per line tagged with a "kind":
  train | eval | test | decay | stop
- checkpoints/ (unless checkpoint.root_dir points elsewhere)

Resuming into an existing run directory never rewrites config_resolved.json;
the resume-time config goes to config_resume.json instead.
"""

from __future__ import annotations

import contextlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from seqcouple.config import Config

_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
_FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Library loggers whose INFO output (Orbax saves, XLA compiles) stays off the console.
_QUIET_LOGGERS = ("orbax", "jax", "jaxlib", "absl", "etils")


class _QuietLibrariesFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith(_QUIET_LOGGERS):
            return record.levelno >= logging.WARNING
        return True


def _level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)


def _console_handler(level: int, *, use_rich: bool) -> logging.Handler:
    handler: logging.Handler
    if use_rich:
        from rich.logging import RichHandler

        handler = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    handler.setLevel(level)
    handler.addFilter(_QuietLibrariesFilter())
    return handler


def setup_python_logging(level: str, *, use_rich: bool = True) -> None:
    """Replace the root handlers with one console handler.

    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :param bool use_rich: Render console logs with Rich.
    """
    root = logging.getLogger()
    root.setLevel(_level(level))
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(_console_handler(_level(level), use_rich=use_rich))


def _file_handler_for(path: Path) -> logging.FileHandler | None:
    target = str(path.resolve())
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return handler
    return None


def add_file_logging(path: Path, *, level: str) -> None:
    """Mirror all log records into `path`. Calling twice for one path is a no-op."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if _file_handler_for(path) is not None:
        return
    handler = logging.FileHandler(path)
    handler.setLevel(_level(level))
    handler.setFormatter(logging.Formatter(_FILE_FORMAT))
    logging.getLogger().addHandler(handler)


def remove_file_logging(path: Path) -> None:
    handler = _file_handler_for(path)
    if handler is not None:
        logging.getLogger().removeHandler(handler)
        handler.close()


def _claim_run_dir(cfg: Config, *, config_path: str | Path | None, allow_existing: bool) -> Path:
    if cfg.logging.run_dir is None:
        if allow_existing:
            raise RuntimeError(
                "Resume requested but logging.run_dir is null; "
                "point logging.run_dir (or --run-dir) at the run to continue."
            )
        label = "run" if config_path is None else Path(config_path).stem
        run_dir = Path("runs") / cfg.logging.project / f"{datetime.now():%Y%m%d_%H%M%S}_{label}"
        run_dir.mkdir(parents=True)
        return run_dir

    run_dir = Path(cfg.logging.run_dir)
    if not run_dir.exists():
        run_dir.mkdir(parents=True)
    elif not allow_existing:
        raise RuntimeError(
            f"{run_dir} already exists. Refusing to clobber it; "
            "choose another logging.run_dir or pass --resume."
        )
    return run_dir


def create_run_dir(
    cfg: Config, *, config_path: str | Path | None, allow_existing: bool = False
) -> Path:
    """Create the directory a run writes into and snapshot its config.

    With no logging.run_dir a fresh `runs/<project>/<timestamp>_<config stem>`
    is created; such runs cannot be resumed. An explicit run_dir is created
    when missing and reused only with `allow_existing`.

    :param Config cfg: Run configuration.
    :param config_path: YAML the config came from, copied into the run dir.
    :param bool allow_existing: Reuse an existing directory (resume).
    :raises RuntimeError: On an existing directory without `allow_existing`,
        or `allow_existing` without a run_dir.
    :return Path: The run directory.
    """
    run_dir = _claim_run_dir(cfg, config_path=config_path, allow_existing=allow_existing)

    snapshot = json.dumps(cfg.to_dict(), indent=2, sort_keys=True)
    resolved = run_dir / "config_resolved.json"
    if allow_existing and resolved.exists():
        (run_dir / "config_resume.json").write_text(snapshot)
        return run_dir

    resolved.write_text(snapshot)
    if config_path is not None and Path(config_path).exists():
        (run_dir / "config_original.yaml").write_text(Path(config_path).read_text())
    return run_dir


class MetricsWriter:
    """Line-buffered JSONL appender; rows survive a crashed process."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("a", buffering=1)

    def write(self, row: dict[str, Any]) -> None:
        self._fh.write(json.dumps(row, ensure_ascii=False) + "\n")
        self._fh.flush()

    def close(self) -> None:
        with contextlib.suppress(OSError):
            self._fh.close()

    def __enter__(self) -> MetricsWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def read_metrics(path: str | Path, *, kind: str | None = None) -> list[dict[str, Any]]:
    """Parse a metrics file, keeping only rows of `kind` when given.

    :param path: metrics.jsonl path.
    :param kind: Row kind to keep (train, eval, test, decay, stop).
    :return list[dict]: Rows in file order.
    """
    with Path(path).open() as fh:
        rows = [json.loads(line) for line in fh if line.strip()]
    return rows if kind is None else [r for r in rows if r.get("kind") == kind]
