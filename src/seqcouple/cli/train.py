"""Train subcommand."""

from __future__ import annotations

from dataclasses import replace

import click

from seqcouple.cli.main import parse_resume
from seqcouple.config import load_config
from seqcouple.utils.io import setup_python_logging


@click.command()
@click.argument("config", type=click.Path(exists=True))
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. train.batch_size=32 (repeatable).",
)
@click.option(
    "--run-dir",
    type=click.Path(),
    default=None,
    help="Override logging.run_dir (required for resume).",
)
@click.option(
    "--resume",
    "resume_raw",
    type=str,
    default="none",
    help="Resume from checkpoint: 'none' (default), 'latest', or an iteration number.",
)
def train(
    config: str,
    overrides: tuple[str, ...],
    run_dir: str | None,
    resume_raw: str,
) -> None:
    """Train a coupled encoder-decoder model.

    CONFIG is the path to a YAML config file.

    Divergence and NaN stops are reported but exit with status 0; the last
    good checkpoint stays usable.
    """
    try:
        cfg = load_config(config, overrides=list(overrides))
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    if run_dir is not None:
        cfg = replace(cfg, logging=replace(cfg.logging, run_dir=run_dir))

    resume = parse_resume(resume_raw)

    # Logging first so subsequent errors are readable
    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)

    from seqcouple.train import run

    result = run(cfg, config_path=config, resume=resume)  # type: ignore[arg-type]
    click.echo(f"[seqcouple] run_dir: {result.run_dir}")
    click.echo(
        f"[seqcouple] stopped: {result.stop_reason} at iteration {result.iteration} (epoch {result.epoch:.2f})"
    )
