"""Main CLI entry point.

Defines the Click group and shared utilities.
"""

from __future__ import annotations

import click

from seqcouple._version import __version__


def parse_resume(raw: str) -> str | int:
    """Parse the resume CLI argument.

    :param str raw: Raw string from --resume argument.
    :raises click.BadParameter: If raw is not a valid resume value.
    :return str | int: "none", "latest", or an integer iteration.
    """
    raw = raw.strip().lower()
    if raw in {"none", "no", "false", "0"}:
        return "none"
    if raw in {"latest", "last"}:
        return "latest"
    try:
        step = int(raw)
    except ValueError as e:
        raise click.BadParameter(
            f"Invalid resume value {raw!r}. Use 'none', 'latest', or an integer iteration."
        ) from e
    if step < 1:
        raise click.BadParameter(f"Resume iteration must be >= 1, got {step}.")
    return step


@click.group()
@click.version_option(version=__version__, prog_name="seqcouple")
def cli() -> None:
    """seqcouple: coupled encoder-decoder LSTM trainer (JAX/Equinox)."""


# Import and register subcommands
from seqcouple.cli.train import train  # noqa: E402

cli.add_command(train)

from seqcouple.cli.sample import sample  # noqa: E402

cli.add_command(sample)
