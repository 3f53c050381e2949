"""CLI entrypoints for seqcouple.

Invoked via ``pyproject.toml`` entrypoints::

    seqcouple train <config.yaml> ...
    seqcouple sample <run_dir> --input "abc"

Keep these modules thin: argument parsing + calling into library code.
"""

from __future__ import annotations

__all__ = ["cli"]

from seqcouple.cli.main import cli
