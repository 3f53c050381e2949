"""Test session configuration."""

from __future__ import annotations

import os

# Tests run on CPU; must be set before JAX initializes a backend.
os.environ.setdefault("JAX_PLATFORMS", "cpu")
os.environ.setdefault("XLA_PYTHON_CLIENT_PREALLOCATE", "false")

from collections.abc import Callable  # noqa: E402
from pathlib import Path  # noqa: E402

import pytest  # noqa: E402

from seqcouple.config import Config  # noqa: E402
from tests.helpers.config_factories import make_tiny_cfg  # noqa: E402
from tests.helpers.fixed_source import FixedBatchSource  # noqa: E402


@pytest.fixture
def tiny_cfg_factory() -> Callable[..., Config]:
    """Expose the shared tiny-run config factory."""
    return make_tiny_cfg


@pytest.fixture
def tiny_cfg(tmp_path: Path) -> Config:
    """Tiny config (V=4, H=8, 1 layer, B=2) rooted in tmp_path."""
    return make_tiny_cfg(tmp_path)


@pytest.fixture
def fixed_source() -> FixedBatchSource:
    """Deterministic 5/1/1-batch source with T=5."""
    return FixedBatchSource()
