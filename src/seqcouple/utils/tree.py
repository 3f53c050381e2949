"""Pytree helpers for the trainer and checkpoint loader."""

from __future__ import annotations

from typing import Any

import jax
import numpy as np


def param_count(params: Any) -> int:
    """Number of scalars across all array leaves."""
    return sum(int(np.size(leaf)) for leaf in jax.tree_util.tree_leaves(params) if hasattr(leaf, "shape"))


def abstractify_tree(tree: Any) -> Any:
    """ShapeDtypeStruct template of `tree`, used as an Orbax restore target."""
    return jax.tree_util.tree_map(lambda x: jax.ShapeDtypeStruct(np.shape(x), x.dtype), tree)
