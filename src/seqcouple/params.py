"""Parameter registry: named tensors over one contiguous vector.

The optimizer, gradient clipping and checkpoints all want "the parameters" as
one array. The model wants a pytree of named weights. `ParamRegistry` is the
only bridge between the two:

    registry = ParamRegistry.from_tree(params_tree)
    flat = registry.flatten(params_tree)        # [P]
    tree = registry.unflatten(flat)             # same structure as params_tree
    w = registry.view(flat, "encoder.cells.0.weight_ih")

Nobody else assumes a memory layout. Slices are assigned in pytree leaf order.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import jax
import jax.numpy as jnp
from jax.flatten_util import ravel_pytree


@dataclass(frozen=True)
class ParamSlot:
    """Location of one named tensor inside the flat vector."""

    name: str
    offset: int
    shape: tuple[int, ...]

    @property
    def size(self) -> int:
        return int(math.prod(self.shape))


def _path_to_name(path: tuple[Any, ...]) -> str:
    """Render a pytree key path as a dotted name (e.g. ``decoder.cells.1.bias``)."""
    parts: list[str] = []
    for k in path:
        if isinstance(k, jax.tree_util.GetAttrKey):
            parts.append(k.name)
        elif isinstance(k, jax.tree_util.SequenceKey):
            parts.append(str(k.idx))
        elif isinstance(k, jax.tree_util.DictKey):
            parts.append(str(k.key))
        else:
            parts.append(str(k).strip(".[]'\""))
    return ".".join(parts)


class ParamRegistry:
    """Bidirectional map between a params pytree and a flat vector."""

    def __init__(self, slots: tuple[ParamSlot, ...], unravel: Callable[[jax.Array], Any]):
        self._slots = slots
        self._by_name = {s.name: s for s in slots}
        if len(self._by_name) != len(slots):
            raise ValueError("Duplicate parameter names in registry")
        self._unravel = unravel
        self.size = sum(s.size for s in slots)

    @classmethod
    def from_tree(cls, params: Any) -> ParamRegistry:
        """Build a registry from a params pytree (arrays only).

        :param Any params: Parameter pytree, e.g. from ``eqx.partition(model, eqx.is_array)``.
        :raises ValueError: If the tree has no array leaves.
        :return ParamRegistry: Registry with one slot per leaf.
        """
        leaves = jax.tree_util.tree_leaves_with_path(params)
        if not leaves:
            raise ValueError("Cannot build a ParamRegistry from a tree with no parameters")
        slots: list[ParamSlot] = []
        offset = 0
        for path, leaf in leaves:
            shape = tuple(int(d) for d in jnp.shape(leaf))
            slot = ParamSlot(name=_path_to_name(path), offset=offset, shape=shape)
            slots.append(slot)
            offset += slot.size
        _flat, unravel = ravel_pytree(params)
        return cls(tuple(slots), unravel)

    # ------------------------------------------------------------------ views

    def __len__(self) -> int:
        return len(self._slots)

    def __iter__(self) -> Iterator[ParamSlot]:
        return iter(self._slots)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self._slots)

    def slot(self, name: str) -> ParamSlot:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"Unknown parameter {name!r}") from None

    def view(self, flat: jax.Array, name: str) -> jax.Array:
        """Return the named tensor (reshaped) from a flat vector."""
        s = self.slot(name)
        return jax.lax.dynamic_slice_in_dim(flat, s.offset, s.size).reshape(s.shape)

    # ------------------------------------------------------------ conversion

    def flatten(self, tree: Any) -> jax.Array:
        """Concatenate a tree with the registered structure into one vector."""
        flat, _ = ravel_pytree(tree)
        if flat.shape != (self.size,):
            raise ValueError(f"Tree flattens to {flat.shape}, registry expects ({self.size},)")
        return flat

    def unflatten(self, flat: jax.Array) -> Any:
        """Rebuild the params pytree from a flat vector."""
        if flat.shape != (self.size,):
            raise ValueError(f"Flat vector has shape {flat.shape}, registry expects ({self.size},)")
        return self._unravel(flat)

    def summary(self) -> list[tuple[str, tuple[int, ...], int]]:
        """(name, shape, size) for every registered tensor, in layout order."""
        return [(s.name, s.shape, s.size) for s in self._slots]
