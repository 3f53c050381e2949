"""Core pytrees and shared types.

Keep this file small: it defines the **runtime contracts** between subsystems.

- `Batch` is what the batch source yields and the compiled step consumes.
- `LayerState` is one recurrent layer's (hidden, cell) pair.
- `TrainState` is arrays-only (checkpoint friendly) by construction.

**Batch contract**

All three fields are time-major integer token matrices of identical shape:
  encoder_input:  [T, B]
  decoder_input:  [T, B]
  decoder_target: [T, B]
where T = padded sequence length (fixed within a batch) and B = batch_size
(fixed for the whole run). Token id 0 is padding.
"""

from __future__ import annotations

from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp


class Batch(eqx.Module):
    """A time-major encoder/decoder batch."""

    encoder_input: jax.Array
    decoder_input: jax.Array
    decoder_target: jax.Array


class LayerState(eqx.Module):
    """Per-layer recurrent state, each field [B, H]."""

    h: jax.Array
    c: jax.Array

    @classmethod
    def zeros(cls, batch_size: int, hidden_size: int, dtype: Any = jnp.float32) -> LayerState:
        z = jnp.zeros((batch_size, hidden_size), dtype=dtype)
        return cls(h=z, c=z)


# One entry per stacked layer, bottom first.
StackState = tuple[LayerState, ...]


class TrainState(eqx.Module):
    """Arrays-only state for training.

    `params` is the flat parameter vector owned by `ParamRegistry`; the model
    structure is closed over by the compiled step. The current learning rate
    lives inside `opt_state` (injected hyperparameter) so it is checkpointed
    together with the RMSProp statistics.
    """

    step: jax.Array
    params: jax.Array
    opt_state: Any
    rng: jax.Array
