"""Encoder <-> decoder state coupling.

Two pure functions, one per direction:

    forward_connect(encoder_final_states)         -> decoder_initial_states
    backward_connect(decoder_initial_state_grads) -> encoder_injected_grads

Both work on whole stacks: one `LayerState` per layer, bottom first. Every
layer is transferred, not just the top one.

Value semantics: outputs are fresh buffers. The decoder owns its initial state
once it has been handed over; nothing written to the encoder's state afterwards
can show up on the decoder side (and vice versa for gradients).
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

from seqcouple.types import LayerState, StackState


def _copy_layer(state: LayerState) -> LayerState:
    return LayerState(h=jnp.array(state.h, copy=True), c=jnp.array(state.c, copy=True))


def _check_layers(states: StackState, expected: int | None, what: str) -> None:
    if len(states) == 0:
        raise ValueError(f"{what}: expected at least one layer, got none")
    if expected is not None and len(states) != expected:
        raise ValueError(f"{what}: got {len(states)} layers, receiving stack has {expected}")
    for i, s in enumerate(states):
        if jnp.shape(s.h) != jnp.shape(s.c):
            raise ValueError(
                f"{what}: layer {i} hidden {jnp.shape(s.h)} and cell {jnp.shape(s.c)} shapes differ"
            )


def forward_connect(
    encoder_final_states: StackState, *, num_layers: int | None = None
) -> StackState:
    """Copy each encoder layer's final (h, c) into the decoder's initial state.

    :param StackState encoder_final_states: Encoder state at the last timestep.
    :param num_layers: Decoder layer count to check against (optional).
    :raises ValueError: On layer-count or shape mismatch.
    :return StackState: Decoder initial state (independent copies).
    """
    _check_layers(encoder_final_states, num_layers, "forward_connect")
    return tuple(_copy_layer(s) for s in encoder_final_states)


def backward_connect(
    decoder_initial_state_grads: StackState, *, num_layers: int | None = None
) -> StackState:
    """Copy d(loss)/d(decoder initial state) into the encoder's final-timestep slot.

    The encoder backward pass consumes this as the cotangent of its final
    per-layer state, alongside a zero cotangent for its (unsupervised) outputs.

    :param StackState decoder_initial_state_grads: Gradients w.r.t. decoder initial (h, c).
    :param num_layers: Encoder layer count to check against (optional).
    :raises ValueError: On layer-count or shape mismatch.
    :return StackState: Gradients to inject at the encoder's final timestep.
    """
    _check_layers(decoder_initial_state_grads, num_layers, "backward_connect")
    return tuple(_copy_layer(g) for g in decoder_initial_state_grads)


def zeros_like_outputs(outputs: jax.Array) -> jax.Array:
    """Zero cotangent for the encoder's output sequence."""
    return jnp.zeros_like(outputs)
