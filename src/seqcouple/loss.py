"""Sequence negative log-likelihood.

Per-timestep NLL of the target token under the decoder's log-probabilities:

    nll[t, b] = -logprobs[t, b, target[t, b]]

Reductions (defaults match the classic SequencerCriterion(ClassNLLCriterion)):
- time:  "sum" (default) or "mean" over (unmasked) timesteps per example
- batch: "mean" (default) or "sum"

The default does **not** normalize by sequence length, so per-example loss
scales with T. That is a known characteristic, not something to silently fix.
"""

from __future__ import annotations

from functools import partial

import jax
import jax.numpy as jnp

PAD_ID = 0


def sequence_nll(
    logprobs: jax.Array,
    targets: jax.Array,
    *,
    time_reduction: str = "sum",
    batch_reduction: str = "mean",
    ignore_padding: bool = False,
    pad_id: int = PAD_ID,
) -> jax.Array:
    """Scalar NLL over a [T, B] target sequence.

    :param jax.Array logprobs: Normalized log-probabilities [T, B, V].
    :param jax.Array targets: Target token ids [T, B].
    :param str time_reduction: "sum" or "mean" over timesteps.
    :param str batch_reduction: "mean" or "sum" over the batch.
    :param bool ignore_padding: If True, positions where target == pad_id contribute 0.
    :param int pad_id: Padding token id.
    :raises ValueError: On shape mismatch or unknown reduction.
    :return jax.Array: Scalar float32 loss.
    """
    if logprobs.shape[:2] != targets.shape:
        raise ValueError(
            f"logprobs {logprobs.shape[:2]} and targets {targets.shape} disagree on [T, B]"
        )
    if time_reduction not in ("sum", "mean") or batch_reduction not in ("sum", "mean"):
        raise ValueError(f"Unknown reduction: time={time_reduction!r} batch={batch_reduction!r}")

    picked = jnp.take_along_axis(logprobs, targets[..., None].astype(jnp.int32), axis=-1)[..., 0]
    nll = -picked.astype(jnp.float32)

    if ignore_padding:
        valid = targets != pad_id
    else:
        valid = jnp.ones(targets.shape, dtype=bool)
    nll = jnp.where(valid, nll, 0.0)

    per_example = jnp.sum(nll, axis=0)
    if time_reduction == "mean":
        per_example = per_example / jnp.maximum(jnp.sum(valid, axis=0), 1)

    if batch_reduction == "mean":
        return jnp.mean(per_example)
    return jnp.sum(per_example)


def nll_value_and_grad(
    logprobs: jax.Array, targets: jax.Array, **kwargs
) -> tuple[jax.Array, jax.Array]:
    """Loss and d(loss)/d(logprobs).

    :return tuple: (scalar loss, gradient [T, B, V]).
    """
    return jax.value_and_grad(partial(sequence_nll, **kwargs))(logprobs, targets)
