"""Sequence NLL reductions."""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from seqcouple.loss import nll_value_and_grad, sequence_nll


def _inputs():
    # T=3, B=2, V=3
    probs = np.array(
        [
            [[0.5, 0.25, 0.25], [0.1, 0.8, 0.1]],
            [[0.2, 0.2, 0.6], [0.3, 0.3, 0.4]],
            [[0.9, 0.05, 0.05], [0.6, 0.2, 0.2]],
        ],
        dtype=np.float32,
    )
    targets = np.array([[1, 1], [2, 0], [0, 0]], dtype=np.int32)
    return jnp.log(probs), jnp.asarray(targets), probs


def _nll(probs, targets):
    t, b = targets.shape
    return np.array([[-np.log(probs[i, j, targets[i, j]]) for j in range(b)] for i in range(t)])


def test_default_is_sum_over_time_mean_over_batch() -> None:
    logp, targets, probs = _inputs()
    nll = _nll(probs, np.asarray(targets))
    expected = nll.sum(axis=0).mean()
    assert float(sequence_nll(logp, targets)) == pytest.approx(expected, rel=1e-6)


def test_batch_sum() -> None:
    logp, targets, probs = _inputs()
    nll = _nll(probs, np.asarray(targets))
    got = sequence_nll(logp, targets, batch_reduction="sum")
    assert float(got) == pytest.approx(nll.sum(), rel=1e-6)


def test_time_mean_with_padding_ignored() -> None:
    logp, targets, probs = _inputs()
    nll = _nll(probs, np.asarray(targets))
    valid = np.asarray(targets) != 0
    per_example = (nll * valid).sum(axis=0) / np.maximum(valid.sum(axis=0), 1)
    got = sequence_nll(logp, targets, time_reduction="mean", ignore_padding=True)
    assert float(got) == pytest.approx(per_example.mean(), rel=1e-6)


def test_loss_scales_with_sequence_length_by_default() -> None:
    logp, targets, _ = _inputs()
    once = float(sequence_nll(logp, targets))
    twice = float(sequence_nll(jnp.concatenate([logp, logp]), jnp.concatenate([targets, targets])))
    assert twice == pytest.approx(2 * once, rel=1e-6)


def test_gradient_wrt_logprobs_is_negative_one_hot_over_batch() -> None:
    logp, targets, _ = _inputs()
    loss, grad = nll_value_and_grad(logp, targets)
    assert grad.shape == logp.shape
    expected = -np.eye(3, dtype=np.float32)[np.asarray(targets)] / 2
    np.testing.assert_allclose(np.asarray(grad), expected)
    assert float(loss) == pytest.approx(float(sequence_nll(logp, targets)))


def test_shape_mismatch_raises() -> None:
    logp, targets, _ = _inputs()
    with pytest.raises(ValueError, match="disagree"):
        sequence_nll(logp, targets[:2])


def test_unknown_reduction_raises() -> None:
    logp, targets, _ = _inputs()
    with pytest.raises(ValueError, match="reduction"):
        sequence_nll(logp, targets, time_reduction="max")
