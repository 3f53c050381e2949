"""Checkpoint + resume contract.

We want to catch the class of bugs where:
- you *think* you're resuming
- but some part of train_state, the batch source position or the loop
  bookkeeping silently resets (or the lr decay fires twice)
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import jax
import numpy as np
import pytest

import seqcouple.train as train_mod
from seqcouple.ckpt import check_resume_compat, make_manager, resolve_ckpt_dir, restore_at_step
from seqcouple.model import build_model
from seqcouple.params import ParamRegistry
from seqcouple.train import build_optimizer, current_lr, init_train_state, make_train_step, run
from seqcouple.utils.io import read_metrics
from seqcouple.utils.tree import abstractify_tree
from tests.helpers.config_factories import make_tiny_cfg
from tests.helpers.fixed_source import VOCAB, FixedBatchSource


def _template(cfg):
    key = jax.random.PRNGKey(cfg.train.seed)
    key, k_model = jax.random.split(key)
    params, static = build_model(cfg, vocab_size=len(VOCAB), key=k_model)
    registry = ParamRegistry.from_tree(params)
    tx = build_optimizer(cfg)
    state = init_train_state(params=registry.flatten(params), tx=tx, key=key)
    return state, static, registry, tx


def _restore(cfg, run_dir: Path, step: int):
    state0, static, registry, tx = _template(cfg)
    mgr = make_manager(
        resolve_ckpt_dir(cfg, run_dir), savefile=cfg.checkpoint.savefile, max_to_keep=None, async_save=False
    )
    try:
        _, state, data_state, meta = restore_at_step(mgr, step=step, abstract_train_state=abstractify_tree(state0))
    finally:
        mgr.close()
    return state, data_state, meta, static, registry, tx


def test_checkpoint_round_trip_reproduces_next_step_loss(tmp_path: Path) -> None:
    cfg_a = make_tiny_cfg(tmp_path, run_subdir="a", max_epochs=1)
    res_a = run(cfg_a, batch_source=FixedBatchSource())
    cfg_b = make_tiny_cfg(tmp_path, run_subdir="b", max_epochs=2)
    res_b = run(cfg_b, batch_source=FixedBatchSource())

    state, data_state, meta, static, registry, tx = _restore(cfg_a, res_a.run_dir, 5)
    assert int(state.step) == 5
    assert meta["step"] == 5
    assert meta["vocab"] == VOCAB
    assert data_state["pointers"]["train"] == 0

    source = FixedBatchSource()
    source.set_state(data_state)
    step = make_train_step(cfg_a, static=static, registry=registry, tx=tx)
    _, metrics = step(state, source.next_batch("train"))

    assert float(metrics["loss"]) == pytest.approx(res_b.context.train_losses[5], rel=1e-6)


def test_resume_matches_continuous_and_does_not_reapply_decay(tmp_path: Path) -> None:
    decay = dict(lr_decay=0.5, lr_decay_after=1.0)
    run_dir = tmp_path / "resumed"

    first = make_tiny_cfg(tmp_path, run_subdir="resumed", max_epochs=2, **decay)
    res_first = run(first, batch_source=FixedBatchSource())
    assert res_first.stop_reason == "completed"

    resumed_cfg = replace(first, train=replace(first.train, max_epochs=4))
    res_resumed = run(resumed_cfg, resume="latest", batch_source=FixedBatchSource())

    cont_cfg = make_tiny_cfg(tmp_path, run_subdir="continuous", max_epochs=4, **decay)
    res_cont = run(cont_cfg, batch_source=FixedBatchSource())

    assert res_resumed.iteration == res_cont.iteration == 20
    np.testing.assert_allclose(res_resumed.context.train_losses, res_cont.context.train_losses, rtol=1e-5)
    np.testing.assert_allclose(
        [v for _, v in res_resumed.context.val_losses],
        [v for _, v in res_cont.context.val_losses],
        rtol=1e-5,
    )

    # Decay fired at epochs 1 and 2 before the checkpoint and only at 3 and 4 after it.
    decays = read_metrics(run_dir / resumed_cfg.logging.metrics_file, kind="decay")
    assert [r["iteration"] for r in decays] == [5, 10, 15, 20]
    assert [r["lr"] for r in decays] == pytest.approx([0.005, 0.0025, 0.00125, 0.000625])

    state, *_ = _restore(resumed_cfg, run_dir, 20)
    assert current_lr(state.opt_state) == pytest.approx(0.000625)


def test_resume_from_earlier_iteration_discards_newer_checkpoints(tmp_path: Path) -> None:
    cfg = make_tiny_cfg(tmp_path, max_epochs=2, eval_val_every=5)
    res = run(cfg, batch_source=FixedBatchSource())

    again = run(cfg, resume=5, batch_source=FixedBatchSource())
    assert again.iteration == 10
    np.testing.assert_allclose(again.context.train_losses, res.context.train_losses, rtol=1e-5)

    mgr = make_manager(resolve_ckpt_dir(cfg, res.run_dir), savefile="tiny", max_to_keep=None, async_save=False)
    try:
        assert sorted(mgr.all_steps()) == [5, 10]
    finally:
        mgr.close()


def test_checkpoint_dirs_use_savefile_prefix_and_track_best(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = make_tiny_cfg(tmp_path, max_epochs=1, eval_val_every=1)
    scripted = iter([2.0, 1.0, 1.5, 1.2, 1.1, 0.9])
    monkeypatch.setattr(train_mod, "evaluate", lambda *a, **k: next(scripted))
    res = run(cfg, batch_source=FixedBatchSource())

    ckpt_root = resolve_ckpt_dir(cfg, res.run_dir)
    names = sorted(p.name for p in ckpt_root.iterdir() if p.is_dir() and p.name.startswith("tiny_"))
    assert names == [f"tiny_{i}" for i in range(1, 6)]

    mgr = make_manager(ckpt_root, savefile="tiny", max_to_keep=None, async_save=False)
    try:
        assert mgr.best_step() == 2
    finally:
        mgr.close()

    _, _, meta, *_ = _restore(cfg, res.run_dir, 5)
    assert meta["val_loss"] == pytest.approx(1.1)
    assert meta["test_loss"] == pytest.approx(0.9)
    assert meta["val_losses"] == [[1, 2.0], [2, 1.0], [3, 1.5], [4, 1.2], [5, 1.1]]
    assert meta["config"]["model"]["hidden_size"] == 8
    assert len(meta["train_losses"]) == 5


def test_resume_with_changed_optimizer_is_rejected(tmp_path: Path) -> None:
    cfg = make_tiny_cfg(tmp_path, max_epochs=1)
    run(cfg, batch_source=FixedBatchSource())

    changed = replace(cfg, optim=replace(cfg.optim, decay_rate=0.9), train=replace(cfg.train, max_epochs=2))
    with pytest.raises(RuntimeError, match="optim.decay_rate mismatch"):
        run(changed, resume="latest", batch_source=FixedBatchSource())


def test_check_resume_compat_flags_vocab_and_missing_meta(tmp_path: Path) -> None:
    cfg = make_tiny_cfg(tmp_path)
    meta = {"config": cfg.to_dict(), "vocab": dict(VOCAB)}
    check_resume_compat(cfg, meta, vocab=VOCAB)

    with pytest.raises(RuntimeError, match="vocabulary mismatch"):
        check_resume_compat(cfg, meta, vocab={**VOCAB, "b": 4})
    with pytest.raises(RuntimeError, match="meta is missing"):
        check_resume_compat(cfg, None, vocab=VOCAB)


def test_resume_requires_checkpointing(tmp_path: Path) -> None:
    cfg = make_tiny_cfg(tmp_path, max_epochs=1, checkpoint=False)
    run(cfg, batch_source=FixedBatchSource())
    with pytest.raises(RuntimeError, match="checkpointing is disabled"):
        run(cfg, resume="latest", batch_source=FixedBatchSource())


def test_resume_requires_run_dir(tmp_path: Path) -> None:
    cfg = make_tiny_cfg(tmp_path)
    cfg = replace(cfg, logging=replace(cfg.logging, run_dir=None))
    with pytest.raises(RuntimeError, match="logging.run_dir is null"):
        run(cfg, resume="latest", batch_source=FixedBatchSource())
