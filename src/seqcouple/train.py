"""Training loop + compiled train step.

This module is the heart of seqcouple.

Design rules:
1) **TrainState is arrays-only**. The flat parameter vector, the optimizer
   state (learning rate included) and the RNG key; nothing else.
2) **The backward pass is explicit**. Encoder and decoder are differentiated
   separately with `jax.vjp` and joined through `seqcouple.coupling`:

       enc forward (vjp) -> forward_connect -> dec forward (vjp over params + init state)
       -> NLL + d/dlogprobs -> dec backward -> backward_connect
       -> enc backward(zero output cotangent, injected final-state cotangent)

   For a given key this produces exactly `jax.grad(sequence_loss)`.
3) **Loop bookkeeping lives in `TrainContext`**: counters, loss histories, the
   last validation loss, the stop reason. It is checkpointed with the state.
4) **Guards stop, they don't retry**. NaN training loss and validation
   divergence end the run with a stop reason; the last good checkpoint stays.
"""

from __future__ import annotations

import gc
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Literal

import equinox as eqx
import jax
import jax.numpy as jnp
import optax
from tqdm import tqdm

from seqcouple.ckpt import (
    build_meta,
    check_resume_compat,
    make_manager,
    resolve_ckpt_dir,
    restore_at_step,
    restore_latest,
    save,
)
from seqcouple.config import Config, OptimConfig
from seqcouple.coupling import backward_connect, forward_connect, zeros_like_outputs
from seqcouple.data import BatchSource, Partition, build_batch_source, validate_batch
from seqcouple.loss import nll_value_and_grad
from seqcouple.model import Seq2Seq, build_model, loss_kwargs, sequence_loss, split_step_key
from seqcouple.params import ParamRegistry
from seqcouple.types import Batch, TrainState
from seqcouple.utils.devices import device_platform, select_device
from seqcouple.utils.io import MetricsWriter, add_file_logging, create_run_dir, remove_file_logging
from seqcouple.utils.tree import abstractify_tree, param_count

logger = logging.getLogger(__name__)

StopReason = Literal["completed", "diverged", "nan"]


# ------------------------------ Stop conditions ----------------------------


class TrainingStopped(RuntimeError):
    """Base class for guard-triggered stops. Carries the stop reason."""

    reason: StopReason = "completed"

    def __init__(self, message: str, *, iteration: int):
        super().__init__(message)
        self.iteration = iteration


class TrainingDiverged(TrainingStopped):
    reason: StopReason = "diverged"


class NonFiniteLoss(TrainingStopped):
    reason: StopReason = "nan"


def check_finite_loss(loss: float, *, iteration: int) -> None:
    """Raise NonFiniteLoss if the training loss is NaN or inf."""
    if not math.isfinite(loss):
        raise NonFiniteLoss(
            f"Training loss is {loss} at iteration {iteration}. "
            "Lower optim.lr or optim.grad_clip, or check the batch source.",
            iteration=iteration,
        )


def check_divergence(
    val_loss: float, last_val_loss: float | None, *, factor: float, iteration: int
) -> None:
    """Raise TrainingDiverged if validation loss blew up.

    :param float val_loss: Validation loss just computed.
    :param last_val_loss: Previously recorded validation loss (None on the first eval).
    :param float factor: Allowed growth factor.
    :param int iteration: Current iteration (for the message).
    :raises TrainingDiverged: If val_loss is non-finite or exceeds factor * last_val_loss.
    """
    if not math.isfinite(val_loss):
        raise TrainingDiverged(
            f"Validation loss is {val_loss} at iteration {iteration}", iteration=iteration
        )
    if last_val_loss is not None and val_loss > factor * last_val_loss:
        raise TrainingDiverged(
            f"Validation loss {val_loss:.4f} exceeds {factor:g}x the last recorded "
            f"{last_val_loss:.4f} at iteration {iteration}; loss is blowing up",
            iteration=iteration,
        )


# ------------------------------ Loop context -------------------------------


@dataclass
class TrainContext:
    """Everything the loop tracks between iterations (besides TrainState)."""

    iteration: int = 0
    epoch: float = 0.0
    train_losses: list[float] = field(default_factory=list)
    val_losses: list[list[float]] = field(default_factory=list)
    last_val_loss: float | None = None
    test_loss: float | None = None
    stop_reason: StopReason | None = None

    @classmethod
    def from_meta(cls, meta: dict[str, Any]) -> TrainContext:
        """Rebuild the context from checkpoint meta."""
        step = int(meta.get("step", 0))
        return cls(
            iteration=step,
            epoch=float(meta.get("epoch", 0.0)),
            train_losses=[float(x) for x in meta.get("train_losses") or []][:step],
            val_losses=[[int(i), float(v)] for i, v in meta.get("val_losses") or []],
            last_val_loss=meta.get("last_val_loss"),
            test_loss=meta.get("test_loss"),
        )


@dataclass(frozen=True)
class TrainResult:
    """What `run` hands back."""

    run_dir: Path
    stop_reason: StopReason
    iteration: int
    epoch: float
    context: TrainContext


# ------------------------------ Optimizer ----------------------------------


def build_optimizer(cfg: Config) -> optax.GradientTransformation:
    """RMSProp with the learning rate injected into the optimizer state.

    Injecting the learning rate means decay is a state edit (see `set_lr`) and
    the current value is checkpointed together with the squared-gradient
    averages.
    """
    return optax.inject_hyperparams(optax.rmsprop)(
        learning_rate=cfg.optim.lr,
        decay=cfg.optim.decay_rate,
        eps=cfg.optim.eps,
    )


def current_lr(opt_state: Any) -> float:
    """Read the learning rate injected into the RMSProp state.

    :param Any opt_state: State from `build_optimizer(cfg).init`.
    :return float: Current learning rate on the host.
    """
    return float(jax.device_get(opt_state.hyperparams["learning_rate"]))


def set_lr(opt_state: Any, lr: float) -> Any:
    """Return opt_state with the injected learning rate replaced."""
    old = opt_state.hyperparams["learning_rate"]
    hyperparams = dict(opt_state.hyperparams)
    hyperparams["learning_rate"] = jnp.asarray(lr, dtype=jnp.asarray(old).dtype)
    return opt_state._replace(hyperparams=hyperparams)


def lr_decay_due(iteration: int, *, n_train: int, optim: OptimConfig) -> bool:
    """Decay once per full pass over the training batches, after lr_decay_after epochs."""
    if optim.lr_decay >= 1.0 or iteration % n_train != 0:
        return False
    return iteration / n_train >= optim.lr_decay_after


def clip_gradients(grads: jax.Array, clip: float) -> jax.Array:
    """Element-wise clamp to [-clip, clip]; clip <= 0 leaves grads unchanged."""
    if clip <= 0:
        return grads
    return jnp.clip(grads, -clip, clip)


def init_train_state(*, params: jax.Array, tx: optax.GradientTransformation, key: jax.Array) -> TrainState:
    """Build the iteration-0 train state.

    :param jax.Array params: Flat parameter vector from the registry.
    :param tx: Optimizer from build_optimizer.
    :param jax.Array key: PRNG key consumed by dropout in later steps.
    :return TrainState: Arrays-only state with step 0.
    """
    return TrainState(step=jnp.array(0, dtype=jnp.int32), params=params, opt_state=tx.init(params), rng=key)


# ------------------------------ Coupled backward ---------------------------


def coupled_value_and_grad(
    flat_params: jax.Array,
    *,
    static: Any,
    registry: ParamRegistry,
    batch: Batch,
    cfg: Config,
    deterministic: bool,
    key: jax.Array | None,
) -> tuple[jax.Array, jax.Array]:
    """Loss and gradient w.r.t. the flat parameter vector, via the coupling protocol.

    :param jax.Array flat_params: Parameter vector [P].
    :param Any static: Static model pytree.
    :param ParamRegistry registry: Flat <-> tree mapping.
    :param Batch batch: Time-major batch.
    :param Config cfg: Run config (model and loss sections are used).
    :param bool deterministic: If False, apply inter-layer dropout.
    :param key: Per-step PRNG key (split into encoder/decoder dropout keys).
    :return tuple: (scalar loss, gradient [P]).
    """
    k_enc, k_dec = split_step_key(key)
    num_layers = cfg.model.num_layers

    def model_of(flat: jax.Array) -> Seq2Seq:
        return eqx.combine(registry.unflatten(flat), static)

    def encode_fn(flat):
        return model_of(flat).encode(batch.encoder_input, deterministic=deterministic, key=k_enc)

    def decode_fn(flat, init_state):
        return model_of(flat).decode(
            batch.decoder_input, init_state, deterministic=deterministic, key=k_dec
        )

    (enc_out, enc_final), enc_vjp = jax.vjp(encode_fn, flat_params)
    dec_init = forward_connect(enc_final, num_layers=num_layers)

    logprobs, dec_vjp = jax.vjp(decode_fn, flat_params, dec_init)
    loss, dlogprobs = nll_value_and_grad(logprobs, batch.decoder_target, **loss_kwargs(cfg.loss))

    grads_dec, dinit = dec_vjp(dlogprobs)
    injected = backward_connect(dinit, num_layers=num_layers)
    (grads_enc,) = enc_vjp((zeros_like_outputs(enc_out), injected))

    return loss, grads_enc + grads_dec


def make_train_step(
    cfg: Config,
    *,
    static: Any,
    registry: ParamRegistry,
    tx: optax.GradientTransformation,
) -> Callable[[TrainState, Batch], tuple[TrainState, dict[str, jax.Array]]]:
    """Build the (optionally compiled) train step.

    The step consumes TrainState and a Batch, runs the coupled forward/backward,
    clips element-wise and applies one RMSProp update. Each distinct sequence
    length compiles once.
    """
    clip = float(cfg.optim.grad_clip)

    def train_step(state: TrainState, batch: Batch) -> tuple[TrainState, dict[str, jax.Array]]:
        rng, step_key = jax.random.split(state.rng)
        loss, grads = coupled_value_and_grad(
            state.params,
            static=static,
            registry=registry,
            batch=batch,
            cfg=cfg,
            deterministic=False,
            key=step_key,
        )
        grads = clip_gradients(grads, clip)

        updates, new_opt_state = tx.update(grads, state.opt_state, state.params)
        new_params = optax.apply_updates(state.params, updates)
        new_state = TrainState(step=state.step + 1, params=new_params, opt_state=new_opt_state, rng=rng)

        metrics = {
            "loss": loss.astype(jnp.float32),
            "grad_norm": jnp.linalg.norm(grads).astype(jnp.float32),
            "param_norm": jnp.linalg.norm(new_params).astype(jnp.float32),
            "lr": jnp.asarray(state.opt_state.hyperparams["learning_rate"], dtype=jnp.float32),
        }
        return new_state, metrics

    if cfg.train.jit:
        train_step = eqx.filter_jit(train_step)
    return train_step


def make_eval_loss(
    cfg: Config, *, static: Any, registry: ParamRegistry
) -> Callable[[jax.Array, Batch], jax.Array]:
    """Inference-mode loss (no dropout, no gradients) for one batch."""

    def eval_loss(flat_params: jax.Array, batch: Batch) -> jax.Array:
        return sequence_loss(
            registry.unflatten(flat_params),
            static,
            batch=batch,
            loss_cfg=cfg.loss,
            deterministic=True,
            key=None,
        )

    if cfg.train.jit:
        eval_loss = eqx.filter_jit(eval_loss)
    return eval_loss


def evaluate(
    eval_loss: Callable[[jax.Array, Batch], jax.Array],
    params: jax.Array,
    source: BatchSource,
    partition: Partition,
    n_batches: int,
) -> float:
    """Average loss over one full pass of `partition` (pointer wraps back to where it was)."""
    total = 0.0
    for _ in range(n_batches):
        total += float(jax.device_get(eval_loss(params, source.next_batch(partition))))
    return total / n_batches


# ------------------------------ Run ----------------------------------------


def _close_manager(manager: Any) -> None:
    """Flush pending (async) saves and release the manager, on every exit path."""
    if manager is None:
        return
    try:
        manager.wait_until_finished()
    finally:
        manager.close()


def _log_stop(mw: MetricsWriter, ctx: TrainContext, exc: TrainingStopped) -> None:
    ctx.stop_reason = exc.reason
    logger.error("Stopping training (%s): %s", exc.reason, exc)
    mw.write(
        {
            "kind": "stop",
            "reason": exc.reason,
            "iteration": exc.iteration,
            "epoch": ctx.epoch,
            "message": str(exc),
        }
    )


def run(
    cfg: Config,
    *,
    config_path: str | None = None,
    resume: Literal["none", "latest"] | int = "none",
    batch_source: BatchSource | None = None,
) -> TrainResult:
    """Run a training job.

    Resume contract:
    - resume requires logging.run_dir to be set (existing run directory)
    - we restore train_state, the batch source positions and TrainContext
    - iteration counters are absolute, so decay already applied before the
      checkpoint is never applied again; the learning rate itself comes back
      with the optimizer state

    `resume`:
      - "none": start fresh
      - "latest": restore latest checkpoint
      - int: restore the checkpoint taken at that iteration

    :param Config cfg: Validated configuration.
    :param config_path: Original YAML path (copied into the run dir).
    :param resume: Resume mode.
    :param batch_source: Override the configured synthetic source (tests).
    :raises RuntimeError: On resume problems (no checkpointing, config mismatch).
    :return TrainResult: Run directory, stop reason and final context.
    """
    allow_existing = resume != "none"
    run_dir = create_run_dir(cfg, config_path=config_path, allow_existing=allow_existing)
    log_path = run_dir / cfg.logging.log_file if cfg.logging.log_file else None
    if log_path is not None:
        add_file_logging(log_path, level=cfg.logging.level)

    device = select_device(cfg.train.device, index=cfg.train.device_index)
    try:
        with jax.default_device(device):
            return _run(cfg, run_dir=run_dir, resume=resume, batch_source=batch_source)
    finally:
        if log_path is not None:
            remove_file_logging(log_path)


def _run(
    cfg: Config,
    *,
    run_dir: Path,
    resume: Literal["none", "latest"] | int,
    batch_source: BatchSource | None,
) -> TrainResult:
    source = batch_source if batch_source is not None else build_batch_source(cfg)
    n_train, n_val, n_test = source.partition_sizes()
    vocab = source.vocab_mapping()
    vocab_size = source.vocab_size()
    logger.info(
        "Batches: train=%d val=%d test=%d (batch_size=%d, vocab=%d)",
        n_train,
        n_val,
        n_test,
        cfg.train.batch_size,
        vocab_size,
    )
    if n_train < 1:
        raise ValueError("Batch source has no training batches")
    if n_val == 0:
        logger.warning("No validation batches: divergence guard disabled, checkpoints carry no val loss")

    key = jax.random.PRNGKey(cfg.train.seed)
    key, k_model = jax.random.split(key)
    params_tree, static = build_model(cfg, vocab_size=vocab_size, key=k_model)
    registry = ParamRegistry.from_tree(params_tree)
    logger.info("Parameters: %s in %d tensors", f"{param_count(params_tree):,}", len(registry))
    for name, shape, size in registry.summary():
        logger.debug("  %-32s %-14s %d", name, shape, size)

    tx = build_optimizer(cfg)
    state = init_train_state(params=registry.flatten(params_tree), tx=tx, key=key)
    logger.info("Train state placed on %s", device_platform(state.params) or "unknown device")
    ctx = TrainContext()

    manager = None
    if cfg.checkpoint.enabled:
        manager = make_manager(
            resolve_ckpt_dir(cfg, run_dir),
            savefile=cfg.checkpoint.savefile,
            max_to_keep=cfg.checkpoint.max_to_keep,
            async_save=cfg.checkpoint.async_save,
        )

    try:
        if resume != "none":
            if manager is None:
                raise RuntimeError("resume requested but checkpointing is disabled")
            abstract_state = abstractify_tree(state)
            if resume == "latest":
                step_r, state, data_state, meta = restore_latest(manager, abstract_train_state=abstract_state)
            else:
                step_r, state, data_state, meta = restore_at_step(
                    manager, step=int(resume), abstract_train_state=abstract_state
                )
            check_resume_compat(cfg, meta, vocab=vocab)
            stale = [s for s in manager.all_steps() if s > step_r]
            if stale:
                logger.warning("Discarding checkpoint(s) newer than iteration %d: %s", step_r, sorted(stale))
                for s in stale:
                    manager.delete(s)
            if data_state is not None:
                source.set_state(data_state)
            ctx = TrainContext.from_meta(meta)
            logger.info(
                "Resumed from iteration %d (epoch %.2f, lr %.6g)", step_r, ctx.epoch, current_lr(state.opt_state)
            )

        train_step = make_train_step(cfg, static=static, registry=registry, tx=tx)
        eval_loss = make_eval_loss(cfg, static=static, registry=registry)

        total_iters = int(cfg.train.max_epochs) * n_train
        start = int(jax.device_get(state.step))
        if start >= total_iters:
            logger.info("Start iteration (%d) >= budget (%d); nothing to do", start, total_iters)
            ctx.stop_reason = "completed"
            return TrainResult(run_dir=run_dir, stop_reason="completed", iteration=start, epoch=ctx.epoch, context=ctx)

        t0 = time.perf_counter()
        with MetricsWriter(run_dir / cfg.logging.metrics_file) as mw:
            try:
                for _ in tqdm(
                    range(start, total_iters),
                    desc="train",
                    initial=start,
                    total=total_iters,
                    dynamic_ncols=True,
                    disable=not cfg.logging.progress_bar,
                ):
                    batch = source.next_batch("train")
                    if cfg.debug.validate_batches:
                        validate_batch(batch, batch_size=cfg.train.batch_size, vocab_size=vocab_size)

                    t1 = time.perf_counter()
                    state, metrics = train_step(state, batch)
                    metrics_host = jax.device_get(metrics)
                    dt = time.perf_counter() - t1

                    i = int(jax.device_get(state.step))
                    ctx.iteration = i
                    ctx.epoch = i / n_train
                    loss = float(metrics_host["loss"])
                    check_finite_loss(loss, iteration=i)
                    ctx.train_losses.append(loss)

                    if lr_decay_due(i, n_train=n_train, optim=cfg.optim):
                        old_lr = current_lr(state.opt_state)
                        new_lr = old_lr * cfg.optim.lr_decay
                        state = TrainState(
                            step=state.step, params=state.params, opt_state=set_lr(state.opt_state, new_lr), rng=state.rng
                        )
                        logger.info("Decayed learning rate by a factor %g to %.6g", cfg.optim.lr_decay, new_lr)
                        mw.write({"kind": "decay", "iteration": i, "epoch": ctx.epoch, "lr": new_lr})

                    if i % cfg.train.print_every == 0:
                        grad_norm = float(metrics_host["grad_norm"])
                        param_norm = float(metrics_host["param_norm"])
                        ratio = grad_norm / param_norm if param_norm > 0 else float("inf")
                        logger.info(
                            "%d/%d (epoch %.3f), train_loss = %6.8f, grad/param norm = %6.4e, time/batch = %.4fs",
                            i,
                            total_iters,
                            ctx.epoch,
                            loss,
                            ratio,
                            dt,
                        )
                        mw.write(
                            {
                                "kind": "train",
                                "iteration": i,
                                "epoch": ctx.epoch,
                                "loss": loss,
                                "grad_norm": grad_norm,
                                "param_norm": param_norm,
                                "grad_param_ratio": ratio,
                                "lr": float(metrics_host["lr"]),
                                "time_per_batch_s": dt,
                                "wall_time_s": time.perf_counter() - t0,
                            }
                        )

                    if i % cfg.train.eval_val_every == 0 or i == total_iters:
                        val_loss = None
                        if n_val > 0:
                            val_loss = evaluate(eval_loss, state.params, source, "validation", n_val)
                            ctx.val_losses.append([i, val_loss])
                            logger.info("Validation loss at iteration %d: %.4f", i, val_loss)
                            mw.write({"kind": "eval", "iteration": i, "epoch": ctx.epoch, "val_loss": val_loss})
                            check_divergence(
                                val_loss, ctx.last_val_loss, factor=cfg.train.divergence_factor, iteration=i
                            )
                            ctx.last_val_loss = val_loss

                        if i == total_iters and cfg.train.eval_test_at_end and n_test > 0:
                            ctx.test_loss = evaluate(eval_loss, state.params, source, "test", n_test)
                            logger.info("Test loss: %.4f", ctx.test_loss)
                            mw.write({"kind": "test", "iteration": i, "epoch": ctx.epoch, "test_loss": ctx.test_loss})

                        if manager is not None:
                            meta = build_meta(
                                step=i,
                                epoch=ctx.epoch,
                                val_loss=val_loss,
                                config=cfg.to_dict(),
                                vocab=vocab,
                                train_losses=ctx.train_losses,
                                val_losses=ctx.val_losses,
                                last_val_loss=ctx.last_val_loss,
                                test_loss=ctx.test_loss,
                            )
                            save(manager, step=i, train_state=state, data_state=source.get_state(), meta=meta)

                    if cfg.train.gc_every > 0 and i % cfg.train.gc_every == 0:
                        gc.collect()
            except TrainingStopped as exc:
                _log_stop(mw, ctx, exc)
            else:
                ctx.stop_reason = "completed"
                mw.write({"kind": "stop", "reason": "completed", "iteration": ctx.iteration, "epoch": ctx.epoch})
    finally:
        _close_manager(manager)

    assert ctx.stop_reason is not None
    return TrainResult(
        run_dir=run_dir,
        stop_reason=ctx.stop_reason,
        iteration=ctx.iteration,
        epoch=ctx.epoch,
        context=ctx,
    )
