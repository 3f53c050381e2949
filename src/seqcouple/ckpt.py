"""Checkpointing (Orbax) for seqcouple.

"Resume" is a contract, not a nice-to-have: if train_state
(params + opt_state + rng + step) and the loop bookkeeping can't be restored,
a resumed run is a different run.

We save three logical things per checkpoint:
- train_state: arrays-only pytree (TrainState); the learning rate rides inside
  opt_state as an injected hyperparameter
- data_state:  JSON dict (batch source positions)
- meta:        JSON dict (versions, config, vocabulary, epoch/iteration,
               validation loss, loss histories)

Step directories are named `<checkpoint.savefile>_<iteration>` and carry the
validation loss as an Orbax metric, so `manager.best_step()` is the lowest
validation loss seen.

We use the newer `args=` API (not deprecated `items=`).
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import orbax.checkpoint as ocp

from seqcouple.config import Config

logger = logging.getLogger(__name__)

ITEM_NAMES = ("train_state", "data_state", "meta")


@dataclass(frozen=True)
class CheckpointMeta:
    """Metadata stored alongside checkpoints. Keep this JSON-serializable."""

    step: int
    epoch: float
    val_loss: float | None
    timestamp: str

    # Versions for debugging (not for strict gating)
    python: str
    jax: str | None
    orbax: str | None
    seqcouple: str

    # Repro snapshot
    config: dict[str, Any]
    vocab: dict[str, int]

    # Loop bookkeeping (TrainContext)
    train_losses: list[float] = field(default_factory=list)
    val_losses: list[list[float]] = field(default_factory=list)
    last_val_loss: float | None = None
    test_loss: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _safe_version(pkg: str) -> str | None:
    """Installed version of `pkg`, or None."""
    import importlib.metadata as im

    try:
        return im.version(pkg)
    except im.PackageNotFoundError:
        return None


def build_meta(
    *,
    step: int,
    epoch: float,
    val_loss: float | None,
    config: dict[str, Any],
    vocab: dict[str, int],
    train_losses: list[float],
    val_losses: list[list[float]],
    last_val_loss: float | None,
    test_loss: float | None = None,
) -> CheckpointMeta:
    """Assemble the JSON meta item for one checkpoint.

    :param int step: Iteration the checkpoint was taken at.
    :param float epoch: Fractional epoch (iteration / n_train).
    :param val_loss: Validation loss that triggered the save.
    :param dict config: Full config dict for reproducibility.
    :param dict vocab: Token -> id mapping.
    :param list train_losses: Per-iteration training losses so far.
    :param list val_losses: [iteration, loss] pairs so far.
    :param last_val_loss: Reference for the divergence guard.
    :param test_loss: Final test-partition loss, if computed.
    :return CheckpointMeta: Metadata ready for JsonSave.
    """
    import platform

    return CheckpointMeta(
        step=int(step),
        epoch=float(epoch),
        val_loss=None if val_loss is None else float(val_loss),
        timestamp=datetime.now().isoformat(timespec="seconds"),
        python=platform.python_version(),
        jax=_safe_version("jax"),
        orbax=_safe_version("orbax-checkpoint"),
        seqcouple=_safe_version("seqcouple") or "0.0.0",
        config=config,
        vocab=dict(vocab),
        train_losses=[float(x) for x in train_losses],
        val_losses=[[int(i), float(v)] for i, v in val_losses],
        last_val_loss=None if last_val_loss is None else float(last_val_loss),
        test_loss=None if test_loss is None else float(test_loss),
    )


def default_ckpt_dir(run_dir: Path) -> Path:
    """Return the default checkpoint directory for a run."""
    return run_dir / "checkpoints"


def resolve_ckpt_dir(cfg: Config, run_dir: Path) -> Path:
    """checkpoint.root_dir (relative paths resolve under run_dir) or the default."""
    if not cfg.checkpoint.root_dir:
        return default_ckpt_dir(run_dir)
    root = Path(cfg.checkpoint.root_dir)
    return root if root.is_absolute() else run_dir / root


def make_manager(
    ckpt_dir: Path,
    *,
    savefile: str,
    max_to_keep: int | None,
    async_save: bool,
) -> ocp.CheckpointManager:
    """Open (creating if needed) the Orbax manager for a checkpoint root.

    This wrapper is here so Orbax API drift is contained.

    :param Path ckpt_dir: Checkpoint root; step dirs are created inside it.
    :param str savefile: Step directory prefix.
    :param max_to_keep: Keep the best N (lowest val loss); None keeps all.
    :param bool async_save: Let saves finish in a background thread.
    :return ocp.CheckpointManager: Manager for the three checkpoint items.
    """

    import orbax.checkpoint as ocp

    ckpt_dir = Path(ckpt_dir).resolve()
    ckpt_dir.mkdir(parents=True, exist_ok=True)

    options = ocp.CheckpointManagerOptions(
        max_to_keep=max_to_keep,
        step_prefix=savefile,
        best_fn=lambda metrics: metrics["val_loss"],
        best_mode="min",
        keep_checkpoints_without_metrics=True,
        create=True,
        enable_async_checkpointing=async_save,
    )
    return ocp.CheckpointManager(
        directory=str(ckpt_dir),
        item_names=ITEM_NAMES,
        options=options,
    )


def save(
    manager: ocp.CheckpointManager,
    *,
    step: int,
    train_state: Any,
    data_state: dict[str, Any],
    meta: CheckpointMeta,
) -> None:
    """Save a checkpoint.

    train_state goes through StandardSave; data_state and meta are JSON.

    With async saving Orbax snapshots the arrays before returning, so the
    caller may keep updating params immediately.

    :param manager: Manager from make_manager.
    :param int step: Iteration number.
    :param Any train_state: Arrays-only TrainState.
    :param dict[str, Any] data_state: Batch source state dict.
    :param CheckpointMeta meta: Metadata from build_meta.
    """

    import orbax.checkpoint as ocp

    metrics = None if meta.val_loss is None else {"val_loss": float(meta.val_loss)}
    manager.save(
        int(step),
        args=ocp.args.Composite(
            train_state=ocp.args.StandardSave(train_state),
            data_state=ocp.args.JsonSave(data_state),
            meta=ocp.args.JsonSave(meta.to_dict()),
        ),
        metrics=metrics,
    )
    logger.info(
        "Saved checkpoint %s_%d (epoch %.2f, val_loss %s)",
        manager.directory,
        int(step),
        meta.epoch,
        "n/a" if meta.val_loss is None else f"{meta.val_loss:.4f}",
    )


def restore_at_step(
    manager: ocp.CheckpointManager,
    *,
    step: int,
    abstract_train_state: Any,
) -> tuple[int, Any, dict[str, Any] | None, dict[str, Any] | None]:
    """Restore the checkpoint taken at `step`.

    :param manager: Manager from make_manager.
    :param int step: Iteration to restore.
    :param abstract_train_state: ShapeDtypeStruct template of the TrainState.
    :return tuple: (iteration, train_state, data_state, meta).
    """
    import orbax.checkpoint as ocp

    step = int(step)
    restored = manager.restore(
        step,
        args=ocp.args.Composite(
            train_state=ocp.args.StandardRestore(abstract_train_state),
            data_state=ocp.args.JsonRestore(),
            meta=ocp.args.JsonRestore(),
        ),
    )
    return step, restored["train_state"], restored.get("data_state"), restored.get("meta")


def restore_latest(
    manager: ocp.CheckpointManager,
    *,
    abstract_train_state: Any,
) -> tuple[int, Any, dict[str, Any] | None, dict[str, Any] | None]:
    """Restore the most recent checkpoint.

    :raises FileNotFoundError: If the root holds no checkpoint yet.
    :return tuple: (iteration, train_state, data_state, meta).
    """
    latest = manager.latest_step()
    if latest is None:
        raise FileNotFoundError(f"Nothing to resume from: {manager.directory} has no checkpoints")
    return restore_at_step(manager, step=latest, abstract_train_state=abstract_train_state)


def check_resume_compat(
    cfg: Config, meta: dict[str, Any] | None, *, vocab: dict[str, int]
) -> None:
    """Validate checkpoint metadata against the current config and vocabulary.

    Model shape, loss definition, optimizer, batch size, data task and the
    vocabulary must match exactly. Loop cadence knobs (print/eval frequency,
    epochs) may change between runs.

    :param Config cfg: Current configuration.
    :param meta: Restored meta item, None when absent.
    :param dict vocab: Current batch source vocabulary.
    :raises RuntimeError: If meta is missing or mismatches are found.
    """

    if meta is None:
        raise RuntimeError("Checkpoint meta is missing; refusing to resume without it.")
    meta_cfg = meta.get("config")
    if not isinstance(meta_cfg, dict):
        raise RuntimeError("Checkpoint meta has no config snapshot; cannot verify resume compatibility.")

    errors: list[str] = []
    cur_cfg = cfg.to_dict()

    for section in ("model", "loss", "optim", "data"):
        prev = meta_cfg.get(section) or {}
        cur = cur_cfg.get(section) or {}
        for key in sorted(set(prev) | set(cur)):
            if cur.get(key) != prev.get(key):
                errors.append(
                    f"{section}.{key} mismatch (checkpoint={prev.get(key)!r}, current={cur.get(key)!r})"
                )

    for key in ("batch_size", "seed"):
        prev = (meta_cfg.get("train") or {}).get(key)
        cur = cur_cfg["train"][key]
        if cur != prev:
            errors.append(f"train.{key} mismatch (checkpoint={prev!r}, current={cur!r})")

    if meta.get("vocab") != dict(vocab):
        errors.append("vocabulary mismatch between checkpoint and batch source")

    if errors:
        detail = "\n".join(f"- {msg}" for msg in errors)
        raise RuntimeError(f"Resume config mismatch:\n{detail}")
