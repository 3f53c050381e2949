"""Checkpoint path and config resolution utilities.

Used by `seqcouple sample`: given a run directory (or any path inside it),
find the config snapshot, the checkpoint root and a step, then rebuild the
model from the saved flat parameter vector.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from seqcouple.config import Config, config_from_dict


def _step_dir_pattern(savefile: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(savefile)}_(\d+)$")


def list_checkpoint_steps(ckpt_root: Path, *, savefile: str) -> list[int]:
    """List saved iterations under a checkpoint root, ascending.

    Step directories are named `<savefile>_<iteration>` and must contain a
    `train_state` item to count.

    :param Path ckpt_root: Checkpoint root directory.
    :param str savefile: Step directory prefix (checkpoint.savefile).
    :return list[int]: Iterations with a complete checkpoint.
    """
    if not ckpt_root.is_dir():
        return []
    pattern = _step_dir_pattern(savefile)
    steps = []
    for p in ckpt_root.iterdir():
        m = pattern.match(p.name)
        if m and p.is_dir() and (p / "train_state").exists():
            steps.append(int(m.group(1)))
    return sorted(steps)


def find_run_dir(start: Path) -> Path:
    """Search upwards for a directory containing config_resolved.json.

    :param Path start: Run dir, checkpoint root or step dir.
    :raises FileNotFoundError: If no parent holds a config snapshot.
    :return Path: The run directory.
    """
    start = Path(start).resolve()
    for parent in (start, *start.parents):
        if (parent / "config_resolved.json").exists():
            return parent
    raise FileNotFoundError(f"No config_resolved.json found at or above {start}; is this a seqcouple run?")


def _read_json(path: Path) -> dict[str, Any]:
    with path.open() as f:
        data = json.load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {path}")
    return data


def load_run_config(run_dir: Path) -> Config:
    """Load and validate the config snapshot of a run.

    :param Path run_dir: Run directory containing config_resolved.json.
    :raises FileNotFoundError: If the snapshot is missing.
    :raises ValueError: If it is corrupted or invalid.
    :return Config: Validated configuration.
    """
    path = run_dir / "config_resolved.json"
    if not path.exists():
        raise FileNotFoundError(f"config_resolved.json not found in {run_dir}")
    try:
        data = _read_json(path)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Corrupted config_resolved.json in {run_dir}: {exc}") from exc
    return config_from_dict(data)


def resolve_step(ckpt_root: Path, *, savefile: str, step: str | int = "latest") -> int:
    """Pick the iteration to load.

    :param Path ckpt_root: Checkpoint root directory.
    :param str savefile: Step directory prefix.
    :param step: "latest" or an iteration number.
    :raises FileNotFoundError: If there are no checkpoints, or `step` is not one of them.
    :return int: Iteration number.
    """
    steps = list_checkpoint_steps(ckpt_root, savefile=savefile)
    if not steps:
        raise FileNotFoundError(f"No checkpoints named {savefile}_<N> found in {ckpt_root}")
    if step == "latest":
        return steps[-1]
    if int(step) not in steps:
        raise FileNotFoundError(f"No checkpoint at iteration {step} in {ckpt_root}; available: {steps}")
    return int(step)


def load_for_inference(path: str | Path, *, step: str | int = "latest") -> tuple[Config, Any, Any, dict[str, int], int]:
    """Rebuild a trained model from a run directory.

    Restores the full TrainState through the same Orbax manager the trainer
    uses, then unflattens the parameter vector with a fresh registry.

    :param path: Run directory (or a path inside it).
    :param step: "latest" or an iteration number.
    :return tuple: (cfg, params pytree, static pytree, vocab, iteration).
    """
    import jax

    from seqcouple.ckpt import make_manager, resolve_ckpt_dir, restore_at_step
    from seqcouple.model import build_model
    from seqcouple.params import ParamRegistry
    from seqcouple.train import build_optimizer, init_train_state
    from seqcouple.utils.tree import abstractify_tree

    run_dir = find_run_dir(Path(path))
    cfg = load_run_config(run_dir)
    ckpt_root = resolve_ckpt_dir(cfg, run_dir)
    it = resolve_step(ckpt_root, savefile=cfg.checkpoint.savefile, step=step)

    meta_path = ckpt_root / f"{cfg.checkpoint.savefile}_{it}" / "meta" / "metadata"
    meta = _read_json(meta_path)
    vocab = {str(k): int(v) for k, v in (meta.get("vocab") or {}).items()}
    if not vocab:
        raise ValueError(f"Checkpoint meta at {meta_path} has no vocabulary")

    key = jax.random.PRNGKey(cfg.train.seed)
    key, k_model = jax.random.split(key)
    params_tree, static = build_model(cfg, vocab_size=len(vocab), key=k_model)
    registry = ParamRegistry.from_tree(params_tree)
    template = init_train_state(params=registry.flatten(params_tree), tx=build_optimizer(cfg), key=key)

    manager = make_manager(
        ckpt_root, savefile=cfg.checkpoint.savefile, max_to_keep=None, async_save=False
    )
    try:
        _, state, _, _ = restore_at_step(manager, step=it, abstract_train_state=abstractify_tree(template))
    finally:
        manager.close()
    return cfg, registry.unflatten(state.params), static, vocab, it
