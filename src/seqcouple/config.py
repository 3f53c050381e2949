# SPDX-License-Identifier: Apache-2.0

"""Configuration for seqcouple.

Every tunable lives in the frozen dataclasses below; there is no second
config path. A run is described by a YAML file (optionally with a top-level
`variables:` block) plus `section.key=value` overrides from the command line.
Unknown sections, unknown keys and out-of-range values are rejected before
any computation starts.

Defaults follow the classic char-level encoder-decoder recipe:
2x128 LSTM, RMSProp lr=0.01 (decay 0.95), dropout 0.5 between layers,
element-wise grad clip at 5, lr *= 0.97 per epoch after epoch 10.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import asdict, dataclass, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Literal

import yaml

SyntheticTask = Literal["repeat", "successor"]
Reduction = Literal["sum", "mean"]
DevicePreference = Literal["auto", "cpu", "gpu"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(frozen=True)
class ModelConfig:
    """Encoder/decoder LSTM stacks.

    Both stacks share hidden_size and num_layers so that StateCoupling is a
    layer-for-layer copy. The vocabulary size is *not* configured here: it comes
    from the batch source and is persisted with every checkpoint.
    """

    hidden_size: int = 128
    num_layers: int = 2
    # Applied between stacked layers only, training mode only.
    dropout: float = 0.5


@dataclass(frozen=True)
class DataConfig:
    """Synthetic batch source configuration.

    Tasks:
    - repeat:    ab -> aabb
    - successor: ab -> abc

    Split fractions are over whole batches; test_frac = 1 - train_frac - val_frac.
    """

    task: SyntheticTask = "successor"
    num_examples: int = 9000
    min_len: int = 1
    max_len: int = 6
    alphabet: str = "abcdefghijklmnopqrstuvwxyz"

    train_frac: float = 0.90
    val_frac: float = 0.10


@dataclass(frozen=True)
class LossConfig:
    """Per-timestep NLL reductions.

    The defaults sum over time and average over the batch, so per-example loss
    grows with sequence length. Keep that in mind when comparing runs with
    different max_len.
    """

    time_reduction: Reduction = "sum"
    batch_reduction: Reduction = "mean"
    ignore_padding: bool = False


@dataclass(frozen=True)
class TrainConfig:
    """Training loop configuration."""

    seed: int = 16
    batch_size: int = 20
    max_epochs: int = 10

    print_every: int = 10
    eval_val_every: int = 500
    # Every N iterations run gc.collect(); 0 disables.
    gc_every: int = 100

    # Stop when val_loss > divergence_factor * previous val_loss.
    divergence_factor: float = 3.0
    # Evaluate the test partition once training finishes normally.
    eval_test_at_end: bool = True

    jit: bool = True
    device: DevicePreference = "auto"
    device_index: int = 0


@dataclass(frozen=True)
class OptimConfig:
    """RMSProp + epoch-based exponential decay."""

    lr: float = 0.01
    lr_decay: float = 0.97
    # In epochs: decay only once epoch >= lr_decay_after.
    lr_decay_after: float = 10.0
    # RMSProp squared-gradient moving-average decay.
    decay_rate: float = 0.95
    eps: float = 1e-8
    # Element-wise clamp to [-grad_clip, grad_clip]; 0 disables.
    grad_clip: float = 5.0


@dataclass(frozen=True)
class CheckpointConfig:
    """Orbax checkpointing configuration.

    Checkpoints are written on every validation pass that does not trip the
    divergence guard (and therefore on the final iteration).
    """

    enabled: bool = True
    # Relative paths resolve under the run dir; None means <run_dir>/checkpoints.
    root_dir: str | None = None
    savefile: str = "model"
    # None keeps every checkpoint.
    max_to_keep: int | None = None
    async_save: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    """Run directory, console and metrics file settings."""

    project: str = "seqcouple"
    run_dir: str | None = None
    metrics_file: str = "metrics.jsonl"
    level: LogLevel = "INFO"
    console_use_rich: bool = True
    log_file: str | None = "train.log"
    progress_bar: bool = True


@dataclass(frozen=True)
class DebugConfig:
    """Debug configuration."""

    # Check every batch against the batch-source contract before the step.
    validate_batches: bool = True


@dataclass(frozen=True)
class Config:
    """Everything a training run needs, one frozen section per concern."""

    model: ModelConfig = ModelConfig()
    data: DataConfig = DataConfig()
    loss: LossConfig = LossConfig()
    train: TrainConfig = TrainConfig()
    optim: OptimConfig = OptimConfig()
    checkpoint: CheckpointConfig = CheckpointConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: DebugConfig = DebugConfig()

    def to_dict(self) -> dict[str, Any]:
        """Plain nested dict, as stored in config_resolved.json and checkpoint meta."""
        return asdict(self)


# ------------------------------ Loading ---------------------------------

_TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
_FALSE_WORDS = frozenset({"false", "no", "off", "0"})


def _coerce(current: Any, text: str) -> Any:
    """Interpret an override string using the type of the value it replaces.

    Fields whose default is None (e.g. checkpoint.max_to_keep) take whatever
    YAML scalar the text parses to. Literal-typed fields stay strings and are
    checked by validate_config.
    """
    if isinstance(current, bool):
        word = text.lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ValueError(f"Cannot read {text!r} as a boolean")
    if isinstance(current, (int, float)):
        try:
            return type(current)(text)
        except ValueError as exc:
            raise ValueError(f"Cannot read {text!r} as {type(current).__name__}") from exc
    if current is None:
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError:
            return text
        return None if text.lower() in {"null", "none", "~"} else (text if parsed is None else parsed)
    return text


def _override_field(node: Any, keys: list[str], text: str, full_key: str) -> Any:
    head, rest = keys[0], keys[1:]
    if not is_dataclass(node) or head not in {f.name for f in fields(node)}:
        raise ValueError(f"Unknown config key {full_key!r}: no field {head!r}")
    child = getattr(node, head)
    new_child = _override_field(child, rest, text, full_key) if rest else _coerce(child, text)
    return replace(node, **{head: new_child})


def apply_overrides(cfg: Config, overrides: Iterable[str]) -> Config:
    """Apply "section.key=value" overrides to a config.

    :param Config cfg: Base configuration.
    :param overrides: Iterable of dot-path overrides, e.g. "train.max_epochs=20".
    :raises ValueError: If an override is malformed or names an unknown key.
    :return Config: New configuration (not validated).
    """
    for item in overrides:
        key, sep, text = item.partition("=")
        keys = key.strip().split(".")
        if not sep or not all(keys):
            raise ValueError(f"Invalid override {item!r}; expected section.key=value")
        cfg = _override_field(cfg, keys, text.strip(), key.strip())
    return cfg


def load_config(path: str | Path, overrides: Iterable[str] | None = None) -> Config:
    """Read a YAML config, apply overrides and validate.

    :param path: Path to the YAML config file.
    :param overrides: Optional dot-path overrides.
    :raises ValueError: On malformed files, bad overrides or failed validation.
    :return Config: Validated configuration object.
    """
    path = Path(path)
    raw = yaml.safe_load(path.read_text()) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must hold a YAML mapping at the top level, not {type(raw).__name__}")

    cfg = _build_config(_expand_variables(raw))
    if overrides:
        cfg = apply_overrides(cfg, overrides)
    validate_config(cfg)
    return cfg


# "$variables.a.b" as a whole value keeps the referenced type;
# "{$variables.a.b}" inside a string is interpolated as text.
_WHOLE_REF = re.compile(r"\$variables\.([\w.-]+)")
_INLINE_REF = re.compile(r"\{\$variables\.([\w.-]+)\}")


def _expand_variables(raw: dict[str, Any]) -> dict[str, Any]:
    """Substitute references to the top-level `variables:` block.

    Variables may reference each other; cycles and unknown names raise
    ValueError. The `variables` key itself is dropped from the result.
    """
    table = raw.get("variables") or {}
    if not isinstance(table, dict):
        raise ValueError("variables must be a mapping")

    done: dict[str, Any] = {}
    stack: list[str] = []

    def lookup(name: str) -> Any:
        if name in done:
            return done[name]
        if name in stack:
            raise ValueError(f"Circular variable reference: {' -> '.join([*stack, name])}")
        node: Any = table
        for part in name.split("."):
            if not isinstance(node, dict) or part not in node:
                raise ValueError(f"Unknown variable reference: variables.{name}")
            node = node[part]
        stack.append(name)
        done[name] = expand(node)
        stack.pop()
        return done[name]

    def expand(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: expand(v) for k, v in value.items()}
        if isinstance(value, list):
            return [expand(v) for v in value]
        if not isinstance(value, str):
            return value
        whole = _WHOLE_REF.fullmatch(value)
        if whole:
            return lookup(whole.group(1))
        return _INLINE_REF.sub(lambda m: str(lookup(m.group(1))), value)

    return {k: expand(v) for k, v in raw.items() if k != "variables"}


_SECTIONS: dict[str, type] = {
    "model": ModelConfig,
    "data": DataConfig,
    "loss": LossConfig,
    "train": TrainConfig,
    "optim": OptimConfig,
    "checkpoint": CheckpointConfig,
    "logging": LoggingConfig,
    "debug": DebugConfig,
}


def _build_config(data: dict[str, Any]) -> Config:
    stray = sorted(set(data) - set(_SECTIONS))
    if stray:
        raise ValueError(f"Unknown config section(s) {stray}; known sections are {sorted(_SECTIONS)}")

    built: dict[str, Any] = {}
    for name, section_cls in _SECTIONS.items():
        body = data.get(name) or {}
        if not isinstance(body, dict):
            raise ValueError(f"Section {name!r} must be a mapping, got {type(body).__name__}")
        allowed = {f.name for f in fields(section_cls)}
        extra = sorted(set(body) - allowed)
        if extra:
            raise ValueError(f"Invalid keys in config section {name!r}: {extra}")
        built[name] = section_cls(**body)
    return Config(**built)


def config_from_dict(data: dict[str, Any]) -> Config:
    """Build and validate a Config from a nested mapping (e.g. a run's config snapshot)."""
    cfg = _build_config(_expand_variables(data))
    validate_config(cfg)
    return cfg


# ------------------------------ Validation ---------------------------------


def _vfail(msg: str) -> None:
    raise ValueError(f"Config validation failed: {msg}")


def _validate_model(cfg: Config) -> None:
    if cfg.model.hidden_size <= 0:
        _vfail(f"model.hidden_size must be positive, got {cfg.model.hidden_size}")
    if cfg.model.num_layers <= 0:
        _vfail(f"model.num_layers must be >= 1, got {cfg.model.num_layers}")
    if not (0.0 <= cfg.model.dropout < 1.0):
        _vfail(f"model.dropout must be in [0, 1), got {cfg.model.dropout}")


def _validate_data(cfg: Config) -> None:
    d = cfg.data
    if d.task not in ("repeat", "successor"):
        _vfail(f"data.task must be 'repeat' or 'successor', got {d.task!r}")
    if d.num_examples <= 0:
        _vfail(f"data.num_examples must be positive, got {d.num_examples}")
    if d.min_len <= 0:
        _vfail(f"data.min_len must be positive, got {d.min_len}")
    if d.max_len < d.min_len:
        _vfail(f"data.max_len ({d.max_len}) must be >= data.min_len ({d.min_len})")
    if len(set(d.alphabet)) != len(d.alphabet) or not d.alphabet:
        _vfail("data.alphabet must be a non-empty string of distinct characters")
    if d.task == "successor" and d.max_len + 1 > len(d.alphabet):
        _vfail(
            f"data.max_len ({d.max_len}) must be < len(data.alphabet) ({len(d.alphabet)}) "
            "for the successor task"
        )
    if not (0.0 < d.train_frac <= 1.0):
        _vfail(f"data.train_frac must be in (0, 1], got {d.train_frac}")
    if not (0.0 <= d.val_frac <= 1.0):
        _vfail(f"data.val_frac must be in [0, 1], got {d.val_frac}")
    if d.train_frac + d.val_frac > 1.0 + 1e-9:
        _vfail(
            f"data.train_frac + data.val_frac must not exceed 1, got "
            f"{d.train_frac} + {d.val_frac} = {d.train_frac + d.val_frac}"
        )
    if d.num_examples // cfg.train.batch_size < 1:
        _vfail(
            f"data.num_examples ({d.num_examples}) must provide at least one batch of "
            f"train.batch_size ({cfg.train.batch_size})"
        )


def _validate_loss(cfg: Config) -> None:
    if cfg.loss.time_reduction not in ("sum", "mean"):
        _vfail(f"loss.time_reduction must be 'sum' or 'mean', got {cfg.loss.time_reduction!r}")
    if cfg.loss.batch_reduction not in ("sum", "mean"):
        _vfail(f"loss.batch_reduction must be 'sum' or 'mean', got {cfg.loss.batch_reduction!r}")


def _validate_train(cfg: Config) -> None:
    t = cfg.train
    if t.batch_size <= 0:
        _vfail(f"train.batch_size must be positive, got {t.batch_size}")
    if t.max_epochs <= 0:
        _vfail(f"train.max_epochs must be positive, got {t.max_epochs}")
    if t.print_every <= 0:
        _vfail(f"train.print_every must be positive, got {t.print_every}")
    if t.eval_val_every <= 0:
        _vfail(f"train.eval_val_every must be positive, got {t.eval_val_every}")
    if t.gc_every < 0:
        _vfail(f"train.gc_every must be >= 0, got {t.gc_every}")
    if t.divergence_factor <= 1.0:
        _vfail(f"train.divergence_factor must be > 1, got {t.divergence_factor}")
    if t.device not in ("auto", "cpu", "gpu"):
        _vfail(f"train.device must be 'auto', 'cpu' or 'gpu', got {t.device!r}")
    if t.device_index < 0:
        _vfail(f"train.device_index must be >= 0, got {t.device_index}")


def _validate_optim(cfg: Config) -> None:
    o = cfg.optim
    if o.lr <= 0:
        _vfail(f"optim.lr must be positive, got {o.lr}")
    if not (0.0 < o.lr_decay <= 1.0):
        _vfail(f"optim.lr_decay must be in (0, 1], got {o.lr_decay}")
    if o.lr_decay_after < 0:
        _vfail(f"optim.lr_decay_after must be >= 0, got {o.lr_decay_after}")
    if not (0.0 < o.decay_rate < 1.0):
        _vfail(f"optim.decay_rate must be in (0, 1), got {o.decay_rate}")
    if o.eps <= 0:
        _vfail(f"optim.eps must be positive, got {o.eps}")
    if o.grad_clip < 0:
        _vfail(f"optim.grad_clip must be >= 0 (0 disables), got {o.grad_clip}")


def _validate_checkpoint(cfg: Config) -> None:
    if cfg.checkpoint.enabled:
        if not cfg.checkpoint.savefile or "/" in cfg.checkpoint.savefile:
            _vfail(
                "checkpoint.savefile must be a non-empty name without '/', "
                f"got {cfg.checkpoint.savefile!r}"
            )
        if cfg.checkpoint.max_to_keep is not None and cfg.checkpoint.max_to_keep <= 0:
            _vfail(
                f"checkpoint.max_to_keep must be positive or null, got {cfg.checkpoint.max_to_keep}"
            )


def _validate_logging(cfg: Config) -> None:
    if cfg.logging.log_file is not None and not str(cfg.logging.log_file).strip():
        _vfail("logging.log_file must be a non-empty string or null")
    if cfg.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        _vfail(f"logging.level must be DEBUG/INFO/WARNING/ERROR, got {cfg.logging.level!r}")


def validate_config(cfg: Config) -> None:
    """Raise ValueError naming the first offending field, if any."""
    _validate_train(cfg)
    _validate_model(cfg)
    _validate_data(cfg)
    _validate_loss(cfg)
    _validate_optim(cfg)
    _validate_checkpoint(cfg)
    _validate_logging(cfg)
