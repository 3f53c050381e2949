"""Shared config builders for integration-style tests."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from seqcouple.config import (
    CheckpointConfig,
    Config,
    DebugConfig,
    LoggingConfig,
    ModelConfig,
    OptimConfig,
    TrainConfig,
    validate_config,
)

CONFIGS_DIR = Path(__file__).resolve().parents[2] / "configs"


def make_tiny_cfg(
    tmp_path: Path,
    *,
    run_subdir: str = "run",
    max_epochs: int = 2,
    eval_val_every: int = 5,
    num_layers: int = 1,
    dropout: float = 0.0,
    lr_decay: float = 1.0,
    lr_decay_after: float = 0.0,
    checkpoint: bool = True,
) -> Config:
    """Build the tiny config used with `FixedBatchSource` (V=4, H=8, B=2, T=5).

    :param Path tmp_path: Temporary directory provided by pytest.
    :param str run_subdir: Name of the run subdirectory under tmp_path.
    :return Config: Validated configuration.
    """
    cfg = Config(
        model=ModelConfig(hidden_size=8, num_layers=num_layers, dropout=dropout),
        train=TrainConfig(
            seed=0,
            batch_size=2,
            max_epochs=max_epochs,
            print_every=1,
            eval_val_every=eval_val_every,
            gc_every=3,
            device="cpu",
        ),
        optim=OptimConfig(lr=0.01, lr_decay=lr_decay, lr_decay_after=lr_decay_after),
        checkpoint=CheckpointConfig(enabled=checkpoint, savefile="tiny"),
        logging=LoggingConfig(
            run_dir=str(tmp_path / run_subdir),
            console_use_rich=False,
            progress_bar=False,
        ),
        debug=DebugConfig(validate_batches=True),
    )
    validate_config(cfg)
    return cfg


def with_run_dir(cfg: Config, run_dir: Path) -> Config:
    return replace(cfg, logging=replace(cfg.logging, run_dir=str(run_dir)))
