"""Batch source contract.

Anything that feeds the trainer implements `BatchSource`:

    next_batch(partition) -> Batch          # partition: train | validation | test
    partition_sizes()     -> (n_train, n_val, n_test)   # in batches
    vocab_size()          -> V
    vocab_mapping()       -> {token: id}
    get_state() / set_state(...)            # JSON-able position, for resume

The trainer does not trust sources blindly: `validate_batch` is the fail-fast
check for shape/dtype/range violations, so a bad source raises a readable
ValueError instead of silently training on garbage.
"""

from __future__ import annotations

from typing import Any, Literal, Protocol

import numpy as np

from seqcouple.types import Batch

Partition = Literal["train", "validation", "test"]
PARTITIONS: tuple[Partition, ...] = ("train", "validation", "test")

PAD_TOKEN = "<pad>"
GO_TOKEN = "<go>"
EOS_TOKEN = "<eos>"


class BatchSource(Protocol):
    def next_batch(self, partition: Partition) -> Batch: ...

    def partition_sizes(self) -> tuple[int, int, int]: ...

    def vocab_size(self) -> int: ...

    def vocab_mapping(self) -> dict[str, int]: ...

    def get_state(self) -> dict[str, Any]: ...

    def set_state(self, state: dict[str, Any]) -> None: ...


def validate_batch(batch: Batch, *, batch_size: int, vocab_size: int) -> None:
    """Check a batch against the source contract.

    :param Batch batch: Batch to check.
    :param int batch_size: Run-wide batch size B.
    :param int vocab_size: Vocabulary size V.
    :raises ValueError: On any contract violation.
    """
    fields = {
        "encoder_input": batch.encoder_input,
        "decoder_input": batch.decoder_input,
        "decoder_target": batch.decoder_target,
    }
    shapes = {}
    for name, arr in fields.items():
        shape = tuple(np.shape(arr))
        if len(shape) != 2:
            raise ValueError(f"Batch field {name} must be 2-D [T, B], got shape {shape}")
        if not np.issubdtype(np.asarray(arr).dtype, np.integer):
            raise ValueError(f"Batch field {name} must hold integer token ids, got {arr.dtype}")
        shapes[name] = shape

    if len(set(shapes.values())) != 1:
        detail = ", ".join(f"{k}={v}" for k, v in shapes.items())
        raise ValueError(f"Batch fields must share one [T, B] shape, got {detail}")

    seq_len, b = shapes["encoder_input"]
    if seq_len == 0:
        raise ValueError("Batch has zero-length sequences")
    if b != batch_size:
        raise ValueError(f"Batch size {b} does not match train.batch_size ({batch_size})")

    for name, arr in fields.items():
        a = np.asarray(arr)
        lo, hi = int(a.min()), int(a.max())
        if lo < 0 or hi >= vocab_size:
            raise ValueError(
                f"Batch field {name} has token ids in [{lo}, {hi}], outside vocabulary [0, {vocab_size})"
            )


_FLOOR_TOL = 1e-9


def split_sizes(n_batches: int, train_frac: float, val_frac: float) -> tuple[int, int, int]:
    """Split whole batches into (train, val, test) counts.

    test_frac = 1 - train_frac - val_frac; validation takes the rounding slack.

    :raises ValueError: If fractions exceed 1 or no training batch remains.
    """
    test_frac = 1.0 - train_frac - val_frac
    if test_frac < -1e-9:
        raise ValueError(f"train_frac + val_frac exceeds 1 ({train_frac} + {val_frac})")
    test_frac = max(test_frac, 0.0)
    # Absorb float error such as 1 - 0.8 - 0.1 = 0.09999999999999998.
    n_train = int(np.floor(n_batches * train_frac + _FLOOR_TOL))
    n_test = int(np.floor(n_batches * test_frac + _FLOOR_TOL))
    n_val = n_batches - n_train - n_test
    if n_train <= 0:
        raise ValueError(
            f"No training batches: {n_batches} batch(es) with train_frac={train_frac}"
        )
    return n_train, n_val, n_test
