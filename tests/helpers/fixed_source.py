"""Deterministic in-memory batch source for training tests."""

from __future__ import annotations

from typing import Any

import numpy as np

from seqcouple.types import Batch

VOCAB = {"<pad>": 0, "<go>": 1, "<eos>": 2, "a": 3}


def _make_batch(rng: np.random.Generator, seq_len: int, batch_size: int) -> Batch:
    target = rng.integers(0, len(VOCAB), size=(seq_len, batch_size)).astype(np.int32)
    dec_in = np.concatenate([np.full((1, batch_size), 1, dtype=np.int32), target[:-1]], axis=0)
    return Batch(encoder_input=target.copy(), decoder_input=dec_in, decoder_target=target)


class FixedBatchSource:
    """Copy task over a fixed set of random batches: target == encoder input."""

    def __init__(self, sizes: tuple[int, int, int] = (5, 1, 1), *, seq_len: int = 5, batch_size: int = 2, seed: int = 0):
        rng = np.random.default_rng(seed)
        self._sizes = sizes
        self._batches = {
            name: [_make_batch(rng, seq_len, batch_size) for _ in range(n)]
            for name, n in zip(("train", "validation", "test"), sizes, strict=True)
        }
        self._pointers = {name: 0 for name in self._batches}

    def next_batch(self, partition: str) -> Batch:
        i = self._pointers[partition]
        self._pointers[partition] = (i + 1) % len(self._batches[partition])
        return self._batches[partition][i]

    def partition_sizes(self) -> tuple[int, int, int]:
        return self._sizes

    def vocab_size(self) -> int:
        return len(VOCAB)

    def vocab_mapping(self) -> dict[str, int]:
        return dict(VOCAB)

    def get_state(self) -> dict[str, Any]:
        return {"pointers": dict(self._pointers)}

    def set_state(self, state: dict[str, Any]) -> None:
        self._pointers.update({k: int(v) for k, v in state["pointers"].items()})
