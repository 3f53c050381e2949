"""Synthetic character-level copy tasks.

Two tasks, both deterministic given the seed:
- repeat:    "ab"  -> "aabb"
- successor: "bcd" -> "bcde"  (a run of consecutive alphabet symbols, plus one)

Padding layout (0 = pad), one column per example:

    encoder_input:  0 0 0 GO a b      (left-padded, GO marks the start)
    decoder_input:  GO t1 t2 t3 0 0   (teacher forcing)
    decoder_target: t1 t2 t3 EOS 0 0

All examples are generated up front, cut into fixed-size batches, and the
batches are assigned to train / validation / test in that order. Each
partition then cycles through its batches.
"""

from __future__ import annotations

from typing import Any

import numpy as np

from seqcouple.config import Config, DataConfig
from seqcouple.data.source import (
    EOS_TOKEN,
    GO_TOKEN,
    PAD_TOKEN,
    PARTITIONS,
    Partition,
    split_sizes,
)
from seqcouple.types import Batch


def build_vocab(alphabet: str) -> dict[str, int]:
    """Specials first (pad=0, go=1, eos=2), then the alphabet in order."""
    vocab = {PAD_TOKEN: 0, GO_TOKEN: 1, EOS_TOKEN: 2}
    for ch in alphabet:
        vocab[ch] = len(vocab)
    return vocab


def _make_pair(rng: np.random.Generator, cfg: DataConfig) -> tuple[str, str]:
    n = int(rng.integers(cfg.min_len, cfg.max_len + 1))
    if cfg.task == "repeat":
        idx = rng.integers(0, len(cfg.alphabet), size=n)
        src = "".join(cfg.alphabet[i] for i in idx)
        return src, "".join(ch * 2 for ch in src)
    start = int(rng.integers(0, len(cfg.alphabet) - n))
    return cfg.alphabet[start : start + n], cfg.alphabet[start : start + n + 1]


def encode_pairs(
    pairs: list[tuple[str, str]], vocab: dict[str, int]
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Pad a list of (source, target) strings into time-major [T, B] matrices.

    :param list pairs: (source, target) strings, one per batch column.
    :param dict vocab: Token -> id mapping.
    :return tuple: (encoder_input, decoder_input, decoder_target), int32 [T, B].
    """
    go, eos = vocab[GO_TOKEN], vocab[EOS_TOKEN]
    seq_len = max(max(len(s), len(t)) + 1 for s, t in pairs)
    b = len(pairs)
    enc = np.zeros((seq_len, b), dtype=np.int32)
    dec_in = np.zeros((seq_len, b), dtype=np.int32)
    dec_out = np.zeros((seq_len, b), dtype=np.int32)
    for j, (src, tgt) in enumerate(pairs):
        src_ids = [go] + [vocab[ch] for ch in src]
        tgt_ids = [vocab[ch] for ch in tgt]
        enc[seq_len - len(src_ids) :, j] = src_ids
        dec_in[: len(tgt_ids) + 1, j] = [go] + tgt_ids
        dec_out[: len(tgt_ids) + 1, j] = tgt_ids + [eos]
    return enc, dec_in, dec_out


class SyntheticBatchSource:
    """In-memory batch source for the synthetic tasks."""

    def __init__(self, cfg: DataConfig, *, batch_size: int, seed: int):
        self.cfg = cfg
        self.batch_size = int(batch_size)
        self.seed = int(seed)
        self._vocab = build_vocab(cfg.alphabet)

        rng = np.random.default_rng(self.seed)
        n_batches = cfg.num_examples // self.batch_size
        sizes = split_sizes(n_batches, cfg.train_frac, cfg.val_frac)

        pairs = [_make_pair(rng, cfg) for _ in range(n_batches * self.batch_size)]
        batches = [
            Batch(*encode_pairs(pairs[i * self.batch_size : (i + 1) * self.batch_size], self._vocab))
            for i in range(n_batches)
        ]

        self._batches: dict[Partition, list[Batch]] = {}
        offset = 0
        for name, size in zip(PARTITIONS, sizes, strict=True):
            self._batches[name] = batches[offset : offset + size]
            offset += size
        self._pointers: dict[Partition, int] = {p: 0 for p in PARTITIONS}

    # ------------------------------------------------------------ contract

    def next_batch(self, partition: Partition) -> Batch:
        if partition not in self._batches:
            raise ValueError(f"Unknown partition {partition!r}; expected one of {PARTITIONS}")
        batches = self._batches[partition]
        if not batches:
            raise ValueError(f"Partition {partition!r} has no batches")
        i = self._pointers[partition]
        self._pointers[partition] = (i + 1) % len(batches)
        return batches[i]

    def partition_sizes(self) -> tuple[int, int, int]:
        return tuple(len(self._batches[p]) for p in PARTITIONS)  # type: ignore[return-value]

    def vocab_size(self) -> int:
        return len(self._vocab)

    def vocab_mapping(self) -> dict[str, int]:
        return dict(self._vocab)

    def get_state(self) -> dict[str, Any]:
        """Capture iterator positions for checkpointing.

        :return dict[str, Any]: JSON-serializable state.
        """
        return {
            "pointers": dict(self._pointers),
            "sizes": list(self.partition_sizes()),
            "seed": self.seed,
            "task": self.cfg.task,
        }

    def set_state(self, state: dict[str, Any]) -> None:
        """Restore iterator positions from a checkpoint.

        :param dict[str, Any] state: State dict from get_state().
        :raises ValueError: If the state was taken from a differently built source.
        """
        sizes = state.get("sizes")
        if sizes is not None and list(sizes) != list(self.partition_sizes()):
            raise ValueError(
                f"Batch source state has partition sizes {sizes}, "
                f"this source has {list(self.partition_sizes())}"
            )
        for name, ptr in (state.get("pointers") or {}).items():
            if name not in self._pointers:
                raise ValueError(f"Unknown partition {name!r} in batch source state")
            n = len(self._batches[name]) or 1
            self._pointers[name] = int(ptr) % n


def build_batch_source(cfg: Config) -> SyntheticBatchSource:
    """Build the batch source described by `cfg.data` (seeded by train.seed)."""
    return SyntheticBatchSource(cfg.data, batch_size=cfg.train.batch_size, seed=cfg.train.seed)


def encode_source_text(text: str, vocab: dict[str, int]) -> np.ndarray:
    """Encode one source string as an encoder column [T, 1] (GO + symbols).

    :raises ValueError: If the text contains symbols outside the vocabulary.
    """
    unknown = sorted({ch for ch in text if ch not in vocab})
    if unknown:
        raise ValueError(f"Input contains symbols not in the vocabulary: {unknown}")
    ids = [vocab[GO_TOKEN]] + [vocab[ch] for ch in text]
    return np.asarray(ids, dtype=np.int32)[:, None]
