"""Data loading for seqcouple.

The trainer only sees the `BatchSource` contract (see `source.py`):
aligned time-major (encoder_input, decoder_input, decoder_target) batches split
into train / validation / test partitions, plus the vocabulary.

v0 ships one implementation: the synthetic character tasks in `synthetic.py`.
"""

from __future__ import annotations

from .source import PARTITIONS, BatchSource, Partition, validate_batch
from .synthetic import SyntheticBatchSource, build_batch_source

__all__ = [
    "PARTITIONS",
    "BatchSource",
    "Partition",
    "SyntheticBatchSource",
    "build_batch_source",
    "validate_batch",
]
