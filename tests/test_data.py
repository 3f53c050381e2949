"""Synthetic batch source and the batch contract."""

from __future__ import annotations

import numpy as np
import pytest

from seqcouple.config import Config, DataConfig, TrainConfig
from seqcouple.data import SyntheticBatchSource, build_batch_source, validate_batch
from seqcouple.data.source import split_sizes
from seqcouple.data.synthetic import build_vocab, encode_pairs, encode_source_text
from seqcouple.types import Batch


def _source(task: str = "successor", **kw) -> SyntheticBatchSource:
    cfg = DataConfig(task=task, num_examples=100, max_len=4, alphabet="abcdefgh", **kw)
    return SyntheticBatchSource(cfg, batch_size=5, seed=3)


def test_split_sizes_follow_floor_rule() -> None:
    assert split_sizes(450, 0.9, 0.1) == (405, 45, 0)
    assert split_sizes(20, 0.5, 0.25) == (10, 5, 5)
    assert split_sizes(7, 0.5, 0.2) == (3, 2, 2)
    # 1 - 0.8 - 0.1 is slightly below 0.1 in floating point.
    assert split_sizes(20, 0.8, 0.1) == (16, 2, 2)
    assert split_sizes(10, 0.7, 0.2) == (7, 2, 1)


def test_split_sizes_without_training_batches_raises() -> None:
    with pytest.raises(ValueError, match="No training batches"):
        split_sizes(1, 0.5, 0.5)


def test_default_source_partitions() -> None:
    src = build_batch_source(Config())
    assert src.partition_sizes() == (405, 45, 0)
    assert src.vocab_size() == 3 + 26


def test_vocab_puts_specials_first() -> None:
    vocab = build_vocab("xy")
    assert vocab == {"<pad>": 0, "<go>": 1, "<eos>": 2, "x": 3, "y": 4}


def test_encode_pairs_layout() -> None:
    vocab = build_vocab("ab")
    enc, dec_in, dec_out = encode_pairs([("ab", "aabb"), ("b", "bb")], vocab)
    a, b, go, eos = vocab["a"], vocab["b"], vocab["<go>"], vocab["<eos>"]

    assert enc.shape == dec_in.shape == dec_out.shape == (5, 2)
    # Encoder: left-padded with GO before the symbols.
    assert enc[:, 0].tolist() == [0, 0, go, a, b]
    assert enc[:, 1].tolist() == [0, 0, 0, go, b]
    # Decoder: teacher forcing, target shifted by one with EOS.
    assert dec_in[:, 0].tolist() == [go, a, a, b, b]
    assert dec_out[:, 0].tolist() == [a, a, b, b, eos]
    assert dec_in[:, 1].tolist() == [go, b, b, 0, 0]
    assert dec_out[:, 1].tolist() == [b, b, eos, 0, 0]


@pytest.mark.parametrize("task", ["repeat", "successor"])
def test_batches_satisfy_the_contract(task: str) -> None:
    src = _source(task)
    n_train, n_val, n_test = src.partition_sizes()
    assert (n_train, n_val, n_test) == (18, 2, 0)
    for _ in range(n_train):
        validate_batch(src.next_batch("train"), batch_size=5, vocab_size=src.vocab_size())


def test_successor_targets_extend_the_run() -> None:
    src = _source("successor")
    inv = {v: k for k, v in src.vocab_mapping().items()}
    batch = src.next_batch("train")
    for j in range(5):
        source = "".join(inv[i] for i in batch.encoder_input[:, j] if i > 2)
        target = "".join(inv[i] for i in batch.decoder_target[:, j] if i > 2)
        assert target[:-1] == source
        assert ord(target[-1]) == ord(source[-1]) + 1


def test_partitions_cycle_and_state_round_trips() -> None:
    src = _source()
    first = src.next_batch("validation")
    second = src.next_batch("validation")
    assert src.next_batch("validation") is first  # 2 validation batches: wraps

    src.next_batch("train")
    state = src.get_state()
    nxt = src.next_batch("train")

    other = _source()
    other.set_state(state)
    np.testing.assert_array_equal(other.next_batch("train").encoder_input, nxt.encoder_input)
    assert second is not first


def test_same_seed_same_data() -> None:
    a, b = _source(), _source()
    np.testing.assert_array_equal(a.next_batch("train").decoder_target, b.next_batch("train").decoder_target)


def test_set_state_rejects_differently_sized_source() -> None:
    src = _source()
    with pytest.raises(ValueError, match="partition sizes"):
        src.set_state({"sizes": [1, 1, 1], "pointers": {}})


def test_unknown_partition_raises() -> None:
    with pytest.raises(ValueError, match="Unknown partition"):
        _source().next_batch("dev")  # type: ignore[arg-type]


def _batch(**overrides) -> Batch:
    base = {
        "encoder_input": np.zeros((4, 2), dtype=np.int32),
        "decoder_input": np.zeros((4, 2), dtype=np.int32),
        "decoder_target": np.zeros((4, 2), dtype=np.int32),
    }
    base.update(overrides)
    return Batch(**base)


@pytest.mark.parametrize(
    ("batch", "match"),
    [
        (_batch(encoder_input=np.zeros((4,), dtype=np.int32)), "2-D"),
        (_batch(decoder_input=np.zeros((4, 2), dtype=np.float32)), "integer"),
        (_batch(decoder_target=np.zeros((5, 2), dtype=np.int32)), "share one"),
        (_batch(encoder_input=np.full((4, 2), 9, dtype=np.int32)), "outside vocabulary"),
        (_batch(decoder_input=np.full((4, 2), -1, dtype=np.int32)), "outside vocabulary"),
    ],
)
def test_validate_batch_rejects_contract_violations(batch: Batch, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        validate_batch(batch, batch_size=2, vocab_size=5)


def test_validate_batch_rejects_wrong_batch_size() -> None:
    with pytest.raises(ValueError, match="train.batch_size"):
        validate_batch(_batch(), batch_size=3, vocab_size=5)


def test_encode_source_text() -> None:
    vocab = build_vocab("abc")
    col = encode_source_text("cab", vocab)
    assert col.shape == (4, 1)
    assert col[:, 0].tolist() == [1, 5, 3, 4]
    with pytest.raises(ValueError, match="not in the vocabulary"):
        encode_source_text("abz", vocab)


def test_batch_size_from_train_config() -> None:
    cfg = Config(train=TrainConfig(batch_size=50))
    assert build_batch_source(cfg).partition_sizes() == (162, 18, 0)
