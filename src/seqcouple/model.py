"""Model integration.

This file is the *only* place that knows how the recurrent stacks are built.
The rest of the codebase talks in terms of:
- params pytree (arrays) / flat vector via `ParamRegistry`
- static pytree (non-arrays)
- `Seq2Seq.encode(...) -> (outputs, final per-layer states)`
- `Seq2Seq.decode(..., initial per-layer states) -> log-probs`

The encoder and decoder are two independent `StackedLSTM`s. They never reach
into each other: the hidden-state handoff is done by `seqcouple.coupling`,
which is why both halves take/return per-layer state explicitly.
"""

from __future__ import annotations

from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp

from seqcouple.config import Config, LossConfig
from seqcouple.coupling import forward_connect
from seqcouple.loss import sequence_nll
from seqcouple.types import Batch, LayerState, StackState


def _run_layer(cell: eqx.nn.LSTMCell, xs: jax.Array, state: LayerState) -> tuple[jax.Array, LayerState]:
    """Scan one LSTM cell over time.

    :param eqx.nn.LSTMCell cell: Unbatched LSTM cell.
    :param jax.Array xs: Inputs [T, B, D].
    :param LayerState state: Initial state, fields [B, H].
    :return tuple: (hidden outputs [T, B, H], final LayerState).
    """
    step = jax.vmap(cell)

    def body(carry, x_t):
        h, c = step(x_t, carry)
        return (h, c), h

    (h, c), hs = jax.lax.scan(body, (state.h, state.c), xs)
    return hs, LayerState(h=h, c=c)


class StackedLSTM(eqx.Module):
    """One-hot tokens -> LSTM x N, dropout between layers.

    Contract:
        __call__(tokens [T, B], initial_state | None) -> (outputs [T, B, H], final_state)

    `final_state` holds one `LayerState` per layer (bottom first). Dropout is
    applied to the sequence *between* layers i and i+1 only: never on the
    one-hot input, never on the top layer's output.
    """

    cells: list[eqx.nn.LSTMCell]
    dropout: eqx.nn.Dropout
    vocab_size: int = eqx.field(static=True)
    hidden_size: int = eqx.field(static=True)

    def __init__(
        self,
        *,
        vocab_size: int,
        hidden_size: int,
        num_layers: int,
        dropout: float,
        key: jax.Array,
    ):
        """Initialize the stack.

        :param int vocab_size: One-hot input width.
        :param int hidden_size: LSTM state width H (all layers).
        :param int num_layers: Number of stacked layers (>= 1).
        :param float dropout: Inter-layer dropout probability in [0, 1).
        :param jax.Array key: PRNG key for initialization.
        """
        if num_layers < 1:
            raise ValueError(f"num_layers must be >= 1, got {num_layers}")
        keys = jax.random.split(key, num_layers)
        self.cells = [
            eqx.nn.LSTMCell(vocab_size if i == 0 else hidden_size, hidden_size, key=k)
            for i, k in enumerate(keys)
        ]
        self.dropout = eqx.nn.Dropout(dropout)
        self.vocab_size = vocab_size
        self.hidden_size = hidden_size

    @property
    def num_layers(self) -> int:
        return len(self.cells)

    def zero_state(self, batch_size: int) -> StackState:
        """All-zero (h, c) for every layer, each [batch_size, hidden_size]."""
        return tuple(LayerState.zeros(batch_size, self.hidden_size) for _ in self.cells)

    def __call__(
        self,
        tokens: jax.Array,
        initial_state: StackState | None = None,
        *,
        deterministic: bool = True,
        key: jax.Array | None = None,
    ) -> tuple[jax.Array, StackState]:
        """Run the stack over a time-major token matrix.

        :param jax.Array tokens: Token ids [T, B], one-hot encoded internally.
        :param initial_state: Per-layer (h, c); zeros when None.
        :param bool deterministic: Disable inter-layer dropout (inference).
        :param key: PRNG key, required when dropout is active.
        :raises ValueError: On a non 2-D input, a layer-count mismatch or a missing key.
        :return tuple: (top-layer outputs [T, B, H], final per-layer states).
        """
        if tokens.ndim != 2:
            raise ValueError(f"Expected time-major tokens [T, B], got shape {tokens.shape}")
        batch_size = tokens.shape[1]
        if initial_state is None:
            initial_state = self.zero_state(batch_size)
        if len(initial_state) != self.num_layers:
            raise ValueError(
                f"Initial state has {len(initial_state)} layers, stack has {self.num_layers}"
            )

        use_dropout = not deterministic and self.dropout.p > 0 and self.num_layers > 1
        drop_keys = None
        if use_dropout:
            if key is None:
                raise ValueError("StackedLSTM requires a PRNG key when deterministic=False")
            drop_keys = jax.random.split(key, self.num_layers - 1)

        x = jax.nn.one_hot(tokens, self.vocab_size, dtype=jnp.float32)
        finals: list[LayerState] = []
        for i, (cell, state0) in enumerate(zip(self.cells, initial_state, strict=True)):
            if i > 0 and drop_keys is not None:
                x = self.dropout(x, key=drop_keys[i - 1], inference=False)
            x, final = _run_layer(cell, x, state0)
            finals.append(final)
        return x, tuple(finals)


class Seq2Seq(eqx.Module):
    """Encoder stack + decoder stack + vocabulary projection.

    The projection belongs to the decoder side; the encoder's own output
    sequence is never supervised.
    """

    encoder: StackedLSTM
    decoder: StackedLSTM
    proj: eqx.nn.Linear

    def __init__(
        self,
        *,
        vocab_size: int,
        hidden_size: int,
        num_layers: int,
        dropout: float,
        key: jax.Array,
    ):
        k_enc, k_dec, k_proj = jax.random.split(key, 3)
        kw = dict(vocab_size=vocab_size, hidden_size=hidden_size, num_layers=num_layers, dropout=dropout)
        self.encoder = StackedLSTM(**kw, key=k_enc)
        self.decoder = StackedLSTM(**kw, key=k_dec)
        self.proj = eqx.nn.Linear(hidden_size, vocab_size, key=k_proj)

    @property
    def vocab_size(self) -> int:
        return self.decoder.vocab_size

    def encode(
        self,
        tokens: jax.Array,
        *,
        deterministic: bool = True,
        key: jax.Array | None = None,
    ) -> tuple[jax.Array, StackState]:
        """Run the encoder from a zero state.

        :return tuple: (top-layer outputs [T, B, H], final per-layer states).
        """
        return self.encoder(tokens, None, deterministic=deterministic, key=key)

    def decode(
        self,
        tokens: jax.Array,
        initial_state: StackState,
        *,
        deterministic: bool = True,
        key: jax.Array | None = None,
    ) -> jax.Array:
        """Run the decoder from an externally supplied state.

        :return jax.Array: Log-probabilities [T, B, V].
        """
        hs, _ = self.decoder(tokens, initial_state, deterministic=deterministic, key=key)
        return self.project(hs)

    def project(self, hs: jax.Array) -> jax.Array:
        logits = jax.vmap(jax.vmap(self.proj))(hs)
        return jax.nn.log_softmax(logits, axis=-1)


# ------------------------------ Builders -----------------------------------


def build_model(cfg: Config, *, vocab_size: int, key: jax.Array) -> tuple[Any, Any]:
    """Build model and return (params, static).

    We always partition immediately:
      params, static = eqx.partition(model, eqx.is_array)

    `params` is then flattened by `ParamRegistry`; `static` is closed over by the
    compiled step and never checkpointed.

    :param Config cfg: Run configuration.
    :param int vocab_size: Vocabulary size from the batch source.
    :param jax.Array key: PRNG key for model initialization.
    :return tuple: (params, static) pytrees from eqx.partition.
    """
    if vocab_size <= 0:
        raise ValueError(f"vocab_size must be positive, got {vocab_size}")
    model = Seq2Seq(
        vocab_size=vocab_size,
        hidden_size=cfg.model.hidden_size,
        num_layers=cfg.model.num_layers,
        dropout=cfg.model.dropout,
        key=key,
    )
    return eqx.partition(model, eqx.is_array)


def split_step_key(key: jax.Array | None) -> tuple[jax.Array | None, jax.Array | None]:
    """Split a per-step key into (encoder, decoder) dropout keys."""
    if key is None:
        return None, None
    k_enc, k_dec = jax.random.split(key)
    return k_enc, k_dec


# ------------------------------ Forward/loss wrappers ----------------------


def sequence_loss(
    params: Any,
    static: Any,
    *,
    batch: Batch,
    loss_cfg: LossConfig,
    deterministic: bool,
    key: jax.Array | None,
) -> jax.Array:
    """End-to-end loss: encode -> couple -> decode -> NLL.

    Used for evaluation (deterministic=True). Training goes through the
    explicit coupled backward pass in `seqcouple.train`; differentiating this
    function directly yields the same gradients for the same key.

    :param Any params: Model parameters from eqx.partition.
    :param Any static: Static model components from eqx.partition.
    :param Batch batch: Time-major batch.
    :param LossConfig loss_cfg: Loss reductions.
    :param bool deterministic: If False, apply inter-layer dropout.
    :param key: PRNG key required when deterministic=False.
    :return jax.Array: Scalar loss.
    """
    model: Seq2Seq = eqx.combine(params, static)
    k_enc, k_dec = split_step_key(key)
    _, enc_final = model.encode(batch.encoder_input, deterministic=deterministic, key=k_enc)
    logprobs = model.decode(
        batch.decoder_input,
        forward_connect(enc_final),
        deterministic=deterministic,
        key=k_dec,
    )
    return sequence_nll(logprobs, batch.decoder_target, **loss_kwargs(loss_cfg))


def loss_kwargs(loss_cfg: LossConfig) -> dict[str, Any]:
    """Map the loss section onto sequence_nll keyword arguments."""
    return {
        "time_reduction": loss_cfg.time_reduction,
        "batch_reduction": loss_cfg.batch_reduction,
        "ignore_padding": loss_cfg.ignore_padding,
    }


def greedy_decode(
    params: Any,
    static: Any,
    encoder_input: jax.Array,
    *,
    go_id: int,
    max_len: int,
) -> jax.Array:
    """Greedy decoding from a coupled encoder state.

    :param Any params: Model parameters.
    :param Any static: Static model components.
    :param jax.Array encoder_input: Encoder tokens [T, B].
    :param int go_id: Token fed to the decoder at t=0.
    :param int max_len: Number of tokens to emit.
    :return jax.Array: Emitted token ids [max_len, B] (caller truncates at EOS).
    """
    model: Seq2Seq = eqx.combine(params, static)
    _, enc_final = model.encode(encoder_input)
    state0 = forward_connect(enc_final)
    tok0 = jnp.full((encoder_input.shape[1],), go_id, dtype=encoder_input.dtype)

    def body(carry, _):
        tok, state = carry
        hs, state = model.decoder(tok[None, :], state)
        nxt = jnp.argmax(model.project(hs)[0], axis=-1).astype(tok.dtype)
        return (nxt, state), nxt

    _, out = jax.lax.scan(body, (tok0, state0), None, length=max_len)
    return out
