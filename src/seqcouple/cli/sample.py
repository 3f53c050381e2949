"""Sample subcommand: greedy decoding from a saved checkpoint."""

from __future__ import annotations

import click

from seqcouple.data.source import EOS_TOKEN, GO_TOKEN, PAD_TOKEN


def decode_ids(ids: list[int], vocab: dict[str, int]) -> str:
    """Map ids back to text, stopping at EOS and skipping specials."""
    inv = {v: k for k, v in vocab.items()}
    out = []
    for i in ids:
        tok = inv.get(int(i), "")
        if tok == EOS_TOKEN:
            break
        if tok in (PAD_TOKEN, GO_TOKEN):
            continue
        out.append(tok)
    return "".join(out)


@click.command()
@click.argument("run_dir", type=click.Path(exists=True))
@click.option("--input", "-i", "text", required=True, help="Source sequence to encode.")
@click.option(
    "--step",
    "step_raw",
    type=str,
    default="latest",
    help="Checkpoint iteration to load, or 'latest'.",
)
@click.option(
    "--max-len",
    type=click.IntRange(min=1),
    default=32,
    help="Maximum number of tokens to emit.",
)
def sample(run_dir: str, text: str, step_raw: str, max_len: int) -> None:
    """Decode INPUT with a trained model.

    RUN_DIR is a run directory (or a checkpoint path inside one).
    """
    import jax
    import jax.numpy as jnp

    from seqcouple.data.synthetic import encode_source_text
    from seqcouple.model import greedy_decode
    from seqcouple.utils.checkpoints import load_for_inference

    step: str | int = "latest" if step_raw.strip().lower() == "latest" else step_raw
    if step != "latest":
        try:
            step = int(step_raw)
        except ValueError as exc:
            raise click.BadParameter(f"--step must be 'latest' or an integer, got {step_raw!r}") from exc

    try:
        _cfg, params, static, vocab, it = load_for_inference(run_dir, step=step)
        enc = encode_source_text(text, vocab)
    except (FileNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Loaded checkpoint at iteration {it}")

    out = greedy_decode(params, static, jnp.asarray(enc), go_id=vocab[GO_TOKEN], max_len=max_len)
    ids = [int(x) for x in jax.device_get(out)[:, 0].tolist()]
    click.echo(decode_ids(ids, vocab))
