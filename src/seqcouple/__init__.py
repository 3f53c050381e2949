"""seqcouple: JAX/Equinox trainer for coupled encoder-decoder LSTMs.

Two stacked LSTMs share a hidden-state handoff:
- forward: encoder final (h, c) per layer -> decoder initial state
- backward: decoder d(loss)/d(initial state) -> encoder final-timestep gradient

Everything else here exists to make that training run boring:
- config + logging + device selection
- flat parameter registry + RMSProp (Optax)
- Orbax checkpointing + resume (train_state + batch source position)
- synthetic character-level batch source
"""

from __future__ import annotations

from seqcouple._version import __version__

__all__ = ["__version__"]
