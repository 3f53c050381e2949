"""Device selection.

One backend per run: every array op in a step runs on the device chosen here.

Unlike a large-scale pretraining harness, a missing accelerator is *not* fatal
for this trainer. If a GPU was asked for but JAX can't see one, we log a
warning and fall back to CPU.
"""

from __future__ import annotations

import logging

import jax

logger = logging.getLogger(__name__)


def _devices_for(platform: str) -> list[jax.Device]:
    try:
        return list(jax.devices(platform))
    except RuntimeError:
        return []


def select_device(preference: str = "auto", *, index: int = 0) -> jax.Device:
    """Pick the device the run will use.

    - "cpu":  the CPU device
    - "gpu":  GPU `index`; warns and falls back to CPU if unavailable
    - "auto": JAX's default backend device `index` (falls back to device 0)

    :param str preference: "auto", "cpu" or "gpu".
    :param int index: Device ordinal within the platform.
    :raises ValueError: If preference is unknown.
    :raises RuntimeError: If JAX reports no devices at all.
    :return jax.Device: Selected device.
    """
    if preference not in ("auto", "cpu", "gpu"):
        raise ValueError(f"Unknown device preference {preference!r}")

    if preference == "gpu":
        gpus = _devices_for("gpu")
        if index < len(gpus):
            logger.info("Using GPU %d (%s)", index, gpus[index].device_kind)
            return gpus[index]
        if gpus:
            logger.warning("GPU %d requested but only %d GPU(s) visible; falling back to CPU", index, len(gpus))
        else:
            logger.warning(
                "GPU requested but JAX sees no GPU backend. If a CUDA-enabled jaxlib is installed, "
                "check the CUDA toolkit setup. Falling back to CPU."
            )
        preference = "cpu"

    if preference == "cpu":
        cpus = _devices_for("cpu")
        if not cpus:
            raise RuntimeError("JAX reports no CPU device. JAX installation is broken.")
        return cpus[0]

    devs = jax.devices()
    if not devs:
        raise RuntimeError("JAX reports no devices. JAX installation is broken.")
    dev = devs[index] if index < len(devs) else devs[0]
    logger.info("Using %s device %d", dev.platform, dev.id)
    return dev


def device_platform(x: jax.Array) -> str | None:
    """Platform ("cpu", "gpu") holding `x`, or None for non-JAX arrays."""
    try:
        devs = x.devices()  # type: ignore[attr-defined]
    except AttributeError:
        return None
    return next(iter(devs)).platform if devs else None
