from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Literal, Protocol, TypeAlias, runtime_checkable

logger = logging.getLogger(__name__)

BACKEND_ENV_VAR = "MODTREE_BACKEND"


def _validate_cupy_available() -> None:
    """Validate that CuPy is available with working CUDA devices.

    Raises:
        RuntimeError: If CUDA is unavailable or no devices are found.
    """
    try:
        _device_count = xp.cuda.runtime.getDeviceCount()
    except Exception as exc:
        raise RuntimeError("Cupy is installed but CUDA is unavailable") from exc

    if _device_count < 1:
        raise RuntimeError("Cupy is installed but no CUDA devices are available")


try:
    if os.environ.get(BACKEND_ENV_VAR, "").lower() == "numpy":
        raise RuntimeError(f"{BACKEND_ENV_VAR}=numpy forces the numpy backend")

    import cupy as xp

    _validate_cupy_available()

    BACKEND = "cupy"
    logger.debug("Using cupy as backend")
except (ImportError, RuntimeError) as err:
    import numpy as xp

    BACKEND = "numpy"
    logger.warning("Cupy backend unavailable; falling back to numpy (cpu)")
    logger.debug("Falling back to numpy because: %r", err)


DeviceType = Literal["cpu", "cuda"]


@dataclass(frozen=True)
class TensorDevice:
    """The device a Tensor's memory lives on."""

    type: DeviceType
    device_id: int = 0

    def __str__(self) -> str:
        return "cpu" if self.type == "cpu" else f"cuda:{self.device_id}"


@runtime_checkable
class SupportsCupyDevice(Protocol):
    """Cupy protocol to access cuda device `id`."""

    id: int  # cupy.cuda.Device exposes attribute "id"


DeviceLike: TypeAlias = TensorDevice | Literal["cpu", "cuda"] | int | SupportsCupyDevice


def normalize_device(device: DeviceLike) -> TensorDevice:
    """Transforms any device-like value into a TensorDevice.

    Accepts a TensorDevice, "cpu", "cuda", "cuda:<id>", a GPU id or
    a cupy device object.

    Args:
        device (DeviceLike): The device candidate.

    Raises:
        TypeError: If `device` denotes an unsupported device.

    Returns:
        TensorDevice: The normalized device.
    """
    if isinstance(device, TensorDevice):
        return device
    if isinstance(device, str):
        if device == "cpu":
            return TensorDevice("cpu")
        if device == "cuda":
            return TensorDevice("cuda", 0)
        if device.startswith("cuda:") and device[len("cuda:") :].isdigit():
            return TensorDevice("cuda", int(device[len("cuda:") :]))
        raise TypeError(f"Unsupported device: {device!r}")
    if isinstance(device, int) and not isinstance(device, bool):
        return TensorDevice("cuda", device)

    if hasattr(device, "id"):
        return TensorDevice("cuda", int(device.id))

    raise TypeError(f"Unsupported device: {device!r}")


__all__ = [
    "BACKEND",
    "BACKEND_ENV_VAR",
    "DeviceLike",
    "DeviceType",
    "SupportsCupyDevice",
    "TensorDevice",
    "normalize_device",
    "xp",
]
