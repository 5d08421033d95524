"""Device movement for raw backend arrays."""

from __future__ import annotations

import logging
from typing import Any

import numpy as np

from .backend import BACKEND, DeviceLike, TensorDevice, normalize_device, xp

logger = logging.getLogger(__name__)


def array_device(array: Any) -> TensorDevice:
    """The device on which `array` is stored.

    Args:
        array (Any): A numpy or cupy array.

    Returns:
        TensorDevice: "cpu" for numpy arrays, the cuda device otherwise.
    """
    if BACKEND == "numpy" or not isinstance(array, xp.ndarray):
        return TensorDevice("cpu")
    # the memory pointer, Tensor overrides `.device`
    return TensorDevice("cuda", int(array.data.device_id))


def copy_array(array: Any, device: DeviceLike) -> Any:
    """Copy an array to the specified device.

    Args:
        array (Any): The array to copy.
        device (DeviceLike): Target device, "cpu", "cuda[:id]" or a GPU id.

    Raises:
        ValueError: If using numpy backend and requesting a GPU device.

    Returns:
        Any: The array on the target device, or the original if already there.
    """
    target = normalize_device(device)
    if array_device(array) == target:
        return array
    if BACKEND == "numpy":
        raise ValueError(
            "Copying to another device is only possible when using cupy "
            "as the backend. Currently, numpy is the backend. Please "
            "check cupy and gpu availability."
        )
    logger.debug("Copying array of shape %s to %s", array.shape, target)
    # cupy:
    if target.type == "cuda":
        with xp.cuda.Device(target.device_id):
            return xp.asarray(array)
    return xp.asnumpy(array)


def to_host(array: Any) -> Any:
    """Return a numpy (host) view or copy of `array`."""
    if BACKEND == "cupy" and isinstance(array, xp.ndarray):
        return xp.asnumpy(array)
    return np.asarray(array)


__all__ = [
    "array_device",
    "copy_array",
    "to_host",
]
