"""Array backend, devices and grad mode for modtree."""

from .backend import (
    BACKEND,
    BACKEND_ENV_VAR,
    DeviceLike,
    DeviceType,
    SupportsCupyDevice,
    TensorDevice,
    normalize_device,
    xp,
)
from .grad_mode import (
    is_global_grad_mode_enabled,
    no_grad,
    no_grad_fn,
    set_global_grad_mode,
)
from .ops import (
    array_device,
    copy_array,
    to_host,
)

__all__ = [
    "BACKEND",
    "BACKEND_ENV_VAR",
    "DeviceLike",
    "DeviceType",
    "SupportsCupyDevice",
    "TensorDevice",
    "array_device",
    "copy_array",
    "is_global_grad_mode_enabled",
    "no_grad",
    "no_grad_fn",
    "normalize_device",
    "set_global_grad_mode",
    "to_host",
    "xp",
]
