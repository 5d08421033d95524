"""modtree: module trees over numpy/cupy tensors.

Named parameters, buffers and submodules with recursive transforms and
state dict (de)serialization.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("py-modtree")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"  # Fallback for uninstalled package
from .backend import (
    BACKEND,
    DeviceLike,
    DeviceType,
    TensorDevice,
    is_global_grad_mode_enabled,
    no_grad,
    no_grad_fn,
    normalize_device,
    set_global_grad_mode,
    xp,
)
from .disk import (
    load,
    save,
)
from .errors import (
    ModuleTreeError,
    NotFoundError,
    UnknownModuleError,
    UnknownParameterError,
)
from .layers import (
    BatchNorm,
    BatchNorm1d,
    BatchNorm2d,
    Conv2d,
    Flatten,
    Linear,
    ReLU,
    Sequential,
)
from .module import Module
from .tensor import (
    Parameter,
    Tensor,
    as_tensor,
    tensor,
)

__all__ = [
    "BACKEND",
    "BatchNorm",
    "BatchNorm1d",
    "BatchNorm2d",
    "Conv2d",
    "DeviceLike",
    "DeviceType",
    "Flatten",
    "Linear",
    "Module",
    "ModuleTreeError",
    "NotFoundError",
    "Parameter",
    "ReLU",
    "Sequential",
    "Tensor",
    "TensorDevice",
    "UnknownModuleError",
    "UnknownParameterError",
    "__version__",
    "as_tensor",
    "is_global_grad_mode_enabled",
    "load",
    "no_grad",
    "no_grad_fn",
    "normalize_device",
    "save",
    "set_global_grad_mode",
    "tensor",
    "xp",
]
