"""Tensor and Parameter types over the numpy/cupy array backend.

The backend supplies all numerics. `Tensor` adds the handful of capabilities
the module tree relies on: device transfer, dtype conversion, in-place value
copy and gradient bookkeeping (`requires_grad`, `grad`).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Self

import numpy as np

from .backend import (
    BACKEND,
    DeviceLike,
    TensorDevice,
    array_device,
    copy_array,
    is_global_grad_mode_enabled,
    normalize_device,
    to_host,
    xp,
)

if TYPE_CHECKING:
    from collections.abc import Iterable


logger = logging.getLogger(__name__)


def _to_array(x: Any) -> Any:
    """Recursively convert Tensors to plain ndarrays (handles nested lists/tuples)."""
    if isinstance(x, Tensor):
        return x.view(xp.ndarray)
    if isinstance(x, list | tuple):
        converted = [_to_array(i) for i in x]
        return type(x)(converted)
    return x


def _wrap(result: Any, *, requires_grad: bool = False) -> Any:
    """Wrap a backend array into a Tensor, pass everything else through."""
    if isinstance(result, xp.ndarray) and not isinstance(result, Tensor):
        wrapped: Tensor = result.view(Tensor)
        wrapped.requires_grad = requires_grad
        return wrapped
    return result


class Tensor(xp.ndarray):  # type: ignore[misc]
    """An array of the backend carrying gradient bookkeeping.

    Arithmetic, reductions and comparisons are executed by the backend and
    return Tensors. A result requires a gradient if grad mode is enabled and
    any of its Tensor inputs requires one.
    """

    def __new__(
        cls,
        data: Iterable[Any] | Any,
        *,
        dtype: Any = None,
        requires_grad: bool = False,  # noqa: ARG003 -> handled by __init__
    ) -> Self:
        result: Self = xp.asarray(_to_array(data), dtype=dtype).view(cls)
        return result

    def __init__(
        self,
        data: Any = None,  # noqa: ARG002 -> handled by __new__, needed for signature
        *,
        dtype: Any = None,  # noqa: ARG002
        requires_grad: bool = False,
    ) -> None:
        self.requires_grad: bool = is_global_grad_mode_enabled() and requires_grad
        self.grad: Tensor | None = None

    def __array_finalize__(self, obj: Any) -> None:
        """Called when a new Tensor is created via .view(), slicing or astype.

        Views inherit `requires_grad` from their source while grad mode is
        enabled but never share its gradient.
        """
        if obj is None:
            # explicit constructor, __init__ handles it
            return
        self.requires_grad = is_global_grad_mode_enabled() and getattr(
            obj, "requires_grad", False
        )
        self.grad = None

    def __array_ufunc__(
        self,
        ufunc: Any,
        method: str,
        *inputs: Any,
        **kwargs: Any,
    ) -> Any:
        out = kwargs.get("out")
        if out is not None and all(o is None for o in out):
            out = None
        arrays = tuple(_to_array(x) for x in inputs)
        kwargs = {k: _to_array(v) for k, v in kwargs.items()}

        result = getattr(ufunc, method)(*arrays, **kwargs)

        if out is not None:
            # in-place op, the caller's buffers were written through their views
            return out[0] if len(out) == 1 else out

        requires_grad = is_global_grad_mode_enabled() and any(
            isinstance(x, Tensor) and x.requires_grad for x in inputs
        )
        if isinstance(result, tuple):
            return tuple(_wrap(r, requires_grad=requires_grad) for r in result)
        return _wrap(result, requires_grad=requires_grad)

    def __repr__(self) -> str:
        body = np.array2string(to_host(self), separator=", ", prefix="tensor(")
        suffix = ", requires_grad=True" if self.requires_grad else ""
        return f"tensor({body}, dtype={self.dtype}{suffix})"

    @property
    def device(self) -> TensorDevice:  # type: ignore[override]
        """The device on which the Tensor's memory lives."""
        return array_device(self)

    def to(self, device: DeviceLike | None = None, dtype: Any = None) -> Tensor:
        """Move and/or cast the Tensor.

        Note: If the Tensor already is on `device` with `dtype`, no copy
        is created. Instead, the Tensor is returned as is.

        Args:
            device (DeviceLike | None): Target device. Defaults to None
                (keep the current device).
            dtype (Any): Target dtype. Defaults to None (keep the current dtype).

        Returns:
            Tensor: `self`, or a new Tensor on `device` with `dtype`.
        """
        data = self.view(xp.ndarray)
        moved = data if device is None else copy_array(data, device)
        if dtype is not None and moved.dtype != xp.dtype(dtype):
            moved = moved.astype(dtype)
        if moved is data:
            return self
        return _wrap(moved, requires_grad=is_global_grad_mode_enabled() and self.requires_grad)

    def cpu(self) -> Tensor:
        return self.to(device="cpu")

    def cuda(self, device_id: int = 0) -> Tensor:
        return self.to(device=TensorDevice("cuda", device_id))

    def float(self) -> Tensor:
        return self.to(dtype=xp.float32)

    def double(self) -> Tensor:
        return self.to(dtype=xp.float64)

    def half(self) -> Tensor:
        return self.to(dtype=xp.float16)

    def is_floating_point(self) -> bool:
        return bool(xp.issubdtype(self.dtype, xp.floating))

    def copy_(self, src: Any) -> Self:
        """Copy the values of `src` into this Tensor's memory.

        `src` is moved to this Tensor's device and cast to its dtype.
        Identity, `requires_grad` and `grad` are untouched.

        Args:
            src (Any): Tensor or array-like, broadcastable to `self.shape`.

        Returns:
            Self: self, for method chaining.
        """
        values = copy_array(xp.asarray(_to_array(src)), self.device)
        self.view(xp.ndarray)[...] = values
        return self

    def zero_(self) -> Self:
        self.fill(0)
        return self

    def detach(self) -> Tensor:
        """A view on the same memory that does not require a gradient."""
        detached: Tensor = self.view(Tensor)
        detached.requires_grad = False
        return detached

    def detach_(self) -> Self:
        """Stop this Tensor from requiring a gradient, in place."""
        self.requires_grad = False
        return self

    def requires_grad_(self, requires_grad: bool = True) -> Self:
        self.requires_grad = requires_grad
        return self


class Parameter(Tensor):
    """A Tensor that is part of a module's learnable state.

    Parameters always have a floating point dtype and require a gradient by
    default, independent of the global grad mode.
    """

    def __new__(
        cls,
        data: Iterable[Any] | Any,
        *,
        dtype: Any = None,
        requires_grad: bool = True,  # noqa: ARG003 -> handled by __init__
    ) -> Self:
        # integer parameters are not differentiable, there are no
        # infinitesimal steps between two integers
        result: Self = Tensor.__new__(cls, data, dtype=dtype)
        if not xp.issubdtype(result.dtype, xp.floating):
            raise ValueError(f"Parameter must have float type, found {result.dtype}.")
        return result

    def __init__(
        self,
        data: Any = None,  # noqa: ARG002
        *,
        dtype: Any = None,  # noqa: ARG002
        requires_grad: bool = True,
    ) -> None:
        self.requires_grad = requires_grad
        self.grad = None

    def __repr__(self) -> str:
        return f"Parameter containing:\n{super().__repr__()}"


def tensor(
    data: Any,
    *,
    dtype: Any = None,
    device: DeviceLike = "cpu",
    requires_grad: bool = False,
) -> Tensor:
    """Factory function to create a Tensor on the specified device.

    Args:
        data (Any): The array data (can be scalar, list, array, etc).
        dtype (Any): The data type of the array data.
            Defaults to None, meaning dtype is inferred from data.
        device (DeviceLike): The device on which the Tensor
            should be created. Defaults to "cpu".
        requires_grad (bool): Whether to track gradients. Defaults to False.

    Raises:
        ValueError: If a cuda device is requested on the numpy backend.

    Returns:
        Tensor: The created Tensor.
    """
    target = normalize_device(device)
    if target.type == "cpu":
        arr = xp.array(_to_array(data), dtype=dtype)
    elif BACKEND == "numpy":
        raise ValueError(f'Cannot create a Tensor on "{target}" with the numpy backend.')
    else:
        with xp.cuda.Device(target.device_id):
            arr = xp.array(_to_array(data), dtype=dtype)

    result: Tensor = arr.view(Tensor)
    # __array_finalize__ sets defaults; override with user values
    result.requires_grad = is_global_grad_mode_enabled() and requires_grad
    return result


def as_tensor(data: Any) -> Tensor:
    """Return `data` if it already is a Tensor, else wrap it without copying."""
    if isinstance(data, Tensor):
        return data
    return Tensor(data)


__all__ = [
    "Parameter",
    "Tensor",
    "as_tensor",
    "tensor",
]
