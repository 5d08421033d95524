"""Concrete layers. Each one registers its state explicitly at construction."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from .backend import no_grad, xp
from .module import Module
from .tensor import Parameter, Tensor, as_tensor, tensor

if TYPE_CHECKING:
    from collections.abc import Iterator


logger = logging.getLogger(__name__)


RNG = xp.random.default_rng()


def _uniform(shape: tuple[int, ...], bound: float, dtype: Any) -> Parameter:
    """Parameter drawn uniformly from [-bound, bound)."""
    return Parameter(((RNG.random(shape) * 2 - 1) * bound).astype(dtype))


def _pair(value: int | tuple[int, int]) -> tuple[int, int]:
    if isinstance(value, int):
        return (value, value)
    first, second = value
    return (int(first), int(second))


class Linear(Module):
    """Fully connected layer, `y = x @ W.T + b`.

    Args:
        in_features (int): Input feature size.
        out_features (int): Output feature size.
        bias (bool): Whether to use a bias. Defaults to True.
        dtype (Any): dtype of the parameters. Defaults to float32.
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        bias: bool = True,
        dtype: Any = xp.float32,
    ) -> None:
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        bound = 1 / math.sqrt(in_features)
        self.register_parameter("weight", _uniform((out_features, in_features), bound, dtype))
        self.register_parameter("bias", _uniform((out_features,), bound, dtype) if bias else None)

    @property
    def weight(self) -> Parameter:
        return self.get_parameter("weight")

    @property
    def bias(self) -> Parameter | None:
        return self._parameters["bias"]

    def forward(self, x: Tensor) -> Tensor:
        if x.shape[-1] != self.in_features:
            raise ValueError(
                f"Input feature dim {x.shape[-1]} does not match in_features={self.in_features}"
            )
        out = xp.matmul(xp.asarray(x), xp.asarray(self.weight).T)
        if self.bias is not None:
            out = out + xp.asarray(self.bias)
        return as_tensor(out)

    def extra_repr(self) -> str:
        return (
            f"in_features={self.in_features}, out_features={self.out_features}, "
            f"bias={self.bias is not None}"
        )


class Conv2d(Module):
    """2D convolution over inputs of shape (N, C, H, W).

    Args:
        in_channels (int): Number of input channels.
        out_channels (int): Number of output channels.
        kernel_size (int | tuple[int, int]): Kernel height and width.
        stride (int | tuple[int, int]): Defaults to 1.
        padding (int | tuple[int, int]): Zero padding per side. Defaults to 0.
        bias (bool): Whether to use a bias. Defaults to True.
        dtype (Any): dtype of the parameters. Defaults to float32.
    """

    def __init__(  # noqa: PLR0913
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: int | tuple[int, int],
        stride: int | tuple[int, int] = 1,
        padding: int | tuple[int, int] = 0,
        bias: bool = True,
        dtype: Any = xp.float32,
    ) -> None:
        super().__init__()
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.kernel_size = _pair(kernel_size)
        self.stride = _pair(stride)
        self.padding = _pair(padding)
        kh, kw = self.kernel_size
        bound = 1 / math.sqrt(in_channels * kh * kw)
        self.register_parameter(
            "weight", _uniform((out_channels, in_channels, kh, kw), bound, dtype)
        )
        self.register_parameter("bias", _uniform((out_channels,), bound, dtype) if bias else None)

    @property
    def weight(self) -> Parameter:
        return self.get_parameter("weight")

    @property
    def bias(self) -> Parameter | None:
        return self._parameters["bias"]

    def _check_input_dim(self, x: Tensor) -> None:
        if x.ndim != 4:  # noqa: PLR2004
            raise ValueError(f"expected 4D input (got {x.ndim}D input)")
        if x.shape[1] != self.in_channels:
            raise ValueError(
                f"expected input with {self.in_channels} channels (got {x.shape[1]} channels)"
            )

    def forward(self, x: Tensor) -> Tensor:
        self._check_input_dim(x)
        data = xp.asarray(x)
        ph, pw = self.padding
        if ph or pw:
            data = xp.pad(data, ((0, 0), (0, 0), (ph, ph), (pw, pw)))
        sh, sw = self.stride
        # (N, C, H_out, W_out, kh, kw)
        windows = xp.lib.stride_tricks.sliding_window_view(data, self.kernel_size, axis=(2, 3))
        windows = windows[:, :, ::sh, ::sw]
        out = xp.einsum("nchwij,ocij->nohw", windows, xp.asarray(self.weight))
        if self.bias is not None:
            out = out + xp.asarray(self.bias)[None, :, None, None]
        return as_tensor(out)

    def extra_repr(self) -> str:
        details = (
            f"{self.in_channels}, {self.out_channels}, "
            f"kernel_size={self.kernel_size}, stride={self.stride}"
        )
        if self.padding != (0, 0):
            details += f", padding={self.padding}"
        if self.bias is None:
            details += ", bias=False"
        return details


class BatchNorm(Module):
    """Batch normalization over the channel dimension (dim 1).

    In training mode batch statistics are used and the running statistics
    are updated with an exponential moving average controlled by
    `momentum`; in evaluation mode the running statistics are used.

    Args:
        num_features (int): Number of channels C.
        eps (float): Added to the variance for stability. Defaults to 1e-5.
        momentum (float): Weight of the newest batch statistic. Defaults to 0.1.
        affine (bool): Whether to learn `weight` and `bias`. Defaults to True.
        track_running_stats (bool): Whether to keep the `running_mean`,
            `running_var` and `num_batches_tracked` buffers. Defaults to True.
    """

    def __init__(  # noqa: PLR0913
        self,
        num_features: int,
        eps: float = 1e-5,
        momentum: float = 0.1,
        affine: bool = True,
        track_running_stats: bool = True,
    ) -> None:
        super().__init__()
        self.num_features = num_features
        self.eps = eps
        self.momentum = momentum
        self.affine = affine
        self.track_running_stats = track_running_stats
        if affine:
            self.register_parameter("weight", Parameter(xp.ones(num_features, dtype=xp.float32)))
            self.register_parameter("bias", Parameter(xp.zeros(num_features, dtype=xp.float32)))
        else:
            self.register_parameter("weight", None)
            self.register_parameter("bias", None)
        if track_running_stats:
            self.register_buffer("running_mean", tensor(xp.zeros(num_features), dtype=xp.float32))
            self.register_buffer("running_var", tensor(xp.ones(num_features), dtype=xp.float32))
            self.register_buffer("num_batches_tracked", tensor(0, dtype=xp.int64))
        else:
            self.register_buffer("running_mean", None)
            self.register_buffer("running_var", None)
            self.register_buffer("num_batches_tracked", None)

    @property
    def weight(self) -> Parameter | None:
        return self._parameters["weight"]

    @property
    def bias(self) -> Parameter | None:
        return self._parameters["bias"]

    @property
    def running_mean(self) -> Tensor | None:
        return self._buffers["running_mean"]

    @property
    def running_var(self) -> Tensor | None:
        return self._buffers["running_var"]

    @property
    def num_batches_tracked(self) -> Tensor | None:
        return self._buffers["num_batches_tracked"]

    def _check_input_dim(self, x: Tensor) -> None:
        if x.ndim < 2:  # noqa: PLR2004
            raise ValueError(f"expected at least 2D input (got {x.ndim}D input)")

    def _update_running_stats(self, mean: Any, var: Any, count: int) -> None:
        running_mean = self.running_mean
        running_var = self.running_var
        num_batches_tracked = self.num_batches_tracked
        unbiased_var = var * count / max(count - 1, 1)
        with no_grad():
            running_mean.copy_((1 - self.momentum) * running_mean + self.momentum * mean)
            running_var.copy_((1 - self.momentum) * running_var + self.momentum * unbiased_var)
            num_batches_tracked.copy_(num_batches_tracked + 1)

    def forward(self, x: Tensor) -> Tensor:
        self._check_input_dim(x)
        if x.shape[1] != self.num_features:
            raise ValueError(
                f"expected input with {self.num_features} features (got {x.shape[1]} features)"
            )
        data = xp.asarray(x)
        axes = (0, *range(2, data.ndim))
        shape = (1, -1) + (1,) * (data.ndim - 2)

        if self.training or not self.track_running_stats:
            mean = data.mean(axis=axes)
            var = data.var(axis=axes)
            if self.training and self.track_running_stats:
                self._update_running_stats(mean, var, count=data.size // data.shape[1])
        else:
            mean = xp.asarray(self.running_mean)
            var = xp.asarray(self.running_var)

        out = (data - mean.reshape(shape)) / xp.sqrt(var.reshape(shape) + self.eps)
        if self.weight is not None:
            out = out * xp.asarray(self.weight).reshape(shape)
            out = out + xp.asarray(self.bias).reshape(shape)
        return as_tensor(out)

    def extra_repr(self) -> str:
        return (
            f"{self.num_features}, eps={self.eps}, momentum={self.momentum}, "
            f"affine={self.affine}, track_running_stats={self.track_running_stats}"
        )


class BatchNorm1d(BatchNorm):
    """BatchNorm for inputs of shape (N, C) or (N, C, L)."""

    def _check_input_dim(self, x: Tensor) -> None:
        if x.ndim not in (2, 3):
            raise ValueError(f"expected 2D or 3D input (got {x.ndim}D input)")


class BatchNorm2d(BatchNorm):
    """BatchNorm for inputs of shape (N, C, H, W)."""

    def _check_input_dim(self, x: Tensor) -> None:
        if x.ndim != 4:  # noqa: PLR2004
            raise ValueError(f"expected 4D input (got {x.ndim}D input)")


class ReLU(Module):
    """ReLU activation function."""

    def forward(self, x: Tensor) -> Tensor:
        return as_tensor(xp.maximum(xp.asarray(x), 0))


class Flatten(Module):
    """Flattens all dimensions from `start_dim` on."""

    def __init__(self, start_dim: int = 1) -> None:
        super().__init__()
        self.start_dim = start_dim

    def forward(self, x: Tensor) -> Tensor:
        data = xp.asarray(x)
        return as_tensor(data.reshape(*data.shape[: self.start_dim], -1))

    def extra_repr(self) -> str:
        return f"start_dim={self.start_dim}"


class Sequential(Module):
    """Chains modules; children are named "0", "1", ... in the given order."""

    def __init__(self, *modules: Module) -> None:
        super().__init__()
        for idx, module in enumerate(modules):
            self.add_module(str(idx), module)

    def forward(self, x: Tensor) -> Tensor:
        for module in self:
            x = module(x)
        return x

    def __len__(self) -> int:
        return len(self.named_children())

    def __iter__(self) -> Iterator[Module]:
        return iter(self.children())

    def __getitem__(self, idx: int) -> Module:
        return self.children()[idx]


__all__ = [
    "BatchNorm",
    "BatchNorm1d",
    "BatchNorm2d",
    "Conv2d",
    "Flatten",
    "Linear",
    "ReLU",
    "Sequential",
]
