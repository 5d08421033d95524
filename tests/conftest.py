"""Shared networks for the module tree tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest
from modtree import (
    BatchNorm2d,
    Conv2d,
    Flatten,
    Linear,
    Module,
    ReLU,
    Sequential,
    Tensor,
    set_global_grad_mode,
)


class LeNet(Module):
    """Expects inputs of shape (N, 1, 10, 10)."""

    def __init__(self) -> None:
        super().__init__()
        self.add_module("conv1", Conv2d(1, 6, 3))
        self.add_module("conv2", Conv2d(6, 16, 3))
        self.add_module("fc1", Linear(16 * 6 * 6, 120))
        self.add_module("fc2", Linear(120, 84))
        self.add_module("fc3", Linear(84, 10))

    def forward(self, x: Tensor) -> Tensor:
        relu = ReLU()
        x = relu(self.get_child("conv1")(x))
        x = relu(self.get_child("conv2")(x))
        x = Flatten()(x)
        x = relu(self.get_child("fc1")(x))
        x = relu(self.get_child("fc2")(x))
        return self.get_child("fc3")(x)


class SimpleResidualBlock(Module):
    def __init__(self, channels: int = 3) -> None:
        super().__init__()
        self.add_module(
            "seq",
            Sequential(
                Conv2d(channels, channels, 3, padding=1, bias=False),
                BatchNorm2d(channels),
                ReLU(),
                Conv2d(channels, channels, 3, padding=1, bias=False),
                BatchNorm2d(channels),
                ReLU(),
                Conv2d(channels, channels, 3, padding=1, bias=False),
                BatchNorm2d(channels),
            ),
        )

    def forward(self, x: Tensor) -> Tensor:
        return x + self.get_child("seq")(x)


@pytest.fixture(autouse=True)
def _reset_grad_mode() -> Iterator[None]:
    yield
    set_global_grad_mode(enabled=True)


@pytest.fixture
def make_lenet() -> Callable[[], LeNet]:
    return LeNet


@pytest.fixture
def net(make_lenet: Callable[[], LeNet]) -> LeNet:
    return make_lenet()


@pytest.fixture
def make_residual_block() -> Callable[[], SimpleResidualBlock]:
    return SimpleResidualBlock
