"""Tests for the module tree: registration, traversal, transforms and state dicts."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable

import numpy as np
import pytest
from modtree import (
    BACKEND,
    BatchNorm,
    BatchNorm2d,
    Conv2d,
    Linear,
    Module,
    NotFoundError,
    Parameter,
    ReLU,
    Sequential,
    Tensor,
    UnknownModuleError,
    UnknownParameterError,
    is_global_grad_mode_enabled,
    tensor,
)

LENET_PARAMETER_KEYS = [
    "conv1.weight",
    "conv1.bias",
    "conv2.weight",
    "conv2.bias",
    "fc1.weight",
    "fc1.bias",
    "fc2.weight",
    "fc2.bias",
    "fc3.weight",
    "fc3.bias",
]


class ConvAndLinear(Module):
    def __init__(self) -> None:
        super().__init__()
        self.add_module("conv1", Conv2d(1, 6, 3))
        self.add_module("fc1", Linear(6, 2))


def _snapshot(module: Module) -> dict[str, np.ndarray]:
    return {key: np.array(value) for key, value in module.state_dict().items()}


# =============================================================================
# Registration
# =============================================================================


def test_register_parameter_overwrites_same_name() -> None:
    module = Module()
    module.register_parameter("w", Parameter(np.zeros(2)))
    module.register_parameter("w", Parameter(np.ones(3)))
    assert list(module.named_parameters()) == ["w"]
    assert module.get_parameter("w").shape == (3,)


def test_register_parameter_rejects_plain_tensor() -> None:
    with pytest.raises(TypeError):
        Module().register_parameter("w", tensor([1.0]))


def test_register_buffer_wraps_plain_arrays() -> None:
    module = Module()
    module.register_buffer("stats", np.zeros(2))
    assert isinstance(module.get_buffer("stats"), Tensor)


def test_register_buffer_rejects_non_arrays() -> None:
    with pytest.raises(TypeError):
        Module().register_buffer("stats", [0.0, 1.0])  # type: ignore[arg-type]


@pytest.mark.parametrize("name", ["", "a.b"])
def test_invalid_names_are_rejected(name: str) -> None:
    with pytest.raises(KeyError):
        Module().register_parameter(name, Parameter(np.ones(1)))


def test_names_are_unique_across_namespaces() -> None:
    module = Module()
    module.register_parameter("w", Parameter(np.ones(1)))
    with pytest.raises(KeyError):
        module.register_buffer("w", tensor([1.0]))
    with pytest.raises(KeyError):
        module.add_module("w", ReLU())


def test_none_entries_are_skipped() -> None:
    layer = Linear(3, 2, bias=False)
    assert list(layer.named_parameters()) == ["weight"]
    assert list(layer.state_dict()) == ["weight"]
    assert layer.bias is None


def test_add_module_rejects_cycles() -> None:
    inner = Sequential(ReLU())
    outer = Sequential(Linear(2, 2), inner)
    with pytest.raises(ValueError, match="own descendant"):
        inner.add_module("loop", outer)
    with pytest.raises(ValueError, match="own descendant"):
        outer.add_module("self", outer)


def test_attribute_assignment_of_tree_members_is_rejected() -> None:
    module = Module()
    with pytest.raises(TypeError, match="register_parameter"):
        module.weight = Parameter(np.ones(1))
    with pytest.raises(TypeError, match="add_module"):
        module.child = ReLU()


# =============================================================================
# Traversal
# =============================================================================


def test_named_parameters_order_children_first() -> None:
    net = ConvAndLinear()
    assert list(net.named_parameters()) == ["conv1.weight", "conv1.bias", "fc1.weight", "fc1.bias"]


def test_named_parameters_own_after_children() -> None:
    net = ConvAndLinear()
    net.register_parameter("scale", Parameter(np.ones(1)))
    assert list(net.named_parameters())[-1] == "scale"
    assert list(net.named_parameters(recurse=False)) == ["scale"]
    assert list(net.named_parameters(prefix="net.", recurse=False)) == ["net.scale"]


def test_lenet_queries(net: Module) -> None:
    assert list(net.named_parameters()) == LENET_PARAMETER_KEYS
    assert len(net.parameters()) == 10
    assert list(net.named_children()) == ["conv1", "conv2", "fc1", "fc2", "fc3"]
    assert len(net.children()) == 5
    assert list(net.named_modules()) == ["", "conv1", "conv2", "fc1", "fc2", "fc3"]
    assert net.named_modules()[""] is net
    assert net.buffers() == []
    assert len(net.named_buffers()) == 0


@pytest.mark.parametrize("factory_name", ["make_lenet", "make_residual_block"])
def test_parameter_count_matches_sum_of_direct_parameters(
    factory_name: str,
    request: pytest.FixtureRequest,
) -> None:
    factory: Callable[[], Module] = request.getfixturevalue(factory_name)
    net = factory()
    direct = sum(len(module.named_parameters(recurse=False)) for module in net.modules())
    assert len(net.named_parameters(recurse=True)) == direct


def test_named_modules_dedups_shared_children() -> None:
    shared = Linear(2, 2)
    root = Module()
    root.add_module("a", shared)
    root.add_module("b", shared)

    modules = root.named_modules()
    assert list(modules) == ["", "a"]
    assert len({id(module) for module in modules.values()}) == len(modules)


def test_state_dict_of_shared_children_round_trips() -> None:
    shared = Linear(2, 2)
    root = Module()
    root.add_module("a", shared)
    root.add_module("b", shared)

    state = root.state_dict()

    assert list(state) == ["a.weight", "a.bias"]
    assert root.load_state_dict(state) == []


def test_named_buffers_does_not_recurse_by_default(
    make_residual_block: Callable[[], Module],
) -> None:
    block = make_residual_block()
    assert len(block.named_buffers()) == 0
    assert list(block.named_buffers(recurse=True))[:3] == [
        "seq.1.running_mean",
        "seq.1.running_var",
        "seq.1.num_batches_tracked",
    ]
    bn = block.get_child("seq.1")
    assert list(bn.named_buffers()) == ["running_mean", "running_var", "num_batches_tracked"]


def test_explicit_accessors(make_residual_block: Callable[[], Module]) -> None:
    block = make_residual_block()
    assert isinstance(block.get_child("seq"), Sequential)
    assert isinstance(block.get_child("seq.1"), BatchNorm2d)
    assert block.get_parameter("seq.1.weight") is block.get_child("seq.1").get_parameter("weight")
    assert block.get_buffer("seq.4.running_var").shape == (3,)


@pytest.mark.parametrize(
    ("accessor", "name"),
    [
        ("get_child", "nope"),
        ("get_child", "seq.99"),
        ("get_parameter", "seq.1.running_mean"),
        ("get_buffer", "seq.1.weight"),
    ],
)
def test_explicit_accessors_raise_not_found(
    accessor: str,
    name: str,
    make_residual_block: Callable[[], Module],
) -> None:
    block = make_residual_block()
    with pytest.raises(NotFoundError) as exc_info:
        getattr(block, accessor)(name)
    assert exc_info.value.name == name


# =============================================================================
# Transforms
# =============================================================================


def test_apply_visits_children_before_parents() -> None:
    inner = Sequential(ReLU())
    outer = Sequential(Linear(2, 2), inner)
    visited: list[Module] = []
    assert outer.apply(visited.append) is outer
    assert visited == [outer[0], inner[0], inner, outer]


def test_apply_in_place_identity_preserves_everything(net: Module) -> None:
    net.get_parameter("fc2.bias").requires_grad_(False)
    before = _snapshot(net)
    flags = {key: p.requires_grad for key, p in net.named_parameters().items()}

    assert net.apply_in_place(lambda t: t) is net

    assert list(net.named_parameters()) == LENET_PARAMETER_KEYS
    assert {key: p.requires_grad for key, p in net.named_parameters().items()} == flags
    for key, value in net.state_dict().items():
        assert isinstance(value, Parameter)
        np.testing.assert_array_equal(value, before[key])


def test_apply_in_place_runs_parameter_transforms_without_grad_tracking() -> None:
    seen: list[tuple[str, bool]] = []

    def record(t: Tensor) -> Tensor:
        seen.append((type(t).__name__, is_global_grad_mode_enabled()))
        return t

    BatchNorm(2).apply_in_place(record)
    assert seen == [
        ("Parameter", False),
        ("Parameter", False),
        ("Tensor", True),
        ("Tensor", True),
        ("Tensor", True),
    ]


def test_apply_in_place_transforms_and_reattaches_gradient() -> None:
    layer = Linear(3, 2)
    weight = layer.weight
    weight.grad = tensor(np.ones((2, 3), dtype=np.float32), requires_grad=True)
    before = np.array(weight)

    layer.apply_in_place(lambda t: t * 2)

    new_weight = layer.weight
    assert new_weight is not weight
    assert isinstance(new_weight, Parameter)
    assert new_weight.requires_grad
    np.testing.assert_allclose(new_weight, before * 2)
    assert new_weight.grad is not None
    np.testing.assert_allclose(new_weight.grad, np.full((2, 3), 2.0))
    assert new_weight.grad.requires_grad
    assert layer.bias is not None
    assert layer.bias.grad is None


def test_apply_in_place_visits_shared_modules_once() -> None:
    shared = Linear(2, 2)
    before = np.array(shared.weight)
    root = Module()
    root.add_module("a", shared)
    root.add_module("b", shared)

    root.apply_in_place(lambda t: t * 2)

    np.testing.assert_allclose(shared.weight, before * 2)


def test_half_casts_buffers() -> None:
    bn = BatchNorm(1)
    assert bn.running_mean is not None
    assert bn.running_mean.dtype == np.float32
    assert bn.named_buffers()["running_mean"].dtype == np.float32

    bn.half()

    assert bn.named_buffers()["running_mean"].dtype == np.float16
    assert bn.running_mean.dtype == np.float16
    assert bn.get_parameter("weight").dtype == np.float16
    # integer buffers are left alone
    assert bn.named_buffers()["num_batches_tracked"].dtype == np.int64


def test_double_and_type(make_residual_block: Callable[[], Module]) -> None:
    block = make_residual_block()
    block.double()
    assert all(p.dtype == np.float64 for p in block.parameters())
    assert block.get_buffer("seq.1.num_batches_tracked").dtype == np.int64

    block.type(np.float32)
    assert all(t.dtype == np.float32 for t in block.state_dict().values())


def test_type_to_integer_dtype_leaves_tree_untouched(
    make_residual_block: Callable[[], Module],
) -> None:
    block = make_residual_block()
    before = block.state_dict()

    with pytest.raises(ValueError, match="float type"):
        block.type(np.int64)

    after = block.state_dict()
    for key, value in before.items():
        assert after[key] is value
        assert after[key].dtype == value.dtype


def test_type_to_integer_dtype_without_parameters() -> None:
    root = Module()
    root.register_buffer("count", tensor(2.0))
    root.type(np.int64)
    assert root.get_buffer("count").dtype == np.int64


def test_to_cpu_keeps_values(net: Module) -> None:
    before = _snapshot(net)
    assert net.to("cpu") is net
    assert net.cpu() is net
    for key, value in net.state_dict().items():
        np.testing.assert_array_equal(value, before[key])


@pytest.mark.skipif(BACKEND != "numpy", reason="cuda is available with cupy")
def test_cuda_fails_on_numpy_backend(net: Module) -> None:
    with pytest.raises(ValueError, match="cupy"):
        net.cuda()


# =============================================================================
# Modes and gradients
# =============================================================================


def test_train_and_eval_propagate(make_residual_block: Callable[[], Module]) -> None:
    block = make_residual_block()
    assert all(module.training for module in block.modules())

    assert block.eval() is block
    assert not any(module.training for module in block.modules())

    block.train()
    assert all(module.training for module in block.modules())

    block.train(False)
    assert not any(module.training for module in block.modules())


def test_requires_grad_applies_to_whole_subtree(net: Module) -> None:
    assert net.requires_grad_(False) is net
    assert not any(p.requires_grad for p in net.parameters())
    net.requires_grad_()
    assert all(p.requires_grad for p in net.parameters())


def test_zero_grad(net: Module) -> None:
    weight = net.get_parameter("fc1.weight")
    weight.grad = tensor(np.ones(weight.shape, dtype=np.float32), requires_grad=True)

    net.zero_grad()

    assert weight.grad is not None
    assert not weight.grad.requires_grad
    np.testing.assert_array_equal(weight.grad, np.zeros(weight.shape))
    assert net.get_parameter("fc1.bias").grad is None


# =============================================================================
# State dict
# =============================================================================


def test_state_dict_equals_named_parameters_without_buffers(net: Module) -> None:
    state = net.state_dict()
    assert isinstance(state, OrderedDict)
    assert list(state) == LENET_PARAMETER_KEYS
    assert all(state[key] is p for key, p in net.named_parameters().items())


def test_state_dict_includes_buffers(make_residual_block: Callable[[], Module]) -> None:
    expected = []
    for conv, bn in (("seq.0", "seq.1"), ("seq.3", "seq.4"), ("seq.6", "seq.7")):
        expected += [
            f"{conv}.weight",
            f"{bn}.weight",
            f"{bn}.bias",
            f"{bn}.running_mean",
            f"{bn}.running_var",
            f"{bn}.num_batches_tracked",
        ]
    assert list(make_residual_block().state_dict()) == expected


def test_state_dict_fills_destination(net: Module) -> None:
    destination: OrderedDict[str, Tensor] = OrderedDict()
    assert net.state_dict(destination=destination) is destination
    assert len(destination) == 10


def test_load_state_dict_round_trip(make_residual_block: Callable[[], Module]) -> None:
    source = make_residual_block()
    source(np.random.default_rng(0).normal(size=(2, 3, 5, 5)).astype(np.float32))
    expected = _snapshot(source)

    target = make_residual_block()
    params_before = {key: id(p) for key, p in target.named_parameters().items()}
    assert target.load_state_dict(source.state_dict()) == []

    for key, value in target.state_dict().items():
        np.testing.assert_array_equal(value, expected[key])
    assert {key: id(p) for key, p in target.named_parameters().items()} == params_before
    assert int(target.get_buffer("seq.1.num_batches_tracked")) == 1


def test_load_state_dict_preserves_requires_grad(make_lenet: Callable[[], Module]) -> None:
    source, target = make_lenet(), make_lenet()
    target.get_parameter("fc1.weight").requires_grad_(False)
    target.load_state_dict(source.state_dict())
    assert not target.get_parameter("fc1.weight").requires_grad
    assert target.get_parameter("fc1.bias").requires_grad


def test_load_state_dict_root_level_keys() -> None:
    source, target = BatchNorm(2), BatchNorm(2)
    source.get_buffer("running_mean").copy_([1.0, 2.0])
    target.load_state_dict(source.state_dict())
    np.testing.assert_array_equal(target.get_buffer("running_mean"), [1.0, 2.0])


def test_load_state_dict_unknown_module_does_not_mutate(net: Module) -> None:
    before = _snapshot(net)
    state = OrderedDict(
        [
            ("conv1.weight", np.zeros((6, 1, 3, 3), dtype=np.float32)),
            ("conv9.weight", np.zeros((6, 1, 3, 3), dtype=np.float32)),
        ]
    )

    with pytest.raises(UnknownModuleError) as exc_info:
        net.load_state_dict(state)

    assert exc_info.value.module_name == "conv9"
    assert isinstance(exc_info.value, KeyError)
    for key, value in net.state_dict().items():
        np.testing.assert_array_equal(value, before[key])


def test_load_state_dict_unknown_parameter(net: Module) -> None:
    with pytest.raises(UnknownParameterError) as exc_info:
        net.load_state_dict({"conv1.kernel": np.zeros(1)})
    assert exc_info.value.module_name == "conv1"
    assert exc_info.value.parameter_name == "kernel"


def test_load_state_dict_shape_mismatch(net: Module) -> None:
    before = _snapshot(net)
    with pytest.raises(ValueError, match="Shape mismatch"):
        net.load_state_dict(
            {
                "fc3.bias": np.zeros(10, dtype=np.float32),
                "fc3.weight": np.zeros((3, 3), dtype=np.float32),
            }
        )
    np.testing.assert_array_equal(net.get_parameter("fc3.bias"), before["fc3.bias"])


def test_load_state_dict_reports_missing_keys(net: Module) -> None:
    missing = net.load_state_dict({"fc3.bias": np.zeros(10, dtype=np.float32)})
    assert missing == LENET_PARAMETER_KEYS[:-1]
    np.testing.assert_array_equal(net.get_parameter("fc3.bias"), np.zeros(10))


# =============================================================================
# Forward and display
# =============================================================================


def test_forward_is_abstract() -> None:
    with pytest.raises(NotImplementedError, match="Module"):
        Module()(tensor([1.0]))


def test_describe_lenet(net: Module) -> None:
    description = repr(net)
    assert description.startswith("LeNet(\n")
    assert "  (conv1): Conv2d(1, 6, kernel_size=(3, 3), stride=(1, 1))\n" in description
    assert "  (fc3): Linear(in_features=84, out_features=10, bias=True)\n" in description
    assert description.endswith("\n)")


def test_describe_leaf_and_nesting() -> None:
    assert ReLU().describe() == "ReLU()"
    assert Sequential(Sequential(ReLU())).describe() == (
        "Sequential(\n  (0): Sequential(\n    (0): ReLU()\n  )\n)"
    )
