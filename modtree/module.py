"""The module tree.

A `Module` owns three insertion-ordered namespaces: parameters, buffers and
child modules. Concrete layers fill them explicitly through
`register_parameter`, `register_buffer` and `add_module` in their
constructor; nothing is discovered from instance attributes.

The tree is not thread-safe for mutation. Registration, `apply_in_place`
and `load_state_dict` need exclusive access to the subtree they touch;
read-only traversals may run concurrently with other readers only.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Self

import numpy as np

from .backend import DeviceLike, TensorDevice, no_grad, xp
from .errors import NotFoundError, UnknownModuleError, UnknownParameterError
from .tensor import Parameter, Tensor, as_tensor

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping


logger = logging.getLogger(__name__)


class Module:
    """Base class for all layers and containers.

    Subclasses call `super().__init__()` first, then register their state:

        >>> class Affine(Module):
        ...     def __init__(self, dim: int) -> None:
        ...         super().__init__()
        ...         self.register_parameter("scale", Parameter(xp.ones(dim)))
        ...         self.register_buffer("calls", tensor(0))
        ...
        ...     def forward(self, x: Tensor) -> Tensor:
        ...         return x * self.get_parameter("scale")

    Attributes:
        training (bool): Whether the module is in training mode
            (relevant for e.g. BatchNorm). Defaults to True.

    Note:
        Sharing one Module object between two parents is not supported.
        Traversals visit such a module once (the first path wins), but
        ownership and the resulting state dict keys are undefined.
    """

    def __init__(self) -> None:
        self.training: bool = True
        self._parameters: OrderedDict[str, Parameter | None] = OrderedDict()
        self._buffers: OrderedDict[str, Tensor | None] = OrderedDict()
        self._modules: OrderedDict[str, Module | None] = OrderedDict()

    def __setattr__(self, name: str, value: Any) -> None:
        if isinstance(value, Parameter | Module):
            raise TypeError(
                f'Cannot assign "{type(value).__name__}" to attribute "{name}" of '
                f"{type(self).__name__}. Use register_parameter or add_module instead."
            )
        super().__setattr__(name, value)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _check_name(self, name: str, kind: str) -> None:
        if not isinstance(name, str):
            raise TypeError(f"{kind} name must be a string, found {type(name).__name__}")
        if not name:
            raise KeyError(f'{kind} name can\'t be empty string ""')
        if "." in name:
            raise KeyError(f'{kind} name can\'t contain ".", got "{name}"')
        namespaces = {
            "parameter": self._parameters,
            "buffer": self._buffers,
            "module": self._modules,
        }
        for other_kind, mapping in namespaces.items():
            if other_kind != kind and name in mapping:
                raise KeyError(f'"{name}" is already registered as a {other_kind}')

    def register_parameter(self, name: str, param: Parameter | None) -> None:
        """Register a parameter under `name`.

        An existing parameter of the same name is overwritten. `None`
        reserves the name for an optional parameter (e.g. a disabled bias).

        Args:
            name (str): Name of the parameter, without ".".
            param (Parameter | None): The parameter.

        Raises:
            TypeError: If `param` is neither a Parameter nor None.
            KeyError: If `name` is invalid or used by a buffer or module.
        """
        self._check_name(name, "parameter")
        if param is not None and not isinstance(param, Parameter):
            raise TypeError(
                f'Cannot register "{type(param).__name__}" as parameter "{name}" '
                "(Parameter or None required)"
            )
        self._parameters[name] = param
        logger.debug('Registered parameter "%s" on %s', name, type(self).__name__)

    def register_buffer(self, name: str, tensor: Tensor | None) -> None:
        """Register a buffer (state without gradient, e.g. running statistics).

        Plain backend arrays are wrapped into Tensors.

        Args:
            name (str): Name of the buffer, without ".".
            tensor (Tensor | None): The buffer.

        Raises:
            TypeError: If `tensor` is not an array or None.
            KeyError: If `name` is invalid or used by a parameter or module.
        """
        self._check_name(name, "buffer")
        if tensor is not None:
            if not isinstance(tensor, xp.ndarray):
                raise TypeError(
                    f'Cannot register "{type(tensor).__name__}" as buffer "{name}" '
                    "(Tensor or None required)"
                )
            tensor = as_tensor(tensor)
        self._buffers[name] = tensor
        logger.debug('Registered buffer "%s" on %s', name, type(self).__name__)

    def add_module(self, name: str, module: Module | None) -> None:
        """Register a child module under `name`.

        Args:
            name (str): Name of the child, without ".".
            module (Module | None): The child.

        Raises:
            TypeError: If `module` is neither a Module nor None.
            KeyError: If `name` is invalid or used by a parameter or buffer.
            ValueError: If `module` is this module or one of its ancestors.
        """
        self._check_name(name, "module")
        if module is not None:
            if not isinstance(module, Module):
                raise TypeError(f'"{type(module).__name__}" is not a Module subclass')
            if any(m is self for m in module.modules()):
                raise ValueError(
                    f'Adding "{name}" would make {type(self).__name__} its own descendant'
                )
        self._modules[name] = module
        logger.debug('Added module "%s" to %s', name, type(self).__name__)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_parameter(self, name: str) -> Parameter:
        """The parameter at dotted path `name`, e.g. "conv1.weight"."""
        param = self.named_parameters().get(name)
        if param is None:
            raise NotFoundError("parameter", name)
        return param

    def get_buffer(self, name: str) -> Tensor:
        """The buffer at dotted path `name`, e.g. "bn.running_mean"."""
        buf = self.named_buffers(recurse=True).get(name)
        if buf is None:
            raise NotFoundError("buffer", name)
        return buf

    def get_child(self, name: str) -> Module:
        """The immediate child `name`, or the descendant at a dotted path."""
        child = self._modules.get(name) if "." not in name else self.named_modules().get(name)
        if child is None:
            raise NotFoundError("module", name)
        return child

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def named_children(self) -> OrderedDict[str, Module]:
        return OrderedDict((name, mod) for name, mod in self._modules.items() if mod is not None)

    def children(self) -> list[Module]:
        return list(self.named_children().values())

    def named_modules(
        self,
        memo: set[int] | None = None,
        prefix: str = "",
    ) -> OrderedDict[str, Module]:
        """All modules of the subtree, including self, keyed by dotted path.

        Each module is emitted once, even if it is reachable via several
        paths.

        Args:
            memo (set[int] | None): Ids of the modules already emitted.
                Defaults to None (fresh traversal).
            prefix (str): Path of this module. Defaults to "" (the root).

        Returns:
            OrderedDict[str, Module]: Modules in depth-first pre-order.
        """
        modules: OrderedDict[str, Module] = OrderedDict()
        memo = set() if memo is None else memo
        if id(self) in memo:
            return modules
        memo.add(id(self))
        modules[prefix] = self
        for name, child in self.named_children().items():
            child_prefix = f"{prefix}.{name}" if prefix else name
            modules.update(child.named_modules(memo=memo, prefix=child_prefix))
        return modules

    def modules(self) -> list[Module]:
        return list(self.named_modules().values())

    def _post_order(self, memo: set[int] | None = None) -> Iterator[Module]:
        memo = set() if memo is None else memo
        if id(self) in memo:
            return
        memo.add(id(self))
        for child in self.children():
            yield from child._post_order(memo)
        yield self

    def named_parameters(
        self,
        prefix: str = "",
        recurse: bool = True,
    ) -> OrderedDict[str, Parameter]:
        """Parameters keyed by their path.

        Children come first (in registration order, recursively), then the
        parameters registered directly on this module.

        Args:
            prefix (str): Prepended to every key. Defaults to "".
            recurse (bool): Whether to include the parameters of all
                descendants. Defaults to True.

        Returns:
            OrderedDict[str, Parameter]: e.g. "conv1.weight", "conv1.bias", ...
        """
        params: OrderedDict[str, Parameter] = OrderedDict()
        if recurse:
            for name, child in self.named_children().items():
                params.update(child.named_parameters(prefix=f"{prefix}{name}.", recurse=True))
        for name, param in self._parameters.items():
            if param is not None:
                params[f"{prefix}{name}"] = param
        return params

    def parameters(self, recurse: bool = True) -> list[Parameter]:
        return list(self.named_parameters(recurse=recurse).values())

    def named_buffers(
        self,
        prefix: str = "",
        recurse: bool = False,
    ) -> OrderedDict[str, Tensor]:
        """Buffers keyed by their path.

        Unlike `named_parameters`, only this module's own buffers are
        returned by default. Pass `recurse=True` for the whole subtree,
        ordered like `named_parameters`.

        Args:
            prefix (str): Prepended to every key. Defaults to "".
            recurse (bool): Whether to include the buffers of all
                descendants. Defaults to False.

        Returns:
            OrderedDict[str, Tensor]: e.g. "running_mean", "running_var".
        """
        bufs: OrderedDict[str, Tensor] = OrderedDict()
        if recurse:
            for name, child in self.named_children().items():
                bufs.update(child.named_buffers(prefix=f"{prefix}{name}.", recurse=True))
        for name, buf in self._buffers.items():
            if buf is not None:
                bufs[f"{prefix}{name}"] = buf
        return bufs

    def buffers(self, recurse: bool = False) -> list[Tensor]:
        return list(self.named_buffers(recurse=recurse).values())

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def _apply_to_own_tensors(self, fn: Callable[[Tensor], Any]) -> None:
        for name, param in self._parameters.items():
            if param is None:
                continue
            with no_grad():
                param_applied = fn(param)
            new_param = Parameter(param_applied, requires_grad=param.requires_grad)
            if param.grad is not None:
                with no_grad():
                    grad_applied = as_tensor(fn(param.grad))
                new_param.grad = grad_applied.requires_grad_(param.grad.requires_grad)
            self._parameters[name] = new_param

        for name, buf in self._buffers.items():
            if buf is not None:
                self._buffers[name] = as_tensor(fn(buf))

    def apply_in_place(self, fn: Callable[[Tensor], Any]) -> Self:
        """Replace every parameter and buffer of the subtree by `fn(tensor)`.

        Children are processed before their parent. For parameters, `fn` runs
        without gradient tracking and its result is wrapped in a new Parameter
        with the old `requires_grad`; an existing gradient is transformed the
        same way and reattached. Buffers are replaced by `fn(buffer)`.

        This is the primitive behind `to`, `cpu`, `cuda`, `type`, `float`,
        `double` and `half`.

        Args:
            fn (Callable[[Tensor], Any]): The transform.

        Returns:
            Self: self, for method chaining.
        """
        for module in list(self._post_order()):
            module._apply_to_own_tensors(fn)
        logger.debug("Applied %s to all tensors of %s", fn, type(self).__name__)
        return self

    def apply(self, fn: Callable[[Module], Any]) -> Self:
        """Call `fn` on every module of the subtree, children before parents.

        Typically used for custom initialization.

        Args:
            fn (Callable[[Module], Any]): Called once per module, for
                its side effects.

        Returns:
            Self: self, for method chaining.
        """
        for module in list(self._post_order()):
            fn(module)
        return self

    def to(self, device: DeviceLike | None = None, dtype: Any = None) -> Self:
        """Move all tensors to `device` and cast floating point tensors to `dtype`."""

        def convert(t: Tensor) -> Tensor:
            return t.to(device=device, dtype=dtype if t.is_floating_point() else None)

        return self.apply_in_place(convert)

    def cpu(self) -> Self:
        return self.apply_in_place(lambda t: t.cpu())

    def cuda(self, device_id: int = 0) -> Self:
        return self.to(device=TensorDevice("cuda", device_id))

    def type(self, dst_type: Any) -> Self:
        """Cast all parameters and buffers to `dst_type`.

        Args:
            dst_type (Any): Target dtype.

        Raises:
            ValueError: If `dst_type` is not a floating point dtype while the
                subtree holds parameters. Nothing is cast in that case.

        Returns:
            Self: self, for method chaining.
        """
        if not xp.issubdtype(xp.dtype(dst_type), xp.floating) and self.parameters():
            raise ValueError(
                f"Cannot cast parameters of {type(self).__name__} to {xp.dtype(dst_type)}, "
                "Parameter must have float type."
            )
        return self.apply_in_place(lambda t: t.to(dtype=dst_type))

    def float(self) -> Self:
        return self.apply_in_place(lambda t: t.float() if t.is_floating_point() else t)

    def double(self) -> Self:
        return self.apply_in_place(lambda t: t.double() if t.is_floating_point() else t)

    def half(self) -> Self:
        return self.apply_in_place(lambda t: t.half() if t.is_floating_point() else t)

    # ------------------------------------------------------------------
    # Modes and gradients
    # ------------------------------------------------------------------

    def train(self, mode: bool = True) -> Self:
        """Set the training mode of this module and all descendants.

        Args:
            mode (bool): Training (True) or evaluation (False) mode.
                Defaults to True.

        Returns:
            Self: self, for method chaining.
        """
        self.training = mode
        for child in self.children():
            child.train(mode)
        return self

    def eval(self) -> Self:
        return self.train(False)

    def requires_grad_(self, requires_grad: bool = True) -> Self:
        for param in self.parameters():
            param.requires_grad_(requires_grad)
        return self

    def zero_grad(self) -> None:
        """Reset the gradient of every parameter to zero, in place.

        Parameters without a gradient are skipped.
        """
        for param in self.parameters():
            if param.grad is not None:
                param.grad.detach_()
                param.grad.zero_()

    # ------------------------------------------------------------------
    # State dict
    # ------------------------------------------------------------------

    def state_dict(
        self,
        destination: OrderedDict[str, Tensor] | None = None,
        prefix: str = "",
        memo: set[int] | None = None,
    ) -> OrderedDict[str, Tensor]:
        """All parameters and buffers of the subtree keyed by dotted path.

        Per module: children first, then own parameters, then own buffers.
        A module reachable via several paths is emitted once, under the
        path `named_modules` reports for it.

        Args:
            destination (OrderedDict[str, Tensor] | None): Mapping to fill.
                Defaults to None (a new OrderedDict).
            prefix (str): Prepended to every key. Defaults to "".
            memo (set[int] | None): Ids of the modules already emitted.
                Defaults to None (fresh traversal).

        Returns:
            OrderedDict[str, Tensor]: `destination`, filled.
        """
        if destination is None:
            destination = OrderedDict()
        memo = set() if memo is None else memo
        if id(self) in memo:
            return destination
        memo.add(id(self))
        for name, child in self.named_children().items():
            child.state_dict(destination=destination, prefix=f"{prefix}{name}.", memo=memo)
        destination.update(self.named_parameters(prefix=prefix, recurse=False))
        destination.update(self.named_buffers(prefix=prefix, recurse=False))
        return destination

    def _resolve_state_key(self, key: str, modules: Mapping[str, Module]) -> Tensor:
        module_name, sep, remainder = key.partition(".")
        if not sep:
            # "weight" addresses the root module itself
            module_name, remainder = "", key
        module = modules.get(module_name)
        if module is None:
            raise UnknownModuleError(module_name)
        target = module.named_parameters().get(remainder)
        if target is None:
            target = module.named_buffers(recurse=True).get(remainder)
        if target is None:
            raise UnknownParameterError(module_name, remainder)
        return target

    def load_state_dict(self, state_dict: Mapping[str, Any]) -> list[str]:
        """Copy the values of `state_dict` into the existing parameters and buffers.

        Every key is resolved (and shape-checked) before any value is
        copied, so a failing key leaves the module untouched. Values are
        copied in place without gradient tracking; identity and
        `requires_grad` of the targets are preserved.

        Args:
            state_dict (Mapping[str, Any]): Values keyed by dotted path,
                as returned by `state_dict` or `modtree.load`.

        Raises:
            UnknownModuleError: If a key's module part is not in the tree.
            UnknownParameterError: If a key's remainder names neither a
                parameter nor a buffer of that module.
            ValueError: If a value's shape differs from its target's.

        Returns:
            list[str]: The keys of this module's state dict that
                `state_dict` did not provide.
        """
        modules = self.named_modules()
        resolved: list[tuple[Tensor, Any]] = []
        for key, value in state_dict.items():
            target = self._resolve_state_key(key, modules)
            if tuple(np.shape(value)) != target.shape:
                raise ValueError(
                    f'Shape mismatch for "{key}". '
                    f'Found "{tuple(np.shape(value))}", expected "{target.shape}".'
                )
            resolved.append((target, value))

        with no_grad():
            for target, value in resolved:
                target.copy_(value)

        missing_keys = [key for key in self.state_dict() if key not in state_dict]
        if missing_keys:
            logger.warning(
                "Missing keys when loading state dict into %s: %s",
                type(self).__name__,
                ", ".join(missing_keys),
            )
        logger.debug("Loaded %d entries into %s", len(resolved), type(self).__name__)
        return missing_keys

    # ------------------------------------------------------------------
    # Forward and display
    # ------------------------------------------------------------------

    def forward(self, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError(
            f'Module [{type(self).__name__}] is missing the required "forward" function'
        )

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.forward(*args, **kwargs)

    def extra_repr(self) -> str:
        """Layer specific details shown by `describe`, e.g. kernel sizes."""
        return ""

    def describe(self) -> str:
        """A readable, indented rendering of the subtree.

        Returns:
            str: "Name(extra)" for leaves; for composites every child on
                its own line as "(name): description", indented by two
                spaces per level.
        """
        name = type(self).__name__
        children = self.named_children()
        if not children:
            return f"{name}({self.extra_repr()})"
        lines = [f"{name}("]
        for child_name, child in children.items():
            child_str = child.describe().replace("\n", "\n  ")
            lines.append(f"  ({child_name}): {child_str}")
        lines.append(")")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.describe()


__all__ = [
    "Module",
]
