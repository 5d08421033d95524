"""Errors raised by the module tree.

Lookups that fail inside `Module.load_state_dict` raise
`UnknownModuleError` / `UnknownParameterError`; explicit accessors such as
`Module.get_parameter` raise `NotFoundError`. All of them derive from
`ModuleTreeError` so callers can catch the family at once, and from the
builtin lookup errors so generic `except KeyError` handlers keep working.
"""

from __future__ import annotations


class ModuleTreeError(Exception):
    """Base class for all module tree errors."""


class UnknownModuleError(ModuleTreeError, KeyError):
    """Raised when a state dict key names a module that is not in the tree.

    Attributes:
        module_name (str): The unresolved dotted module path.
    """

    def __init__(self, module_name: str) -> None:
        super().__init__(f"Unknown module: {module_name}")
        self.module_name = module_name

    def __str__(self) -> str:
        # KeyError would quote the message
        return str(self.args[0])


class UnknownParameterError(ModuleTreeError, KeyError):
    """Raised when a state dict key names no parameter or buffer of its module.

    Attributes:
        module_name (str): The dotted path of the resolved module.
        parameter_name (str): The unresolved remainder of the key.
    """

    def __init__(self, module_name: str, parameter_name: str) -> None:
        super().__init__(f"Unknown parameter `{parameter_name}` in module `{module_name}`")
        self.module_name = module_name
        self.parameter_name = parameter_name

    def __str__(self) -> str:
        return str(self.args[0])


class NotFoundError(ModuleTreeError, LookupError):
    """Raised by the explicit accessors when a name is not registered.

    Attributes:
        kind (str): What was looked up, e.g. "parameter", "buffer" or "module".
        name (str): The name (or dotted path) that was looked up.
    """

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f'No {kind} named "{name}"')
        self.kind = kind
        self.name = name


__all__ = [
    "ModuleTreeError",
    "NotFoundError",
    "UnknownModuleError",
    "UnknownParameterError",
]
