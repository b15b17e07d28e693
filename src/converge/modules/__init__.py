"""Built-in modules and the module registry.

Modules are async functions ``(ctx: ModuleContext, **args) -> dict``. The
registry maps a module identifier (short name or Ansible-style FQCN) to a
``ModuleSpec`` describing the function and its idempotency contract.

Usage:
    from converge.modules import default_registry

    registry = default_registry()
    result = await registry.invoke("package", ctx, {"name": "nginx"})
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..exceptions import PreconditionFailedError, UnknownModuleError
from .archives import archive_module, unarchive_module
from .base import ModuleContext
from .commands import command_module, shell_module
from .control import assert_module, debug_module, fail_module, ping_module, set_fact_module
from .files import copy_module, file_module, stat_module
from .find import find_module
from .packages import package_module
from .services import service_module
from .users import authorized_key_module, user_module

logger = logging.getLogger(__name__)

ModuleFunc = Callable[..., Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ModuleSpec:
    """A registered module and its declared contract.

    Attributes:
        name: Short module identifier
        func: Async implementation
        idempotent: Whether a second identical invocation reports no change
        summary: One-line description
        free_form: Argument that receives a bare string (``command: ls``)
    """

    name: str
    func: ModuleFunc
    idempotent: bool = True
    summary: str = ""
    free_form: str | None = None


BUILTIN_MODULES: dict[str, ModuleSpec] = {
    spec.name: spec
    for spec in (
        ModuleSpec("package", package_module, summary="Install or remove OS packages"),
        ModuleSpec("service", service_module, summary="Manage service state and enablement"),
        ModuleSpec("file", file_module, summary="Manage paths, directories and links", free_form="path"),
        ModuleSpec("copy", copy_module, summary="Write file content on the host"),
        ModuleSpec("stat", stat_module, summary="Report path information", free_form="path"),
        ModuleSpec("archive", archive_module, idempotent=False, summary="Create timestamped archives"),
        ModuleSpec("unarchive", unarchive_module, summary="Extract archives, guarded by 'creates'"),
        ModuleSpec("user", user_module, summary="Manage user accounts", free_form="name"),
        ModuleSpec("authorized_key", authorized_key_module, summary="Manage SSH authorized keys"),
        ModuleSpec("find", find_module, summary="Find files by name pattern", free_form="paths"),
        ModuleSpec("command", command_module, idempotent=False, summary="Run a command", free_form="cmd"),
        ModuleSpec("shell", shell_module, idempotent=False, summary="Run a shell command", free_form="cmd"),
        ModuleSpec("ping", ping_module, summary="Check connectivity"),
        ModuleSpec("set_fact", set_fact_module, summary="Set play-local variables"),
        ModuleSpec("debug", debug_module, summary="Print a message or variable", free_form="msg"),
        ModuleSpec("assert", assert_module, summary="Check conditions", free_form="that"),
        ModuleSpec("fail", fail_module, summary="Fail with a message", free_form="msg"),
    )
}

ANSIBLE_NAMESPACES = {"authorized_key": "ansible.posix"}

# Modules that act on the play scope only and need no connection
LOCAL_ACTIONS = frozenset({"set_fact", "debug", "assert", "fail"})


class ModuleRegistry:
    """Maps module identifiers to module specs.

    Example:
        >>> registry = ModuleRegistry(BUILTIN_MODULES)
        >>> registry.get("ansible.builtin.copy").name
        'copy'
    """

    def __init__(self, modules: dict[str, ModuleSpec] | None = None) -> None:
        self._modules: dict[str, ModuleSpec] = {}
        self._aliases: dict[str, str] = {}
        for spec in (modules or {}).values():
            self.register(spec)

    def register(self, spec: ModuleSpec) -> None:
        """Add (or replace) a module along with its FQCN alias."""
        self._modules[spec.name] = spec
        namespace = ANSIBLE_NAMESPACES.get(spec.name, "ansible.builtin")
        self._aliases[f"{namespace}.{spec.name}"] = spec.name

    def canonical_name(self, name: str) -> str:
        return self._aliases.get(name, name)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.canonical_name(name) in self._modules

    def get(self, name: str) -> ModuleSpec:
        """Look up a module by short name or FQCN.

        Raises:
            UnknownModuleError: If no module is registered under the name
        """
        spec = self._modules.get(self.canonical_name(name))
        if spec is None:
            raise UnknownModuleError(name)
        return spec

    def list_modules(self) -> list[ModuleSpec]:
        return [self._modules[name] for name in sorted(self._modules)]

    async def invoke(self, name: str, ctx: ModuleContext, args: dict[str, Any]) -> dict[str, Any]:
        """Run a module against a host and return its result dict.

        Raises:
            UnknownModuleError: Unknown module identifier
            PreconditionFailedError: Arguments the module does not accept
            ModuleError: Whatever the module raises
        """
        spec = self.get(name)
        try:
            inspect.signature(spec.func).bind(ctx, **args)
        except TypeError as e:
            raise PreconditionFailedError(
                f"Invalid arguments for module '{spec.name}': {e}", module=spec.name
            ) from e

        result = await spec.func(ctx, **args)
        result.setdefault("changed", False)
        return result


def default_registry() -> ModuleRegistry:
    """Registry holding every built-in module."""
    return ModuleRegistry(BUILTIN_MODULES)


def get_module(name: str) -> ModuleSpec | None:
    """Get a built-in module by name or FQCN, or None."""
    registry = default_registry()
    return registry.get(name) if name in registry else None


def list_modules() -> list[str]:
    """List all built-in module short names."""
    return sorted(BUILTIN_MODULES)


__all__ = [
    "ModuleContext",
    "ModuleSpec",
    "ModuleRegistry",
    "BUILTIN_MODULES",
    "LOCAL_ACTIONS",
    "default_registry",
    "get_module",
    "list_modules",
]
