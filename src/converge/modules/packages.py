"""package module: ensure OS packages are installed or removed."""

import logging
from typing import Any

from ..exceptions import PreconditionFailedError
from .base import ModuleContext
from .variants import package_manager_for

logger = logging.getLogger(__name__)

__all__ = ["package_module"]

PACKAGE_STATES = ("present", "absent")


def _names(name: str | list[str]) -> list[str]:
    if isinstance(name, str):
        return [n.strip() for n in name.split(",") if n.strip()]
    return [str(n) for n in name]


async def package_module(
    ctx: ModuleContext,
    name: str | list[str],
    state: str = "present",
    manager: str | None = None,
) -> dict[str, Any]:
    """Install or remove packages with the host's package manager.

    Changed only when the installed state of at least one package differs
    from the desired state; an already-present package is never reinstalled.

    Args:
        name: Package name, comma-separated names or a list
        state: present or absent
        manager: Override the manager chosen from the OS family

    Returns:
        Result dict with changed, manager and the packages acted on

    Raises:
        PreconditionFailedError: Bad state, no package names, or no known manager
    """
    packages = _names(name)
    if not packages:
        raise PreconditionFailedError("package requires at least one name")
    if state not in PACKAGE_STATES:
        raise PreconditionFailedError(
            f"Invalid state: {state}", state=state, valid=list(PACKAGE_STATES)
        )

    pm = package_manager_for(ctx.facts, manager) if manager else ctx.package_manager
    if pm is None:
        raise PreconditionFailedError(
            f"No package manager known for os family '{ctx.facts.get('os_family', 'unknown')}'; "
            "set 'manager' explicitly",
        )

    logger.debug(f"[{ctx.host.name}] package manager={pm.name} packages={packages} state={state}")
    if state == "present":
        acted = await pm.ensure_present(ctx, packages)
        key = "installed"
    else:
        acted = await pm.ensure_absent(ctx, packages)
        key = "removed"

    return {
        "changed": bool(acted),
        "manager": pm.name,
        "name": packages,
        "state": state,
        key: acted,
    }
