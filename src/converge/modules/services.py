"""service module: manage the run state and boot enablement of services."""

from typing import Any

from ..exceptions import PreconditionFailedError
from ..templating import to_bool
from .base import ModuleContext
from .variants import SystemdServiceManager

__all__ = ["service_module"]

SERVICE_STATES = ("started", "stopped", "restarted", "reloaded")


async def service_module(
    ctx: ModuleContext,
    name: str,
    state: str | None = None,
    enabled: bool | None = None,
) -> dict[str, Any]:
    """Manage a service.

    ``started``/``stopped`` act only when the current state differs.
    ``restarted``/``reloaded`` always act and always report changed. A
    service that does not exist is a failure for every state.

    Raises:
        PreconditionFailedError: Unknown service, bad state or nothing requested
    """
    if state is None and enabled is None:
        raise PreconditionFailedError("service requires 'state' or 'enabled'", name=name)
    if state is not None and state not in SERVICE_STATES:
        raise PreconditionFailedError(
            f"Invalid state: {state}", state=state, valid=list(SERVICE_STATES)
        )

    sm = ctx.service_manager or SystemdServiceManager()
    if not await sm.exists(ctx, name):
        raise PreconditionFailedError(f"Service not found: {name}", name=name)

    actions = []
    if state == "started":
        if not await sm.is_active(ctx, name):
            await sm.action(ctx, name, "start")
            actions.append("started")
    elif state == "stopped":
        if await sm.is_active(ctx, name):
            await sm.action(ctx, name, "stop")
            actions.append("stopped")
    elif state in ("restarted", "reloaded"):
        await sm.action(ctx, name, state[:-2])
        actions.append(state)

    if enabled is not None:
        if await sm.is_enabled(ctx, name) != to_bool(enabled):
            await sm.set_enabled(ctx, name, to_bool(enabled))
            actions.append("enabled" if to_bool(enabled) else "disabled")

    result: dict[str, Any] = {
        "changed": bool(actions),
        "name": name,
        "manager": sm.name,
        "actions": actions,
    }
    if state is not None:
        result["state"] = state
    if enabled is not None:
        result["enabled"] = to_bool(enabled)
    return result
