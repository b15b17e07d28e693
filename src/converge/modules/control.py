"""Modules that only touch the play scope: ping, set_fact, debug, assert, fail."""

from typing import Any

from ..exceptions import ModuleError, TemplateError
from .base import ModuleContext

__all__ = ["ping_module", "set_fact_module", "debug_module", "assert_module", "fail_module"]


async def ping_module(ctx: ModuleContext, data: str = "pong") -> dict[str, Any]:
    """Check that commands can run on the host."""
    result = await ctx.run("echo pong", become=False)
    if result.stdout.strip() != "pong":
        raise ModuleError(f"Unexpected ping output: {result.stdout.strip()!r}")
    return {"changed": False, "ping": data}


async def set_fact_module(ctx: ModuleContext, **variables: Any) -> dict[str, Any]:
    """Set play-local variables for this host.

    The executor merges ``set_vars`` into the host's scope; gathered facts
    are never modified.
    """
    if not variables:
        raise ModuleError("set_fact requires at least one variable")
    return {"changed": False, "set_vars": dict(variables)}


async def debug_module(ctx: ModuleContext, msg: Any = None, var: str | None = None) -> dict[str, Any]:
    """Print a message or the value of a variable."""
    if var is not None:
        try:
            value = ctx.templar.template("{{ " + var + " }}", ctx.vars)
        except TemplateError:
            value = "VARIABLE IS NOT DEFINED!"
        return {"changed": False, var: value}
    return {"changed": False, "msg": "Hello world!" if msg is None else msg}


async def assert_module(
    ctx: ModuleContext,
    that: str | list[str],
    fail_msg: str | None = None,
    success_msg: str = "All assertions passed",
) -> dict[str, Any]:
    """Fail unless every expression in ``that`` holds.

    An expression using an undefined name does not hold.
    """
    expressions = [that] if isinstance(that, str) else list(that)
    for expression in expressions:
        if not ctx.templar.evaluate(expression, ctx.vars):
            raise ModuleError(
                fail_msg or f"Assertion failed: {expression}",
                assertion=expression,
                evaluated_to=False,
            )
    return {"changed": False, "msg": success_msg}


async def fail_module(ctx: ModuleContext, msg: str = "Failed as requested from task") -> dict[str, Any]:
    raise ModuleError(msg)
