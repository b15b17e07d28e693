"""Command execution modules.

Raw commands have no idempotency contract: they always report changed
unless a ``creates``/``removes`` guard short-circuits them or the task
overrides detection with ``changed_when``.
"""

import shlex
from typing import Any

from ..exceptions import PreconditionFailedError, RemoteExecutionError
from .base import ModuleContext, q

__all__ = ["command_module", "shell_module"]


async def _guarded(ctx: ModuleContext, creates: str | None, removes: str | None) -> str | None:
    """Return a skip message when a guard says the command must not run."""
    if creates and await ctx.exists(creates):
        return f"skipped, since {creates} exists"
    if removes and not await ctx.exists(removes):
        return f"skipped, since {removes} does not exist"
    return None


async def _run(
    ctx: ModuleContext,
    command: str,
    shown: str,
    chdir: str | None,
    stdin: str | None,
) -> dict[str, Any]:
    if chdir:
        command = f"cd {q(chdir)} && {command}"
    result = await ctx.run(command, check=False, stdin=stdin)
    output = {
        "changed": True,
        "cmd": shown,
        "rc": result.rc,
        "stdout": result.stdout.rstrip("\n"),
        "stderr": result.stderr.rstrip("\n"),
        "stdout_lines": result.stdout.splitlines(),
    }
    if result.rc != 0:
        raise RemoteExecutionError(
            f"non-zero return code {result.rc}",
            rc=result.rc,
            stdout=output["stdout"],
            stderr=output["stderr"],
            cmd=shown,
            stdout_lines=output["stdout_lines"],
        )
    return output


async def command_module(
    ctx: ModuleContext,
    cmd: str | None = None,
    argv: list[str] | None = None,
    chdir: str | None = None,
    creates: str | None = None,
    removes: str | None = None,
    stdin: str | None = None,
) -> dict[str, Any]:
    """Run a command without shell processing.

    The command line is split into words and each word is quoted, so pipes,
    redirections and variables are passed literally.

    Args:
        cmd: Command line
        argv: Command as a list of words (alternative to cmd)
        chdir: Directory to run the command in
        creates: Skip if this path exists
        removes: Skip if this path does not exist
        stdin: Data fed to the command's standard input

    Returns:
        Result dict with rc, stdout, stderr

    Raises:
        RemoteExecutionError: If the command exits nonzero
    """
    if (cmd is None) == (argv is None):
        raise PreconditionFailedError("command requires exactly one of 'cmd' or 'argv'")
    try:
        words = shlex.split(cmd) if cmd is not None else [str(a) for a in argv]
    except ValueError as e:
        raise PreconditionFailedError(f"Cannot parse command line: {e}", cmd=cmd) from e
    if not words:
        raise PreconditionFailedError("command is empty")
    shown = shlex.join(words)

    skip = await _guarded(ctx, creates, removes)
    if skip:
        return {"changed": False, "cmd": shown, "rc": 0, "msg": skip}
    return await _run(ctx, shown, shown, chdir, stdin)


async def shell_module(
    ctx: ModuleContext,
    cmd: str,
    chdir: str | None = None,
    creates: str | None = None,
    removes: str | None = None,
    stdin: str | None = None,
) -> dict[str, Any]:
    """Run a command through the host's shell (pipes, redirects, globs)."""
    if not cmd or not str(cmd).strip():
        raise PreconditionFailedError("shell command is empty")
    skip = await _guarded(ctx, creates, removes)
    if skip:
        return {"changed": False, "cmd": cmd, "rc": 0, "msg": skip}
    return await _run(ctx, f"{q(ctx.host.shell)} -c {q(cmd)}", cmd, chdir, stdin)
