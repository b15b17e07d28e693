"""User account modules: user and authorized_key."""

import logging
import posixpath
from dataclasses import dataclass
from typing import Any

from ..exceptions import PreconditionFailedError
from ..templating import to_bool
from .base import ModuleContext, q

logger = logging.getLogger(__name__)

__all__ = ["user_module", "authorized_key_module"]


@dataclass
class UserInfo:
    name: str
    uid: int
    gid: int
    home: str
    shell: str


async def get_user(ctx: ModuleContext, name: str) -> UserInfo | None:
    """Look up an account with getent; None when it does not exist."""
    result = await ctx.run(f"getent passwd {q(name)}", check=False)
    if result.rc != 0 or not result.stdout.strip():
        return None
    fields = result.stdout.strip().splitlines()[0].split(":")
    return UserInfo(
        name=fields[0],
        uid=int(fields[2]),
        gid=int(fields[3]),
        home=fields[5],
        shell=fields[6] if len(fields) > 6 else "",
    )


async def get_groups(ctx: ModuleContext, name: str) -> tuple[str, set[str]]:
    """Return (primary group, supplementary groups) of an account."""
    primary = (await ctx.run(f"id -gn {q(name)}")).stdout.strip()
    groups = set((await ctx.run(f"id -Gn {q(name)}")).stdout.split())
    groups.discard(primary)
    return primary, groups


def _group_list(groups: str | list[str] | None) -> list[str] | None:
    if groups is None:
        return None
    if isinstance(groups, str):
        return [g.strip() for g in groups.split(",") if g.strip()]
    return [str(g) for g in groups]


async def user_module(
    ctx: ModuleContext,
    name: str,
    state: str = "present",
    groups: str | list[str] | None = None,
    append: bool = False,
    shell: str | None = None,
    home: str | None = None,
    create_home: bool = True,
    system: bool = False,
    remove: bool = False,
) -> dict[str, Any]:
    """Manage a local user account.

    Changed when the account is created or removed, or when its shell or
    group membership differs. With ``append`` the listed groups are added
    to the existing ones; otherwise the supplementary groups are replaced.

    Raises:
        PreconditionFailedError: On an invalid state
    """
    if state not in ("present", "absent"):
        raise PreconditionFailedError(f"Invalid state: {state}", name=name, state=state)

    current = await get_user(ctx, name)
    if state == "absent":
        if current is None:
            return {"changed": False, "name": name, "state": "absent"}
        await ctx.run(f"userdel {'-r ' if to_bool(remove) else ''}{q(name)}")
        return {"changed": True, "name": name, "state": "absent"}

    wanted_groups = _group_list(groups)
    if current is None:
        argv = ["useradd", "-m" if to_bool(create_home) else "-M"]
        if shell:
            argv += ["-s", q(shell)]
        if home:
            argv += ["-d", q(home)]
        if wanted_groups:
            argv += ["-G", q(",".join(wanted_groups))]
        if to_bool(system):
            argv.append("-r")
        await ctx.run(" ".join([*argv, q(name)]))
        created = await get_user(ctx, name)
        return {
            "changed": True,
            "name": name,
            "state": "present",
            "created": True,
            "uid": created.uid if created else None,
            "home": created.home if created else home,
            "shell": created.shell if created else shell,
            "groups": wanted_groups or [],
        }

    argv = ["usermod"]
    updated = []
    if shell and current.shell != shell:
        argv += ["-s", q(shell)]
        updated.append("shell")
    if home and current.home != home:
        argv += ["-d", q(home)]
        updated.append("home")
    if wanted_groups is not None:
        primary, existing = await get_groups(ctx, name)
        desired = set(wanted_groups) - {primary}
        if to_bool(append):
            missing = desired - existing
            if missing:
                argv += ["-a", "-G", q(",".join(sorted(missing)))]
                updated.append("groups")
        elif desired != existing:
            argv += ["-G", q(",".join(sorted(desired)))]
            updated.append("groups")
    if updated:
        await ctx.run(" ".join([*argv, q(name)]))

    return {
        "changed": bool(updated),
        "name": name,
        "state": "present",
        "uid": current.uid,
        "home": home or current.home,
        "shell": shell or current.shell,
        "updated": updated,
    }


def split_keys(content: str) -> list[str]:
    """Non-empty, non-comment key lines, de-duplicated in order."""
    keys: list[str] = []
    for line in content.splitlines():
        line = line.strip()
        if line and not line.startswith("#") and line not in keys:
            keys.append(line)
    return keys


async def authorized_key_module(
    ctx: ModuleContext,
    user: str,
    key: str,
    state: str = "present",
    exclusive: bool = False,
    path: str | None = None,
) -> dict[str, Any]:
    """Manage SSH authorized keys for a user.

    Changed only when the exact key line is missing (present) or found
    (absent). With ``exclusive`` the file ends up holding only ``key``.

    Raises:
        PreconditionFailedError: Unknown user, no key or an invalid state
    """
    if state not in ("present", "absent"):
        raise PreconditionFailedError(f"Invalid state: {state}", user=user, state=state)
    wanted = split_keys(key)
    if not wanted:
        raise PreconditionFailedError("authorized_key requires a key", user=user)

    account = await get_user(ctx, user)
    if account is None:
        raise PreconditionFailedError(f"User '{user}' does not exist", user=user)

    keyfile = path or posixpath.join(account.home, ".ssh", "authorized_keys")
    existing = await ctx.run(f"cat -- {q(keyfile)}", check=False)
    current = split_keys(existing.stdout) if existing.rc == 0 else []

    if state == "present":
        if to_bool(exclusive):
            keys = list(wanted)
        else:
            keys = current + [k for k in wanted if k not in current]
    else:
        keys = [k for k in current if k not in wanted]

    if keys == current:
        return {"changed": False, "user": user, "keyfile": keyfile, "state": state}

    ssh_dir = posixpath.dirname(keyfile)
    await ctx.run(f"mkdir -p -- {q(ssh_dir)}")
    await ctx.write_file(("\n".join(keys) + "\n" if keys else "").encode(), keyfile)
    await ctx.run(f"chmod 700 {q(ssh_dir)}")
    await ctx.run(f"chmod 600 {q(keyfile)}")
    await ctx.run(f"chown {q(user)} {q(ssh_dir)} {q(keyfile)}")

    added = [k for k in keys if k not in current]
    removed = [k for k in current if k not in keys]
    logger.debug(f"[{ctx.host.name}] {keyfile}: +{len(added)} -{len(removed)} keys")
    return {
        "changed": True,
        "user": user,
        "keyfile": keyfile,
        "state": state,
        "added": len(added),
        "removed": len(removed),
    }
