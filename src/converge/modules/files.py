"""File modules: file, copy and stat.

All filesystem inspection and changes happen through the host's channel,
so the same code manages remote hosts and the controller itself.
"""

import logging
import posixpath
from typing import Any

from ..backup import backup_path
from ..exceptions import PreconditionFailedError
from ..templating import to_bool
from .base import ModuleContext, parse_mode, q, sha256_bytes

logger = logging.getLogger(__name__)

__all__ = ["file_module", "copy_module", "stat_module"]

FILE_STATES = ("file", "directory", "absent", "link", "touch")


async def file_module(
    ctx: ModuleContext,
    path: str,
    state: str = "file",
    mode: str | int | None = None,
    owner: str | None = None,
    group: str | None = None,
    src: str | None = None,
    recurse: bool = False,
) -> dict[str, Any]:
    """Manage a path's existence, type and attributes.

    Args:
        path: Path on the host
        state: file (must exist), directory, absent, link (to ``src``) or touch
        mode: Desired mode, e.g. "0755"
        owner: Desired owner user name
        group: Desired group name
        src: Link target for state=link
        recurse: For directories, apply owner/group recursively

    Returns:
        Result dict with changed status and path

    Raises:
        PreconditionFailedError: If the path is of the wrong type or missing
    """
    if state not in FILE_STATES:
        raise PreconditionFailedError(f"Invalid state: {state}", path=path, state=state)
    desired_mode = parse_mode(mode)
    current = await ctx.stat(path)
    changed = False

    if state == "absent":
        if current is not None:
            await ctx.run(f"rm -rf -- {q(path)}")
            changed = True
        return {"changed": changed, "path": path, "state": "absent"}

    if state == "directory":
        if current is None:
            await ctx.run(f"mkdir -p -- {q(path)}")
            changed = True
        elif not current.is_dir:
            raise PreconditionFailedError(
                f"Path exists but is not a directory: {path}", path=path
            )

    elif state == "link":
        if not src:
            raise PreconditionFailedError("state=link requires 'src'", path=path)
        if current is not None and current.is_link:
            target = (await ctx.run(f"readlink -- {q(path)}")).stdout.strip()
            if target != src:
                await ctx.run(f"ln -sfn -- {q(src)} {q(path)}")
                changed = True
        elif current is not None and current.is_dir:
            raise PreconditionFailedError(
                f"Refusing to replace directory with a link: {path}", path=path
            )
        else:
            await ctx.run(f"ln -sfn -- {q(src)} {q(path)}")
            changed = True
        # link attributes are not managed
        return {"changed": changed, "path": path, "state": "link", "src": src}

    elif state == "touch":
        await ctx.run(f"touch -- {q(path)}")
        changed = True
        current = None

    elif state == "file":
        if current is None:
            raise PreconditionFailedError(f"File does not exist: {path}", path=path)
        if current.is_dir:
            raise PreconditionFailedError(f"Path is a directory: {path}", path=path)

    attrs = await ctx.apply_attributes(path, desired_mode, owner, group, current=current)
    if recurse and state == "directory" and (owner or group):
        spec = f"{owner or ''}{':' + group if group else ''}"
        await ctx.run(f"chown -R {q(spec)} -- {q(path)}")

    return {
        "changed": changed or bool(attrs),
        "path": path,
        "state": state,
        "attributes_changed": attrs,
    }


async def copy_module(
    ctx: ModuleContext,
    dest: str,
    content: str | None = None,
    src: str | None = None,
    remote_src: bool = False,
    mode: str | int | None = None,
    owner: str | None = None,
    group: str | None = None,
    backup: bool = False,
    force: bool = True,
) -> dict[str, Any]:
    """Ensure a file on the host has the given content.

    The content comes from ``content``, from a controller file ``src`` or,
    with ``remote_src``, from a file already on the host. The destination
    is compared by sha256, never by mere existence, and replaced atomically
    when it differs.

    Raises:
        PreconditionFailedError: Missing or ambiguous source
    """
    if (content is None) == (src is None):
        raise PreconditionFailedError("copy requires exactly one of 'content' or 'src'", dest=dest)
    desired_mode = parse_mode(mode)
    remote_src = to_bool(remote_src)

    data: bytes | None = None
    if content is not None:
        data = str(content).encode()
        checksum = sha256_bytes(data)
    elif remote_src:
        checksum = await ctx.checksum(src)
        if checksum is None:
            raise PreconditionFailedError(f"Source file not found on host: {src}", src=src)
    else:
        local = ctx.local_path(src)
        if not local.is_file():
            raise PreconditionFailedError(f"Source file not found: {local}", src=str(local))
        data = local.read_bytes()
        checksum = sha256_bytes(data)

    current = await ctx.stat(dest)
    if current is not None and current.is_dir:
        if src is None:
            raise PreconditionFailedError(f"Destination is a directory: {dest}", dest=dest)
        dest = posixpath.join(dest, posixpath.basename(src.rstrip("/")))
        current = await ctx.stat(dest)

    result: dict[str, Any] = {"dest": dest, "checksum": checksum}
    changed = False
    if current is None or (to_bool(force) and await ctx.checksum(dest) != checksum):
        if current is not None and to_bool(backup):
            backup_file = backup_path(dest)
            await ctx.run(f"cp -p -- {q(dest)} {q(backup_file)}")
            result["backup_file"] = backup_file
        if data is not None:
            await ctx.write_file(data, dest, current=current)
        else:
            stage = f"{dest}.converge-tmp"
            await ctx.run(f"cp -- {q(src)} {q(stage)}")
            await ctx.run(f"mv -f -- {q(stage)} {q(dest)}")
        logger.debug(f"[{ctx.host.name}] wrote {dest}")
        changed = True
        current = None

    attrs = await ctx.apply_attributes(dest, desired_mode, owner, group, current=current)
    result["changed"] = changed or bool(attrs)
    return result


async def stat_module(ctx: ModuleContext, path: str, checksum: bool = False) -> dict[str, Any]:
    """Report information about a path. Never changes anything."""
    info = await ctx.stat(path)
    if info is None:
        return {"changed": False, "stat": {"exists": False, "path": path}}
    data = info.to_dict()
    data["path"] = path
    if checksum and info.is_file:
        data["checksum"] = await ctx.checksum(path)
    return {"changed": False, "stat": data}
