"""archive and unarchive modules.

``archive`` is deliberately not content-idempotent: every run that
produces an archive reports changed. When the destination is generated
from ``dest_dir`` + ``prefix`` its name embeds a fixed-width UTC timestamp,
so each run creates a new artifact and retention is the naming scheme's
concern. A run whose destination already exists does nothing.

``unarchive`` is idempotent only through its ``creates`` guard. Extraction
goes to a staging directory inside ``dest`` and is copied into place only
after it succeeded; the staging directory is removed on every path.
"""

import logging
import posixpath
import uuid
from typing import Any

from ..backup import ARCHIVE_EXTENSIONS, archive_name, entries_from_files, select_latest
from ..exceptions import PreconditionFailedError, RemoteExecutionError
from ..templating import to_bool
from .base import ModuleContext, q
from .find import find_files

logger = logging.getLogger(__name__)

__all__ = ["archive_module", "unarchive_module"]

TAR_COMPRESSION = {"gz": "z", "bz2": "j", "xz": "J", "tar": ""}

GLOB_CHARS = ("*", "?", "[")


def _split(path: str) -> tuple[str, str]:
    path = path.rstrip("/") or "/"
    return posixpath.dirname(path) or ".", posixpath.basename(path) or "."


def _archive_command(sources: list[str], target: str, archive_format: str) -> str:
    if archive_format == "zip":
        steps = []
        for source in sources:
            parent, base = _split(source)
            steps.append(f"(cd {q(parent)} && zip -qr {q(target)} {q(base)})")
        return " && ".join(steps)

    members = " ".join(f"-C {q(parent)} {q(base)}" for parent, base in map(_split, sources))
    return f"tar -c{TAR_COMPRESSION[archive_format]}f {q(target)} {members}"


async def archive_module(
    ctx: ModuleContext,
    path: str | list[str],
    dest: str | None = None,
    dest_dir: str | None = None,
    prefix: str | None = None,
    format: str = "gz",
) -> dict[str, Any]:
    """Create an archive from one or more paths on the host.

    Args:
        path: Path or list of paths to include
        dest: Explicit archive path
        dest_dir: Directory for a generated ``<prefix>-<timestamp>.<ext>`` name
        prefix: Name prefix (defaults to the first source's base name)
        format: gz, bz2, xz, tar or zip

    Raises:
        PreconditionFailedError: Missing sources or bad arguments
    """
    sources = [path] if isinstance(path, str) else [str(p) for p in path]
    if not sources:
        raise PreconditionFailedError("archive requires at least one path")
    if format not in ARCHIVE_EXTENSIONS:
        raise PreconditionFailedError(
            f"Unsupported archive format: {format}", valid=sorted(ARCHIVE_EXTENSIONS)
        )

    if dest is None:
        if not dest_dir:
            raise PreconditionFailedError("archive requires 'dest' or 'dest_dir'")
        dest = posixpath.join(dest_dir, archive_name(prefix or _split(sources[0])[1], format))
    if format == "zip" and not posixpath.isabs(dest):
        raise PreconditionFailedError(f"zip destination must be absolute: {dest}", dest=dest)

    missing = [s for s in sources if not await ctx.exists(s)]
    if missing:
        raise PreconditionFailedError(
            f"Source path(s) not found: {', '.join(missing)}", missing=missing
        )

    if await ctx.exists(dest):
        return {"changed": False, "dest": dest, "msg": "archive already exists"}

    partial = f"{dest}.partial"
    try:
        await ctx.run(_archive_command(sources, partial, format))
        await ctx.run(f"mv -f -- {q(partial)} {q(dest)}")
    except RemoteExecutionError:
        await ctx.run(f"rm -f -- {q(partial)}", check=False)
        raise

    logger.info(f"[{ctx.host.name}] created archive {dest}")
    return {"changed": True, "dest": dest, "archived": sources, "format": format}


async def _resolve_latest(ctx: ModuleContext, src: str, sort_by: str) -> str:
    """Expand a glob in the archive name to the newest matching file."""
    directory, pattern = posixpath.split(src)
    files, _ = await find_files(ctx, [directory or "."], [pattern])
    latest = select_latest(entries_from_files(files, sort_by), pattern)
    logger.debug(f"[{ctx.host.name}] latest match for {src}: {latest.path}")
    return latest.path


def _extract_command(archive: str, stage: str) -> str:
    if archive.endswith(".zip"):
        return f"unzip -q -o {q(archive)} -d {q(stage)}"
    return f"tar -xf {q(archive)} -C {q(stage)}"


async def unarchive_module(
    ctx: ModuleContext,
    src: str,
    dest: str,
    creates: str | None = None,
    remote_src: bool = True,
    sort_by: str = "name",
) -> dict[str, Any]:
    """Extract an archive into a directory on the host.

    A glob in the base name of a host-side ``src`` selects the newest
    matching archive (ordered by ``sort_by``), which is how backups are
    restored.

    Args:
        src: Archive path (on the host unless remote_src is false)
        dest: Existing directory to extract into
        creates: Guard path; when it exists nothing is extracted
        remote_src: False uploads ``src`` from the controller first
        sort_by: Key used to pick the newest of several matches

    Raises:
        PreconditionFailedError: Missing archive or destination
        NotFoundError: No archive matches a glob ``src``
    """
    remote_src = to_bool(remote_src)
    if creates and await ctx.exists(creates):
        return {
            "changed": False,
            "skipped_extraction": True,
            "src": src,
            "dest": dest,
            "msg": f"skipped, since {creates} exists",
        }

    dest_stat = await ctx.stat(dest)
    if dest_stat is None or not dest_stat.is_dir:
        raise PreconditionFailedError(f"Destination is not a directory: {dest}", dest=dest)

    uploaded = None
    if not remote_src:
        local = ctx.local_path(src)
        if not local.is_file():
            raise PreconditionFailedError(f"Archive not found: {local}", src=str(local))
        suffix = ".zip" if local.name.endswith(".zip") else ".tar"
        uploaded = await ctx.upload(local.read_bytes(), suffix=suffix)
        archive = uploaded
    else:
        if any(c in posixpath.basename(src) for c in GLOB_CHARS):
            src = await _resolve_latest(ctx, src, sort_by)
        if not await ctx.exists(src):
            raise PreconditionFailedError(f"Archive not found on host: {src}", src=src)
        archive = src

    stage = posixpath.join(dest, f".converge-unarchive-{uuid.uuid4().hex[:12]}")
    try:
        await ctx.run(f"mkdir -- {q(stage)}")
        await ctx.run(_extract_command(archive, stage))
        listing = await ctx.run(f"ls -A -- {q(stage)}")
        await ctx.run(f"cp -R -p -- {q(stage)}/. {q(dest)}/")
    finally:
        await ctx.run(f"rm -rf -- {q(stage)}", check=False)
        if uploaded:
            await ctx.run(f"rm -f -- {q(uploaded)}", check=False, become=False)

    logger.info(f"[{ctx.host.name}] extracted {src} into {dest}")
    return {
        "changed": True,
        "src": src,
        "dest": dest,
        "extracted": listing.stdout.split(),
    }
