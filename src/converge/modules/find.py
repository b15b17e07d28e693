"""find module: list filesystem entries matching name patterns.

The walk runs on the host with its Python interpreter: a small script reads
its arguments as one JSON line on stdin and prints a JSON document, which
gives portable access to mtime/ctime across GNU and BSD userlands.
"""

import json
import logging
import shlex
from typing import Any

from ..exceptions import PreconditionFailedError, RemoteExecutionError
from ..templating import to_bool
from .base import ModuleContext

logger = logging.getLogger(__name__)

__all__ = ["find_module", "find_files"]

SORT_KEYS = ("name", "mtime", "ctime", "path")
FILE_TYPES = ("file", "directory", "any", "link")

FIND_SCRIPT = r"""
import fnmatch, json, os, stat, sys
args = json.loads(sys.stdin.readline())
files, missing = [], []

def kind(mode):
    if stat.S_ISLNK(mode):
        return "link"
    if stat.S_ISDIR(mode):
        return "directory"
    return "file"

def consider(path, name):
    if not args["hidden"] and name.startswith("."):
        return
    if not any(fnmatch.fnmatch(name, p) for p in args["patterns"]):
        return
    try:
        st = os.lstat(path)
    except OSError:
        return
    k = kind(st.st_mode)
    if args["file_type"] != "any" and k != args["file_type"]:
        return
    files.append({"path": path, "name": name, "type": k, "size": st.st_size,
                  "mtime": st.st_mtime, "ctime": st.st_ctime,
                  "mode": "%04o" % stat.S_IMODE(st.st_mode)})

for root in args["paths"]:
    if not os.path.isdir(root):
        missing.append(root)
        continue
    if args["recurse"]:
        for dirpath, dirnames, filenames in os.walk(root):
            if not args["hidden"]:
                dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for name in dirnames + filenames:
                consider(os.path.join(dirpath, name), name)
    else:
        for name in os.listdir(root):
            consider(os.path.join(root, name), name)

print(json.dumps({"files": files, "missing": missing}))
"""


def _as_list(value: str | list[str] | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]


async def find_files(
    ctx: ModuleContext,
    paths: list[str],
    patterns: list[str],
    file_type: str = "file",
    recurse: bool = False,
    hidden: bool = False,
) -> tuple[list[dict[str, Any]], list[str]]:
    """Walk ``paths`` on the host; return (matching entries, missing roots)."""
    args = {
        "paths": paths,
        "patterns": patterns,
        "file_type": file_type,
        "recurse": recurse,
        "hidden": hidden,
    }
    command = f"{shlex.quote(ctx.host.python_interpreter)} -c {shlex.quote(FIND_SCRIPT)}"
    result = await ctx.run(command, stdin=json.dumps(args) + "\n")
    try:
        data = json.loads(result.stdout.strip().splitlines()[-1])
    except (IndexError, json.JSONDecodeError) as e:
        raise RemoteExecutionError(
            f"find produced unreadable output: {e}",
            rc=result.rc,
            stdout=result.stdout,
            stderr=result.stderr,
        ) from e
    return data["files"], data["missing"]


def sort_entries(files: list[dict[str, Any]], sort_by: str, reverse: bool = False) -> list[dict[str, Any]]:
    """Order entries by a key, breaking ties on path."""
    return sorted(files, key=lambda f: (f[sort_by], f["path"]), reverse=reverse)


async def find_module(
    ctx: ModuleContext,
    paths: str | list[str],
    patterns: str | list[str] | None = None,
    file_type: str = "file",
    recurse: bool = False,
    hidden: bool = False,
    sort_by: str = "name",
    reverse: bool = False,
) -> dict[str, Any]:
    """Find entries under search roots whose names match glob patterns.

    Read-only: never reports changed. Roots that do not exist are listed in
    ``skipped_paths`` rather than failing the task.

    Returns:
        Result dict with ``files`` ordered by ``sort_by`` and ``matched``
    """
    roots = _as_list(paths, [])
    if not roots:
        raise PreconditionFailedError("find requires at least one path")
    if sort_by not in SORT_KEYS:
        raise PreconditionFailedError(f"Invalid sort_by: {sort_by}", valid=list(SORT_KEYS))
    if file_type not in FILE_TYPES:
        raise PreconditionFailedError(f"Invalid file_type: {file_type}", valid=list(FILE_TYPES))

    files, missing = await find_files(
        ctx,
        roots,
        _as_list(patterns, ["*"]),
        file_type=file_type,
        recurse=to_bool(recurse),
        hidden=to_bool(hidden),
    )
    if missing:
        logger.debug(f"[{ctx.host.name}] find skipped missing paths: {missing}")

    ordered = sort_entries(files, sort_by, reverse=to_bool(reverse))
    return {
        "changed": False,
        "files": ordered,
        "matched": len(ordered),
        "examined_paths": roots,
        "skipped_paths": missing,
    }
