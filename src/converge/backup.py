"""Timestamped artifact naming and latest-backup selection.

Archives and backup copies created by converge embed a fixed-width UTC
timestamp in their names (``YYYYmmddTHHMMSS``). Because every timestamp has
the same width and is zero padded, sorting names lexicographically equals
sorting them chronologically. ``select_latest`` relies on that: it is only
correct when the names it compares were produced by a fixed-width scheme,
or when the caller supplies an explicit sort key such as mtime.
"""

import fnmatch
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .exceptions import NotFoundError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"
BACKUP_SUFFIX = "converge-backup"

# 8-digit date, "T", then 4 or 6 digits of time
_TIMESTAMP_RE = re.compile(r"(\d{8})T(\d{6}|\d{4})(?!\d)")

ARCHIVE_EXTENSIONS = {
    "gz": "tar.gz",
    "bz2": "tar.bz2",
    "xz": "tar.xz",
    "tar": "tar",
    "zip": "zip",
}


@dataclass(frozen=True)
class ArchiveEntry:
    """A filesystem entry considered by the backup selector.

    Attributes:
        path: Full path of the entry
        name: Base name the pattern is matched against
        key: Sortable key (the name itself, or an mtime/ctime)
    """

    path: str
    name: str
    key: Any

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"path": self.path, "name": self.name, "key": self.key}


def format_timestamp(when: datetime | None = None) -> str:
    """Fixed-width UTC timestamp used in generated names."""
    when = when or datetime.now(timezone.utc)
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc)
    return when.strftime(TIMESTAMP_FORMAT)


def archive_name(prefix: str, archive_format: str = "gz", when: datetime | None = None) -> str:
    """Build ``<prefix>-<YYYYmmddTHHMMSS>.<ext>`` for a new archive.

    Example:
        >>> archive_name("app", "gz", datetime(2024, 1, 15, tzinfo=timezone.utc))
        'app-20240115T000000.tar.gz'
    """
    ext = ARCHIVE_EXTENSIONS.get(archive_format)
    if ext is None:
        raise ValueError(f"Unsupported archive format: {archive_format}")
    return f"{prefix}-{format_timestamp(when)}.{ext}"


def backup_path(original_path: str, when: datetime | None = None) -> str:
    """Sibling path a file is copied to before being overwritten."""
    return f"{original_path}.{BACKUP_SUFFIX}-{format_timestamp(when)}"


def parse_archive_timestamp(name: str) -> datetime | None:
    """Extract the embedded timestamp from a generated name.

    Returns:
        Timezone-aware datetime, or None if the name carries no timestamp
    """
    match = _TIMESTAMP_RE.search(name)
    if not match:
        return None
    date_part, time_part = match.groups()
    if len(time_part) == 4:
        time_part += "00"
    try:
        return datetime.strptime(date_part + time_part, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _warn_on_mixed_widths(entries: list[ArchiveEntry]) -> None:
    widths = {
        len(match.group(0))
        for entry in entries
        if isinstance(entry.key, str) and (match := _TIMESTAMP_RE.search(entry.key))
    }
    if len(widths) > 1:
        logger.warning(
            "Selecting by name across timestamps of different widths; "
            "name order may not match chronological order"
        )


def select_latest(entries: Iterable[ArchiveEntry], name_pattern: str) -> ArchiveEntry:
    """Return the newest entry whose name matches a glob pattern.

    Matching entries are sorted by ``(key, name, path)`` ascending and the
    last one is returned, so ties on the key resolve deterministically. The
    function is pure: the same input always yields the same entry.

    Precondition: when the key is the name, names must embed a fixed-width
    timestamp (as produced by ``archive_name``) for name order to be
    chronological.

    Raises:
        NotFoundError: If no entry matches the pattern

    Example:
        >>> entries = [ArchiveEntry("/b/a-20240101T0000.tar.gz", "a-20240101T0000.tar.gz", "a-20240101T0000.tar.gz"),
        ...            ArchiveEntry("/b/a-20240115T0000.tar.gz", "a-20240115T0000.tar.gz", "a-20240115T0000.tar.gz")]
        >>> select_latest(entries, "a-*.tar.gz").name
        'a-20240115T0000.tar.gz'
    """
    candidates = [e for e in entries if fnmatch.fnmatchcase(e.name, name_pattern)]
    if not candidates:
        raise NotFoundError(name_pattern)
    _warn_on_mixed_widths(candidates)
    return sorted(candidates, key=lambda e: (e.key, e.name, e.path))[-1]


def entries_from_files(files: Iterable[dict[str, Any]], sort_by: str = "name") -> list[ArchiveEntry]:
    """Build selector entries from ``find`` module output.

    Args:
        files: Dicts with at least ``path`` and ``name`` (and ``mtime`` /
            ``ctime`` when sorting by them)
        sort_by: "name", "mtime", "ctime" or "timestamp" (the embedded
            timestamp; entries without one are dropped)
    """
    entries = []
    for f in files:
        name = f.get("name") or f["path"].rsplit("/", 1)[-1]
        if sort_by == "name":
            key: Any = name
        elif sort_by in ("mtime", "ctime"):
            key = float(f[sort_by])
        elif sort_by == "timestamp":
            key = parse_archive_timestamp(name)
            if key is None:
                logger.debug(f"Skipping {name}: no embedded timestamp")
                continue
        else:
            raise ValueError(f"Unsupported sort key: {sort_by}")
        entries.append(ArchiveEntry(path=f["path"], name=name, key=key))
    return entries
