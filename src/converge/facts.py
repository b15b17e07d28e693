"""Fact gathering for converge.

Facts are static, host-derived attributes collected once per play before
any task runs: hostname, OS family classifier, kernel, architecture, login
user and the host's current date/time. They are collected with a single
POSIX shell script so no interpreter is required on the host.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from .channel import Channel
from .exceptions import ConvergeError, HostUnreachableError

logger = logging.getLogger(__name__)

FACT_SCRIPT = """\
echo "hostname=$(hostname 2>/dev/null || uname -n)"
echo "fqdn=$(hostname -f 2>/dev/null || hostname 2>/dev/null || uname -n)"
echo "system=$(uname -s)"
echo "kernel=$(uname -r)"
echo "architecture=$(uname -m)"
echo "user_id=$(id -un)"
echo "epoch=$(date -u +%s)"
if [ -r /etc/os-release ]; then
  grep -E '^(ID|ID_LIKE|VERSION_ID|PRETTY_NAME)=' /etc/os-release | sed 's/^/os_/'
fi
if command -v sw_vers >/dev/null 2>&1; then
  echo "os_VERSION_ID=$(sw_vers -productVersion)"
fi
"""

# os-release IDs (and ID_LIKE tokens) to OS family
OS_FAMILIES = {
    "debian": "debian",
    "ubuntu": "debian",
    "linuxmint": "debian",
    "raspbian": "debian",
    "rhel": "redhat",
    "centos": "redhat",
    "fedora": "redhat",
    "rocky": "redhat",
    "almalinux": "redhat",
    "ol": "redhat",
    "amzn": "redhat",
    "suse": "suse",
    "sles": "suse",
    "opensuse": "suse",
    "opensuse-leap": "suse",
    "opensuse-tumbleweed": "suse",
    "arch": "archlinux",
    "manjaro": "archlinux",
    "alpine": "alpine",
}

UNKNOWN_FAMILY = "unknown"


def classify_os_family(os_id: str, id_like: str = "", system: str = "") -> str:
    """Map os-release identifiers (or the kernel name) to an OS family.

    Example:
        >>> classify_os_family("ubuntu", "debian")
        'debian'
        >>> classify_os_family("", system="Darwin")
        'darwin'
    """
    for candidate in [os_id, *id_like.split()]:
        family = OS_FAMILIES.get(candidate.lower())
        if family:
            return family
    if system.lower() == "darwin":
        return "darwin"
    return UNKNOWN_FAMILY


def parse_facts(output: str) -> dict[str, Any]:
    """Turn the fact script's ``key=value`` lines into a facts mapping."""
    raw: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if not sep:
            continue
        raw[key.strip()] = value.strip().strip('"').strip("'")

    os_id = raw.get("os_ID", "")
    try:
        now = datetime.fromtimestamp(int(raw["epoch"]), tz=timezone.utc)
    except (KeyError, ValueError):
        now = datetime.now(timezone.utc)

    return {
        "hostname": raw.get("hostname", ""),
        "fqdn": raw.get("fqdn", ""),
        "system": raw.get("system", ""),
        "kernel": raw.get("kernel", ""),
        "architecture": raw.get("architecture", ""),
        "user_id": raw.get("user_id", ""),
        "distribution": os_id or raw.get("system", "").lower(),
        "distribution_version": raw.get("os_VERSION_ID", ""),
        "distribution_name": raw.get("os_PRETTY_NAME", ""),
        "os_family": classify_os_family(os_id, raw.get("os_ID_LIKE", ""), raw.get("system", "")),
        "date_time": {
            "iso8601": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "epoch": int(now.timestamp()),
            "date": now.strftime("%Y-%m-%d"),
            "time": now.strftime("%H:%M:%S"),
            "compact": now.strftime("%Y%m%dT%H%M%S"),
        },
    }


async def gather_facts(channel: Channel, timeout: float | None = None) -> dict[str, Any]:
    """Collect facts from a host.

    Any failure here (transport error, timeout, script error) is reported as
    HostUnreachableError so the engine can exclude the host from the play.
    """
    logger.debug(f"Gathering facts for {channel.name}")
    try:
        result = await channel.execute(FACT_SCRIPT, timeout=timeout)
    except HostUnreachableError:
        raise
    except ConvergeError as e:
        raise HostUnreachableError(channel.name, f"fact gathering failed: {e}") from e

    if result.rc != 0:
        raise HostUnreachableError(
            channel.name,
            f"fact gathering exited {result.rc}: {result.stderr.strip()}",
        )

    facts = parse_facts(result.stdout)
    logger.debug(f"Facts for {channel.name}: os_family={facts['os_family']} hostname={facts['hostname']}")
    return facts
