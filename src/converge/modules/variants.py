"""OS-family specific package and service managers.

The variant for a host is picked once, from the ``os_family`` fact, when
the host's module context is built; modules never branch on the OS family
themselves.
"""

import logging
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from ..exceptions import PreconditionFailedError
from .base import q

if TYPE_CHECKING:
    from .base import ModuleContext

logger = logging.getLogger(__name__)


class PackageManager:
    """Base package manager: query, install and remove by command line."""

    name = "generic"

    def query_command(self, package: str) -> str:
        raise NotImplementedError

    def install_command(self, packages: list[str]) -> str:
        raise NotImplementedError

    def remove_command(self, packages: list[str]) -> str:
        raise NotImplementedError

    def installed(self, stdout: str) -> bool:
        """Interpret the output of a successful query command."""
        return True

    async def is_installed(self, ctx: "ModuleContext", package: str) -> bool:
        result = await ctx.run(self.query_command(package), check=False)
        return result.rc == 0 and self.installed(result.stdout)

    async def ensure_present(self, ctx: "ModuleContext", packages: Iterable[str]) -> list[str]:
        """Install the packages that are missing; return the ones installed."""
        needed = [pkg for pkg in packages if not await self.is_installed(ctx, pkg)]
        if needed:
            await ctx.run(self.install_command(needed))
        return needed

    async def ensure_absent(self, ctx: "ModuleContext", packages: Iterable[str]) -> list[str]:
        """Remove the packages that are installed; return the ones removed."""
        removable = [pkg for pkg in packages if await self.is_installed(ctx, pkg)]
        if removable:
            await ctx.run(self.remove_command(removable))
        return removable


def _join(packages: list[str]) -> str:
    return " ".join(q(p) for p in packages)


class AptPackageManager(PackageManager):
    name = "apt"

    def query_command(self, package: str) -> str:
        return f"dpkg-query -W -f '${{Status}}' {q(package)}"

    def installed(self, stdout: str) -> bool:
        return "install ok installed" in stdout

    def install_command(self, packages: list[str]) -> str:
        return f"DEBIAN_FRONTEND=noninteractive apt-get install -y {_join(packages)}"

    def remove_command(self, packages: list[str]) -> str:
        return f"DEBIAN_FRONTEND=noninteractive apt-get remove -y {_join(packages)}"


class DnfPackageManager(PackageManager):
    name = "dnf"

    def query_command(self, package: str) -> str:
        return f"rpm -q {q(package)}"

    def install_command(self, packages: list[str]) -> str:
        return f"dnf install -y {_join(packages)}"

    def remove_command(self, packages: list[str]) -> str:
        return f"dnf remove -y {_join(packages)}"


class YumPackageManager(DnfPackageManager):
    name = "yum"

    def install_command(self, packages: list[str]) -> str:
        return f"yum install -y {_join(packages)}"

    def remove_command(self, packages: list[str]) -> str:
        return f"yum remove -y {_join(packages)}"


class ZypperPackageManager(DnfPackageManager):
    name = "zypper"

    def install_command(self, packages: list[str]) -> str:
        return f"zypper --non-interactive install {_join(packages)}"

    def remove_command(self, packages: list[str]) -> str:
        return f"zypper --non-interactive remove {_join(packages)}"


class PacmanPackageManager(PackageManager):
    name = "pacman"

    def query_command(self, package: str) -> str:
        return f"pacman -Qi {q(package)}"

    def install_command(self, packages: list[str]) -> str:
        return f"pacman -S --noconfirm --needed {_join(packages)}"

    def remove_command(self, packages: list[str]) -> str:
        return f"pacman -R --noconfirm {_join(packages)}"


class ApkPackageManager(PackageManager):
    name = "apk"

    def query_command(self, package: str) -> str:
        return f"apk info -e {q(package)}"

    def install_command(self, packages: list[str]) -> str:
        return f"apk add {_join(packages)}"

    def remove_command(self, packages: list[str]) -> str:
        return f"apk del {_join(packages)}"


class BrewPackageManager(PackageManager):
    name = "brew"

    def query_command(self, package: str) -> str:
        return f"brew list {q(package)}"

    def install_command(self, packages: list[str]) -> str:
        return f"brew install {_join(packages)}"

    def remove_command(self, packages: list[str]) -> str:
        return f"brew uninstall {_join(packages)}"


PACKAGE_MANAGERS: dict[str, type[PackageManager]] = {
    cls.name: cls
    for cls in (
        AptPackageManager,
        DnfPackageManager,
        YumPackageManager,
        ZypperPackageManager,
        PacmanPackageManager,
        ApkPackageManager,
        BrewPackageManager,
    )
}

FAMILY_PACKAGE_MANAGERS = {
    "debian": "apt",
    "redhat": "dnf",
    "suse": "zypper",
    "archlinux": "pacman",
    "alpine": "apk",
    "darwin": "brew",
}

# distributions whose releases before this major version only ship yum
_YUM_BEFORE = {"centos": 8, "rhel": 8, "ol": 8, "amzn": 2023}


def package_manager_for(facts: Mapping[str, Any], preferred: str | None = None) -> PackageManager | None:
    """Pick the package manager variant for a host.

    Raises:
        PreconditionFailedError: If ``preferred`` names an unknown manager
    """
    if preferred:
        cls = PACKAGE_MANAGERS.get(str(preferred).lower())
        if cls is None:
            raise PreconditionFailedError(
                f"Unknown package manager '{preferred}'",
                supported=sorted(PACKAGE_MANAGERS),
            )
        return cls()

    name = FAMILY_PACKAGE_MANAGERS.get(facts.get("os_family", ""))
    if name == "dnf":
        threshold = _YUM_BEFORE.get(facts.get("distribution", ""))
        version = str(facts.get("distribution_version", "")).split(".")[0]
        if threshold and version.isdigit() and int(version) < threshold:
            name = "yum"
    if name is None:
        return None
    return PACKAGE_MANAGERS[name]()


class ServiceManager:
    """Base service manager."""

    name = "generic"

    async def exists(self, ctx: "ModuleContext", service: str) -> bool:
        raise NotImplementedError

    async def is_active(self, ctx: "ModuleContext", service: str) -> bool:
        raise NotImplementedError

    async def is_enabled(self, ctx: "ModuleContext", service: str) -> bool:
        raise NotImplementedError

    async def action(self, ctx: "ModuleContext", service: str, verb: str) -> None:
        """Run start/stop/restart/reload."""
        raise NotImplementedError

    async def set_enabled(self, ctx: "ModuleContext", service: str, enabled: bool) -> None:
        raise NotImplementedError


class SystemdServiceManager(ServiceManager):
    name = "systemd"

    async def exists(self, ctx: "ModuleContext", service: str) -> bool:
        result = await ctx.run(f"systemctl show -p LoadState {q(service)}", check=False)
        return result.rc == 0 and "LoadState=not-found" not in result.stdout

    async def is_active(self, ctx: "ModuleContext", service: str) -> bool:
        return await ctx.succeeds(f"systemctl is-active --quiet {q(service)}")

    async def is_enabled(self, ctx: "ModuleContext", service: str) -> bool:
        return await ctx.succeeds(f"systemctl is-enabled --quiet {q(service)}")

    async def action(self, ctx: "ModuleContext", service: str, verb: str) -> None:
        await ctx.run(f"systemctl {verb} {q(service)}")

    async def set_enabled(self, ctx: "ModuleContext", service: str, enabled: bool) -> None:
        await ctx.run(f"systemctl {'enable' if enabled else 'disable'} {q(service)}")


class OpenRCServiceManager(ServiceManager):
    name = "openrc"

    async def exists(self, ctx: "ModuleContext", service: str) -> bool:
        return await ctx.succeeds(f"rc-service --exists {q(service)}")

    async def is_active(self, ctx: "ModuleContext", service: str) -> bool:
        return await ctx.succeeds(f"rc-service {q(service)} status")

    async def is_enabled(self, ctx: "ModuleContext", service: str) -> bool:
        result = await ctx.run("rc-update show default", check=False)
        return any(line.split("|")[0].strip() == service for line in result.stdout.splitlines())

    async def action(self, ctx: "ModuleContext", service: str, verb: str) -> None:
        await ctx.run(f"rc-service {q(service)} {verb}")

    async def set_enabled(self, ctx: "ModuleContext", service: str, enabled: bool) -> None:
        await ctx.run(f"rc-update {'add' if enabled else 'del'} {q(service)} default")


def service_manager_for(facts: Mapping[str, Any]) -> ServiceManager:
    """Pick the service manager variant for a host."""
    if facts.get("os_family") == "alpine":
        return OpenRCServiceManager()
    return SystemdServiceManager()
