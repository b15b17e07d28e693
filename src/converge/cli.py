"""Command-line interface for converge."""

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ERROR_POLICIES, load_config
from .exceptions import ConvergeError
from .executor import PlaybookRunner
from .host_filter import filter_hosts, format_filter_summary
from .inventory import Inventory, load_inventory, load_localhost
from .logging import configure_logging, get_level_from_name, get_level_from_verbosity
from .modules import default_registry
from .playbook import load_playbook
from .progress import create_progress_reporter
from .report import RunReport

logger = logging.getLogger(__name__)

EXIT_HOST_FAILURES = 2


def parse_extra_vars(values: tuple[str, ...]) -> dict[str, Any]:
    """Merge ``-e`` arguments, later ones winning.

    Each value is either ``name=value`` (the value is read as a YAML scalar,
    so ``port=8080`` is an int) or ``@path`` naming a YAML/JSON mapping.

    Raises:
        click.ClickException: On malformed values or unreadable files
    """
    extra: dict[str, Any] = {}
    for value in values:
        if value.startswith("@"):
            path = Path(value[1:])
            try:
                data = yaml.safe_load(path.read_text())
            except (OSError, yaml.YAMLError) as e:
                raise click.ClickException(f"cannot load {path}: {e}")
            if data is None:
                continue
            if not isinstance(data, dict):
                raise click.ClickException(f"{path} must contain a mapping")
            extra.update(data)
            continue

        name, sep, raw = value.partition("=")
        name = name.strip()
        if not sep or not name.isidentifier():
            raise click.ClickException(f"expected name=value or @file, got {value!r}")
        try:
            extra[name] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            extra[name] = raw
    return extra


def _load_inventory(path: str | None) -> Inventory:
    if path is None:
        return load_localhost()
    try:
        return load_inventory(path)
    except ConvergeError as e:
        raise click.ClickException(str(e))


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """converge - declarative, idempotent multi-host configuration."""
    if version:
        click.echo(f"converge {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("run")
@click.argument("playbook", type=click.Path(dir_okay=False))
@click.option("--inventory", "-i", default=None, help="Inventory file (YAML or JSON); localhost when omitted")
@click.option("--extra-vars", "-e", multiple=True, help="Extra variable name=value or @file (repeatable)")
@click.option("--limit", "-l", default=None, help="Limit to matching hosts (patterns: web*,!db*,@group)")
@click.option("--forks", "-f", type=int, default=None, help="Hosts processed concurrently")
@click.option("--timeout", "-t", type=int, default=None, help="Per-task timeout in seconds")
@click.option("--play-timeout", type=int, default=None, help="Per-play timeout in seconds")
@click.option("--error-policy", type=click.Choice(ERROR_POLICIES), default=None,
              help="Default failure policy for plays that don't set one")
@click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Run config file (default: converge.yml in the current directory)")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
@click.option("--save-report", type=click.Path(dir_okay=False), default=None,
              help="Write the JSON run report to a file")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None,
              help="Write logs to file (in addition to console)")
@click.option("--log-level", type=click.Choice(["trace", "debug", "info", "warning", "error"]),
              default=None, help="Set log level explicitly (overrides -v)")
@click.option("-v", "--verbose", count=True, help="Increase verbosity: -v=info, -vv=debug, -vvv=trace")
def run_playbook(
    playbook: str,
    inventory: str | None,
    extra_vars: tuple[str, ...],
    limit: str | None,
    forks: int | None,
    timeout: int | None,
    play_timeout: int | None,
    error_policy: str | None,
    config_file: str | None,
    output_format: str,
    save_report: str | None,
    log_file: str | None,
    log_level: str | None,
    verbose: int,
) -> None:
    """Run PLAYBOOK against the hosts of an inventory.

    Exits 0 when every host converged, 2 when any host has a failed or
    unreachable result, and 1 when the inputs could not be loaded.

    Examples:

        converge run site.yml -i hosts.yml

        converge run site.yml -i hosts.yml -e version=1.2 -e @vars.yml --limit '@web'
    """
    level = get_level_from_name(log_level) if log_level else get_level_from_verbosity(verbose)
    # JSON output owns stdout; keep the console quiet
    console_level = logging.CRITICAL if output_format == "json" else level
    configure_logging(level=console_level, log_file=log_file, file_level=level if log_file else None)

    try:
        config = load_config(
            config_file,
            forks=forks,
            task_timeout=timeout,
            play_timeout=play_timeout,
            error_policy=error_policy,
        )
        inv = _load_inventory(inventory)
        book = load_playbook(playbook)
    except ConvergeError as e:
        raise click.ClickException(str(e))
    variables = parse_extra_vars(extra_vars)

    if limit and output_format == "text":
        total = len(inv.get_all_hosts())
        matched = len(filter_hosts(list(inv.get_all_hosts().values()), limit, inv))
        click.echo(format_filter_summary(total, matched, limit), err=True)

    reporter = create_progress_reporter(
        enabled=True,
        json_format=output_format == "json",
        verbose=level <= logging.DEBUG,
    )
    runner = PlaybookRunner(inv, config, reporter=reporter)

    async def run_async() -> RunReport:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, runner.cancel)
            loop.add_signal_handler(signal.SIGTERM, runner.cancel)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers unavailable; Ctrl-C will abort without a report")
        return await runner.run(book, extra_vars=variables, limit=limit)

    try:
        report = asyncio.run(run_async())
    except ConvergeError as e:
        raise click.ClickException(str(e))

    if save_report:
        Path(save_report).write_text(report.to_json())
        logger.info(f"Report saved to {save_report}")

    if output_format == "json":
        click.echo(report.to_json())
    else:
        report.render(Console())

    if report.has_failures() or report.cancelled:
        raise SystemExit(EXIT_HOST_FAILURES)


@cli.group()
def inventory() -> None:
    """Inventory commands."""
    pass


@inventory.command("list")
@click.option("--inventory", "-i", required=True, help="Inventory file (YAML or JSON)")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
def inventory_list(inventory: str, output_format: str) -> None:
    """List groups and hosts with their merged variables."""
    inv = _load_inventory(inventory)

    if output_format == "json":
        data = {
            "groups": {
                group.name: {
                    "hosts": [h.name for h in inv.resolve(group.name)],
                    "children": group.children,
                }
                for group in inv.list_groups()
            },
            "hosts": {
                name: {
                    "address": host.address,
                    "port": host.port,
                    "remote_user": host.remote_user,
                    "connection": host.connection,
                    "groups": sorted(host.groups),
                    "vars": inv.variables_for(host),
                }
                for name, host in inv.get_all_hosts().items()
            },
        }
        click.echo(json.dumps(data, indent=2, default=str))
        return

    table = Table(title=f"Inventory: {inventory}")
    table.add_column("host", style="bold")
    table.add_column("address")
    table.add_column("connection")
    table.add_column("groups")
    for name, host in inv.get_all_hosts().items():
        address = host.address if host.is_local else f"{host.address}:{host.port}"
        table.add_row(name, address, host.connection, ", ".join(sorted(host.groups)))
    Console().print(table)


@inventory.command("validate")
@click.option("--inventory", "-i", required=True, help="Inventory file (YAML or JSON)")
def inventory_validate(inventory: str) -> None:
    """Validate inventory structure and show a summary.

    Every problem in the document is reported with its line number.
    """
    inv = _load_inventory(inventory)
    all_hosts = inv.get_all_hosts()
    groups = inv.list_groups()

    click.echo(f"Inventory: {inventory}")
    click.echo(f"Loaded {len(all_hosts)} host(s) from {len(groups)} group(s)")
    for group in groups:
        members = inv.resolve(group.name)
        click.echo(f"  {group.name} ({len(members)} host{'s' if len(members) != 1 else ''})")

    empty = [g.name for g in groups if not inv.resolve(g.name)]
    for name in empty:
        click.echo(f"  Warning: group '{name}' has no hosts")
    click.echo("Validation: OK")


@cli.group()
def modules() -> None:
    """Module commands."""
    pass


@modules.command("list")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
def modules_list(output_format: str) -> None:
    """List built-in modules."""
    specs = default_registry().list_modules()
    if output_format == "json":
        click.echo(json.dumps(
            [{"name": s.name, "idempotent": s.idempotent, "summary": s.summary} for s in specs],
            indent=2,
        ))
        return
    for spec in specs:
        marker = "" if spec.idempotent else " (not idempotent)"
        click.echo(f"  {spec.name:<16} {spec.summary}{marker}")


def main() -> None:
    """Package entry point for the converge command-line interface."""
    cli()


if __name__ == "__main__":
    main()
