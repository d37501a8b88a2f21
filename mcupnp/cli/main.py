"""CLI for mcupnp.

Provides commands to run the port forwarding lifecycle in the
foreground, show the mapping status, force a refresh pass and
inspect the effective configuration.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

import click
from rich.console import Console
from rich.table import Table

from mcupnp.config.config import ConfigManager
from mcupnp.host import CONSOLE, UPnPHost
from mcupnp.models import LogLevel, MappingOutcome, UPnPConfig
from mcupnp.nat.gateway import GatewayClient
from mcupnp.nat.manager import MappingLifecycleManager
from mcupnp.nat.upnp import UPnPGateway
from mcupnp.status import NOT_AVAILABLE_MSG, render_status_table
from mcupnp.utils.exceptions import ConfigurationError
from mcupnp.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_gateway(config: UPnPConfig) -> GatewayClient:
    """Build the gateway used by every command."""
    return UPnPGateway.from_config(config)


def _get_config_from_context(ctx: click.Context) -> ConfigManager:
    """Load configuration, applying the ``-v`` verbosity to logging."""
    try:
        cfg_mgr = ConfigManager(ctx.obj.get("config"))
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    verbose = ctx.obj.get("verbose", 0)
    if verbose:
        observability = cfg_mgr.config.observability
        observability.log_level = LogLevel.DEBUG if verbose > 1 else LogLevel.INFO
        setup_logging(observability)
    return cfg_mgr


def _outcome_table(title: str, outcomes: list[MappingOutcome]) -> Table:
    table = Table(title=title)
    table.add_column("Protocol", style="cyan")
    table.add_column("Port", style="magenta", justify="right")
    table.add_column("Result")
    for outcome in outcomes:
        if outcome.already_mapped:
            result = "[yellow]already mapped[/yellow]"
        elif outcome.succeeded:
            result = "[green]ok[/green]"
        else:
            result = "[red]failed[/red]"
        table.add_row(outcome.spec.protocol.value, str(outcome.spec.port), result)
    return table


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.pass_context
def cli(ctx, config, verbose):
    """mcupnp - UPnP port forwarding for dedicated servers."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose


@cli.command("run")
@click.pass_context
def run(ctx) -> None:
    """Map the configured ports and keep them until interrupted."""
    cfg_mgr = _get_config_from_context(ctx)
    host = UPnPHost(cfg_mgr.config, gateway_factory=build_gateway)
    console = Console()

    if not host.enabled:
        console.print("[yellow]Not running as a dedicated server, nothing to do[/yellow]")
        return

    async def _serve() -> bool:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop_event.set)

        result = await host.on_start()
        if result is None:
            return False
        if not result.gateway_available:
            console.print(f"[red]{NOT_AVAILABLE_MSG}[/red]")
            return True

        console.print(_outcome_table("UPnP Port Forwarding", result.outcomes))
        console.print("[dim]Press Ctrl+C to close the ports and exit[/dim]")
        try:
            await stop_event.wait()
            logger.info("Shutdown requested, closing UPnP ports")
        finally:
            await host.on_stopping()
        return True

    if not asyncio.run(_serve()):
        msg = "UPnP port forwarding failed to start, see the log for details"
        raise click.ClickException(msg)


@cli.command("status")
@click.option("--table", "as_table", is_flag=True, help="Show every configured port")
@click.pass_context
def status(ctx, as_table: bool) -> None:
    """Show UPnP availability, external address and mapped ports."""
    cfg_mgr = _get_config_from_context(ctx)
    console = Console()

    async def _status() -> None:
        if as_table:
            upnp = cfg_mgr.config.upnp
            manager = MappingLifecycleManager(build_gateway(upnp), upnp.port_set())
            snapshot = await manager.query_status()
            if snapshot.available:
                console.print(render_status_table(snapshot))
            else:
                console.print(NOT_AVAILABLE_MSG, markup=False, highlight=False)
            return

        host = UPnPHost(cfg_mgr.config, gateway_factory=build_gateway)
        for line in await host.status_command(CONSOLE):
            console.print(line, markup=False, highlight=False)

    asyncio.run(_status())


@cli.command("refresh")
@click.pass_context
def refresh(ctx) -> None:
    """Re-assert every configured mapping once."""
    cfg_mgr = _get_config_from_context(ctx)
    upnp = cfg_mgr.config.upnp
    console = Console()

    async def _refresh() -> list[MappingOutcome]:
        manager = MappingLifecycleManager(
            build_gateway(upnp),
            upnp.port_set(),
            description=upnp.description,
        )
        return await manager.refresh_pass()

    outcomes = asyncio.run(_refresh())
    console.print(_outcome_table("UPnP Refresh", outcomes))
    succeeded = sum(1 for o in outcomes if o.succeeded)
    if succeeded < len(outcomes):
        raise click.ClickException(
            f"{len(outcomes) - succeeded}/{len(outcomes)} ports could not be refreshed"
        )


@cli.group()
def config() -> None:
    """Inspect configuration."""


@config.command("show")
@click.pass_context
def config_show(ctx) -> None:
    """Print the effective configuration as TOML."""
    cfg_mgr = _get_config_from_context(ctx)
    click.echo(cfg_mgr.export())


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
