"""Human-readable rendering of a status snapshot."""

from __future__ import annotations

from rich.table import Table

from mcupnp.models import StatusSnapshot

NOT_AVAILABLE_MSG = "UPnP is not available on this network."
NO_PORTS_MAPPED_MSG = "No ports are mapped."


def render_status(snapshot: StatusSnapshot) -> list[str]:
    """Render ``snapshot`` as chat/console lines, one message per line."""
    if not snapshot.available:
        return [NOT_AVAILABLE_MSG]

    lines = [f"IPv4 Address: {snapshot.external_address or 'unknown'}"]
    lines.extend(f"IPv6 address: {address}" for address in snapshot.ipv6_addresses)
    lines.append("The following ports are mapped: ")
    lines.extend(str(spec) for spec in snapshot.mapped_ports)
    if snapshot.mapped_count == 0:
        lines.append(NO_PORTS_MAPPED_MSG)
    return lines


def render_status_table(snapshot: StatusSnapshot) -> Table:
    """Build a rich table with one row per configured entry."""
    table = Table(title="UPnP Port Mappings")
    table.add_column("Protocol", style="cyan")
    table.add_column("Port", style="magenta", justify="right")
    table.add_column("Mapped", style="green")

    for status in snapshot.ports:
        table.add_row(
            status.spec.protocol.value,
            str(status.spec.port),
            "[green]yes[/green]" if status.mapped else "[yellow]no[/yellow]",
        )
    table.caption = f"{snapshot.mapped_count}/{len(snapshot.ports)} ports mapped"
    return table
