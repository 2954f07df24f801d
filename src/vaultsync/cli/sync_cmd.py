"""Sync commands: status, history.

Sync passes themselves need a transport to the other device and are
driven by the embedding application through VaultContext.
"""

from __future__ import annotations

import json

import click
from rich.panel import Panel
from rich.table import Table

from ._common import VAULT_HOME, console, open_vault, unwrap

_STATUS_STYLE = {
    "synced": "[green]synced[/]",
    "conflicts": "[yellow]conflicts[/]",
    "unreachable": "[red]unreachable[/]",
    "storage": "[red]storage[/]",
    "security": "[bold red]security[/]",
}


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Sync state and history."""

    @sync.command("status")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def sync_status(home, json_out):
        """Show sync counters and pairing state."""
        with open_vault(home) as vault:
            data = unwrap(vault.status())

        if json_out:
            click.echo(json.dumps(data, indent=2, default=str))
            return

        state = data["state"]
        last = state["last_sync"][:19] if state["last_sync"] else "never"
        lines = [
            f"[bold]Device:[/]     [cyan]{data['device_id']}[/]",
            f"[bold]Peers:[/]      {data['peers']}",
            f"[bold]Pairing:[/]    {data['pairing']}",
            f"[bold]Last sync:[/]  {last}",
            f"[bold]Syncs:[/]      {state['sync_count']}  "
            f"[bold]Conflicts:[/] {state['conflict_count']}  "
            f"[bold]Failures:[/] {state['failure_count']}",
        ]
        if state["last_error"]:
            lines.append(f"[bold]Last error:[/] [red]{state['last_error']}[/]")
        console.print()
        console.print(Panel("\n".join(lines), title="Sync Status", border_style="bright_blue"))
        console.print()

    @sync.command("history")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    @click.option("--limit", default=20, type=int, help="Entries to show.")
    def sync_history(home, limit):
        """Show recent sync passes."""
        with open_vault(home) as vault:
            entries = unwrap(vault.history(limit))

        console.print()
        if not entries:
            console.print("  [dim]No sync history yet.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2),
                      title=f"Sync History ({len(entries)})")
        table.add_column("When", style="dim")
        table.add_column("Peer", style="cyan")
        table.add_column("Status")
        table.add_column("Files", justify="right")
        table.add_column("Conflicts", justify="right")

        for entry in reversed(entries):
            table.add_row(
                entry.at.isoformat()[:19],
                entry.peer_name or entry.peer_id,
                _STATUS_STYLE.get(entry.status, entry.status),
                str(entry.file_count),
                str(entry.conflict_count),
            )
        console.print(table)
        console.print()
