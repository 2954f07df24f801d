"""Peer commands: list, revoke."""

from __future__ import annotations

import json

import click
from rich.table import Table

from ._common import VAULT_HOME, console, open_vault, unwrap


def register_peers_commands(main: click.Group) -> None:
    """Register the peers command group."""

    @main.group()
    def peers():
        """Trusted devices."""

    @peers.command("list")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def peers_list(home, json_out):
        """List trusted devices."""
        with open_vault(home) as vault:
            trusted = unwrap(vault.list_trusted_peers())

        if json_out:
            click.echo(json.dumps([p.model_dump(mode="json") for p in trusted], indent=2))
            return

        console.print()
        if not trusted:
            console.print("  [dim]No trusted devices.[/]")
            console.print("  Pair one: vaultsync pair begin NAME\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2),
                      title=f"Trusted Devices ({len(trusted)})")
        table.add_column("Name", style="cyan")
        table.add_column("Class", style="dim")
        table.add_column("Device ID")
        table.add_column("Last seen", style="dim")

        for p in trusted:
            seen = p.last_seen.isoformat()[:19] if p.last_seen else "never"
            table.add_row(p.name, p.device_class.value, p.device_id, seen)

        console.print(table)
        console.print()

    @peers.command("revoke")
    @click.argument("device_id")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def peers_revoke(device_id, home):
        """Forget DEVICE_ID. It must pair again to sync."""
        with open_vault(home) as vault:
            unwrap(vault.revoke_peer(device_id))
        console.print(f"\n  [green]Revoked:[/] {device_id}\n")
