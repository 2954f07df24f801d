"""Setup commands: init, whoami."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.panel import Panel

from ..config import load_config, save_config
from ..models import DeviceClass
from ._common import VAULT_HOME, console, open_vault, unwrap


def register_setup_commands(main: click.Group) -> None:
    """Register init and whoami."""

    @main.command()
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    @click.option("--name", default=None, help="Display name for this device.")
    @click.option(
        "--device-class",
        type=click.Choice([c.value for c in DeviceClass]),
        default=None,
        help="Kind of device (display only).",
    )
    def init(home, name, device_class):
        """Create this device's identity, master secret and config."""
        home_path = Path(home).expanduser()
        config = load_config(home_path)
        if name:
            config.device_name = name
        if device_class:
            config.device_class = DeviceClass(device_class)
        config_file = save_config(home_path, config)

        with open_vault(home) as vault:
            device_id = unwrap(vault.initialize())
            info = unwrap(vault.identity())

        console.print()
        console.print(
            Panel(
                f"[bold]Device:[/]  [cyan]{info['name']}[/] ({info['device_class']})\n"
                f"[bold]ID:[/]      {device_id}\n"
                f"[bold]Home:[/]    {home_path}\n"
                f"[bold]Config:[/]  [dim]{config_file}[/]",
                title="Vault initialized",
                border_style="green",
            )
        )
        if info["ephemeral"]:
            console.print("  [yellow]Identity could not be persisted; this id is temporary.[/]")
        console.print()

    @main.command()
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def whoami(home, json_out):
        """Show this device's identity."""
        with open_vault(home) as vault:
            info = unwrap(vault.identity())

        if json_out:
            click.echo(json.dumps(info, indent=2))
            return

        console.print(f"\n  [bold]{info['name']}[/] [dim]({info['device_class']})[/]")
        console.print(f"  ID: [cyan]{info['device_id']}[/]")
        if info["ephemeral"]:
            console.print("  [bold yellow]DEGRADED[/] identity is not persisted")
        console.print()
