"""Pairing commands: begin, accept, confirm, complete, cancel.

Files exchanged between the two devices:

    initiator --invite.json-->  confirmer    (contains the pairing secret)
    initiator <--receipt.json-- confirmer

Move the invite over a channel you trust and delete it afterwards.
The code itself is never written to either file.
"""

from __future__ import annotations

from pathlib import Path

import click
from pydantic import BaseModel, ValidationError

from ..fileio import atomic_write_text
from ..models import PairingInvite, PairingReceipt
from ._common import VAULT_HOME, console, fail, open_vault, unwrap


def _write(model: BaseModel, path: str) -> Path:
    out = Path(path).expanduser()
    try:
        atomic_write_text(out, model.model_dump_json(indent=2), mode=0o600)
    except OSError as exc:
        fail(f"Cannot write {out}: {exc}")
    return out


def _read(model_cls: type[BaseModel], path: str):
    try:
        return model_cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        fail(f"Cannot read {path}: {exc}")


def register_pair_commands(main: click.Group) -> None:
    """Register the pair command group."""

    @main.group()
    def pair():
        """Pair this device with another one using a short code."""

    @pair.command("begin")
    @click.argument("name")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    @click.option("--invite-out", default="vaultsync-invite.json", type=click.Path(), help="Where to write the invite.")
    def pair_begin(name, home, invite_out):
        """Start pairing with a device that will be known as NAME."""
        with open_vault(home) as vault:
            started = unwrap(vault.begin_pairing(name))
            invite = unwrap(vault.pairing_invite())
        out = _write(invite, invite_out)

        console.print(f"\n  Pairing code for [cyan]{name}[/]:")
        console.print(f"\n      [bold green]{started['code']}[/]\n")
        console.print(f"  Expires: [dim]{started['expires_at'][:19]}[/]")
        console.print(f"  Invite:  {out}")
        console.print("  [yellow]The invite holds the pairing secret. Transfer it privately.[/]\n")

    @pair.command("accept")
    @click.argument("invite_file", type=click.Path(exists=True))
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def pair_accept(invite_file, home):
        """Load an invite from the initiating device."""
        invite = _read(PairingInvite, invite_file)
        with open_vault(home) as vault:
            received = unwrap(vault.receive_invite(invite))
        console.print(f"\n  Invite from [cyan]{received['peer_name']}[/] [dim]({received['peer_id']})[/]")
        console.print("  Enter the code shown on that device: vaultsync pair confirm CODE\n")

    @pair.command("confirm")
    @click.argument("code")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    @click.option("--receipt-out", default="vaultsync-receipt.json", type=click.Path(), help="Where to write the receipt.")
    def pair_confirm(code, home, receipt_out):
        """Confirm the CODE shown on the initiating device."""
        with open_vault(home) as vault:
            receipt = unwrap(vault.confirm_pairing(code))
        out = _write(receipt, receipt_out)
        console.print("\n  [green]Code accepted.[/] The other device is now trusted.")
        console.print(f"  Receipt: {out}")
        console.print("  Finish on the other device: vaultsync pair complete RECEIPT_FILE\n")

    @pair.command("complete")
    @click.argument("receipt_file", type=click.Path(exists=True))
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def pair_complete(receipt_file, home):
        """Finish pairing with the receipt from the confirming device."""
        receipt = _read(PairingReceipt, receipt_file)
        with open_vault(home) as vault:
            device_id = unwrap(vault.complete_pairing(receipt))
        console.print(f"\n  [green]Paired with[/] [cyan]{receipt.device_name}[/] [dim]({device_id})[/]\n")

    @pair.command("cancel")
    @click.option("--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory.")
    def pair_cancel(home):
        """Discard a pairing in progress."""
        with open_vault(home) as vault:
            unwrap(vault.cancel_pairing())
        console.print("\n  Pairing cancelled.\n")
