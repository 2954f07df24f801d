"""Shared utilities for all CLI command modules.

Provides the Rich console instance, vault opening and the uniform
error exit used by every command group.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import NoReturn

from rich.console import Console

from .. import VAULT_HOME
from ..context import VaultContext
from ..models import ActionResult

console = Console()
logger = logging.getLogger("vaultsync.cli")

__all__ = ["VAULT_HOME", "console", "fail", "logger", "open_vault", "unwrap"]


def open_vault(home: str) -> VaultContext:
    """Open the vault at ``home`` with file storage and no transport."""
    return VaultContext.open(Path(home).expanduser())


def fail(message: str, remedy: str = "") -> NoReturn:
    """Print a red error (and the suggested next step) and exit 1."""
    console.print(f"\n  [bold red]Error:[/] {message}")
    if remedy and remedy != "none":
        console.print(f"  [dim]Next step: {remedy}[/]")
    console.print()
    sys.exit(1)


def unwrap(result: ActionResult):
    """Return ``result.value`` or exit with its error."""
    if not result.ok:
        fail(f"{result.error}: {result.message}", result.remedy or "")
    return result.value
