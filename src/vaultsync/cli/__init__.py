"""
vaultsync CLI -- pair devices and inspect sync state from a terminal.

The main Click group is defined here and each command group lives in
its own module, registered via a register function.

Entry point: vaultsync.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="vaultsync")
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity to stderr.")
def main(verbose):
    """vaultsync -- serverless sync between your trusted devices.

    Pair once with a six-character code. Sync signed, encrypted snapshots.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .init_cmd import register_setup_commands
from .pair import register_pair_commands
from .peers import register_peers_commands
from .sync_cmd import register_sync_commands

register_setup_commands(main)
register_pair_commands(main)
register_peers_commands(main)
register_sync_commands(main)
