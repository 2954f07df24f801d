"""
vaultsync: cross-device synchronization for a personal data vault.

Trusted devices pair once with a human-verifiable code, then exchange
signed, encrypted snapshots of vault contents directly. No server.
Divergence is surfaced as conflicts, never guessed away.
"""

import os

__version__ = "0.1.0"

VAULT_HOME = os.environ.get("VAULTSYNC_HOME", "~/.vaultsync")
PROTOCOL_VERSION = 1
