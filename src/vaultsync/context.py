"""
VaultContext -- the application-facing surface of the sync engine.

Owns one device's key manager, trust store, pairing coordinator and
sync engine, wired to the storage and transport the application
supplies. Nothing here is global: two contexts with different homes
are two independent devices, which is how pairing and sync are
exercised end to end.

Every public method returns a value. Engine errors become
``ActionResult(ok=False, error=<code>, remedy=...)`` or a failed
``SyncOutcome``; they never propagate to the caller.

Usage:

    with VaultContext.open(Path("~/.vaultsync"), transport=my_transport) as vault:
        result = vault.sync_with_peer(peer_id)
        if result.conflicts:
            vault.resolve_conflicts(result, Resolution.REMOTE_WINS)
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from .config import VaultConfig, load_config, resolve_home
from .device import DeviceInfoProvider
from .engine import SyncEngine
from .errors import VaultSyncError
from .keys import KeyManager
from .merge import Resolutions
from .models import ActionResult, PairingInvite, PairingReceipt, SyncOutcome, utcnow
from .pairing import PairingCoordinator
from .storage import JsonFileStorage, StorageAdapter
from .transport import NullTransport, Transport
from .trust import TrustStore

logger = logging.getLogger("vaultsync.context")


def _failure(exc: VaultSyncError) -> ActionResult:
    return ActionResult(ok=False, error=exc.code.value, message=str(exc), remedy=exc.remedy)


class VaultContext:
    """One device's sync engine and everything it depends on.

    Prefer ``VaultContext.open`` over calling the constructor.
    """

    def __init__(
        self,
        home: Path,
        config: VaultConfig,
        storage: StorageAdapter,
        transport: Transport,
        device_provider: Optional[DeviceInfoProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.home = home
        self.config = config
        self.keys = KeyManager(home, config, device_provider)
        self.trust = TrustStore(home, self.keys)
        self.pairing = PairingCoordinator(home, self.keys, self.trust, config, clock=clock)
        self.engine = SyncEngine(home, self.keys, self.trust, storage, transport, config, clock=clock)
        self._closed = False

    @classmethod
    def open(
        cls,
        home: Optional[Path] = None,
        storage: Optional[StorageAdapter] = None,
        transport: Optional[Transport] = None,
        device_provider: Optional[DeviceInfoProvider] = None,
        config: Optional[VaultConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "VaultContext":
        """Open the vault at ``home``.

        Args:
            home: Vault home. Defaults to $VAULTSYNC_HOME or ~/.vaultsync.
            storage: Vault state store. Defaults to <home>/vault/state.json.
            transport: Channel to peers. Defaults to none (peers unreachable).
            device_provider: Display name/class source.
            config: Overrides <home>/config/config.yaml.
            clock: Current UTC time, injectable for tests.
        """
        home = resolve_home(home)
        config = config or load_config(home)
        storage = storage or JsonFileStorage(home / "vault" / "state.json")
        transport = transport or NullTransport()
        logger.debug("Opening vault at %s", home)
        return cls(home, config, storage, transport, device_provider, clock)

    def close(self) -> None:
        if not self._closed:
            self.engine.close()
            self._closed = True

    def __enter__(self) -> "VaultContext":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def device_id(self) -> str:
        """This device's id. Raises StorageUnavailable if the identity is corrupt."""
        return self.keys.get_device_identity().device_id

    def _attempt(self, fn: Callable[..., Any], *args: Any) -> ActionResult:
        try:
            return ActionResult(ok=True, value=fn(*args))
        except VaultSyncError as exc:
            logger.info("%s failed: %s", getattr(fn, "__name__", "operation"), exc)
            return _failure(exc)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def identity(self) -> ActionResult:
        """Device id, display name, class and degraded flag."""

        def describe() -> dict:
            identity = self.keys.get_device_identity()
            info = self.keys.device_info()
            return {
                "device_id": identity.device_id,
                "name": info.name,
                "device_class": info.device_class.value,
                "created_at": identity.created_at.isoformat(),
                "ephemeral": identity.ephemeral,
            }

        return self._attempt(describe)

    def initialize(self) -> ActionResult:
        """Create identity and master secret now instead of on first use."""

        def init() -> str:
            identity = self.keys.get_device_identity()
            self.keys.get_or_create_master_secret()
            return identity.device_id

        return self._attempt(init)

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------

    def begin_pairing(self, device_name: str) -> ActionResult:
        """Start pairing. ``value`` holds the code to show and its expiry."""

        def begin() -> dict:
            session = self.pairing.begin_pairing(device_name)
            return {
                "code": session.code,
                "peer_name": session.peer_name,
                "expires_at": session.expires_at.isoformat(),
            }

        return self._attempt(begin)

    def pairing_invite(self) -> ActionResult:
        return self._attempt(self.pairing.invite)

    def receive_invite(self, invite: PairingInvite) -> ActionResult:
        def receive() -> dict:
            session = self.pairing.receive_invite(invite)
            return {"peer_id": session.peer_id, "peer_name": session.peer_name}

        return self._attempt(receive)

    def confirm_pairing(self, code: str) -> ActionResult:
        """Check the code shown on the other device. ``value`` is the receipt."""
        return self._attempt(self.pairing.confirm_pairing, code)

    def complete_pairing(self, receipt: PairingReceipt) -> ActionResult:
        return self._attempt(self.pairing.complete_pairing, receipt)

    def cancel_pairing(self) -> ActionResult:
        return self._attempt(self.pairing.cancel)

    # ------------------------------------------------------------------
    # Trust
    # ------------------------------------------------------------------

    def list_trusted_peers(self) -> ActionResult:
        return self._attempt(self.trust.list_trusted_peers)

    def revoke_peer(self, device_id: str) -> ActionResult:
        return self._attempt(self.trust.revoke_peer, device_id)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_with_peer(self, peer_id: str, timeout: Optional[float] = None) -> SyncOutcome:
        try:
            return self.engine.sync_with_peer(peer_id, timeout)
        except VaultSyncError as exc:
            return SyncOutcome(success=False, peer_id=peer_id, error=exc.code.value, message=str(exc))

    def resolve_conflicts(
        self,
        outcome: SyncOutcome,
        resolutions: Resolutions,
        timeout: Optional[float] = None,
    ) -> SyncOutcome:
        try:
            return self.engine.resolve_conflicts(outcome, resolutions, timeout)
        except VaultSyncError as exc:
            return SyncOutcome(
                success=False,
                peer_id=outcome.peer_id,
                error=exc.code.value,
                message=str(exc),
            )

    def ping_peer(self, peer_id: str, timeout: Optional[float] = None) -> ActionResult:
        return self._attempt(self.engine.ping_peer, peer_id, timeout)

    def handle_request(self, raw: bytes) -> bytes:
        """Answer an inbound envelope (wire this to the transport's server side)."""
        return self.engine.handle_request(raw)

    def history(self, limit: int = 0) -> ActionResult:
        return self._attempt(self.engine.history, limit)

    def status(self) -> ActionResult:
        """Sync counters, peer count and pairing state."""

        def summary() -> dict:
            data = self.engine.status()
            data["pairing"] = self.pairing.state.value
            return data

        return self._attempt(summary)
