"""
Trust store -- the authority over which devices may sync.

Each trusted peer carries a key derived from this device's master
secret and the pairing secret. The derived key is stored encrypted
under the device storage key; the pairing secret is stored wrapped
under the derived key. Summaries never expose either.

Every mutation rewrites the whole store with an atomic rename, so a
crash mid-update leaves the previous store intact.

Storage layout:
    ~/.vaultsync/trust/peers.json
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .audit import audit_event
from .crypto import LinkKeys, InvalidToken, decrypt_at_rest, derive_link_keys, encrypt_at_rest
from .errors import AlreadyTrusted, NotFound, StorageUnavailable, UntrustedPeer
from .fileio import atomic_write_text
from .keys import KeyManager
from .models import DeviceClass, PeerSummary, TrustedPeer, utcnow

logger = logging.getLogger("vaultsync.trust")


class TrustStore:
    """Persistent mapping of device id to TrustedPeer.

    Args:
        home: Vault home directory.
        keys: Key manager used to derive and protect per-peer keys.
    """

    def __init__(self, home: Path, keys: KeyManager) -> None:
        self._home = home
        self._keys = keys
        self._store_file = home / "trust" / "peers.json"
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def add_trusted_peer(
        self,
        device_id: str,
        name: str,
        shared_secret: bytes,
        device_class: DeviceClass = DeviceClass.DESKTOP,
        replace: bool = True,
    ) -> str:
        """Trust a device, deriving and storing its key.

        Re-adding a known device updates its name and key in place.

        Args:
            device_id: The peer's stable identity.
            name: Display name.
            shared_secret: Pairing secret agreed with the peer.
            device_class: Display class.
            replace: When False, an existing peer raises AlreadyTrusted.

        Returns:
            The peer's device id.
        """
        if not device_id:
            raise ValueError("device_id must not be empty")

        master = self._keys.get_or_create_master_secret()
        derived = self._keys.derive_peer_key(shared_secret, master)
        storage_key = self._keys.storage_key()

        with self._lock:
            peers = self._load()
            existing = peers.get(device_id)
            if existing is not None and not replace:
                raise AlreadyTrusted(f"Device {device_id} is already trusted")

            peer = TrustedPeer(
                device_id=device_id,
                name=name,
                device_class=device_class,
                trusted=True,
                derived_key_enc=encrypt_at_rest(derived, storage_key),
                wrapped_secret=encrypt_at_rest(shared_secret, derived),
            )
            if existing is not None:
                peer.added_at = existing.added_at
                peer.last_seen = existing.last_seen
                peer.key_version = existing.key_version + 1

            peers[device_id] = peer
            self._save(peers)

        event = "PEER_UPDATE" if existing is not None else "PEER_TRUST"
        logger.info("%s: %s (%s)", event, name, device_id)
        audit_event(self._home, event, f"Trusted peer {name}", metadata={"device_id": device_id})
        return device_id

    def list_trusted_peers(self) -> list[PeerSummary]:
        """All trusted peers, without key material, oldest first."""
        with self._lock:
            peers = self._load()
        return [
            p.summary()
            for p in sorted(peers.values(), key=lambda p: p.added_at)
            if p.trusted
        ]

    def get_peer(self, device_id: str) -> TrustedPeer:
        """Look up a peer record.

        Raises:
            NotFound: If the device is not in the store.
        """
        with self._lock:
            peer = self._load().get(device_id)
        if peer is None:
            raise NotFound(f"Unknown device {device_id}")
        return peer

    def require_trusted(self, device_id: str) -> TrustedPeer:
        """Like get_peer, but absence or distrust is UntrustedPeer."""
        try:
            peer = self.get_peer(device_id)
        except NotFound as exc:
            raise UntrustedPeer(f"Device {device_id} is not paired") from exc
        if not peer.trusted:
            raise UntrustedPeer(f"Device {device_id} is not trusted")
        return peer

    def update_last_seen(self, device_id: str, timestamp: Optional[datetime] = None) -> None:
        """Record a successful exchange with a peer."""
        with self._lock:
            peers = self._load()
            peer = peers.get(device_id)
            if peer is None:
                raise NotFound(f"Unknown device {device_id}")
            peer.last_seen = timestamp or utcnow()
            self._save(peers)

    def revoke_peer(self, device_id: str) -> None:
        """Forget a peer entirely. It must pair again to sync."""
        with self._lock:
            peers = self._load()
            peer = peers.pop(device_id, None)
            if peer is None:
                raise NotFound(f"Unknown device {device_id}")
            self._save(peers)

        logger.info("Revoked peer %s (%s)", peer.name, device_id)
        audit_event(self._home, "PEER_REVOKE", f"Revoked peer {peer.name}", metadata={"device_id": device_id})

    def link_keys(self, device_id: str) -> LinkKeys:
        """Unwrap the pairing secret and derive the wire keys for a peer.

        Raises:
            UntrustedPeer: If the peer is unknown or untrusted.
            StorageUnavailable: If the stored key material cannot be decrypted.
        """
        peer = self.require_trusted(device_id)
        local_id = self._keys.get_device_identity().device_id
        try:
            derived = decrypt_at_rest(peer.derived_key_enc, self._keys.storage_key())
            shared_secret = decrypt_at_rest(peer.wrapped_secret, derived)
        except InvalidToken as exc:
            raise StorageUnavailable(f"Key material for {device_id} cannot be decrypted") from exc
        return derive_link_keys(shared_secret, local_id, device_id)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, TrustedPeer]:
        if not self._store_file.exists():
            return {}
        try:
            data = json.loads(self._store_file.read_text(encoding="utf-8"))
            return {
                device_id: TrustedPeer.model_validate(record)
                for device_id, record in data.items()
            }
        except (OSError, ValueError, ValidationError) as exc:
            raise StorageUnavailable(f"Trust store unreadable: {exc}") from exc

    def _save(self, peers: dict[str, TrustedPeer]) -> None:
        data = {device_id: p.model_dump(mode="json") for device_id, p in peers.items()}
        try:
            atomic_write_text(self._store_file, json.dumps(data, indent=2), mode=0o600)
        except OSError as exc:
            raise StorageUnavailable(f"Trust store not writable: {exc}") from exc
