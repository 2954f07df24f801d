"""
Key & identity manager -- who this device is and what it knows.

Owns the stable device identity and the long-lived master secret,
and derives per-peer keys from them. The master secret never leaves
the device; peers only ever see keys derived from it together with
material they supplied during pairing.

Storage layout:
    ~/.vaultsync/identity/device.json   # DeviceIdentity
    ~/.vaultsync/security/master.key    # 32 raw bytes, mode 0600
"""

from __future__ import annotations

import logging
import secrets
import threading
import uuid
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .audit import audit_event
from .config import VaultConfig
from .crypto import KEY_SIZE, derive_key, pbkdf2_derive
from .device import DeviceInfoProvider, PlatformDeviceInfo
from .errors import StorageUnavailable
from .fileio import atomic_write_bytes, atomic_write_text
from .models import DeviceIdentity, DeviceInfo

logger = logging.getLogger("vaultsync.keys")

MASTER_SECRET_SIZE = 32


class KeyManager:
    """Device identity, master secret and per-peer key derivation.

    Args:
        home: Vault home directory.
        config: Vault configuration (KDF iterations, device overrides).
        device_provider: Display-name source. Defaults to the platform.
    """

    def __init__(
        self,
        home: Path,
        config: Optional[VaultConfig] = None,
        device_provider: Optional[DeviceInfoProvider] = None,
    ) -> None:
        self._home = home
        self._config = config or VaultConfig()
        self._device_provider = device_provider or PlatformDeviceInfo(
            self._config.device_name, self._config.device_class
        )
        self._identity_file = home / "identity" / "device.json"
        self._master_file = home / "security" / "master.key"
        self._identity: Optional[DeviceIdentity] = None
        self._master: Optional[bytes] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def get_device_identity(self) -> DeviceIdentity:
        """Return the stable identity, creating it on first call.

        If the identity cannot be read or persisted, an ephemeral one is
        used for the rest of this process and flagged as such.

        Raises:
            StorageUnavailable: If an identity file exists but is corrupt.
                Regenerating it would orphan every trust relationship.
        """
        with self._lock:
            if self._identity is not None:
                return self._identity

            try:
                if self._identity_file.exists():
                    self._identity = DeviceIdentity.model_validate_json(
                        self._identity_file.read_text(encoding="utf-8")
                    )
                    return self._identity
            except ValidationError as exc:
                raise StorageUnavailable(
                    f"Device identity file is corrupt: {self._identity_file}"
                ) from exc
            except OSError as exc:
                return self._ephemeral_identity(exc)

            identity = DeviceIdentity(device_id=self._new_device_id())
            try:
                atomic_write_text(self._identity_file, identity.model_dump_json(indent=2))
            except OSError as exc:
                return self._ephemeral_identity(exc)

            self._identity = identity
            logger.info("Created device identity %s", identity.device_id)
            audit_event(self._home, "IDENTITY_CREATE", f"Device identity {identity.device_id}")
            return identity

    def _ephemeral_identity(self, exc: Exception) -> DeviceIdentity:
        self._identity = DeviceIdentity(device_id=self._new_device_id(), ephemeral=True)
        logger.warning(
            "Identity storage unavailable (%s); using ephemeral identity %s "
            "for this process only",
            exc,
            self._identity.device_id,
        )
        return self._identity

    def _new_device_id(self) -> str:
        prefix = self._device_provider.describe().device_class.value
        return f"{prefix}-{uuid.uuid4().hex}"

    def device_info(self) -> DeviceInfo:
        """Display name and class for this device."""
        return self._device_provider.describe()

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    def get_or_create_master_secret(self) -> bytes:
        """Return the master secret, generating and persisting it once.

        Raises:
            StorageUnavailable: If the secret cannot be read or persisted,
                or the stored secret has the wrong size.
        """
        with self._lock:
            if self._master is not None:
                return self._master

            try:
                if self._master_file.exists():
                    raw = self._master_file.read_bytes()
                    if len(raw) != MASTER_SECRET_SIZE:
                        raise StorageUnavailable(
                            f"Master secret has unexpected size ({len(raw)} bytes)"
                        )
                    self._master = raw
                    return raw

                raw = secrets.token_bytes(MASTER_SECRET_SIZE)
                atomic_write_bytes(self._master_file, raw, mode=0o600)
            except OSError as exc:
                raise StorageUnavailable(f"Master secret unavailable: {exc}") from exc

            self._master = raw
            logger.info("Generated master secret")
            audit_event(self._home, "MASTER_SECRET_CREATE", "Master secret generated")
            return raw

    def derive_peer_key(self, peer_shared_secret: bytes, master_secret: bytes) -> bytes:
        """Derive the per-peer key: PBKDF2(shared secret, salt=master secret).

        Deterministic, so a known peer can reconnect without re-pairing.
        """
        if not peer_shared_secret:
            raise ValueError("peer shared secret must not be empty")
        if not master_secret:
            raise ValueError("master secret must not be empty")
        return pbkdf2_derive(
            peer_shared_secret,
            salt=master_secret,
            iterations=self._config.kdf_iterations,
            length=KEY_SIZE,
        )

    def storage_key(self) -> bytes:
        """Key for encrypting trust-store material and pairing sessions at rest."""
        return derive_key(self.get_or_create_master_secret(), b"vaultsync:storage-encryption")
