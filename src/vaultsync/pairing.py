"""
Pairing coordinator -- turning an unknown device into a trusted one.

Flow (initiator X, confirming device Y):

    X: begin_pairing("Y")      -> code shown on X's screen, e.g. K3J9QZ
    X: invite()                -> PairingInvite handed to Y out of band
    Y: receive_invite(invite)
    Y: confirm_pairing("K3J9QZ") -> Y trusts X, returns a PairingReceipt
    X: complete_pairing(receipt) -> X trusts Y

The code never travels: the invite carries an HMAC of it under the
pairing secret, and the receipt proves Y saw the same code. Sessions
expire after a fixed window (default five minutes), checked against
the wall clock on every access. One session per coordinator; a new
one silently supersedes the old.

A wrong code fails without consuming the session. There is no lockout.

Storage layout:
    ~/.vaultsync/pairing/session.enc   # Fernet-encrypted PairingSession
"""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .audit import audit_event
from .config import VaultConfig
from .crypto import InvalidToken, decrypt_at_rest, encrypt_at_rest, sign
from .errors import InvalidCode, NotFound, PairingExpired, StorageUnavailable
from .fileio import atomic_write_text
from .keys import KeyManager
from .models import (
    PairingInvite,
    PairingReceipt,
    PairingRole,
    PairingSession,
    PairingState,
    utcnow,
)
from .trust import TrustStore

logger = logging.getLogger("vaultsync.pairing")

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SECRET_SIZE = 32


def generate_code(length: int = 6) -> str:
    """Random, human-readable code without look-alike characters."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return "".join(ch for ch in code.upper() if ch.isalnum())


def code_digest(shared_secret: bytes, code: str) -> str:
    return sign(shared_secret, b"vaultsync:pair-code:" + normalize_code(code).encode())


def receipt_proof(shared_secret: bytes, code: str, device_id: str) -> str:
    data = f"vaultsync:pair-receipt:{normalize_code(code)}:{device_id}".encode()
    return sign(shared_secret, data)


class PairingCoordinator:
    """Per-device pairing state machine.

    Args:
        home: Vault home directory.
        keys: Key manager (identity, storage key).
        trust: Trust store that receives the new peer.
        config: Pairing window and code length.
        clock: Returns the current UTC time. Injectable for tests.
    """

    def __init__(
        self,
        home: Path,
        keys: KeyManager,
        trust: TrustStore,
        config: Optional[VaultConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._home = home
        self._keys = keys
        self._trust = trust
        self._config = config or VaultConfig()
        self._clock = clock
        self._session_file = home / "pairing" / "session.enc"
        self._lock = threading.RLock()
        self._paired = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> PairingState:
        session = self.active_session()
        if session is not None and not session.is_expired(self._clock()):
            return PairingState.AWAITING_CONFIRMATION
        if self._paired:
            return PairingState.PAIRED
        return PairingState.IDLE

    def active_session(self) -> Optional[PairingSession]:
        """The current session, expired or not, if any."""
        with self._lock:
            return self._load_session()

    def cancel(self) -> None:
        """Discard any session in progress."""
        with self._lock:
            self._clear_session()

    def purge_expired(self) -> bool:
        """Drop an expired session. Returns True if one was removed."""
        with self._lock:
            session = self._load_session()
            if session is None or not session.is_expired(self._clock()):
                return False
            self._clear_session()
        logger.info("Purged expired pairing session for %s", session.peer_name)
        return True

    # ------------------------------------------------------------------
    # Initiator side
    # ------------------------------------------------------------------

    def begin_pairing(self, device_name: str) -> PairingSession:
        """Start pairing with a device that will be known as ``device_name``.

        Supersedes any unconfirmed session.
        """
        now = self._clock()
        secret = secrets.token_bytes(SECRET_SIZE)
        code = generate_code(self._config.pairing_code_length)
        session = PairingSession(
            role=PairingRole.INITIATOR,
            peer_name=device_name,
            shared_secret=secret.hex(),
            code=code,
            code_digest=code_digest(secret, code),
            created_at=now,
            expires_at=now + timedelta(seconds=self._config.pairing_ttl_seconds),
        )
        with self._lock:
            self._save_session(session)
            self._paired = False

        logger.info("Pairing started for '%s', expires %s", device_name, session.expires_at.isoformat())
        audit_event(self._home, "PAIR_BEGIN", f"Pairing started for {device_name}")
        return session

    def invite(self) -> PairingInvite:
        """Build the invite for the other device from the active session.

        Raises:
            NotFound: If no initiator session is active.
            PairingExpired: If the session has expired.
        """
        session = self._require_session(PairingRole.INITIATOR)
        identity = self._keys.get_device_identity()
        info = self._keys.device_info()
        return PairingInvite(
            device_id=identity.device_id,
            device_name=info.name,
            device_class=info.device_class,
            shared_secret=session.shared_secret,
            code_digest=session.code_digest,
            expires_at=session.expires_at,
        )

    def complete_pairing(self, receipt: PairingReceipt) -> str:
        """Verify the confirming device's receipt and trust it.

        Returns:
            The newly trusted device id.

        Raises:
            NotFound: No initiator session in progress.
            PairingExpired: The session expired first.
            InvalidCode: The receipt does not prove knowledge of the code.
        """
        with self._lock:
            session = self._require_session(PairingRole.INITIATOR)
            secret = bytes.fromhex(session.shared_secret)
            expected = receipt_proof(secret, session.code or "", receipt.device_id)
            if not secrets.compare_digest(expected.encode(), receipt.proof.encode("utf-8")):
                self._audit_failure("invalid receipt", receipt.device_id)
                raise InvalidCode("Pairing receipt does not match this session")

            name = session.peer_name or receipt.device_name
            self._trust.add_trusted_peer(
                receipt.device_id,
                name,
                secret,
                device_class=receipt.device_class,
            )
            self._clear_session()
            self._paired = True

        logger.info("Pairing completed with %s (%s)", name, receipt.device_id)
        audit_event(self._home, "PAIR_COMPLETE", f"Paired with {name}", metadata={"device_id": receipt.device_id})
        return receipt.device_id

    # ------------------------------------------------------------------
    # Confirming side
    # ------------------------------------------------------------------

    def receive_invite(self, invite: PairingInvite) -> PairingSession:
        """Open a confirming session from another device's invite.

        Supersedes any unconfirmed session.
        """
        now = self._clock()
        if invite.expires_at <= now:
            raise PairingExpired("Pairing invite has already expired")
        if invite.device_id == self._keys.get_device_identity().device_id:
            raise InvalidCode("A device cannot pair with itself")
        try:
            if len(bytes.fromhex(invite.shared_secret)) != SECRET_SIZE:
                raise ValueError("wrong secret size")
        except ValueError as exc:
            raise InvalidCode("Pairing invite is malformed") from exc

        session = PairingSession(
            role=PairingRole.CONFIRMER,
            peer_name=invite.device_name,
            peer_id=invite.device_id,
            peer_class=invite.device_class,
            shared_secret=invite.shared_secret,
            code_digest=invite.code_digest,
            created_at=now,
            expires_at=invite.expires_at,
        )
        with self._lock:
            self._save_session(session)
            self._paired = False

        logger.info("Pairing invite received from %s (%s)", invite.device_name, invite.device_id)
        audit_event(
            self._home,
            "PAIR_INVITE",
            f"Invite from {invite.device_name}",
            metadata={"device_id": invite.device_id},
        )
        return session

    def confirm_pairing(self, code: str) -> PairingReceipt:
        """Check the code shown on the initiating device and trust it.

        Returns:
            The receipt to hand back to the initiator.

        Raises:
            NotFound: No invite is awaiting a code on this device.
            PairingExpired: The session expired; no peer is trusted.
            InvalidCode: Wrong code; the session stays open.
        """
        with self._lock:
            session = self._require_session(PairingRole.CONFIRMER)
            secret = bytes.fromhex(session.shared_secret)
            if not secrets.compare_digest(code_digest(secret, code).encode(), session.code_digest.encode()):
                self._audit_failure("invalid code", session.peer_id)
                raise InvalidCode("Pairing code does not match")

            self._trust.add_trusted_peer(
                session.peer_id or "",
                session.peer_name,
                secret,
                device_class=session.peer_class,
            )
            self._clear_session()
            self._paired = True

        identity = self._keys.get_device_identity()
        info = self._keys.device_info()
        logger.info("Pairing confirmed with %s (%s)", session.peer_name, session.peer_id)
        audit_event(
            self._home,
            "PAIR_CONFIRM",
            f"Paired with {session.peer_name}",
            metadata={"device_id": session.peer_id},
        )
        return PairingReceipt(
            device_id=identity.device_id,
            device_name=info.name,
            device_class=info.device_class,
            proof=receipt_proof(secret, code, identity.device_id),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_session(self, role: PairingRole) -> PairingSession:
        session = self._load_session()
        if session is None or session.role != role:
            raise NotFound("No pairing in progress on this device")
        if session.is_expired(self._clock()):
            self._audit_failure("expired", session.peer_id)
            raise PairingExpired("Pairing session has expired")
        return session

    def _audit_failure(self, reason: str, device_id: Optional[str]) -> None:
        logger.warning("Pairing attempt rejected: %s", reason)
        audit_event(self._home, "PAIR_FAIL", f"Pairing rejected: {reason}", metadata={"device_id": device_id})

    def _load_session(self) -> Optional[PairingSession]:
        if not self._session_file.exists():
            return None
        try:
            token = self._session_file.read_text(encoding="utf-8")
            raw = decrypt_at_rest(token, self._keys.storage_key())
            return PairingSession.model_validate_json(raw)
        except (InvalidToken, ValidationError, ValueError) as exc:
            logger.warning("Discarding unreadable pairing session: %s", exc)
            self._session_file.unlink(missing_ok=True)
            return None
        except OSError as exc:
            raise StorageUnavailable(f"Pairing session unreadable: {exc}") from exc

    def _save_session(self, session: PairingSession) -> None:
        token = encrypt_at_rest(session.model_dump_json().encode("utf-8"), self._keys.storage_key())
        try:
            atomic_write_text(self._session_file, token, mode=0o600)
        except OSError as exc:
            raise StorageUnavailable(f"Pairing session not writable: {exc}") from exc

    def _clear_session(self) -> None:
        self._session_file.unlink(missing_ok=True)
