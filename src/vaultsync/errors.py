"""
Error taxonomy for the sync engine.

Every failure the engine can report has a stable code so callers can
tell "could not reach the device" apart from "security check failed"
and from "wrong pairing code". Components raise these; the
application-facing VaultContext turns them into result values.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable error identifiers exposed to the surrounding application."""

    UNTRUSTED_PEER = "UntrustedPeer"
    TRANSPORT_FAILURE = "TransportFailure"
    SIGNATURE_INVALID = "SignatureInvalid"
    EXPIRED = "Expired"
    INVALID_CODE = "InvalidCode"
    ALREADY_TRUSTED = "AlreadyTrusted"
    NOT_FOUND = "NotFound"
    STORAGE_UNAVAILABLE = "StorageUnavailable"


REMEDIES: dict[ErrorCode, str] = {
    ErrorCode.UNTRUSTED_PEER: "re-pair",
    ErrorCode.SIGNATURE_INVALID: "re-pair",
    ErrorCode.TRANSPORT_FAILURE: "retry",
    ErrorCode.STORAGE_UNAVAILABLE: "retry",
    ErrorCode.INVALID_CODE: "re-enter",
    ErrorCode.EXPIRED: "restart-pairing",
    ErrorCode.NOT_FOUND: "restart-pairing",
    ErrorCode.ALREADY_TRUSTED: "none",
}


class VaultSyncError(Exception):
    """Base class for all engine errors."""

    code: ErrorCode = ErrorCode.STORAGE_UNAVAILABLE

    @property
    def remedy(self) -> str:
        return REMEDIES[self.code]


class UntrustedPeer(VaultSyncError):
    """The peer is unknown to the trust store or not marked trusted."""

    code = ErrorCode.UNTRUSTED_PEER


class TransportFailure(VaultSyncError):
    """The transport could not deliver the exchange.

    Safe to retry: no state was mutated.
    """

    code = ErrorCode.TRANSPORT_FAILURE

    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"

    def __init__(self, message: str, reason: str = UNREACHABLE):
        super().__init__(message)
        self.reason = reason


class SignatureInvalid(VaultSyncError):
    """A payload failed integrity or authenticity verification."""

    code = ErrorCode.SIGNATURE_INVALID


class PairingExpired(VaultSyncError):
    """The pairing session passed its expiry."""

    code = ErrorCode.EXPIRED


class InvalidCode(VaultSyncError):
    """The pairing code (or receipt proof) does not match the session."""

    code = ErrorCode.INVALID_CODE


class AlreadyTrusted(VaultSyncError):
    """The device is already in the trust store."""

    code = ErrorCode.ALREADY_TRUSTED


class NotFound(VaultSyncError):
    """A peer or pairing session does not exist."""

    code = ErrorCode.NOT_FOUND


class StorageUnavailable(VaultSyncError):
    """A persistence layer could not be read or written."""

    code = ErrorCode.STORAGE_UNAVAILABLE


_BY_CODE: dict[ErrorCode, type[VaultSyncError]] = {
    cls.code: cls
    for cls in (
        UntrustedPeer,
        TransportFailure,
        SignatureInvalid,
        PairingExpired,
        InvalidCode,
        AlreadyTrusted,
        NotFound,
        StorageUnavailable,
    )
}


def error_from_code(code: str, message: Optional[str] = None) -> VaultSyncError:
    """Rebuild an error from its wire code (used for responder refusals).

    Unknown codes map to SignatureInvalid: a reply we cannot interpret
    is not something to merge.
    """
    try:
        cls = _BY_CODE[ErrorCode(code)]
    except ValueError:
        cls = SignatureInvalid
    return cls(message or code)


def error_remedy(code: str) -> str:
    """User remedy for a wire or result error code."""
    try:
        return REMEDIES[ErrorCode(code)]
    except ValueError:
        return REMEDIES[ErrorCode.SIGNATURE_INVALID]
