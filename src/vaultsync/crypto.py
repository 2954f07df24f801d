"""
Cryptographic helpers.

    PBKDF2-HMAC-SHA256   per-peer key derivation (master secret as salt)
    HKDF-SHA256          sub-keys (storage key, link keys)
    Fernet               key material and pairing sessions at rest
    AES-256-GCM          sync payloads: nonce (12) || ciphertext || tag (16)
    HMAC-SHA256          snapshot and envelope signatures
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

NONCE_SIZE = 12
KEY_SIZE = 32

__all__ = [
    "InvalidTag",
    "InvalidToken",
    "LinkKeys",
    "decrypt_at_rest",
    "decrypt_payload",
    "derive_key",
    "derive_link_keys",
    "encrypt_at_rest",
    "encrypt_payload",
    "pbkdf2_derive",
    "sign",
    "verify",
]


class LinkKeys(NamedTuple):
    """Symmetric keys shared by both ends of a trusted link."""

    enc_key: bytes
    mac_key: bytes


def derive_key(material: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    """Derive a key with HKDF-SHA256 (no salt)."""
    return HKDF(algorithm=SHA256(), length=length, salt=None, info=info).derive(material)


def pbkdf2_derive(secret: bytes, salt: bytes, iterations: int, length: int = KEY_SIZE) -> bytes:
    """Password-based derivation with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(algorithm=SHA256(), length=length, salt=salt, iterations=iterations)
    return kdf.derive(secret)


def derive_link_keys(shared_secret: bytes, device_a: str, device_b: str) -> LinkKeys:
    """Derive the wire keys for a pair of devices.

    Device order does not matter; both ends compute the same keys.
    """
    pair = "|".join(sorted((device_a, device_b)))
    raw = derive_key(shared_secret, f"vaultsync:link:v1:{pair}".encode(), length=2 * KEY_SIZE)
    return LinkKeys(enc_key=raw[:KEY_SIZE], mac_key=raw[KEY_SIZE:])


def _fernet(key_material: bytes) -> Fernet:
    return Fernet(base64.urlsafe_b64encode(key_material[:KEY_SIZE]))


def encrypt_at_rest(data: bytes, key_material: bytes) -> str:
    """Encrypt with Fernet, returning the token as text."""
    return _fernet(key_material).encrypt(data).decode("ascii")


def decrypt_at_rest(token: str, key_material: bytes) -> bytes:
    """Decrypt a Fernet token. Raises InvalidToken on tampering or wrong key."""
    return _fernet(key_material).decrypt(token.encode("ascii"))


def encrypt_payload(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
    """AES-256-GCM encrypt. Returns nonce || ciphertext || tag."""
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, associated_data or None)


def decrypt_payload(key: bytes, data: bytes, associated_data: bytes = b"") -> bytes:
    """AES-256-GCM decrypt. Raises InvalidTag if anything was altered."""
    if len(data) <= NONCE_SIZE:
        raise InvalidTag()
    nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
    return AESGCM(key).decrypt(nonce, ciphertext, associated_data or None)


def sign(key: bytes, data: bytes) -> str:
    """HMAC-SHA256 hex signature."""
    return hmac.new(key, data, hashlib.sha256).hexdigest()


def verify(key: bytes, data: bytes, signature: str) -> bool:
    """Constant-time signature check."""
    return hmac.compare_digest(sign(key, data).encode(), (signature or "").encode("utf-8"))
