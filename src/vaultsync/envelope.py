"""
Wire envelope -- signed, encrypted messages between paired devices.

    {"v": 1, "kind": "sync", "sender": "<device id>",
     "body": "<base64 nonce||ciphertext||tag>", "mac": "<hmac hex>"}

Receivers check, in order: envelope MAC, AES-GCM authentication, and
the signature of the snapshot inside. Any failure is SignatureInvalid
and nothing from the message is used. ``ping``/``pong``/``error``
envelopes are unauthenticated and carry no vault data.
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from . import PROTOCOL_VERSION
from .crypto import InvalidTag, LinkKeys, decrypt_payload, encrypt_payload, sign, verify
from .errors import SignatureInvalid
from .models import SyncSnapshot

PING = "ping"
PONG = "pong"
SYNC = "sync"
REPLY = "reply"
COMMIT = "commit"
ACK = "ack"
ERROR = "error"

SEALED_KINDS = frozenset({SYNC, REPLY, COMMIT, ACK})


class Envelope(BaseModel):
    v: int = PROTOCOL_VERSION
    kind: str
    sender: str
    body: str = ""
    mac: str = ""

    def to_bytes(self) -> bytes:
        return json.dumps(self.model_dump(), separators=(",", ":")).encode("utf-8")

    def _mac_input(self) -> bytes:
        return f"{self.v}|{self.kind}|{self.sender}|{self.body}".encode("utf-8")


def parse(raw: bytes) -> Envelope:
    """Decode envelope bytes. Malformed input is SignatureInvalid."""
    try:
        return Envelope.model_validate_json(raw)
    except ValidationError as exc:
        raise SignatureInvalid("Malformed envelope") from exc


def sign_snapshot(snapshot: SyncSnapshot, mac_key: bytes) -> SyncSnapshot:
    """Return a signed copy of ``snapshot``."""
    return snapshot.model_copy(update={"signature": sign(mac_key, snapshot.canonical_bytes())})


def verify_snapshot(snapshot: SyncSnapshot, mac_key: bytes) -> None:
    if not verify(mac_key, snapshot.canonical_bytes(), snapshot.signature):
        raise SignatureInvalid(f"Snapshot from {snapshot.origin_device} has an invalid signature")


def seal(kind: str, sender: str, plaintext: bytes, keys: LinkKeys) -> bytes:
    """Encrypt and sign a message for a trusted peer."""
    aad = f"{kind}|{sender}".encode("utf-8")
    body = base64.b64encode(encrypt_payload(keys.enc_key, plaintext, aad)).decode("ascii")
    envelope = Envelope(kind=kind, sender=sender, body=body)
    envelope.mac = sign(keys.mac_key, envelope._mac_input())
    return envelope.to_bytes()


def open_sealed(envelope: Envelope, keys: LinkKeys) -> bytes:
    """Verify and decrypt a sealed envelope.

    Raises:
        SignatureInvalid: On any MAC, decoding or authentication failure.
    """
    if envelope.kind not in SEALED_KINDS:
        raise SignatureInvalid(f"Envelope kind '{envelope.kind}' is not sealed")
    if not verify(keys.mac_key, envelope._mac_input(), envelope.mac):
        raise SignatureInvalid(f"Envelope from {envelope.sender} failed MAC check")
    try:
        data = base64.b64decode(envelope.body, validate=True)
        aad = f"{envelope.kind}|{envelope.sender}".encode("utf-8")
        return decrypt_payload(keys.enc_key, data, aad)
    except (binascii.Error, InvalidTag) as exc:
        raise SignatureInvalid(f"Envelope from {envelope.sender} failed decryption") from exc


def seal_snapshot(kind: str, snapshot: SyncSnapshot, keys: LinkKeys) -> bytes:
    """Sign a snapshot and seal it for the wire."""
    signed = sign_snapshot(snapshot, keys.mac_key)
    return seal(kind, snapshot.origin_device, signed.model_dump_json().encode("utf-8"), keys)


def open_snapshot(envelope: Envelope, keys: LinkKeys) -> SyncSnapshot:
    """Open a sealed envelope and verify the snapshot inside it."""
    plaintext = open_sealed(envelope, keys)
    try:
        snapshot = SyncSnapshot.model_validate_json(plaintext)
    except ValidationError as exc:
        raise SignatureInvalid("Sealed payload is not a snapshot") from exc
    if snapshot.origin_device != envelope.sender:
        raise SignatureInvalid("Snapshot origin does not match envelope sender")
    verify_snapshot(snapshot, keys.mac_key)
    return snapshot


def plain(kind: str, sender: str, data: dict[str, Any]) -> bytes:
    """An unauthenticated envelope (ping, pong, error)."""
    body = base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")
    return Envelope(kind=kind, sender=sender, body=body).to_bytes()


def plain_body(envelope: Envelope) -> dict[str, Any]:
    try:
        data = json.loads(base64.b64decode(envelope.body, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise SignatureInvalid("Malformed envelope body") from exc
    if not isinstance(data, dict):
        raise SignatureInvalid("Malformed envelope body")
    return data


class CommitPayload(BaseModel):
    """Merged state pushed to the responder after a successful pass.

    ``resolved`` maps entity keys the initiator decided explicitly to the
    responder-side ``modified`` timestamp it decided against, so the
    responder can accept those entities only if they have not moved since.
    """

    snapshot: SyncSnapshot
    resolved: dict[str, datetime] = Field(default_factory=dict)


def seal_commit(snapshot: SyncSnapshot, resolved: dict[str, datetime], keys: LinkKeys) -> bytes:
    payload = CommitPayload(snapshot=sign_snapshot(snapshot, keys.mac_key), resolved=resolved)
    return seal(COMMIT, snapshot.origin_device, payload.model_dump_json().encode("utf-8"), keys)


def open_commit(envelope: Envelope, keys: LinkKeys) -> CommitPayload:
    """Open a commit envelope and verify the snapshot it carries."""
    plaintext = open_sealed(envelope, keys)
    try:
        payload = CommitPayload.model_validate_json(plaintext)
    except ValidationError as exc:
        raise SignatureInvalid("Sealed payload is not a commit") from exc
    if payload.snapshot.origin_device != envelope.sender:
        raise SignatureInvalid("Commit origin does not match envelope sender")
    verify_snapshot(payload.snapshot, keys.mac_key)
    return payload
