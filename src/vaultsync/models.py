"""
Pydantic models for the vault sync engine.

Vault contents travel as explicit tagged records (files, folders,
settings) with required fields and a schema version, never as loose
dicts. Snapshots are frozen: a signed snapshot is a fresh value.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import error_remedy

RECORD_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DeviceClass(str, Enum):
    """Kind of device, for display only."""

    PHONE = "phone"
    TABLET = "tablet"
    DESKTOP = "desktop"
    WEB = "web"


class EntityKind(str, Enum):
    """Vault entity variants that can diverge between devices."""

    FILE = "file"
    FOLDER = "folder"
    SETTING = "setting"


class Resolution(str, Enum):
    """How a conflict was (or should be) decided."""

    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    MERGED = "merged"


# ---------------------------------------------------------------------------
# Vault records
# ---------------------------------------------------------------------------


class _Record(BaseModel):
    """Common shape for every syncable entity."""

    model_config = ConfigDict(extra="allow")

    schema_version: int = RECORD_SCHEMA_VERSION
    modified: datetime

    @field_validator("modified")
    @classmethod
    def _normalize_modified(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def entity_id(self) -> str:
        raise NotImplementedError


class FileRecord(_Record):
    """A file stored in the vault (metadata only; content lives elsewhere)."""

    kind: Literal["file"] = "file"
    id: str
    name: str = ""
    folder_id: Optional[str] = None
    size: int = 0
    mime_type: str = "application/octet-stream"
    checksum: Optional[str] = None

    @property
    def entity_id(self) -> str:
        return self.id


class FolderRecord(_Record):
    """A vault folder."""

    kind: Literal["folder"] = "folder"
    id: str
    name: str = ""
    parent_id: Optional[str] = None

    @property
    def entity_id(self) -> str:
        return self.id


class SettingRecord(_Record):
    """A single vault setting. The key is its identity."""

    kind: Literal["setting"] = "setting"
    key: str
    value: Any = None

    @property
    def entity_id(self) -> str:
        return self.key


VaultRecord = Union[FileRecord, FolderRecord, SettingRecord]


def _check_setting_keys(settings: dict[str, SettingRecord]) -> None:
    for name, record in settings.items():
        if name != record.key:
            raise ValueError(f"setting stored under '{name}' has key '{record.key}'")


class LocalState(BaseModel):
    """Everything the storage adapter holds for one device."""

    files: list[FileRecord] = Field(default_factory=list)
    folders: list[FolderRecord] = Field(default_factory=list)
    settings: dict[str, SettingRecord] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _settings_keyed_by_key(self) -> "LocalState":
        _check_setting_keys(self.settings)
        return self

    def content_equals(self, other: "LocalState") -> bool:
        return self.model_dump(mode="json") == other.model_dump(mode="json")


class SyncSnapshot(BaseModel):
    """Signed, immutable view of a device's vault at one instant.

    The signature is an HMAC over ``canonical_bytes()`` and is produced
    by ``envelope.sign_snapshot``; signing yields a new snapshot.
    """

    model_config = ConfigDict(frozen=True)

    schema_version: int = RECORD_SCHEMA_VERSION
    origin_device: str
    created_at: datetime = Field(default_factory=utcnow)
    files: list[FileRecord] = Field(default_factory=list)
    folders: list[FolderRecord] = Field(default_factory=list)
    settings: dict[str, SettingRecord] = Field(default_factory=dict)
    signature: str = ""

    @model_validator(mode="after")
    def _settings_keyed_by_key(self) -> "SyncSnapshot":
        _check_setting_keys(self.settings)
        return self

    @classmethod
    def from_state(cls, state: LocalState, origin_device: str) -> "SyncSnapshot":
        return cls(
            origin_device=origin_device,
            files=list(state.files),
            folders=list(state.folders),
            settings=dict(state.settings),
        )

    def to_state(self) -> LocalState:
        return LocalState(
            files=list(self.files),
            folders=list(self.folders),
            settings=dict(self.settings),
        )

    def canonical_bytes(self) -> bytes:
        """Deterministic serialization of everything except the signature."""
        data = self.model_dump(mode="json", exclude={"signature"})
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


class ConflictRecord(BaseModel):
    """One entity whose local and remote versions disagree."""

    entity_id: str
    kind: EntityKind
    local_version: dict[str, Any]
    remote_version: dict[str, Any]
    resolution: Optional[Resolution] = None

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.entity_id}"


# ---------------------------------------------------------------------------
# Identity, trust, pairing
# ---------------------------------------------------------------------------


class DeviceIdentity(BaseModel):
    """This device's stable identity."""

    device_id: str
    created_at: datetime = Field(default_factory=utcnow)
    ephemeral: bool = False


class DeviceInfo(BaseModel):
    """Display-only description of a device."""

    name: str
    device_class: DeviceClass = DeviceClass.DESKTOP


class TrustedPeer(BaseModel):
    """A paired device, as persisted by the trust store.

    ``derived_key_enc`` is the Fernet-encrypted per-peer key and
    ``wrapped_secret`` the pairing secret wrapped under that key.
    Neither leaves the trust store in summaries.
    """

    device_id: str
    name: str
    device_class: DeviceClass = DeviceClass.DESKTOP
    trusted: bool = True
    added_at: datetime = Field(default_factory=utcnow)
    last_seen: Optional[datetime] = None
    derived_key_enc: str
    wrapped_secret: str
    key_version: int = 1

    def summary(self) -> "PeerSummary":
        return PeerSummary(
            device_id=self.device_id,
            name=self.name,
            device_class=self.device_class,
            last_seen=self.last_seen,
        )


class PeerSummary(BaseModel):
    """Public view of a trusted peer."""

    device_id: str
    name: str
    device_class: DeviceClass
    last_seen: Optional[datetime] = None


class PairingRole(str, Enum):
    INITIATOR = "initiator"
    CONFIRMER = "confirmer"


class PairingState(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    PAIRED = "paired"


class PairingSession(BaseModel):
    """A short-lived pairing handshake.

    On the initiating device ``code`` is set and ``peer_id`` is unknown
    until a receipt arrives. On the confirming device only the code
    digest is known and ``peer_id`` is the initiator.
    """

    role: PairingRole
    peer_name: str
    shared_secret: str
    code_digest: str
    code: Optional[str] = None
    peer_id: Optional[str] = None
    peer_class: DeviceClass = DeviceClass.DESKTOP
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class PairingInvite(BaseModel):
    """What the initiator hands to the other device, out of band."""

    device_id: str
    device_name: str
    device_class: DeviceClass = DeviceClass.DESKTOP
    shared_secret: str
    code_digest: str
    expires_at: datetime


class PairingReceipt(BaseModel):
    """What the confirming device returns to the initiator."""

    device_id: str
    device_name: str
    device_class: DeviceClass = DeviceClass.DESKTOP
    proof: str


# ---------------------------------------------------------------------------
# Outcomes and state
# ---------------------------------------------------------------------------


class SyncOutcome(BaseModel):
    """Result of one sync pass (or conflict resolution).

    ``remote_snapshot`` is kept so ``resolve_conflicts`` can finish the
    pass without another exchange.
    """

    success: bool
    peer_id: str
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    error: Optional[str] = None
    message: str = ""
    peer_applied: Optional[bool] = None
    merged_files: int = 0
    remote_snapshot: Optional[SyncSnapshot] = Field(default=None, exclude=True, repr=False)

    @property
    def status(self) -> str:
        """User-facing category: synced, conflicts, unreachable, security, storage."""
        if self.success:
            return "synced"
        if self.conflicts:
            return "conflicts"
        if self.error == "TransportFailure":
            return "unreachable"
        if self.error == "StorageUnavailable":
            return "storage"
        return "security"

    @property
    def remedy(self) -> Optional[str]:
        """What the user should do next, if anything."""
        if self.success:
            return None
        if self.conflicts:
            return "choose"
        if self.error is None:
            return None
        return error_remedy(self.error)


class ActionResult(BaseModel):
    """Boundary result for non-sync operations."""

    ok: bool
    value: Any = None
    error: Optional[str] = None
    message: str = ""
    remedy: Optional[str] = None


class SyncHistoryEntry(BaseModel):
    peer_id: str
    peer_name: str = ""
    at: datetime = Field(default_factory=utcnow)
    status: str
    file_count: int = 0
    conflict_count: int = 0


class SyncState(BaseModel):
    """Sync counters and recent history, persisted to disk."""

    last_sync: Optional[datetime] = None
    last_peer: Optional[str] = None
    sync_count: int = 0
    failure_count: int = 0
    conflict_count: int = 0
    last_error: Optional[str] = None
    history: list[SyncHistoryEntry] = Field(default_factory=list)
