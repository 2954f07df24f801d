"""Tests for vaultsync.models and vaultsync.errors."""

from __future__ import annotations

from datetime import timezone

import pytest
from pydantic import ValidationError

from vaultsync.errors import (
    ErrorCode,
    InvalidCode,
    PairingExpired,
    SignatureInvalid,
    TransportFailure,
    error_from_code,
)
from vaultsync.models import (
    ConflictRecord,
    EntityKind,
    FileRecord,
    LocalState,
    SettingRecord,
    SyncOutcome,
    SyncSnapshot,
)


class TestRecords:
    """Tagged vault records."""

    def test_naive_timestamps_are_utc(self) -> None:
        record = FileRecord(id="f1", modified="2024-01-01T00:00:00")
        assert record.modified.tzinfo == timezone.utc

    def test_kind_tags(self) -> None:
        assert FileRecord(id="f1", modified="2024-01-01T00:00:00Z").kind == "file"
        assert SettingRecord(key="k", modified="2024-01-01T00:00:00Z").entity_id == "k"

    def test_snapshot_is_frozen(self) -> None:
        snapshot = SyncSnapshot.from_state(LocalState(), "dev-a")
        with pytest.raises(ValidationError):
            snapshot.origin_device = "dev-b"

    def test_snapshot_state_roundtrip(self) -> None:
        state = LocalState(files=[FileRecord(id="f1", modified="2024-01-01T00:00:00Z")])
        assert SyncSnapshot.from_state(state, "dev-a").to_state().content_equals(state)

    def test_settings_must_be_stored_under_their_key(self) -> None:
        record = SettingRecord(key="theme", value="dark", modified="2024-01-01T00:00:00Z")
        assert LocalState(settings={"theme": record}).settings["theme"] is not None
        with pytest.raises(ValidationError):
            LocalState(settings={"colour": record})
        with pytest.raises(ValidationError):
            SyncSnapshot(origin_device="dev-a", settings={"colour": record})

    def test_mismatched_settings_rejected_from_json(self) -> None:
        raw = '{"settings": {"a": {"kind": "setting", "key": "b", "modified": "2024-01-01T00:00:00Z"}}}'
        with pytest.raises(ValidationError):
            LocalState.model_validate_json(raw)

    def test_conflict_key(self) -> None:
        conflict = ConflictRecord(entity_id="d1", kind=EntityKind.FOLDER, local_version={}, remote_version={})
        assert conflict.key == "folder:d1"


class TestOutcome:
    """Outcome categories and remedies."""

    @pytest.mark.parametrize(
        "error,status,remedy",
        [
            ("TransportFailure", "unreachable", "retry"),
            ("StorageUnavailable", "storage", "retry"),
            ("SignatureInvalid", "security", "re-pair"),
            ("UntrustedPeer", "security", "re-pair"),
        ],
    )
    def test_failures(self, error: str, status: str, remedy: str) -> None:
        outcome = SyncOutcome(success=False, peer_id="p", error=error)
        assert outcome.status == status
        assert outcome.remedy == remedy

    def test_success(self) -> None:
        outcome = SyncOutcome(success=True, peer_id="p")
        assert outcome.status == "synced"
        assert outcome.remedy is None

    def test_remote_snapshot_not_serialized(self) -> None:
        outcome = SyncOutcome(
            success=False,
            peer_id="p",
            remote_snapshot=SyncSnapshot.from_state(LocalState(), "p"),
        )
        assert "remote_snapshot" not in outcome.model_dump()


class TestErrors:
    """Error codes."""

    def test_codes(self) -> None:
        assert PairingExpired("x").code == ErrorCode.EXPIRED
        assert InvalidCode("x").remedy == "re-enter"

    def test_transport_reason(self) -> None:
        assert TransportFailure("x").reason == "unreachable"
        assert TransportFailure("x", TransportFailure.TIMEOUT).reason == "timeout"

    def test_error_from_code(self) -> None:
        assert isinstance(error_from_code("Expired"), PairingExpired)
        assert isinstance(error_from_code("bogus"), SignatureInvalid)
