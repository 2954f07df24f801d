"""Tests for vaultsync.storage -- vault state adapters."""

from __future__ import annotations

from pathlib import Path

import pytest

from vaultsync.errors import StorageUnavailable
from vaultsync.models import FolderRecord, LocalState, SettingRecord
from vaultsync.storage import JsonFileStorage, MemoryStorage

from conftest import file_record


@pytest.fixture
def state() -> LocalState:
    return LocalState(
        files=[file_record("f1", "2024-01-01T00:00:00Z")],
        folders=[FolderRecord(id="d1", name="Docs", modified="2024-01-01T00:00:00Z")],
        settings={"theme": SettingRecord(key="theme", value="dark", modified="2024-01-01T00:00:00Z")},
    )


class TestMemoryStorage:
    """In-process adapter."""

    def test_starts_empty(self) -> None:
        assert MemoryStorage().read_local_state() == LocalState()

    def test_reads_are_copies(self, state: LocalState) -> None:
        store = MemoryStorage(state)
        store.read_local_state().files.clear()
        assert len(store.read_local_state().files) == 1

    def test_counts_writes(self, state: LocalState) -> None:
        store = MemoryStorage()
        store.write_local_state(state)
        assert store.writes == 1
        assert store.read_local_state().content_equals(state)


class TestJsonFileStorage:
    """File-backed adapter."""

    def test_missing_file_is_empty_state(self, tmp_path: Path) -> None:
        assert JsonFileStorage(tmp_path / "vault" / "state.json").read_local_state() == LocalState()

    def test_write_then_read(self, tmp_path: Path, state: LocalState) -> None:
        path = tmp_path / "vault" / "state.json"
        JsonFileStorage(path).write_local_state(state)
        assert JsonFileStorage(path).read_local_state().content_equals(state)

    def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(StorageUnavailable):
            JsonFileStorage(path).read_local_state()

    def test_setting_under_wrong_name(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(
            '{"settings": {"colour": {"kind": "setting", "key": "theme", "modified": "2024-01-01T00:00:00Z"}}}',
            encoding="utf-8",
        )
        with pytest.raises(StorageUnavailable):
            JsonFileStorage(path).read_local_state()

    def test_unwritable_location(self, tmp_path: Path, state: LocalState) -> None:
        blocker = tmp_path / "blocked"
        blocker.write_text("x", encoding="utf-8")
        with pytest.raises(StorageUnavailable):
            JsonFileStorage(blocker / "state.json").write_local_state(state)
