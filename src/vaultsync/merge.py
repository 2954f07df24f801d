"""
Conflict detection and merge policy.

An entity is identified by (kind, id). Present on both sides with
different ``modified`` timestamps: a conflict, decided by the caller.
Present on one side only: an addition. Same timestamp on both sides:
the local copy is kept. The merge itself never guesses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator, Mapping, Optional, Union

from pydantic import TypeAdapter

from .models import (
    ConflictRecord,
    EntityKind,
    FileRecord,
    FolderRecord,
    LocalState,
    Resolution,
    SettingRecord,
    VaultRecord,
)

_RECORD_TYPES = {
    EntityKind.FILE: FileRecord,
    EntityKind.FOLDER: FolderRecord,
    EntityKind.SETTING: SettingRecord,
}

Resolutions = Union[Resolution, Mapping[str, Resolution]]

_TIMESTAMP = TypeAdapter(datetime)


def entity_key(kind: EntityKind, entity_id: str) -> str:
    return f"{kind.value}:{entity_id}"


def iter_entities(state: LocalState) -> Iterator[tuple[str, VaultRecord]]:
    """Yield (key, record) for every entity, in storage order."""
    for record in state.files:
        yield entity_key(EntityKind.FILE, record.entity_id), record
    for record in state.folders:
        yield entity_key(EntityKind.FOLDER, record.entity_id), record
    for key in state.settings:
        record = state.settings[key]
        yield entity_key(EntityKind.SETTING, record.entity_id), record


def detect_conflicts(local: LocalState, remote: LocalState) -> list[ConflictRecord]:
    """Entities present on both sides whose modification times differ."""
    remote_index = dict(iter_entities(remote))
    conflicts = []
    for key, local_record in iter_entities(local):
        remote_record = remote_index.get(key)
        if remote_record is None or remote_record.modified == local_record.modified:
            continue
        conflicts.append(
            ConflictRecord(
                entity_id=local_record.entity_id,
                kind=EntityKind(local_record.kind),
                local_version=local_record.model_dump(mode="json"),
                remote_version=remote_record.model_dump(mode="json"),
            )
        )
    return conflicts


def merge_states(
    local: LocalState,
    remote: LocalState,
    chosen: Optional[Mapping[str, VaultRecord]] = None,
) -> LocalState:
    """Union of both sides by entity key.

    Local order is kept and remote-only entities are appended in remote
    order. For entities on both sides the record in ``chosen`` wins if
    given, otherwise the local copy is used.
    """
    chosen = chosen or {}
    local_keys = {key for key, _ in iter_entities(local)}

    def pick(key: str, record: VaultRecord) -> VaultRecord:
        return chosen.get(key, record)

    files = [pick(entity_key(EntityKind.FILE, r.id), r) for r in local.files]
    files += [r for r in remote.files if entity_key(EntityKind.FILE, r.id) not in local_keys]

    folders = [pick(entity_key(EntityKind.FOLDER, r.id), r) for r in local.folders]
    folders += [r for r in remote.folders if entity_key(EntityKind.FOLDER, r.id) not in local_keys]

    settings = {}
    for name, record in local.settings.items():
        settings[name] = pick(entity_key(EntityKind.SETTING, record.key), record)
    for name, record in remote.settings.items():
        if entity_key(EntityKind.SETTING, record.key) not in local_keys:
            settings[name] = record

    return LocalState(files=files, folders=folders, settings=settings)


def resolution_for(conflict: ConflictRecord, resolutions: Resolutions) -> Optional[Resolution]:
    if isinstance(resolutions, Resolution):
        return resolutions
    return resolutions.get(conflict.key) or resolutions.get(conflict.entity_id)


def apply_resolution(conflict: ConflictRecord, resolution: Resolution) -> VaultRecord:
    """Build the winning record for a decided conflict.

    ``merged`` keeps whichever side was modified last.
    """
    if resolution == Resolution.LOCAL_WINS:
        version = conflict.local_version
    elif resolution == Resolution.REMOTE_WINS:
        version = conflict.remote_version
    else:
        local = _record(conflict.kind, conflict.local_version)
        remote = _record(conflict.kind, conflict.remote_version)
        return remote if remote.modified > local.modified else local
    return _record(conflict.kind, version)


def _record(kind: EntityKind, version: dict) -> VaultRecord:
    return _RECORD_TYPES[kind].model_validate(version)


def modified_at(version: dict[str, Any]) -> datetime:
    """The ``modified`` timestamp of a dumped record version."""
    return _TIMESTAMP.validate_python(version["modified"])
