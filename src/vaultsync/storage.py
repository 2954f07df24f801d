"""
Storage adapters -- where the vault's files, folders and settings live.

The engine only reads and writes whole LocalState values. Each call is
atomic: a concurrent reader sees the state before or after a write,
never a mix.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import StorageUnavailable
from .fileio import atomic_write_text
from .models import LocalState

logger = logging.getLogger("vaultsync.storage")


class StorageAdapter(ABC):
    """Abstract vault state store."""

    @abstractmethod
    def read_local_state(self) -> LocalState:
        """Return the full local state.

        Raises:
            StorageUnavailable: If the state cannot be read.
        """

    @abstractmethod
    def write_local_state(self, state: LocalState) -> None:
        """Replace the full local state.

        Raises:
            StorageUnavailable: If the state cannot be written.
        """


class MemoryStorage(StorageAdapter):
    """In-process store (tests, embedding)."""

    def __init__(self, state: Optional[LocalState] = None):
        self._state = (state or LocalState()).model_copy(deep=True)
        self._lock = threading.Lock()
        self.writes = 0

    def read_local_state(self) -> LocalState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def write_local_state(self, state: LocalState) -> None:
        with self._lock:
            self._state = state.model_copy(deep=True)
            self.writes += 1


class JsonFileStorage(StorageAdapter):
    """Vault state in a single JSON document, replaced atomically.

    Args:
        path: State file, typically ~/.vaultsync/vault/state.json.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def read_local_state(self) -> LocalState:
        with self._lock:
            if not self.path.exists():
                return LocalState()
            try:
                return LocalState.model_validate_json(self.path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                raise StorageUnavailable(f"Vault state unreadable: {exc}") from exc

    def write_local_state(self, state: LocalState) -> None:
        with self._lock:
            try:
                atomic_write_text(self.path, state.model_dump_json(indent=2))
            except OSError as exc:
                raise StorageUnavailable(f"Vault state not writable: {exc}") from exc
        logger.debug(
            "Vault state written: %d files, %d folders, %d settings",
            len(state.files),
            len(state.folders),
            len(state.settings),
        )
