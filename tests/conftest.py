"""Shared test fixtures for vaultsync."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest

from vaultsync.config import VaultConfig
from vaultsync.context import VaultContext
from vaultsync.device import StaticDeviceInfo
from vaultsync.keys import KeyManager
from vaultsync.models import DeviceClass, FileRecord, LocalState
from vaultsync.storage import MemoryStorage, StorageAdapter
from vaultsync.transport import LoopbackNetwork, LoopbackTransport
from vaultsync.trust import TrustStore


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def file_record(file_id: str, modified: str, name: str = "") -> FileRecord:
    return FileRecord(id=file_id, name=name or f"{file_id}.txt", modified=modified)


def pair_devices(x: VaultContext, y: VaultContext, name_for_y: str = "Y") -> tuple[str, str]:
    """Run the full two-sided pairing flow. Returns (x id, y id)."""
    started = x.begin_pairing(name_for_y)
    assert started.ok, started.message
    invite = x.pairing_invite().value
    assert y.receive_invite(invite).ok
    receipt = y.confirm_pairing(started.value["code"])
    assert receipt.ok, receipt.message
    assert x.complete_pairing(receipt.value).ok
    return x.device_id, y.device_id


@pytest.fixture
def fast_config() -> VaultConfig:
    """Config with cheap key derivation and short timeouts."""
    return VaultConfig(
        device_name="test-device",
        kdf_iterations=1000,
        transport_timeout=5.0,
        storage_timeout=5.0,
    )


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """A temporary vault home."""
    vault_home = tmp_path / ".vaultsync"
    vault_home.mkdir()
    return vault_home


@pytest.fixture
def keys(home: Path, fast_config: VaultConfig) -> KeyManager:
    return KeyManager(home, fast_config, StaticDeviceInfo("laptop", DeviceClass.DESKTOP))


@pytest.fixture
def trust(home: Path, keys: KeyManager) -> TrustStore:
    return TrustStore(home, keys)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def network() -> LoopbackNetwork:
    return LoopbackNetwork()


@pytest.fixture
def make_device(
    tmp_path: Path,
    fast_config: VaultConfig,
    network: LoopbackNetwork,
    clock: FakeClock,
) -> Callable[..., VaultContext]:
    """Factory for in-process devices connected through one loopback network."""
    opened: list[VaultContext] = []

    def factory(
        name: str,
        state: Optional[LocalState] = None,
        storage: Optional[StorageAdapter] = None,
        device_class: DeviceClass = DeviceClass.DESKTOP,
    ) -> VaultContext:
        ctx = VaultContext.open(
            tmp_path / name,
            storage=storage or MemoryStorage(state),
            transport=LoopbackTransport(network),
            device_provider=StaticDeviceInfo(name, device_class),
            config=fast_config,
            clock=clock,
        )
        network.attach(ctx.device_id, ctx.handle_request)
        opened.append(ctx)
        return ctx

    yield factory

    for ctx in opened:
        ctx.close()


@pytest.fixture
def paired(make_device):
    """Two paired devices, X and Y, with empty vaults."""
    x = make_device("X")
    y = make_device("Y", device_class=DeviceClass.PHONE)
    pair_devices(x, y)
    return x, y
