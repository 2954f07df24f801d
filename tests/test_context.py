"""Tests for vaultsync.context -- the application-facing surface."""

from __future__ import annotations

from pathlib import Path

from vaultsync.context import VaultContext
from vaultsync.device import StaticDeviceInfo
from vaultsync.models import ActionResult, PairingReceipt, SyncOutcome
from vaultsync.storage import JsonFileStorage
from vaultsync.transport import NullTransport

from conftest import pair_devices


class TestOpen:
    """Defaults and lifecycle."""

    def test_defaults(self, tmp_path: Path, fast_config) -> None:
        with VaultContext.open(tmp_path / "vault", config=fast_config) as vault:
            assert isinstance(vault.engine._storage, JsonFileStorage)
            assert isinstance(vault.engine._transport, NullTransport)
            assert vault.home == tmp_path / "vault"

    def test_loads_config_from_home(self, tmp_path: Path) -> None:
        home = tmp_path / "vault"
        (home / "config").mkdir(parents=True)
        (home / "config" / "config.yaml").write_text("history_limit: 7\n", encoding="utf-8")
        with VaultContext.open(home) as vault:
            assert vault.config.history_limit == 7

    def test_two_homes_are_two_devices(self, tmp_path: Path, fast_config) -> None:
        with VaultContext.open(tmp_path / "a", config=fast_config) as a, \
                VaultContext.open(tmp_path / "b", config=fast_config) as b:
            assert a.device_id != b.device_id

    def test_close_is_idempotent(self, tmp_path: Path, fast_config) -> None:
        vault = VaultContext.open(tmp_path / "vault", config=fast_config)
        vault.close()
        vault.close()


class TestResults:
    """Errors come back as values."""

    def test_identity(self, tmp_path: Path, fast_config) -> None:
        with VaultContext.open(
            tmp_path / "vault", config=fast_config, device_provider=StaticDeviceInfo("desk")
        ) as vault:
            result = vault.identity()
            assert result.ok
            assert result.value["name"] == "desk"
            assert result.value["ephemeral"] is False

    def test_corrupt_identity_reported(self, tmp_path: Path, fast_config) -> None:
        home = tmp_path / "vault"
        (home / "identity").mkdir(parents=True)
        (home / "identity" / "device.json").write_text("nope", encoding="utf-8")
        with VaultContext.open(home, config=fast_config) as vault:
            result = vault.identity()
            assert not result.ok
            assert result.error == "StorageUnavailable"
            assert result.remedy == "retry"

    def test_wrong_code_result(self, make_device) -> None:
        x = make_device("X")
        y = make_device("Y")
        x.begin_pairing("Y")
        y.receive_invite(x.pairing_invite().value)
        result = y.confirm_pairing("22222222")
        assert isinstance(result, ActionResult)
        assert not result.ok
        assert result.error == "InvalidCode"
        assert result.remedy == "re-enter"

    def test_complete_without_session(self, make_device) -> None:
        x = make_device("X")
        result = x.complete_pairing(PairingReceipt(device_id="d", device_name="Y", proof=""))
        assert result.error == "NotFound"
        assert result.remedy == "restart-pairing"

    def test_sync_returns_outcome(self, make_device) -> None:
        x = make_device("X")
        outcome = x.sync_with_peer("nobody")
        assert isinstance(outcome, SyncOutcome)
        assert outcome.error == "UntrustedPeer"

    def test_null_transport_unreachable(self, tmp_path: Path, fast_config, make_device) -> None:
        y = make_device("Y")
        with VaultContext.open(tmp_path / "offline", config=fast_config) as x:
            pair_devices(x, y)
            outcome = x.sync_with_peer(y.device_id)
            assert outcome.error == "TransportFailure"

    def test_revoke_unknown(self, make_device) -> None:
        assert make_device("X").revoke_peer("ghost").error == "NotFound"

    def test_begin_pairing_hides_secret(self, make_device) -> None:
        value = make_device("X").begin_pairing("Y").value
        assert set(value) == {"code", "peer_name", "expires_at"}

    def test_cancel_pairing(self, make_device) -> None:
        x = make_device("X")
        x.begin_pairing("Y")
        assert x.cancel_pairing().ok
        assert x.pairing_invite().error == "NotFound"
