"""Tests for the vaultsync CLI.

Drives two device homes through init, the full pairing exchange via
invite and receipt files, peer listing and revocation, and the sync
status views.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from vaultsync.cli import main
from vaultsync.context import VaultContext


def _home(tmp_path: Path, name: str) -> Path:
    home = tmp_path / name
    (home / "config").mkdir(parents=True)
    (home / "config" / "config.yaml").write_text(yaml.dump({"kdf_iterations": 1000}), encoding="utf-8")
    return home


def _code(home: Path) -> str:
    with VaultContext.open(home) as vault:
        return vault.pairing.active_session().code


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def homes(tmp_path: Path, runner: CliRunner):
    x = _home(tmp_path, "x")
    y = _home(tmp_path, "y")
    assert runner.invoke(main, ["init", "--home", str(x), "--name", "Laptop"]).exit_code == 0
    assert runner.invoke(main, ["init", "--home", str(y), "--name", "Phone", "--device-class", "phone"]).exit_code == 0
    return x, y


@pytest.fixture
def paired_homes(tmp_path: Path, runner: CliRunner, homes):
    x, y = homes
    invite = tmp_path / "invite.json"
    receipt = tmp_path / "receipt.json"
    assert runner.invoke(main, ["pair", "begin", "Phone", "--home", str(x), "--invite-out", str(invite)]).exit_code == 0
    assert runner.invoke(main, ["pair", "accept", str(invite), "--home", str(y)]).exit_code == 0
    code = _code(x)
    result = runner.invoke(main, ["pair", "confirm", code, "--home", str(y), "--receipt-out", str(receipt)])
    assert result.exit_code == 0, result.output
    result = runner.invoke(main, ["pair", "complete", str(receipt), "--home", str(x)])
    assert result.exit_code == 0, result.output
    return x, y


class TestInit:
    """init and whoami."""

    def test_init_creates_identity(self, homes) -> None:
        x, _ = homes
        assert (x / "identity" / "device.json").exists()
        assert (x / "security" / "master.key").exists()

    def test_init_keeps_existing_config(self, homes) -> None:
        x, _ = homes
        config = yaml.safe_load((x / "config" / "config.yaml").read_text(encoding="utf-8"))
        assert config["kdf_iterations"] == 1000
        assert config["device_name"] == "Laptop"

    def test_whoami_json(self, runner: CliRunner, homes) -> None:
        _, y = homes
        result = runner.invoke(main, ["whoami", "--home", str(y), "--json-out"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["name"] == "Phone"
        assert data["device_class"] == "phone"
        assert data["device_id"].startswith("phone-")

    def test_whoami_text(self, runner: CliRunner, homes) -> None:
        x, _ = homes
        result = runner.invoke(main, ["whoami", "--home", str(x)])
        assert result.exit_code == 0
        assert "Laptop" in result.output


class TestPair:
    """Pairing through invite and receipt files."""

    def test_begin_prints_code(self, runner: CliRunner, homes, tmp_path: Path) -> None:
        x, _ = homes
        invite = tmp_path / "invite.json"
        result = runner.invoke(main, ["pair", "begin", "Phone", "--home", str(x), "--invite-out", str(invite)])
        assert result.exit_code == 0
        code = _code(x)
        assert code in result.output
        assert code not in invite.read_text(encoding="utf-8")

    def test_full_pairing(self, runner: CliRunner, paired_homes) -> None:
        x, y = paired_homes
        for home, expected in ((x, "Phone"), (y, "Laptop")):
            result = runner.invoke(main, ["peers", "list", "--home", str(home), "--json-out"])
            assert result.exit_code == 0
            peers = json.loads(result.output)
            assert [p["name"] for p in peers] == [expected]
            assert "wrapped_secret" not in peers[0]

    def test_wrong_code(self, runner: CliRunner, homes, tmp_path: Path) -> None:
        x, y = homes
        invite = tmp_path / "invite.json"
        runner.invoke(main, ["pair", "begin", "Phone", "--home", str(x), "--invite-out", str(invite)])
        runner.invoke(main, ["pair", "accept", str(invite), "--home", str(y)])
        result = runner.invoke(main, ["pair", "confirm", "22222222", "--home", str(y)])
        assert result.exit_code == 1
        assert "InvalidCode" in result.output

    def test_confirm_without_invite(self, runner: CliRunner, homes) -> None:
        _, y = homes
        result = runner.invoke(main, ["pair", "confirm", "K3J9QZ", "--home", str(y)])
        assert result.exit_code == 1
        assert "NotFound" in result.output

    def test_bad_invite_file(self, runner: CliRunner, homes, tmp_path: Path) -> None:
        _, y = homes
        bogus = tmp_path / "bogus.json"
        bogus.write_text("{}", encoding="utf-8")
        result = runner.invoke(main, ["pair", "accept", str(bogus), "--home", str(y)])
        assert result.exit_code == 1

    def test_cancel(self, runner: CliRunner, homes, tmp_path: Path) -> None:
        x, _ = homes
        runner.invoke(main, ["pair", "begin", "Phone", "--home", str(x), "--invite-out", str(tmp_path / "i.json")])
        assert runner.invoke(main, ["pair", "cancel", "--home", str(x)]).exit_code == 0
        with VaultContext.open(x) as vault:
            assert vault.pairing.active_session() is None


class TestPeers:
    """Listing and revoking."""

    def test_list_empty(self, runner: CliRunner, homes) -> None:
        x, _ = homes
        result = runner.invoke(main, ["peers", "list", "--home", str(x)])
        assert result.exit_code == 0
        assert "No trusted devices" in result.output

    def test_list_table(self, runner: CliRunner, paired_homes) -> None:
        x, _ = paired_homes
        result = runner.invoke(main, ["peers", "list", "--home", str(x)])
        assert result.exit_code == 0
        assert "Phone" in result.output

    def test_revoke(self, runner: CliRunner, paired_homes) -> None:
        x, _ = paired_homes
        peers = json.loads(runner.invoke(main, ["peers", "list", "--home", str(x), "--json-out"]).output)
        result = runner.invoke(main, ["peers", "revoke", peers[0]["device_id"], "--home", str(x)])
        assert result.exit_code == 0
        assert json.loads(runner.invoke(main, ["peers", "list", "--home", str(x), "--json-out"]).output) == []

    def test_revoke_unknown(self, runner: CliRunner, homes) -> None:
        x, _ = homes
        result = runner.invoke(main, ["peers", "revoke", "ghost", "--home", str(x)])
        assert result.exit_code == 1
        assert "NotFound" in result.output


class TestSyncViews:
    """Status and history."""

    def test_status_json(self, runner: CliRunner, paired_homes) -> None:
        x, _ = paired_homes
        result = runner.invoke(main, ["sync", "status", "--home", str(x), "--json-out"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["peers"] == 1
        assert data["state"]["sync_count"] == 0

    def test_status_panel(self, runner: CliRunner, homes) -> None:
        x, _ = homes
        result = runner.invoke(main, ["sync", "status", "--home", str(x)])
        assert result.exit_code == 0
        assert "never" in result.output

    def test_history_empty(self, runner: CliRunner, homes) -> None:
        x, _ = homes
        result = runner.invoke(main, ["sync", "history", "--home", str(x)])
        assert result.exit_code == 0
        assert "No sync history" in result.output

    def test_history_lists_failures(self, runner: CliRunner, paired_homes) -> None:
        x, _ = paired_homes
        with VaultContext.open(x) as vault:
            peer_id = vault.list_trusted_peers().value[0].device_id
            assert vault.sync_with_peer(peer_id).error == "TransportFailure"
        result = runner.invoke(main, ["sync", "history", "--home", str(x)])
        assert result.exit_code == 0
        assert "unreachable" in result.output

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output
