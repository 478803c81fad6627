"""
CLI tests for timeseal

These tests drive main() in-process against a temporary data directory.
"""

import json
from datetime import datetime, timezone

import pytest

from timeseal import __version__
from timeseal.cli import main
from timeseal.kvstore import FileKeyValueStore
from timeseal.markers import PendingLogMarker
from timeseal.policy import PURPOSE_WORKLOG, derive_policy_id, policy_id_hex
from timeseal.session import SessionCredentialCache

from conftest import CAP_ID, FIXED_DAY, PACKAGE_ID, TIMESHEET_ID

OWNER = "0x" + "cd" * 32


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point timeseal at an empty data directory"""
    for name in ("TIMESEAL_CONFIG", "TIMESEAL_PACKAGE_ID", "TIMESEAL_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TIMESEAL_DATA_DIR", str(tmp_path))
    return tmp_path


def run(capsys, *args):
    """Run the CLI and return (exit code, stdout)"""
    try:
        main(list(args))
        code = 0
    except SystemExit as e:
        code = e.code or 0
    return code, capsys.readouterr().out


def handoff_marker(blob_id="blob-1", day=FIXED_DAY):
    return PendingLogMarker(
        blob_id=blob_id,
        policy_id=derive_policy_id(OWNER, TIMESHEET_ID, PURPOSE_WORKLOG, day),
        subject_record_id=TIMESHEET_ID,
        capability_id=CAP_ID,
        producing_principal=OWNER,
        original_payload_summary={"work_duration_ms": 4000},
        created_at_epoch_ms=int(day.timestamp() * 1000),
    )


class TestParser:
    """Tests for top-level parser behavior"""

    def test_no_command_prints_help(self, data_dir, capsys):
        """Test that running without a command shows help"""
        code, out = run(capsys)
        assert code == 0
        assert "usage: timeseal" in out

    def test_version(self, data_dir, capsys):
        """Test --version"""
        code, out = run(capsys, "--version")
        assert code == 0
        assert __version__ in out


class TestDeriveCommand:
    """Tests for timeseal derive"""

    def test_derive_for_date(self, data_dir, capsys):
        """Test that derive prints the hex PolicyId for the given day"""
        code, out = run(capsys, "derive", "--principal", OWNER, "--scope", TIMESHEET_ID, "--date", "2024-03-05")
        expected = derive_policy_id(OWNER, TIMESHEET_ID, PURPOSE_WORKLOG,
                                    datetime(2024, 3, 5, tzinfo=timezone.utc))
        assert code == 0
        assert out.strip() == policy_id_hex(expected)

    def test_bad_date(self, data_dir, capsys):
        """Test that a malformed date exits with an error"""
        code, out = run(capsys, "derive", "--principal", OWNER, "--scope", TIMESHEET_ID, "--date", "05/03/2024")
        assert code == 1
        assert "YYYY-MM-DD" in out

    def test_bad_scope(self, data_dir, capsys):
        """Test that an invalid scope id is reported"""
        code, out = run(capsys, "derive", "--principal", OWNER, "--scope", "0xSCOPE")
        assert code == 1
        assert out.startswith("Error:")


class TestWalletCommand:
    """Tests for timeseal wallet"""

    def test_generate_and_address(self, data_dir, capsys):
        """Test generating a wallet and reading its address back"""
        code, out = run(capsys, "wallet", "generate")
        assert code == 0
        assert (data_dir / "wallet.pem").is_file()
        address = out.splitlines()[0].split(": ")[1]

        code, out = run(capsys, "wallet", "address")
        assert code == 0
        assert out.strip() == address

    def test_generate_refuses_overwrite(self, data_dir, capsys):
        """Test that an existing key needs --force"""
        run(capsys, "wallet", "generate")
        code, out = run(capsys, "wallet", "generate")
        assert code == 1
        assert "--force" in out

        code, out = run(capsys, "wallet", "generate", "--force")
        assert code == 0

    def test_missing_wallet(self, data_dir, capsys):
        """Test that commands needing a wallet explain how to create one"""
        code, out = run(capsys, "wallet", "address")
        assert code == 1
        assert "wallet key not found" in out
        assert "timeseal wallet generate" in out

    def test_encrypted_key(self, data_dir, capsys):
        """Test a password-protected wallet key"""
        run(capsys, "--password", "hunter2", "wallet", "generate")
        code, out = run(capsys, "wallet", "address")
        assert code == 1

        code, out = run(capsys, "--password", "hunter2", "wallet", "address")
        assert code == 0
        assert out.startswith("0x")


class TestMarkersCommand:
    """Tests for timeseal markers"""

    def test_import_list_remove(self, data_dir, capsys):
        """Test the marker lifecycle from the command line"""
        marker = handoff_marker()

        code, out = run(capsys, "markers", "import", marker.to_handoff_json(indent=None), "--owner", OWNER)
        assert code == 0
        assert "Imported 1 marker(s), 0 already known" in out

        code, out = run(capsys, "markers", "import", marker.to_handoff_json(indent=None), "--owner", OWNER)
        assert "Imported 0 marker(s), 1 already known" in out

        code, out = run(capsys, "markers", "list", "--owner", OWNER)
        assert code == 0
        assert marker.id in out
        assert "blob-1" in out

        code, out = run(capsys, "markers", "remove", "--id", marker.id, "--owner", OWNER)
        assert f"Removed marker {marker.id}" in out

        code, out = run(capsys, "markers", "list", "--owner", OWNER)
        assert "No pending markers." in out

        code, out = run(capsys, "markers", "remove", "--id", marker.id, "--owner", OWNER)
        assert "not found" in out

    def test_import_from_file_with_rejects(self, data_dir, capsys):
        """Test that rejected items are listed and valid ones kept"""
        path = data_dir / "handoff.json"
        path.write_text(json.dumps([handoff_marker().to_handoff(), {"blobId": "x"}]))

        code, out = run(capsys, "markers", "import", str(path), "--owner", OWNER)

        assert code == 1
        assert "Imported 1 marker(s)" in out
        assert "Item 1 rejected" in out

    def test_import_requires_source(self, data_dir, capsys):
        """Test that import without a source is an error"""
        code, out = run(capsys, "markers", "import", "--owner", OWNER)
        assert code == 1

    def test_invalid_json(self, data_dir, capsys):
        """Test that non-JSON hand-off text is reported"""
        code, out = run(capsys, "markers", "import", "{oops", "--owner", OWNER)
        assert code == 1
        assert "MARKER_INVALID" in out or "not valid JSON" in out


class TestSessionCommand:
    """Tests for timeseal session"""

    def test_status_empty(self, data_dir, capsys):
        """Test status with no cached sessions"""
        code, out = run(capsys, "session", "status", "--principal", OWNER)
        assert code == 0
        assert "No cached sessions." in out

    def test_status_and_logout(self, data_dir, capsys, employee):
        """Test listing and clearing a cached credential"""
        cache = SessionCredentialCache(FileKeyValueStore(data_dir / "store.json"), employee.sign_personal_message)
        cache.get_credential(employee.address, PACKAGE_ID)

        code, out = run(capsys, "session", "status", "--principal", employee.address)
        assert code == 0
        assert PACKAGE_ID in out
        assert "active" in out

        code, out = run(capsys, "session", "logout", "--principal", employee.address)
        assert "Removed 1 cached session(s)" in out

        code, out = run(capsys, "session", "status", "--principal", employee.address)
        assert "No cached sessions." in out


class TestWorkLogCommands:
    """Tests for submit, retrieve and verify with an in-memory deployment"""

    @pytest.fixture
    def wallet_file(self, data_dir, employee):
        path = data_dir / "employee.pem"
        path.write_bytes(employee.to_pem())
        return path

    @pytest.fixture(autouse=True)
    def local_orchestrator(self, monkeypatch, orchestrator, employee):
        orchestrator.credentials.request_signature = employee.sign_personal_message
        monkeypatch.setattr("timeseal.cli.worklog.get_orchestrator", lambda args, config, wallet: orchestrator)
        return orchestrator

    def test_submit_then_retrieve(self, data_dir, capsys, wallet_file):
        """Test the submit and retrieve commands end to end"""
        event = json.dumps({"check_in_time": "1000", "check_out_time": "5000", "duration": "4000"})
        handoff_path = data_dir / "handoff.json"

        code, out = run(capsys, "--key", str(wallet_file), "submit", event,
                        "--timesheet", TIMESHEET_ID, "--cap", CAP_ID, "--output", str(handoff_path))
        assert code == 0
        assert "Hand-off written to" in out

        code, out = run(capsys, "--key", str(wallet_file), "retrieve", "--marker", str(handoff_path), "--verbose")
        assert code == 0
        assert '"work_duration_ms": 4000' in out
        assert "Download: literal" in out

    def test_submit_invalid_event(self, data_dir, capsys, wallet_file):
        """Test that a malformed event is rejected"""
        code, out = run(capsys, "--key", str(wallet_file), "submit", "not json",
                        "--timesheet", TIMESHEET_ID, "--cap", CAP_ID)
        assert code == 1
        assert "not valid JSON" in out

    def test_retrieve_requires_scope(self, data_dir, capsys, wallet_file):
        """Test that retrieve needs a scope without a marker"""
        code, out = run(capsys, "--key", str(wallet_file), "retrieve", "some-blob")
        assert code == 1
        assert "--scope" in out

    def test_verify(self, data_dir, capsys, wallet_file, employee):
        """Test today's access check"""
        code, out = run(capsys, "--key", str(wallet_file), "verify", "--scope", TIMESHEET_ID)
        assert code == 0
        assert f"Access verified for {employee.address}" in out
