"""
Tests for the adminkit command line.
"""

import importlib
import json
from pathlib import Path

import click
import pytest
from click.testing import CliRunner

from adminkit import __version__
from adminkit.cli.main import cli, main
from adminkit.tasks.migration import MigrationStateStore

ACK = "I understand the risks\n"

# adminkit.cli re-exports main(), which shadows the submodule attribute
cli_module = importlib.import_module("adminkit.cli.main")


@pytest.fixture
def invoke(session, sample_config):
    runner = CliRunner()

    def _invoke(*args: str, input: str | None = None) -> click.testing.Result:
        return runner.invoke(
            cli,
            list(args),
            obj={"session": session, "config": sample_config},
            input=input,
        )

    return _invoke


class TestRoot:
    def test_version(self, invoke) -> None:
        result = invoke("--version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_groups(self, invoke) -> None:
        result = invoke("--help")
        for group in ("ad", "ntfs", "dfs", "mail", "mkv", "migrate", "inventory"):
            assert group in result.output

    def test_wrong_acknowledgment(self, invoke, session) -> None:
        result = invoke("--danger-mode", "ad", "create-group", "FS_A", input="sure\n")
        assert result.exit_code == 1
        assert "NOT enabled" in result.output
        assert session.danger_mode.name == "DISABLED"


class TestSafetyGates:
    def test_change_requires_danger_mode(self, invoke, fake_runner) -> None:
        result = invoke("ad", "create-group", "FS_A")

        assert result.exit_code == 1
        assert "requires Danger Mode" in result.output
        assert fake_runner.matching("New-ADGroup") == []

    def test_create_in_danger_mode(self, invoke, fake_runner) -> None:
        result = invoke("--danger-mode", "ad", "create-group", "FS_A", "--member", "alice", input=ACK)

        assert result.exit_code == 0, result.output
        assert "Created group FS_A" in result.output
        [line] = fake_runner.matching("New-ADGroup")
        assert "-Path 'OU=Groups,DC=contoso,DC=com'" in line
        assert len(fake_runner.matching("Add-ADGroupMember")) == 1

    def test_confirmation_mismatch(self, invoke, fake_runner) -> None:
        result = invoke("--danger-mode", "mail", "clear", "alice@contoso.com", input=ACK + "yes\n")

        assert result.exit_code == 1
        assert "Confirmation mismatch" in result.output
        assert fake_runner.matching("Set-Mailbox") == []

    def test_confirmation_accepted(self, invoke, fake_runner) -> None:
        result = invoke(
            "--danger-mode", "mail", "clear", "alice@contoso.com", input=ACK + "DESTROY-ALICE\n"
        )

        assert result.exit_code == 0, result.output
        assert "TARGET: alice" in result.output
        assert "Cleared forwarding on alice@contoso.com" in result.output
        assert len(fake_runner.matching("Set-Mailbox")) == 1

    def test_dry_run_needs_no_danger_mode(self, invoke, fake_runner) -> None:
        result = invoke("--json", "ad", "create-group", "FS_A", "FS_B", "--dry-run")

        assert result.exit_code == 0
        assert json.loads(result.output) == {
            "success": True,
            "messages": ["Would create group FS_A", "Would create group FS_B"],
        }
        assert fake_runner.matching("New-ADGroup") == []

    def test_dry_run_default(self, invoke, sample_config, fake_runner) -> None:
        sample_config.safety.dry_run_default = True
        result = invoke("mail", "clear", "alice@contoso.com")
        assert result.exit_code == 0
        assert "Would clear forwarding on alice@contoso.com" in result.output
        assert fake_runner.calls == []

    def test_failed_job_json(self, invoke, session, fake_runner) -> None:
        session.enable_danger_mode("I understand the risks")
        session.config.safety.require_confirmation = False
        fake_runner.respond("Set-Mailbox", returncode=1, stderr="denied")

        result = invoke("--json", "mail", "clear", "alice@contoso.com")

        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["success"] is False
        assert data["error"] == "No mailbox could be updated"


class TestNtfs:
    def test_bad_entry(self, invoke) -> None:
        result = invoke("ntfs", "grant", "D:\\Shares\\Data", "--grant", "Everyone", "--dry-run")
        assert result.exit_code == 2
        assert "Expected PRINCIPAL=RIGHTS" in result.output

    def test_grant_dry_run(self, invoke, fake_runner) -> None:
        result = invoke(
            "--json", "ntfs", "grant", "D:\\Shares\\Data", "--grant", "CONTOSO\\FS_Data_M=M", "--dry-run"
        )
        assert result.exit_code == 0
        assert json.loads(result.output)["messages"] == ["Would set 1 permission(s) on D:\\Shares\\Data"]

    def test_show(self, invoke, fake_runner) -> None:
        fake_runner.queue("icacls", stdout="D:\\Shares\\Data CONTOSO\\FS_Data_M:(OI)(CI)(M)\n")
        result = invoke("--json", "ntfs", "show", "D:\\Shares\\Data")
        assert json.loads(result.output) == [{"principal": "CONTOSO\\FS_Data_M", "permissions": "(OI)(CI)(M)"}]


class TestDfs:
    def test_provision_dry_run(self, invoke, fake_runner) -> None:
        result = invoke("--json", "dfs", "provision", "Finance", "--server", "fs01", "--dry-run")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["request"]["link_path"] == "\\\\contoso.com\\files\\Finance"
        assert [s["status"] for s in data["steps"]] == ["dry-run", "dry-run", "dry-run", "dry-run", "skipped"]


class TestMail:
    def test_show(self, invoke, fake_runner) -> None:
        fake_runner.queue_json(
            "Get-Mailbox",
            {
                "PrimarySmtpAddress": "alice@contoso.com",
                "ForwardingSmtpAddress": "smtp:alice@fabrikam.com",
                "DeliverToMailboxAndForward": True,
            },
        )

        result = invoke("--json", "mail", "show", "alice@contoso.com", "ghost@contoso.com")

        data = json.loads(result.output)
        assert data["alice@contoso.com"]["forwarding_smtp_address"] == "smtp:alice@fabrikam.com"
        assert data["ghost@contoso.com"] is None

    def test_forward_csv_with_bad_file(self, invoke, temp_dir: Path) -> None:
        path = temp_dir / "rules.csv"
        path.write_text("Mailbox\nalice@contoso.com\n", encoding="utf-8")

        result = invoke("mail", "forward-csv", str(path), "--dry-run")

        assert result.exit_code == 1
        assert "missing column" in result.output

    def test_forward_dry_run(self, invoke, fake_runner) -> None:
        result = invoke("--json", "mail", "forward", "alice@contoso.com", "alice@fabrikam.com", "--dry-run")
        assert json.loads(result.output)["messages"] == ["Would forward alice@contoso.com to alice@fabrikam.com"]
        assert fake_runner.calls == []


class TestMkv:
    def test_inspect(self, invoke, fake_runner, temp_dir: Path) -> None:
        path = temp_dir / "film.mkv"
        path.write_bytes(b"\x1a\x45\xdf\xa3")
        fake_runner.queue_json(
            "-J",
            {
                "container": {"recognized": True},
                "tracks": [
                    {"id": 0, "type": "video", "codec": "HEVC", "properties": {}},
                    {"id": 1, "type": "audio", "codec": "AAC", "properties": {"language": "eng"}},
                    {"id": 2, "type": "audio", "codec": "AAC", "properties": {"language": "ita"}},
                ],
            },
        )

        result = invoke("--json", "mkv", "inspect", str(path), "--audio", "eng")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["plan"]["keep"]["audio"] == [1]
        assert data["plan"]["removed"][0]["reason"] == "language ita not wanted"


class TestMigrate:
    def test_status_missing(self, invoke) -> None:
        result = invoke("migrate", "status", "nope")
        assert result.exit_code == 1
        assert "No migration state" in result.output

    def test_status(self, invoke, sample_config) -> None:
        store = MigrationStateStore.for_run(sample_config.migration, "june")
        state = store.load_or_create()
        state.add(["Sales"])
        store.save(state)

        result = invoke("--json", "migrate", "status", "june")

        assert result.exit_code == 0
        assert json.loads(result.output)["groups"]["Sales"]["phase"] == "pending"

    def test_run_dry_run(self, invoke, fake_runner, sample_config) -> None:
        fake_runner.queue_json(
            "Get-DistributionGroup -Identity",
            {"Name": "Sales", "PrimarySmtpAddress": "sales@contoso.com", "IsDirSynced": True},
        )
        fake_runner.queue_json(
            "Get-ADGroup", {"Name": "Sales", "DistinguishedName": "CN=Sales,OU=Groups,DC=contoso,DC=com"}
        )

        result = invoke("migrate", "run", "Sales", "--run-id", "june", "--dry-run")

        assert result.exit_code == 0, result.output
        assert "sales@contoso.com" in result.output
        assert not (sample_config.migration.state_directory / "june.json").exists()
        assert fake_runner.matching("Remove-ADGroup") == []


class TestInventory:
    def test_inventory_json(self, invoke, fake_runner) -> None:
        fake_runner.queue_json("Win32_OperatingSystem", {"Caption": "Windows Server 2022", "Version": "10.0"})

        result = invoke("--json", "inventory")

        assert result.exit_code == 0
        [item] = json.loads(result.output)
        assert item["host"] == "localhost"
        assert item["os_caption"] == "Windows Server 2022"


class TestMain:
    def test_keyboard_interrupt(self, mocker) -> None:
        mocker.patch.object(cli_module, "cli", side_effect=KeyboardInterrupt)
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 130

    def test_click_error_exit_code(self, mocker) -> None:
        mocker.patch.object(cli_module, "cli", side_effect=click.UsageError("no such command"))
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 2

    def test_unexpected_error(self, mocker) -> None:
        mocker.patch.object(cli_module, "cli", side_effect=RuntimeError("boom"))
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
