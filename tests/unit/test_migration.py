"""
Tests for adminkit.tasks.migration module.
"""

import json

import pytest

from adminkit.core.job import JobContext, JobRunner
from adminkit.core.polling import PollTimeoutError
from adminkit.platform.powershell import PowerShell
from adminkit.tasks.adgroups import ActiveDirectory
from adminkit.tasks.exchange import ExchangeOnline
from adminkit.tasks.migration import (
    DirectorySync,
    DistributionGroupMigration,
    DistributionGroupSnapshot,
    ExportGroupsJob,
    GroupMigrationState,
    MigrateGroupsJob,
    MigrationPhase,
    MigrationState,
    MigrationStateStore,
)

LEGACY_DN = "/o=ExchangeLabs/ou=Exchange Administrative Group (FYDIBOHF23SPDLT)/cn=Recipients/cn=a1b2-Sales"
ONPREM_DN = "CN=Sales,OU=Groups,DC=contoso,DC=com"

GROUP_ROW = {
    "Identity": "Sales",
    "Name": "Sales",
    "DisplayName": "Sales Team",
    "Alias": "sales",
    "PrimarySmtpAddress": "sales@contoso.com",
    "EmailAddresses": [
        "SMTP:sales@contoso.com",
        "smtp:sales@contoso.onmicrosoft.com",
        "smtp:SALES@contoso.onmicrosoft.com",
        "SMTP:team@contoso.com",
        "X500:/o=First Org/ou=First Administrative Group/cn=Recipients/cn=sales",
        "SPO:SPO_1234@SPO_5678",
        "sip:sales@contoso.com",
    ],
    "LegacyExchangeDN": LEGACY_DN,
    "RecipientTypeDetails": "MailUniversalDistributionGroup",
    "ManagedBy": ["alice"],
    "HiddenFromAddressListsEnabled": False,
    "RequireSenderAuthenticationEnabled": False,
    "AcceptMessagesOnlyFromSendersOrMembers": [],
    "GrantSendOnBehalfTo": "bob",
    "MemberJoinRestriction": "Closed",
    "MemberDepartRestriction": "Open",
    "IsDirSynced": True,
}

MEMBERS = [
    {"Name": "Alice", "PrimarySmtpAddress": "alice@contoso.com", "RecipientType": "UserMailbox"},
    {"Name": "Partner Contact", "PrimarySmtpAddress": "", "RecipientType": "MailContact"},
]

AD_GROUP = {"Name": "Sales", "DistinguishedName": ONPREM_DN, "mail": "sales@contoso.com"}

PRESENT = json.dumps({"PrimarySmtpAddress": "sales@contoso.com"})


@pytest.fixture
def make_migration(fake_runner, poller, sample_config):
    def factory(run_id: str = "run1") -> DistributionGroupMigration:
        powershell = PowerShell(fake_runner)
        return DistributionGroupMigration(
            ExchangeOnline(powershell, sample_config.exchange),
            ActiveDirectory(powershell),
            DirectorySync(powershell, poller, attempts=3, delay_seconds=60),
            MigrationStateStore.for_run(sample_config.migration, run_id),
            poller,
            sample_config.migration,
        )

    return factory


@pytest.fixture
def migration(make_migration) -> DistributionGroupMigration:
    return make_migration()


@pytest.fixture
def snapshot() -> DistributionGroupSnapshot:
    return DistributionGroupSnapshot.from_exchange(GROUP_ROW, MEMBERS, ONPREM_DN)


def queue_export(fake_runner, group=GROUP_ROW, members=MEMBERS, ad_group=AD_GROUP) -> None:
    fake_runner.queue_json("Get-DistributionGroup -Identity", group)
    fake_runner.queue_json("Get-DistributionGroupMember", members)
    fake_runner.queue_json("Get-ADGroup", ad_group)


def position(fake_runner, text: str) -> int:
    return next(i for i, line in enumerate(fake_runner.lines) if text in line)


class TestSnapshot:
    def test_from_exchange(self, snapshot: DistributionGroupSnapshot) -> None:
        assert snapshot.primary_smtp_address == "sales@contoso.com"
        assert snapshot.group_type == "Distribution"
        assert snapshot.members == ["alice@contoso.com", "Partner Contact"]
        assert snapshot.managed_by == ["alice"]
        assert snapshot.grant_send_on_behalf_to == ["bob"]
        assert snapshot.accept_messages_only_from == []
        assert snapshot.require_sender_authentication is False
        assert snapshot.member_depart_restriction == "Open"
        assert snapshot.onprem_distinguished_name == ONPREM_DN

    def test_security_group(self) -> None:
        row = dict(GROUP_ROW, RecipientTypeDetails="MailUniversalSecurityGroup")
        assert DistributionGroupSnapshot.from_exchange(row, [], None).group_type == "Security"

    def test_addresses_to_restore(self, snapshot: DistributionGroupSnapshot) -> None:
        assert snapshot.addresses_to_restore() == [
            "SMTP:sales@contoso.com",
            "smtp:sales@contoso.onmicrosoft.com",
            "smtp:team@contoso.com",
            "X500:/o=First Org/ou=First Administrative Group/cn=Recipients/cn=sales",
            f"X500:{LEGACY_DN}",
        ]

    def test_legacy_dn_already_present(self) -> None:
        snapshot = DistributionGroupSnapshot(
            identity="x",
            name="x",
            primary_smtp_address="x@contoso.com",
            email_addresses=[f"x500:{LEGACY_DN}"],
            legacy_exchange_dn=LEGACY_DN,
        )
        assert snapshot.addresses_to_restore() == ["SMTP:x@contoso.com", f"x500:{LEGACY_DN}"]


class TestState:
    def test_phases_and_failures(self) -> None:
        state = MigrationState(run_id="r")
        state.add(["A", "B", "A"])
        state.groups["A"].advance(MigrationPhase.EXPORTED)
        state.groups["B"].fail("not found")

        assert list(state.groups) == ["A", "B"]
        assert [g.name for g in state.in_phase(MigrationPhase.EXPORTED)] == ["A"]
        assert state.in_phase(MigrationPhase.PENDING) == []
        assert state.complete is False
        assert state.summary() == {
            "pending": 1,
            "exported": 1,
            "source_removed": 0,
            "synced": 0,
            "recreated": 0,
            "failed": 1,
        }

    def test_advance_clears_error(self) -> None:
        group = GroupMigrationState(name="A")
        group.fail("timeout")
        group.advance(MigrationPhase.EXPORTED)
        assert group.failed is False


class TestStateStore:
    def test_missing_file(self, temp_dir) -> None:
        store = MigrationStateStore(temp_dir / "june.json")
        assert store.load() is None
        assert store.load_or_create().run_id == "june"

    def test_save_replaces_file(self, temp_dir, snapshot) -> None:
        store = MigrationStateStore(temp_dir / "state" / "june.json")
        state = store.load_or_create()
        state.add(["Sales"])
        state.groups["Sales"].snapshot = snapshot
        state.groups["Sales"].advance(MigrationPhase.EXPORTED)

        store.save(state)
        store.save(state)

        assert [p.name for p in (temp_dir / "state").iterdir()] == ["june.json"]
        loaded = store.load()
        assert loaded.groups["Sales"].phase == MigrationPhase.EXPORTED
        assert loaded.groups["Sales"].snapshot.members == snapshot.members


class TestDirectorySync:
    def test_remote_script(self, fake_runner, poller) -> None:
        sync = DirectorySync(PowerShell(fake_runner), poller, server="aadc01")
        assert sync.build_script() == (
            "Invoke-Command -ComputerName 'aadc01' -ScriptBlock "
            "{ Import-Module ADSync; Start-ADSyncSyncCycle -PolicyType Delta | Out-Null }"
        )

    def test_waits_while_busy(self, fake_runner, poller, fake_clock) -> None:
        fake_runner.queue("Start-ADSyncSyncCycle", returncode=1, stderr="Sync is already running")

        ok, _ = DirectorySync(PowerShell(fake_runner), poller, delay_seconds=60).trigger()

        assert ok is True
        assert fake_clock.sleeps == [60]
        assert len(fake_runner.matching("Start-ADSyncSyncCycle")) == 2

    def test_other_errors_fail(self, fake_runner, poller) -> None:
        fake_runner.queue("Start-ADSyncSyncCycle", returncode=1, stderr="Access is denied")
        ok, message = DirectorySync(PowerShell(fake_runner), poller).trigger()
        assert ok is False
        assert message == "Start-ADSyncSyncCycle failed: Access is denied"

    def test_dry_run(self, fake_runner, poller) -> None:
        ok, _ = DirectorySync(PowerShell(fake_runner), poller).trigger(dry_run=True)
        assert ok is True
        assert fake_runner.calls == []


class TestExport:
    def test_export(self, migration: DistributionGroupMigration, fake_runner) -> None:
        queue_export(fake_runner)

        exported = migration.export(["Sales"])

        assert [g.name for g in exported] == ["Sales"]
        assert exported[0].snapshot.onprem_distinguished_name == ONPREM_DN
        assert "mail -eq ''sales@contoso.com''" in fake_runner.matching("Get-ADGroup")[0]
        assert migration.store.load().groups["Sales"].phase == MigrationPhase.EXPORTED

    def test_missing_group(self, migration: DistributionGroupMigration) -> None:
        assert migration.export(["Ghost"]) == []
        assert migration.state.groups["Ghost"].error == "Distribution group Ghost not found in Exchange Online"

    def test_cloud_group_is_rejected(self, migration: DistributionGroupMigration, fake_runner) -> None:
        fake_runner.queue_json("Get-DistributionGroup -Identity", dict(GROUP_ROW, IsDirSynced=False))
        migration.export(["Sales"])
        assert "not synchronized" in migration.state.groups["Sales"].error

    def test_missing_onprem_group(self, migration: DistributionGroupMigration, fake_runner) -> None:
        fake_runner.queue_json("Get-DistributionGroup -Identity", GROUP_ROW)
        migration.export(["Sales"])
        assert migration.state.groups["Sales"].error == "No on-premises group with mail sales@contoso.com"

    def test_failed_export_is_retried(self, migration: DistributionGroupMigration, fake_runner) -> None:
        migration.export(["Sales"])
        assert migration.state.groups["Sales"].failed

        queue_export(fake_runner)
        assert len(migration.export(["Sales"])) == 1


class TestRemoveSources:
    def test_delete(self, migration: DistributionGroupMigration, fake_runner) -> None:
        queue_export(fake_runner)
        migration.export(["Sales"])

        removed = migration.remove_sources()

        assert [g.name for g in removed] == ["Sales"]
        assert f"-Identity '{ONPREM_DN}'" in fake_runner.matching("Remove-ADGroup")[0]

    def test_move(self, make_migration, sample_config, fake_runner) -> None:
        sample_config.migration.source_action = "move"
        sample_config.migration.unsynced_ou = "OU=Unsynced,DC=contoso,DC=com"
        migration = make_migration()
        queue_export(fake_runner)
        migration.export(["Sales"])

        migration.remove_sources()

        [line] = fake_runner.matching("Move-ADObject")
        assert "-TargetPath 'OU=Unsynced,DC=contoso,DC=com'" in line
        assert fake_runner.matching("Remove-ADGroup") == []

    def test_move_requires_ou(self, make_migration, sample_config, fake_runner) -> None:
        sample_config.migration.source_action = "move"
        migration = make_migration()
        queue_export(fake_runner)
        migration.export(["Sales"])

        with pytest.raises(ValueError):
            migration.remove_sources()

    def test_failure_keeps_phase(self, migration: DistributionGroupMigration, fake_runner) -> None:
        queue_export(fake_runner)
        migration.export(["Sales"])
        fake_runner.queue("Remove-ADGroup", returncode=1, stderr="Insufficient access rights")

        assert migration.remove_sources() == []

        group = migration.state.groups["Sales"]
        assert group.phase == MigrationPhase.EXPORTED
        assert "Insufficient access rights" in group.error


class TestWaitForRemoval:
    def test_polls_until_gone(self, migration: DistributionGroupMigration, fake_runner, fake_clock) -> None:
        queue_export(fake_runner)
        migration.export(["Sales"])
        migration.remove_sources()
        fake_runner.queue("Get-Recipient", stdout=PRESENT)

        migration.wait_for_removal()

        assert migration.state.groups["Sales"].phase == MigrationPhase.SYNCED
        assert fake_clock.sleeps == [30]
        assert "@('sales@contoso.com') | ForEach-Object" in fake_runner.matching("Get-Recipient")[0]

    def test_timeout(self, make_migration, sample_config, fake_runner, fake_clock) -> None:
        sample_config.migration.removal_timeout_seconds = 90
        migration = make_migration()
        queue_export(fake_runner)
        migration.export(["Sales"])
        migration.remove_sources()
        fake_runner.respond("Get-Recipient", stdout=PRESENT)

        with pytest.raises(PollTimeoutError):
            migration.wait_for_removal()
        assert fake_clock.sleeps == [30, 30, 30]
        assert migration.store.load().groups["Sales"].phase == MigrationPhase.SOURCE_REMOVED

    def test_group_without_snapshot_is_skipped(self, make_migration, sample_config, fake_runner) -> None:
        sample_config.migration.removal_timeout_seconds = 60
        migration = make_migration()
        queue_export(fake_runner)
        migration.export(["Sales"])
        migration.remove_sources()
        migration.state.groups["Orphan"] = GroupMigrationState(
            name="Orphan", phase=MigrationPhase.SOURCE_REMOVED
        )

        with pytest.raises(PollTimeoutError):
            migration.wait_for_removal()

        assert migration.state.groups["Sales"].phase == MigrationPhase.SYNCED
        assert migration.state.groups["Orphan"].phase == MigrationPhase.SOURCE_REMOVED
        assert all("@('sales@contoso.com')" in line for line in fake_runner.matching("Get-Recipient"))


class TestRecreate:
    def test_create_script(self, migration: DistributionGroupMigration, snapshot) -> None:
        script = migration.build_create_script(snapshot)

        create, update = script.split("; ", 1)
        assert create.startswith(
            "New-DistributionGroup -Name 'Sales' -DisplayName 'Sales Team'"
            " -PrimarySmtpAddress 'sales@contoso.com' -Type Distribution"
        )
        assert "-MemberDepartRestriction Open" in create
        assert "-RequireSenderAuthenticationEnabled $false" in create
        assert "-Alias 'sales' -ManagedBy @('alice')" in create
        assert update.startswith("Set-DistributionGroup -Identity 'sales@contoso.com' -EmailAddresses @('SMTP:")
        assert f"'X500:{LEGACY_DN}'" in update
        assert "-GrantSendOnBehalfTo @('bob')" in update
        assert "-AcceptMessagesOnlyFromSendersOrMembers" not in update

    def test_update_script_for_existing_group(self, migration: DistributionGroupMigration, snapshot) -> None:
        script = migration.build_create_script(snapshot, existing=True)

        assert script.startswith("Set-DistributionGroup -Identity 'sales@contoso.com'")
        assert "New-DistributionGroup" not in script

    def test_members_script(self, migration: DistributionGroupMigration, snapshot) -> None:
        script = migration.build_members_script(snapshot)
        assert "foreach ($m in @('alice@contoso.com','Partner Contact'))" in script
        assert "Add-DistributionGroupMember -Identity 'sales@contoso.com' -Member $m" in script

    def test_member_failures_are_warnings(self, migration: DistributionGroupMigration, fake_runner, snapshot) -> None:
        group = GroupMigrationState(name="Sales", phase=MigrationPhase.SYNCED, snapshot=snapshot)
        fake_runner.queue_json(
            "Add-DistributionGroupMember",
            [{"Member": "Partner Contact", "Error": "Couldn't find object"}],
        )

        ok, _ = migration.recreate_group(group)

        assert ok is True
        assert group.warnings == ["Member Partner Contact not added: Couldn't find object"]

    def test_create_failure(self, migration: DistributionGroupMigration, fake_runner, snapshot) -> None:
        migration.state.groups["Sales"] = GroupMigrationState(
            name="Sales", phase=MigrationPhase.SYNCED, snapshot=snapshot
        )
        fake_runner.queue("New-DistributionGroup", returncode=1, stderr="The proxy address is already being used")

        assert migration.recreate() == []

        group = migration.state.groups["Sales"]
        assert group.phase == MigrationPhase.SYNCED
        assert "already being used" in group.error
        assert fake_runner.matching("Add-DistributionGroupMember") == []

    def test_retry_after_partial_create(self, migration: DistributionGroupMigration, fake_runner, snapshot) -> None:
        migration.state.groups["Sales"] = GroupMigrationState(
            name="Sales", phase=MigrationPhase.SYNCED, snapshot=snapshot
        )
        fake_runner.queue(
            "New-DistributionGroup", returncode=1, stderr="Set-DistributionGroup: proxy address conflict"
        )
        assert migration.recreate() == []
        assert migration.state.groups["Sales"].phase == MigrationPhase.SYNCED

        fake_runner.queue_json("Get-DistributionGroup -Identity", {"PrimarySmtpAddress": "sales@contoso.com"})
        recreated = migration.recreate()

        assert [g.name for g in recreated] == ["Sales"]
        assert migration.store.load().groups["Sales"].phase == MigrationPhase.RECREATED
        assert len(fake_runner.matching("New-DistributionGroup")) == 1
        [_, update] = fake_runner.matching("Set-DistributionGroup")
        assert "New-DistributionGroup" not in update
        assert position(fake_runner, "Add-DistributionGroupMember") == len(fake_runner.calls) - 1

    def test_existing_group_update_failure(self, migration: DistributionGroupMigration, fake_runner, snapshot) -> None:
        group = GroupMigrationState(name="Sales", phase=MigrationPhase.SYNCED, snapshot=snapshot)
        fake_runner.queue_json("Get-DistributionGroup -Identity", {"PrimarySmtpAddress": "sales@contoso.com"})
        fake_runner.queue("Set-DistributionGroup", returncode=1, stderr="proxy address conflict")

        ok, message = migration.recreate_group(group)

        assert ok is False
        assert message == "Set-DistributionGroup failed: proxy address conflict"
        assert fake_runner.matching("New-DistributionGroup") == []

    def test_verify_reports_unresolved(self, migration: DistributionGroupMigration, snapshot) -> None:
        group = GroupMigrationState(name="Sales", phase=MigrationPhase.RECREATED, snapshot=snapshot)
        assert migration.verify([group]) == ["sales@contoso.com"]


class TestRun:
    def test_full_run(self, migration: DistributionGroupMigration, fake_runner, fake_clock) -> None:
        queue_export(fake_runner)
        fake_runner.queue("Get-Recipient", stdout=PRESENT)
        fake_runner.queue("Get-Recipient", stdout="")
        fake_runner.respond("Get-Recipient", stdout=PRESENT)
        context = JobContext()

        state = migration.run(["Sales"], context=context)

        assert state.complete is True
        assert state.groups["Sales"].phase == MigrationPhase.RECREATED
        assert migration.store.load().complete is True
        assert (
            position(fake_runner, "Remove-ADGroup")
            < position(fake_runner, "Start-ADSyncSyncCycle")
            < position(fake_runner, "New-DistributionGroup")
        )
        assert fake_clock.sleeps == [30]
        assert context.get_progress().current == 6

    def test_dry_run_only_reads(self, migration: DistributionGroupMigration, fake_runner) -> None:
        queue_export(fake_runner)

        state = migration.run(["Sales"], dry_run=True)

        assert state.groups["Sales"].snapshot is not None
        assert migration.store.exists() is False
        for command in ("Remove-ADGroup", "Start-ADSyncSyncCycle", "New-DistributionGroup"):
            assert fake_runner.matching(command) == []
        assert migration.describe() == [
            f"Sales <sales@contoso.com>: exported, 2 member(s), delete {ONPREM_DN}"
        ]

    def test_resume_after_sync_failure(self, make_migration, fake_runner) -> None:
        queue_export(fake_runner)
        fake_runner.queue("Start-ADSyncSyncCycle", returncode=1, stderr="Access is denied")

        with pytest.raises(RuntimeError):
            make_migration("june").run(["Sales"])

        resumed = make_migration("june")
        assert resumed.state.groups["Sales"].phase == MigrationPhase.SOURCE_REMOVED
        assert resumed.state.groups["Sales"].snapshot.primary_smtp_address == "sales@contoso.com"

        fake_runner.queue("Get-Recipient", stdout="")
        fake_runner.respond("Get-Recipient", stdout=PRESENT)
        state = resumed.run([])

        assert state.groups["Sales"].phase == MigrationPhase.RECREATED
        assert len(fake_runner.matching("Get-DistributionGroupMember")) == 1
        assert len(fake_runner.matching("Remove-ADGroup")) == 1
        assert len(fake_runner.matching("Start-ADSyncSyncCycle")) == 2

    def test_no_sync_when_nothing_removed(self, migration: DistributionGroupMigration, fake_runner) -> None:
        state = migration.run(["Ghost"])
        assert state.groups["Ghost"].failed
        assert fake_runner.matching("Start-ADSyncSyncCycle") == []


class TestJobs:
    def test_migrate_job(self, migration: DistributionGroupMigration, fake_runner) -> None:
        queue_export(fake_runner)
        queue_export(
            fake_runner,
            group=dict(GROUP_ROW, Name="Ops", PrimarySmtpAddress="ops@contoso.com"),
            ad_group=dict(AD_GROUP, DistinguishedName="CN=Ops,OU=Groups,DC=contoso,DC=com"),
        )
        fake_runner.queue_json(
            "Add-DistributionGroupMember", [{"Member": "alice@contoso.com", "Error": "Already a member"}]
        )
        fake_runner.queue("Get-Recipient", stdout="")
        fake_runner.respond(
            "Get-Recipient",
            stdout=json.dumps([{"PrimarySmtpAddress": "sales@contoso.com"}, {"PrimarySmtpAddress": "ops@contoso.com"}]),
        )

        result = JobRunner().run_sync(MigrateGroupsJob(migration, ["Sales", "Ops", "Ghost"]))

        assert result.success is True
        assert result.data.groups["Sales"].phase == MigrationPhase.RECREATED
        assert "Sales: Member alice@contoso.com not added: Already a member" in result.warnings
        assert any(w.startswith("Ghost: ") for w in result.warnings)

    def test_every_group_failed(self, migration: DistributionGroupMigration) -> None:
        result = JobRunner().run_sync(MigrateGroupsJob(migration, ["Ghost"]))
        assert result.success is False
        assert result.error == "Every group failed; see the state file for details"

    def test_validation(self, make_migration, sample_config) -> None:
        sample_config.migration.source_action = "move"
        job = MigrateGroupsJob(make_migration(), [])
        assert job.validate() == [
            "No groups given and no state to resume",
            "source_action 'move' requires migration.unsynced_ou",
        ]

    def test_plan_and_target(self, migration: DistributionGroupMigration) -> None:
        job = MigrateGroupsJob(migration, ["Sales"])
        assert job.target == "run1"
        assert job.get_plan().startswith("1. Export Sales from Exchange Online\n2. Delete on-premises groups")
        assert str(migration.store.path) in job.get_plan()

    def test_export_job(self, migration: DistributionGroupMigration, fake_runner) -> None:
        queue_export(fake_runner)

        result = JobRunner().run_sync(ExportGroupsJob(migration, ["Sales", "Ghost"]))

        assert result.success is True
        assert [g.phase for g in result.data] == [MigrationPhase.EXPORTED, MigrationPhase.PENDING]
        assert result.warnings == ["Ghost: Distribution group Ghost not found in Exchange Online"]
        assert fake_runner.matching("Remove-ADGroup") == []
