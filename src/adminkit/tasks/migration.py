"""
Distribution group migration from directory-synchronized to cloud-only.

A group synchronized from on-premises AD cannot be edited in Exchange
Online. Migrating it means:

1. export its Exchange Online configuration and membership
2. remove (or move out of sync scope) the on-premises group
3. run a directory sync cycle
4. wait until the synchronized group disappears from Exchange Online
5. recreate it as a cloud-only group with the same addresses

The state file is written after every transition, and the exported
snapshot is on disk before anything is removed, so an interrupted run is
resumed by running it again with the same state file.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

from adminkit.core.job import Job, JobContext
from adminkit.core.logging import OperationLogger, get_logger
from adminkit.core.polling import PollTimeoutError
from adminkit.core.safety import OperationType
from adminkit.platform.base import CommandError
from adminkit.platform.powershell import PowerShell, format_array, format_bool, quote

if TYPE_CHECKING:
    from adminkit.core.config import MigrationConfig
    from adminkit.core.polling import Poller
    from adminkit.tasks.adgroups import ActiveDirectory
    from adminkit.tasks.exchange import ExchangeOnline

logger = get_logger(__name__)

GROUP_FIELDS = ", ".join(
    [
        "Identity",
        "Name",
        "DisplayName",
        "Alias",
        "PrimarySmtpAddress",
        "EmailAddresses",
        "LegacyExchangeDN",
        "RecipientTypeDetails",
        "ManagedBy",
        "HiddenFromAddressListsEnabled",
        "RequireSenderAuthenticationEnabled",
        "AcceptMessagesOnlyFromSendersOrMembers",
        "GrantSendOnBehalfTo",
        "MemberJoinRestriction",
        "MemberDepartRestriction",
        "IsDirSynced",
    ]
)

KEPT_ADDRESS_PREFIXES = ("smtp:", "x500:")
SYNC_BUSY_MARKERS = ("busy", "already running", "in progress")


def _as_list(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v]
    return [str(value)]


class DistributionGroupSnapshot(BaseModel):
    """Everything needed to recreate a group in Exchange Online."""

    identity: str
    name: str
    display_name: str = ""
    alias: str = ""
    primary_smtp_address: str
    email_addresses: list[str] = Field(default_factory=list)
    legacy_exchange_dn: str | None = None
    group_type: Literal["Distribution", "Security"] = "Distribution"
    managed_by: list[str] = Field(default_factory=list)
    members: list[str] = Field(default_factory=list)
    hidden_from_address_lists: bool = False
    require_sender_authentication: bool = True
    accept_messages_only_from: list[str] = Field(default_factory=list)
    grant_send_on_behalf_to: list[str] = Field(default_factory=list)
    member_join_restriction: str = "Closed"
    member_depart_restriction: str = "Closed"
    onprem_distinguished_name: str | None = None
    exported_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_exchange(
        cls,
        group: dict[str, Any],
        members: list[dict[str, Any]],
        onprem_dn: str | None,
    ) -> DistributionGroupSnapshot:
        details = str(group.get("RecipientTypeDetails") or "")
        return cls(
            identity=str(group.get("Identity") or group.get("Name")),
            name=str(group.get("Name")),
            display_name=group.get("DisplayName") or "",
            alias=group.get("Alias") or "",
            primary_smtp_address=str(group.get("PrimarySmtpAddress")),
            email_addresses=_as_list(group.get("EmailAddresses")),
            legacy_exchange_dn=group.get("LegacyExchangeDN") or None,
            group_type="Security" if "Security" in details else "Distribution",
            managed_by=_as_list(group.get("ManagedBy")),
            members=[
                str(m.get("PrimarySmtpAddress") or m.get("Name"))
                for m in members
                if m.get("PrimarySmtpAddress") or m.get("Name")
            ],
            hidden_from_address_lists=bool(group.get("HiddenFromAddressListsEnabled")),
            require_sender_authentication=bool(
                group.get("RequireSenderAuthenticationEnabled", True)
            ),
            accept_messages_only_from=_as_list(group.get("AcceptMessagesOnlyFromSendersOrMembers")),
            grant_send_on_behalf_to=_as_list(group.get("GrantSendOnBehalfTo")),
            member_join_restriction=group.get("MemberJoinRestriction") or "Closed",
            member_depart_restriction=group.get("MemberDepartRestriction") or "Closed",
            onprem_distinguished_name=onprem_dn,
        )

    def addresses_to_restore(self) -> list[str]:
        """Proxy addresses for the new group, with the old legacyExchangeDN as X500."""
        primary = f"SMTP:{self.primary_smtp_address}"
        addresses = [primary]
        for address in self.email_addresses:
            lowered = address.lower()
            if not lowered.startswith(KEPT_ADDRESS_PREFIXES):
                continue
            if lowered == primary.lower():
                continue
            if lowered.startswith("smtp:"):
                address = "smtp:" + address[5:]
            if address.lower() not in (a.lower() for a in addresses):
                addresses.append(address)
        if self.legacy_exchange_dn:
            x500 = f"X500:{self.legacy_exchange_dn}"
            if x500.lower() not in (a.lower() for a in addresses):
                addresses.append(x500)
        return addresses


class MigrationPhase(str, Enum):
    """Last phase a group has completed."""

    PENDING = "pending"
    EXPORTED = "exported"
    SOURCE_REMOVED = "source_removed"
    SYNCED = "synced"
    RECREATED = "recreated"


class GroupMigrationState(BaseModel):
    name: str
    phase: MigrationPhase = MigrationPhase.PENDING
    snapshot: DistributionGroupSnapshot | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def failed(self) -> bool:
        return self.error is not None

    def advance(self, phase: MigrationPhase) -> None:
        self.phase = phase
        self.error = None
        self.updated_at = datetime.now()

    def fail(self, error: str) -> None:
        self.error = error
        self.updated_at = datetime.now()


class MigrationState(BaseModel):
    run_id: str
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    groups: dict[str, GroupMigrationState] = Field(default_factory=dict)

    def in_phase(self, phase: MigrationPhase) -> list[GroupMigrationState]:
        return [g for g in self.groups.values() if g.phase == phase and not g.failed]

    def add(self, names: list[str]) -> None:
        for name in names:
            self.groups.setdefault(name, GroupMigrationState(name=name))

    @property
    def failed_groups(self) -> list[GroupMigrationState]:
        return [g for g in self.groups.values() if g.failed]

    @property
    def complete(self) -> bool:
        return all(g.phase == MigrationPhase.RECREATED for g in self.groups.values())

    def summary(self) -> dict[str, int]:
        counts = {phase.value: 0 for phase in MigrationPhase}
        for group in self.groups.values():
            counts[group.phase.value] += 1
        counts["failed"] = len(self.failed_groups)
        return counts


class MigrationStateStore:
    """Persists MigrationState as JSON, replacing the file atomically."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def for_run(cls, config: MigrationConfig, run_id: str) -> MigrationStateStore:
        return cls(config.state_directory / f"{run_id}.json")

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> MigrationState | None:
        if not self.path.exists():
            return None
        return MigrationState.model_validate_json(self.path.read_text(encoding="utf-8"))

    def load_or_create(self) -> MigrationState:
        return self.load() or MigrationState(run_id=self.path.stem)

    def save(self, state: MigrationState) -> None:
        state.updated_at = datetime.now()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(state.model_dump_json(indent=2))
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


def _is_sync_busy(result: Any) -> bool:
    if result.success:
        return False
    text = result.error_text().lower()
    return any(marker in text for marker in SYNC_BUSY_MARKERS)


class DirectorySync:
    """Triggers Entra Connect (AD Sync) delta cycles."""

    def __init__(
        self,
        powershell: PowerShell,
        poller: Poller,
        server: str | None = None,
        attempts: int = 5,
        delay_seconds: float = 30.0,
    ) -> None:
        self.powershell = powershell
        self.poller = poller
        self.server = server
        self.attempts = attempts
        self.delay_seconds = delay_seconds

    def build_script(self) -> str:
        body = "Import-Module ADSync; Start-ADSyncSyncCycle -PolicyType Delta | Out-Null"
        if self.server:
            return f"Invoke-Command -ComputerName {quote(self.server)} -ScriptBlock {{ {body} }}"
        return body

    def trigger(self, dry_run: bool = False, context: JobContext | None = None) -> tuple[bool, str]:
        """Start a delta cycle, waiting while another cycle is still running."""
        script = self.build_script()
        if dry_run:
            return True, "Would start a delta sync cycle"

        result = self.poller.retry(
            lambda: self.powershell.run(script),
            "delta sync cycle",
            attempts=self.attempts,
            delay_seconds=self.delay_seconds,
            retry_if=_is_sync_busy,
            context=context,
        )
        if not result.success:
            return False, f"Start-ADSyncSyncCycle failed: {result.error_text()}"
        logger.info("Delta sync cycle started", server=self.server or "local")
        return True, "Delta sync cycle started"


class DistributionGroupMigration:
    """Drives groups through the migration phases."""

    def __init__(
        self,
        exchange: ExchangeOnline,
        ad: ActiveDirectory,
        sync: DirectorySync,
        store: MigrationStateStore,
        poller: Poller,
        config: MigrationConfig,
    ) -> None:
        self.exchange = exchange
        self.ad = ad
        self.sync = sync
        self.store = store
        self.config = config
        self.removal_poller = poller.with_timing(
            config.removal_poll_interval_seconds, config.removal_timeout_seconds
        )
        self.state = store.load_or_create()

    def _checkpoint(self) -> None:
        self.store.save(self.state)

    # ==================== Export ====================

    def export_group(self, name: str) -> DistributionGroupSnapshot:
        rows = self.exchange.run_json(
            f"Get-DistributionGroup -Identity {quote(name)} -ErrorAction SilentlyContinue"
            f" | Select-Object {GROUP_FIELDS}"
        )
        if not rows:
            raise LookupError(f"Distribution group {name} not found in Exchange Online")
        group = rows[0]
        if not group.get("IsDirSynced"):
            raise ValueError(f"{name} is not synchronized from on-premises; nothing to migrate")

        members = self.exchange.run_json(
            f"Get-DistributionGroupMember -Identity {quote(str(group.get('PrimarySmtpAddress')))}"
            " -ResultSize Unlimited | Select-Object Name, PrimarySmtpAddress, RecipientType"
        )

        onprem = self.ad.find_group_by_mail(str(group.get("PrimarySmtpAddress")))
        if onprem is None:
            raise LookupError(
                f"No on-premises group with mail {group.get('PrimarySmtpAddress')}"
            )
        return DistributionGroupSnapshot.from_exchange(group, members, onprem.get("DistinguishedName"))

    def export(self, names: list[str], persist: bool = True) -> list[GroupMigrationState]:
        """Snapshot every PENDING group named."""
        self.state.add(names)
        for group in self.state.groups.values():
            if group.phase == MigrationPhase.PENDING:
                group.error = None
        exported = []
        for group in self.state.in_phase(MigrationPhase.PENDING):
            try:
                group.snapshot = self.export_group(group.name)
            except (CommandError, LookupError, ValueError) as e:
                group.fail(str(e))
                logger.error("Export failed", group=group.name, error=str(e))
            else:
                group.advance(MigrationPhase.EXPORTED)
                exported.append(group)
                logger.info(
                    "Group exported",
                    group=group.name,
                    members=len(group.snapshot.members),
                )
            if persist:
                self._checkpoint()
        return exported

    # ==================== Remove sources ====================

    def remove_sources(self, dry_run: bool = False) -> list[GroupMigrationState]:
        removed = []
        for group in self.state.in_phase(MigrationPhase.EXPORTED):
            snapshot = group.snapshot
            if snapshot is None or not snapshot.onprem_distinguished_name:
                group.fail("No on-premises identity recorded")
                self._checkpoint()
                continue

            dn = snapshot.onprem_distinguished_name
            if self.config.source_action == "move":
                if not self.config.unsynced_ou:
                    raise ValueError("source_action 'move' requires unsynced_ou")
                ok, message = self.ad.move_object(dn, self.config.unsynced_ou, dry_run=dry_run)
            else:
                ok, message = self.ad.remove_group(dn, dry_run=dry_run)

            if dry_run:
                continue
            if ok:
                group.advance(MigrationPhase.SOURCE_REMOVED)
                removed.append(group)
            else:
                group.fail(message)
            self._checkpoint()
        return removed

    # ==================== Sync ====================

    def trigger_sync(self, dry_run: bool = False, context: JobContext | None = None) -> None:
        ok, message = self.sync.trigger(dry_run=dry_run, context=context)
        if not ok:
            raise RuntimeError(message)

    def present_addresses(self, addresses: list[str]) -> set[str]:
        """Which of the addresses still resolve to a recipient."""
        if not addresses:
            return set()
        rows = self.exchange.run_json(
            f"{format_array(addresses)} | ForEach-Object "
            "{ Get-Recipient -Identity $_ -ErrorAction SilentlyContinue }"
            " | Select-Object PrimarySmtpAddress"
        )
        return {str(r.get("PrimarySmtpAddress", "")).lower() for r in rows}

    def wait_for_removal(self, context: JobContext | None = None) -> None:
        """Poll until every SOURCE_REMOVED group is gone from Exchange Online."""

        def all_gone() -> bool:
            waiting = self.state.in_phase(MigrationPhase.SOURCE_REMOVED)
            if not waiting:
                return True
            present = self.present_addresses(
                [g.snapshot.primary_smtp_address for g in waiting if g.snapshot]
            )
            for group in waiting:
                if group.snapshot and group.snapshot.primary_smtp_address.lower() not in present:
                    group.advance(MigrationPhase.SYNCED)
                    logger.info("Group removed by sync", group=group.name)
            self._checkpoint()
            return not self.state.in_phase(MigrationPhase.SOURCE_REMOVED)

        self.removal_poller.poll_until(all_gone, "synchronized groups to disappear", context=context)

    # ==================== Recreate ====================

    def group_exists(self, address: str) -> bool:
        rows = self.exchange.run_json(
            f"Get-DistributionGroup -Identity {quote(address)} -ErrorAction SilentlyContinue"
            " | Select-Object PrimarySmtpAddress"
        )
        return bool(rows)

    def build_create_script(self, snapshot: DistributionGroupSnapshot, existing: bool = False) -> str:
        """
        New-DistributionGroup followed by Set-DistributionGroup for the
        addresses and delivery settings. With existing=True only the Set
        part is returned, for a group an earlier attempt already created.
        """
        parts = [
            "New-DistributionGroup",
            f"-Name {quote(snapshot.name)}",
            f"-DisplayName {quote(snapshot.display_name or snapshot.name)}",
            f"-PrimarySmtpAddress {quote(snapshot.primary_smtp_address)}",
            f"-Type {snapshot.group_type}",
            f"-MemberJoinRestriction {snapshot.member_join_restriction}",
            f"-MemberDepartRestriction {snapshot.member_depart_restriction}",
            f"-RequireSenderAuthenticationEnabled {format_bool(snapshot.require_sender_authentication)}",
        ]
        if snapshot.alias:
            parts.append(f"-Alias {quote(snapshot.alias)}")
        if snapshot.managed_by:
            parts.append(f"-ManagedBy {format_array(snapshot.managed_by)}")
        create = " ".join(parts) + " | Out-Null"

        identity = quote(snapshot.primary_smtp_address)
        update = [
            f"Set-DistributionGroup -Identity {identity}",
            f"-EmailAddresses {format_array(snapshot.addresses_to_restore())}",
            f"-HiddenFromAddressListsEnabled {format_bool(snapshot.hidden_from_address_lists)}",
            "-BypassSecurityGroupManagerCheck",
        ]
        if snapshot.accept_messages_only_from:
            update.append(
                f"-AcceptMessagesOnlyFromSendersOrMembers {format_array(snapshot.accept_messages_only_from)}"
            )
        if snapshot.grant_send_on_behalf_to:
            update.append(f"-GrantSendOnBehalfTo {format_array(snapshot.grant_send_on_behalf_to)}")
        if existing:
            return " ".join(update)
        return f"{create}; {' '.join(update)}"

    def build_members_script(self, snapshot: DistributionGroupSnapshot) -> str:
        identity = quote(snapshot.primary_smtp_address)
        return (
            "$failed = @(); "
            f"foreach ($m in {format_array(snapshot.members)}) {{ "
            f"try {{ Add-DistributionGroupMember -Identity {identity} -Member $m"
            " -BypassSecurityGroupManagerCheck -ErrorAction Stop } "
            "catch { $failed += [pscustomobject]@{ Member = $m; Error = $_.Exception.Message } } }; "
            "$failed"
        )

    def recreate_group(self, group: GroupMigrationState, dry_run: bool = False) -> tuple[bool, str]:
        snapshot = group.snapshot
        if snapshot is None:
            return False, "No snapshot recorded"
        if dry_run:
            return True, f"Would recreate {snapshot.primary_smtp_address}"

        try:
            existing = self.group_exists(snapshot.primary_smtp_address)
        except CommandError as e:
            return False, f"Could not check for an existing group: {e}"
        if existing:
            logger.info("Group already exists, updating it", group=group.name)

        result = self.exchange.run(self.build_create_script(snapshot, existing=existing))
        if not result.success:
            command = "Set-DistributionGroup" if existing else "New-DistributionGroup"
            return False, f"{command} failed: {result.error_text()}"

        if snapshot.members:
            try:
                failures = self.exchange.run_json(self.build_members_script(snapshot))
            except CommandError as e:
                group.warnings.append(f"Adding members failed: {e}")
            else:
                for failure in failures:
                    group.warnings.append(
                        f"Member {failure.get('Member')} not added: {failure.get('Error')}"
                    )
        return True, f"Recreated {snapshot.primary_smtp_address}"

    def recreate(self, dry_run: bool = False) -> list[GroupMigrationState]:
        recreated = []
        for group in self.state.in_phase(MigrationPhase.SYNCED):
            ok, message = self.recreate_group(group, dry_run=dry_run)
            if dry_run:
                continue
            if ok:
                group.advance(MigrationPhase.RECREATED)
                recreated.append(group)
                logger.info("Group recreated", group=group.name, warnings=len(group.warnings))
            else:
                group.fail(message)
                logger.error("Recreate failed", group=group.name, error=message)
            self._checkpoint()
        return recreated

    def verify(self, groups: list[GroupMigrationState], context: JobContext | None = None) -> list[str]:
        """Wait for recreated groups to resolve; returns addresses that never did."""
        addresses = [g.snapshot.primary_smtp_address for g in groups if g.snapshot]
        if not addresses:
            return []
        try:
            self.removal_poller.poll_until(
                lambda: {a.lower() for a in addresses} <= self.present_addresses(addresses),
                "recreated groups to resolve",
                context=context,
            )
        except PollTimeoutError:
            present = self.present_addresses(addresses)
            return [a for a in addresses if a.lower() not in present]
        return []

    # ==================== Orchestration ====================

    def describe(self) -> list[str]:
        lines = []
        for group in self.state.groups.values():
            snapshot = group.snapshot
            if snapshot is None:
                lines.append(f"{group.name}: {group.phase.value} ({group.error or 'not exported'})")
                continue
            action = "move" if self.config.source_action == "move" else "delete"
            lines.append(
                f"{group.name} <{snapshot.primary_smtp_address}>: {group.phase.value}, "
                f"{len(snapshot.members)} member(s), {action} {snapshot.onprem_distinguished_name}"
            )
        return lines

    def run(
        self,
        names: list[str],
        dry_run: bool = False,
        context: JobContext | None = None,
    ) -> MigrationState:
        """Run or resume all phases for the named groups."""
        for group in self.state.groups.values():
            group.error = None

        with OperationLogger(
            "distribution group migration",
            logger,
            run_id=self.state.run_id,
            groups=len(names),
            dry_run=dry_run,
        ):
            self._update(context, 0, "export")
            self.export(names, persist=not dry_run)
            if dry_run:
                return self.state

            self._update(context, 1, "remove sources")
            self.remove_sources()

            if self.state.in_phase(MigrationPhase.SOURCE_REMOVED):
                self._update(context, 2, "directory sync")
                self.trigger_sync(context=context)
                self._update(context, 3, "wait for removal")
                self.wait_for_removal(context=context)

            self._update(context, 4, "recreate")
            recreated = self.recreate()

            if self.config.verify_after_recreate and recreated:
                self._update(context, 5, "verify")
                for address in self.verify(recreated, context=context):
                    logger.warning("Recreated group not yet resolvable", address=address)

            self._update(context, 6, "done")
        return self.state

    def _update(self, context: JobContext | None, current: int, stage: str) -> None:
        if context is None:
            return
        context.check_cancelled()
        context.update_progress(current=current, total=6, stage=stage)


class MigrateGroupsJob(Job[MigrationState]):
    """Migrate synchronized distribution groups to cloud-only groups."""

    operation_type = OperationType.DELETE

    def __init__(
        self,
        migration: DistributionGroupMigration,
        names: list[str],
        dry_run: bool = False,
    ) -> None:
        super().__init__(
            name="migrate_groups",
            description=f"Migrate {len(names)} distribution group(s) to Exchange Online",
        )
        self.migration = migration
        self.names = names
        self.dry_run = dry_run

    @property
    def target(self) -> str:
        return self.migration.state.run_id

    def validate(self) -> list[str]:
        errors = []
        if not self.names and not self.migration.state.groups:
            errors.append("No groups given and no state to resume")
        config = self.migration.config
        if config.source_action == "move" and not config.unsynced_ou:
            errors.append("source_action 'move' requires migration.unsynced_ou")
        return errors

    def get_plan(self) -> str:
        action = (
            f"Move on-premises groups to {self.migration.config.unsynced_ou}"
            if self.migration.config.source_action == "move"
            else "Delete on-premises groups"
        )
        return "\n".join(
            [
                f"1. Export {', '.join(self.names) or 'groups in state file'} from Exchange Online",
                f"2. {action}",
                "3. Start a delta sync cycle",
                "4. Wait until the synchronized groups disappear from Exchange Online",
                "5. Recreate them as cloud-only groups with members and addresses",
                f"State file: {self.migration.store.path}",
            ]
        )

    def execute(self, context: JobContext) -> MigrationState:
        state = self.migration.run(self.names, dry_run=self.dry_run, context=context)
        for group in state.groups.values():
            for warning in group.warnings:
                context.add_warning(f"{group.name}: {warning}")
            if group.failed:
                context.add_warning(f"{group.name}: {group.error}")
        if state.groups and len(state.failed_groups) == len(state.groups):
            raise RuntimeError("Every group failed; see the state file for details")
        return state


class ExportGroupsJob(Job[list[GroupMigrationState]]):
    """Snapshot groups into a state file without changing anything."""

    operation_type = OperationType.READ_ONLY

    def __init__(self, migration: DistributionGroupMigration, names: list[str]) -> None:
        super().__init__(name="export_groups", description=f"Export {len(names)} distribution group(s)")
        self.migration = migration
        self.names = names

    def validate(self) -> list[str]:
        return [] if self.names else ["No groups given"]

    def get_plan(self) -> str:
        return f"Export {', '.join(self.names)} to {self.migration.store.path}"

    def execute(self, context: JobContext) -> list[GroupMigrationState]:
        context.update_progress(current=0, total=1, stage="export")
        self.migration.export(self.names)
        for name in self.names:
            group = self.migration.state.groups[name]
            if group.failed:
                context.add_warning(f"{name}: {group.error}")
        context.update_progress(current=1)
        return [self.migration.state.groups[name] for name in self.names]
