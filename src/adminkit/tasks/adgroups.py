"""
Active Directory group management through the ActiveDirectory module.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from adminkit.core.job import Job, JobContext
from adminkit.core.logging import get_logger
from adminkit.core.models import GroupCategory, GroupScope, GroupSpec
from adminkit.core.safety import OperationType
from adminkit.platform.powershell import PowerShell, format_array, quote

if TYPE_CHECKING:
    from adminkit.core.config import ActiveDirectoryConfig
    from adminkit.core.polling import Poller

logger = get_logger(__name__)

GROUP_PROPERTIES = "Name, SamAccountName, DistinguishedName, GroupScope, GroupCategory, mail"


class ActiveDirectory:
    """Wraps the AD cmdlets used by the tasks."""

    def __init__(self, powershell: PowerShell, server: str | None = None) -> None:
        self.powershell = powershell
        self.server = server

    def _server_arg(self) -> str:
        return f" -Server {quote(self.server)}" if self.server else ""

    def _script(self, body: str) -> str:
        return f"Import-Module ActiveDirectory; {body}"

    def find_group(self, attribute: str, value: str) -> dict[str, Any] | None:
        """Look a group up by an attribute; returns None when it does not exist."""
        escaped = value.replace("'", "''")
        filter_expr = f"{attribute} -eq '{escaped}'"
        script = self._script(
            f"Get-ADGroup -Filter {quote(filter_expr)} -Properties mail{self._server_arg()}"
            f" | Select-Object {GROUP_PROPERTIES}"
        )
        groups = self.powershell.run_json(script)
        return groups[0] if groups else None

    def get_group(self, name: str) -> dict[str, Any] | None:
        return self.find_group("Name", name)

    def find_group_by_mail(self, address: str) -> dict[str, Any] | None:
        return self.find_group("mail", address)

    def group_exists(self, name: str) -> bool:
        return self.get_group(name) is not None

    def build_new_group_script(self, spec: GroupSpec) -> str:
        parts = [
            "New-ADGroup",
            f"-Name {quote(spec.name)}",
            f"-SamAccountName {quote(spec.sam)}",
            f"-GroupScope {spec.scope.value}",
            f"-GroupCategory {spec.category.value}",
        ]
        if spec.path:
            parts.append(f"-Path {quote(spec.path)}")
        if spec.description:
            parts.append(f"-Description {quote(spec.description)}")
        return self._script(" ".join(parts) + self._server_arg())

    def create_group(self, spec: GroupSpec, dry_run: bool = False) -> tuple[bool, str]:
        """
        Create a group unless it already exists, then add its members.
        Returns (success, message).
        """
        if self.group_exists(spec.name):
            logger.info("Group already exists", group=spec.name)
            if spec.members and not dry_run:
                return self.add_members(spec.name, spec.members)
            return True, f"Group {spec.name} already exists"

        script = self.build_new_group_script(spec)
        if dry_run:
            logger.info("Dry run: would create group", group=spec.name, script=script)
            return True, f"Would create group {spec.name}"

        result = self.powershell.run(script)
        if not result.success:
            return False, f"New-ADGroup {spec.name} failed: {result.error_text()}"

        logger.info("Group created", group=spec.name, scope=spec.scope.value)
        if spec.members:
            ok, message = self.add_members(spec.name, spec.members)
            if not ok:
                return False, message
        return True, f"Created group {spec.name}"

    def add_members(self, group: str, members: list[str]) -> tuple[bool, str]:
        script = self._script(
            f"Add-ADGroupMember -Identity {quote(group)} -Members {format_array(members)}"
            f"{self._server_arg()}"
        )
        result = self.powershell.run(script)
        if not result.success:
            return False, f"Add-ADGroupMember {group} failed: {result.error_text()}"
        return True, f"Added {len(members)} member(s) to {group}"

    def remove_group(self, identity: str, dry_run: bool = False) -> tuple[bool, str]:
        script = self._script(
            f"Remove-ADGroup -Identity {quote(identity)} -Confirm:$false{self._server_arg()}"
        )
        if dry_run:
            return True, f"Would remove group {identity}"

        result = self.powershell.run(script)
        if not result.success:
            return False, f"Remove-ADGroup failed: {result.error_text()}"
        logger.warning("Group removed", identity=identity)
        return True, f"Removed group {identity}"

    def move_object(self, identity: str, target_ou: str, dry_run: bool = False) -> tuple[bool, str]:
        script = self._script(
            f"Move-ADObject -Identity {quote(identity)} -TargetPath {quote(target_ou)}"
            f"{self._server_arg()}"
        )
        if dry_run:
            return True, f"Would move {identity} to {target_ou}"

        result = self.powershell.run(script)
        if not result.success:
            return False, f"Move-ADObject failed: {result.error_text()}"
        logger.info("Object moved", identity=identity, target_ou=target_ou)
        return True, f"Moved {identity} to {target_ou}"

    def wait_for_group(
        self,
        name: str,
        poller: Poller,
        context: JobContext | None = None,
    ) -> dict[str, Any]:
        """Poll until a newly created group can be read back."""
        return poller.poll_until(
            lambda: self.get_group(name),
            f"group {name} to resolve",
            context=context,
        )


def share_group_specs(share_name: str, config: ActiveDirectoryConfig) -> tuple[GroupSpec, GroupSpec]:
    """Modify and read groups for a share, following the naming convention."""
    base = f"{config.group_prefix}{share_name}"
    modify = GroupSpec(
        name=f"{base}{config.modify_suffix}",
        path=config.group_ou,
        scope=GroupScope.DOMAIN_LOCAL,
        category=GroupCategory.SECURITY,
        description=f"Modify access to share {share_name}",
    )
    read = GroupSpec(
        name=f"{base}{config.read_suffix}",
        path=config.group_ou,
        scope=GroupScope.DOMAIN_LOCAL,
        category=GroupCategory.SECURITY,
        description=f"Read access to share {share_name}",
    )
    return modify, read


class CreateGroupsJob(Job[list[str]]):
    """Create one or more AD groups."""

    operation_type = OperationType.CREATE

    def __init__(
        self,
        ad: ActiveDirectory,
        specs: list[GroupSpec],
        dry_run: bool = False,
    ) -> None:
        super().__init__(
            name="create_groups",
            description=f"Create {len(specs)} AD group(s)",
        )
        self.ad = ad
        self.specs = specs
        self.dry_run = dry_run

    @property
    def target(self) -> str:
        return ",".join(s.name for s in self.specs)

    def validate(self) -> list[str]:
        errors = []
        for spec in self.specs:
            if not spec.name.strip():
                errors.append("Group name must not be empty")
            if len(spec.sam) > 256:
                errors.append(f"sAMAccountName too long: {spec.sam}")
        return errors

    def get_plan(self) -> str:
        return "\n".join(
            f"Create {s.scope.value} {s.category.value} group {s.name}"
            + (f" in {s.path}" if s.path else "")
            for s in self.specs
        )

    def execute(self, context: JobContext) -> list[str]:
        messages: list[str] = []
        context.update_progress(current=0, total=len(self.specs), stage="create")
        for i, spec in enumerate(self.specs, 1):
            context.check_cancelled()
            ok, message = self.ad.create_group(spec, dry_run=self.dry_run)
            if not ok:
                raise RuntimeError(message)
            messages.append(message)
            context.update_progress(current=i, message=message)
        return messages
