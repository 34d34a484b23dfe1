"""
Folder-to-DFS-share provisioning.

Creates the folder on the file server, the access groups, the NTFS
permissions, the SMB share and finally the DFS namespace link. Every step
checks for existing state first so that a partial run can be repeated.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from adminkit.core.job import Job, JobContext
from adminkit.core.logging import OperationLogger, get_logger
from adminkit.core.models import AceSpec, FileSystemRights, ProvisionStep, ShareRequest, StepStatus
from adminkit.core.safety import OperationType, PreflightChecker, check_admin
from adminkit.platform.base import CommandError, CommandRunner
from adminkit.platform.powershell import PowerShell, quote
from adminkit.tasks.adgroups import ActiveDirectory, share_group_specs

if TYPE_CHECKING:
    from adminkit.core.config import ActiveDirectoryConfig, DfsConfig
    from adminkit.core.polling import Poller
    from adminkit.tasks.ntfs import AclManager

logger = get_logger(__name__)


class DfsProvisioner:
    """Runs the provisioning steps for one ShareRequest."""

    def __init__(
        self,
        powershell: PowerShell,
        runner: CommandRunner,
        ad: ActiveDirectory,
        acl: AclManager,
        poller: Poller,
        ad_config: ActiveDirectoryConfig,
        dfs_config: DfsConfig,
    ) -> None:
        self.powershell = powershell
        self.runner = runner
        self.ad = ad
        self.acl = acl
        self.poller = poller
        self.ad_config = ad_config
        self.dfs_config = dfs_config

    def steps(
        self,
    ) -> list[tuple[str, Callable[[ShareRequest, bool, JobContext | None], ProvisionStep]]]:
        return [
            ("Create folder", self.create_folder),
            ("Create groups", self.create_groups),
            ("Set NTFS permissions", self.set_permissions),
            ("Create SMB share", self.create_share),
            ("Create DFS link", self.create_link),
        ]

    def _remote(self, request: ShareRequest, body: str) -> str:
        if not request.server:
            return body
        return f"Invoke-Command -ComputerName {quote(request.server)} -ScriptBlock {{ {body} }}"

    def create_folder(
        self, request: ShareRequest, dry_run: bool, context: JobContext | None = None
    ) -> ProvisionStep:
        name = "Create folder"
        path = quote(request.local_path)
        if dry_run:
            return ProvisionStep(name, StepStatus.DRY_RUN, f"Would create {request.local_path}")

        script = self._remote(
            request,
            f"if (Test-Path -LiteralPath {path}) {{ 'exists' }} "
            f"else {{ New-Item -ItemType Directory -Force -Path {path} | Out-Null; 'created' }}",
        )
        result = self.powershell.run(script)
        if not result.success:
            return ProvisionStep(name, StepStatus.FAILED, result.error_text())
        if result.stdout.strip().endswith("exists"):
            return ProvisionStep(name, StepStatus.SKIPPED, f"{request.local_path} already exists")
        return ProvisionStep(name, StepStatus.DONE, f"Created {request.local_path}")

    def create_groups(
        self, request: ShareRequest, dry_run: bool, context: JobContext | None = None
    ) -> ProvisionStep:
        name = "Create groups"
        if not request.create_groups:
            return ProvisionStep(name, StepStatus.SKIPPED, "Group creation disabled")

        created: list[str] = []
        existing: list[str] = []
        for spec in share_group_specs(request.share_name, self.ad_config):
            if self.ad.group_exists(spec.name):
                existing.append(spec.name)
                continue
            if dry_run:
                created.append(spec.name)
                continue
            ok, message = self.ad.create_group(spec)
            if not ok:
                return ProvisionStep(name, StepStatus.FAILED, message)
            created.append(spec.name)

        if dry_run:
            return ProvisionStep(
                name, StepStatus.DRY_RUN, f"Would create {', '.join(created) or 'nothing'}"
            )

        for group in created:
            self.ad.wait_for_group(group, self.poller, context=context)

        if not created:
            return ProvisionStep(name, StepStatus.SKIPPED, f"{', '.join(existing)} already exist")
        return ProvisionStep(name, StepStatus.DONE, f"Created {', '.join(created)}")

    def permission_entries(self, request: ShareRequest) -> list[AceSpec]:
        aces = [AceSpec(p, FileSystemRights.FULL) for p in self.ad_config.admin_principals]
        if request.create_groups:
            modify, read = share_group_specs(request.share_name, self.ad_config)
            aces.append(AceSpec(self.ad_config.qualify(modify.name), FileSystemRights.MODIFY))
            aces.append(AceSpec(self.ad_config.qualify(read.name), FileSystemRights.READ))
        return aces

    def set_permissions(
        self, request: ShareRequest, dry_run: bool, context: JobContext | None = None
    ) -> ProvisionStep:
        name = "Set NTFS permissions"
        ok, message = self.acl.apply(
            request.admin_path,
            self.permission_entries(request),
            disable_inheritance=True,
            dry_run=dry_run,
            context=context,
        )
        if not ok:
            return ProvisionStep(name, StepStatus.FAILED, message)
        return ProvisionStep(name, StepStatus.DRY_RUN if dry_run else StepStatus.DONE, message)

    def _cim_arg(self, request: ShareRequest) -> str:
        return f" -CimSession {quote(request.server)}" if request.server else ""

    def share_exists(self, request: ShareRequest) -> bool:
        script = (
            f"Get-SmbShare -Name {quote(request.share_name)}{self._cim_arg(request)}"
            " -ErrorAction SilentlyContinue | Select-Object Name, Path"
        )
        return bool(self.powershell.run_json(script))

    def build_share_script(self, request: ShareRequest) -> str:
        enumeration = "AccessBased" if self.dfs_config.access_based_enumeration else "Unrestricted"
        parts = [
            "New-SmbShare",
            f"-Name {quote(request.share_name)}",
            f"-Path {quote(request.local_path)}",
            "-FullAccess 'Everyone'",
            f"-FolderEnumerationMode {enumeration}",
        ]
        if request.description:
            parts.append(f"-Description {quote(request.description)}")
        return " ".join(parts) + self._cim_arg(request) + " | Out-Null"

    def create_share(
        self, request: ShareRequest, dry_run: bool, context: JobContext | None = None
    ) -> ProvisionStep:
        name = "Create SMB share"
        try:
            exists = self.share_exists(request)
        except CommandError as e:
            return ProvisionStep(name, StepStatus.FAILED, str(e))
        if exists:
            return ProvisionStep(name, StepStatus.SKIPPED, f"{request.unc_path} already shared")
        if dry_run:
            return ProvisionStep(name, StepStatus.DRY_RUN, f"Would share {request.unc_path}")

        result = self.powershell.run(self.build_share_script(request))
        if not result.success:
            return ProvisionStep(name, StepStatus.FAILED, result.error_text())
        return ProvisionStep(name, StepStatus.DONE, f"Shared {request.unc_path}")

    def link_exists(self, request: ShareRequest) -> bool:
        result = self.runner.run(
            [self.dfs_config.dfsutil_path, "link", request.link_path], check=False
        )
        return result.success

    def create_link(
        self, request: ShareRequest, dry_run: bool, context: JobContext | None = None
    ) -> ProvisionStep:
        name = "Create DFS link"
        if self.link_exists(request):
            return ProvisionStep(name, StepStatus.SKIPPED, f"{request.link_path} already exists")

        args = [self.dfs_config.dfsutil_path, "link", "add", request.link_path, request.unc_path]
        if dry_run:
            logger.info("Dry run: would add DFS link", command=args)
            return ProvisionStep(
                name, StepStatus.DRY_RUN, f"Would link {request.link_path} -> {request.unc_path}"
            )

        result = self.runner.run(args)
        if not result.success:
            return ProvisionStep(name, StepStatus.FAILED, result.error_text())
        return ProvisionStep(name, StepStatus.DONE, f"Linked {request.link_path} -> {request.unc_path}")

    def provision(
        self,
        request: ShareRequest,
        dry_run: bool = False,
        context: JobContext | None = None,
    ) -> list[ProvisionStep]:
        """Run all steps in order, stopping after the first failure."""
        results: list[ProvisionStep] = []
        steps = self.steps()
        with OperationLogger("provision share", logger, share=request.share_name, dry_run=dry_run):
            for index, (label, step) in enumerate(steps, 1):
                if context is not None:
                    context.check_cancelled()
                    context.update_progress(current=index - 1, total=len(steps), stage=label)
                outcome = step(request, dry_run, context)
                logger.info(
                    "Provisioning step",
                    step=outcome.name,
                    status=outcome.status.value,
                    detail=outcome.message,
                )
                results.append(outcome)
                if not outcome.ok:
                    break
            if context is not None:
                context.update_progress(current=len(results), total=len(steps))
        return results


class ProvisionShareJob(Job[list[ProvisionStep]]):
    """Provision a folder as a share published in DFS."""

    operation_type = OperationType.CREATE

    def __init__(
        self,
        provisioner: DfsProvisioner,
        request: ShareRequest,
        dry_run: bool = False,
    ) -> None:
        super().__init__(
            name="provision_share",
            description=f"Provision share {request.share_name}",
        )
        self.provisioner = provisioner
        self.request = request
        self.dry_run = dry_run
        self.checker = PreflightChecker()
        self.checker.add_check("Administrator", check_admin)

    @property
    def target(self) -> str:
        return self.request.share_name

    def validate(self) -> list[str]:
        errors = []
        if not self.request.share_name or any(c in self.request.share_name for c in '\\/:*?"<>|'):
            errors.append(f"Invalid share name: {self.request.share_name!r}")
        if not self.request.namespace_root.startswith("\\\\"):
            errors.append("Namespace root must be a UNC path like \\\\domain\\root")
        if ":" not in self.request.base_path:
            errors.append("Base path must be a local path on the file server, e.g. D:\\Shares")
        return errors

    def get_plan(self) -> str:
        r = self.request
        lines = [
            f"1. Create folder {r.local_path} on {r.server or 'this machine'}",
        ]
        if r.create_groups:
            modify, read = share_group_specs(r.share_name, self.provisioner.ad_config)
            lines.append(f"2. Create groups {modify.name}, {read.name}")
        else:
            lines.append("2. Skip group creation")
        lines.append(f"3. Set NTFS permissions on {r.admin_path} (inheritance disabled)")
        lines.append(f"4. Share as {r.unc_path}")
        lines.append(f"5. Add DFS link {r.link_path} -> {r.unc_path}")
        return "\n".join(lines)

    def execute(self, context: JobContext) -> list[ProvisionStep]:
        if not self.dry_run:
            report = self.checker.run_checks({})
            for check in report.failed_checks:
                context.add_warning(check.message)

        results = self.provisioner.provision(self.request, dry_run=self.dry_run, context=context)
        failed = [s for s in results if not s.ok]
        if failed:
            raise RuntimeError(f"{failed[0].name} failed: {failed[0].message}")
        return results
