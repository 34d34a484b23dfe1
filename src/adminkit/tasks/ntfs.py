"""
NTFS permission assignment with icacls.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from adminkit.core.job import Job, JobContext
from adminkit.core.logging import get_logger
from adminkit.core.models import AceSpec
from adminkit.core.safety import OperationType
from adminkit.platform.base import CommandError, CommandResult, CommandRunner

if TYPE_CHECKING:
    from adminkit.core.config import PollingConfig
    from adminkit.core.polling import Poller

logger = get_logger(__name__)

ICACLS = "icacls"
UNRESOLVED_PRINCIPAL = "no mapping between account names"


def build_icacls_args(
    path: str,
    aces: Iterable[AceSpec],
    disable_inheritance: bool = False,
    remove: Iterable[str] = (),
    recurse: bool = False,
    executable: str = ICACLS,
) -> list[str]:
    """Build a single icacls invocation applying all entries to path."""
    aces = list(aces)
    args = [executable, path]
    if disable_inheritance:
        args.append("/inheritance:d")
    for principal in remove:
        args.extend(["/remove", principal])

    grants = [a.icacls_token() for a in aces if not a.deny]
    if grants:
        args.append("/grant:r")
        args.extend(grants)

    denies = [a.icacls_token() for a in aces if a.deny]
    if denies:
        args.append("/deny")
        args.extend(denies)

    if recurse:
        args.append("/T")
    args.append("/C")
    return args


def parse_icacls_output(output: str, path: str) -> list[tuple[str, str]]:
    """Parse `icacls <path>` listing into (principal, permissions) pairs."""
    entries: list[tuple[str, str]] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line or line.startswith("Successfully processed"):
            continue
        if line.lower().startswith(path.lower()):
            line = line[len(path):].strip()
        principal, sep, perms = line.partition(":(")
        if not sep:
            continue
        entries.append((principal.strip(), "(" + perms))
    return entries


def is_unresolved_principal(result: CommandResult) -> bool:
    text = f"{result.stdout}\n{result.stderr}".lower()
    return not result.success and UNRESOLVED_PRINCIPAL in text


class AclManager:
    """Reads and writes NTFS ACLs."""

    def __init__(
        self,
        runner: CommandRunner,
        poller: Poller,
        polling: PollingConfig,
        executable: str = ICACLS,
    ) -> None:
        self.runner = runner
        self.poller = poller
        self.polling = polling
        self.executable = executable

    def apply(
        self,
        path: str,
        aces: list[AceSpec],
        disable_inheritance: bool = False,
        remove: Iterable[str] = (),
        recurse: bool = False,
        dry_run: bool = False,
        context: JobContext | None = None,
    ) -> tuple[bool, str]:
        """
        Apply entries to path, retrying while a principal does not resolve yet.
        Returns (success, message).
        """
        args = build_icacls_args(
            path,
            aces,
            disable_inheritance=disable_inheritance,
            remove=remove,
            recurse=recurse,
            executable=self.executable,
        )
        if dry_run:
            logger.info("Dry run: would run icacls", command=args)
            return True, f"Would set {len(aces)} permission(s) on {path}"

        result = self.poller.retry(
            lambda: self.runner.run(args),
            f"icacls on {path}",
            attempts=self.polling.retry_attempts,
            delay_seconds=self.polling.retry_delay_seconds,
            retry_if=is_unresolved_principal,
            context=context,
        )
        if not result.success:
            return False, f"icacls failed on {path}: {result.error_text()}"

        logger.info(
            "Permissions applied",
            path=path,
            principals=[a.principal for a in aces],
            inheritance_disabled=disable_inheritance,
        )
        return True, f"Set {len(aces)} permission(s) on {path}"

    def get(self, path: str) -> list[tuple[str, str]]:
        result = self.runner.run([self.executable, path])
        if not result.success:
            raise CommandError(f"icacls could not read {path}", result)
        return parse_icacls_output(result.stdout, path)


class SetAclJob(Job[str]):
    """Grant NTFS permissions on a path."""

    operation_type = OperationType.MODIFY

    def __init__(
        self,
        acl: AclManager,
        path: str,
        aces: list[AceSpec],
        disable_inheritance: bool = False,
        recurse: bool = False,
        dry_run: bool = False,
    ) -> None:
        super().__init__(name="set_acl", description=f"Set NTFS permissions on {path}")
        self.acl = acl
        self.path = path
        self.aces = aces
        self.disable_inheritance = disable_inheritance
        self.recurse = recurse
        self.dry_run = dry_run

    @property
    def target(self) -> str:
        return self.path

    def validate(self) -> list[str]:
        if not self.aces:
            return ["At least one permission entry is required"]
        return []

    def get_plan(self) -> str:
        lines = [f"Path: {self.path}"]
        if self.disable_inheritance:
            lines.append("Disable inheritance (copy inherited entries)")
        for ace in self.aces:
            verb = "Deny" if ace.deny else "Grant"
            lines.append(f"{verb} {ace.principal} {ace.rights.name}")
        return "\n".join(lines)

    def execute(self, context: JobContext) -> str:
        ok, message = self.acl.apply(
            self.path,
            self.aces,
            disable_inheritance=self.disable_inheritance,
            recurse=self.recurse,
            dry_run=self.dry_run,
            context=context,
        )
        if not ok:
            raise RuntimeError(message)
        return message
