"""
AdminKit Safety Manager.

Danger mode, confirmation strings and preflight checks for operations that
change directory objects, permissions, mail flow or media files.

Nothing but READ_ONLY work is allowed until the user enables danger mode
by typing the acknowledgment phrase. Danger mode lapses on its own after
``confirmation_timeout_seconds``. MODIFY and DELETE operations also need
the user to type a ``DESTROY-<TARGET>`` string naming what they touch.
"""

from __future__ import annotations

import re
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import humanize
import psutil

from adminkit.core.logging import get_logger

if TYPE_CHECKING:
    from adminkit.core.config import SafetyConfig

logger = get_logger(__name__)

ACKNOWLEDGMENT = "I understand the risks"

Severity = Literal["info", "warning", "error"]


class DangerMode(Enum):
    DISABLED = auto()
    ENABLED = auto()


class OperationType(Enum):
    """Operations ranked by how hard they are to undo."""

    READ_ONLY = auto()  # inventory, identify, export
    CREATE = auto()  # groups, folders, shares, links
    MODIFY = auto()  # ACLs, forwarding, remux output
    DELETE = auto()  # directory objects


CONFIRMED_OPERATIONS = frozenset({OperationType.MODIFY, OperationType.DELETE})


@dataclass
class PreflightCheck:
    name: str
    passed: bool
    message: str
    severity: Severity = "info"
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PreflightReport:
    checks: list[PreflightCheck] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def failed_checks(self) -> list[PreflightCheck]:
        return [c for c in self.checks if not c.passed]

    @property
    def all_passed(self) -> bool:
        return not self.failed_checks

    @property
    def has_errors(self) -> bool:
        """Failed checks of severity "warning" do not block an operation."""
        return any(c.severity == "error" for c in self.failed_checks)

    def get_summary(self) -> str:
        passed = len(self.checks) - len(self.failed_checks)
        lines = [f"Preflight: {passed}/{len(self.checks)} checks passed"]
        lines += [f"[{'✓' if c.passed else '✗'}] {c.name}: {c.message}" for c in self.checks]
        return "\n".join(lines)


@dataclass
class ExecutionPlan:
    """What an operation will do, shown to the user before confirmation."""

    operation_type: OperationType
    description: str
    target: str
    steps: list[str]
    warnings: list[str] = field(default_factory=list)
    confirmation_string: str | None = None

    def get_plan_text(self) -> str:
        lines = [
            f"{self.description} [{self.operation_type.name}]",
            f"TARGET: {self.target}",
            "",
        ]
        lines += [f"  {i}. {step}" for i, step in enumerate(self.steps, 1)]
        if self.warnings:
            lines.append("")
            lines += [f"  ! {warning}" for warning in self.warnings]
        if self.confirmation_string:
            lines += ["", f"Confirm by typing: {self.confirmation_string}"]
        return "\n".join(lines)


class SafetyManager:
    """Holds the danger mode state of a session and checks operations against it."""

    def __init__(self, config: SafetyConfig) -> None:
        self.config = config
        self._danger_mode_enabled_at: datetime | None = None
        self._confirmed: set[str] = set()
        self._lock = threading.Lock()

    @property
    def danger_mode(self) -> DangerMode:
        with self._lock:
            enabled_at = self._danger_mode_enabled_at
            if enabled_at is None:
                return DangerMode.DISABLED
            if datetime.now() - enabled_at > timedelta(seconds=self.config.confirmation_timeout_seconds):
                logger.info("Danger mode expired", enabled_at=enabled_at.isoformat())
                self._reset()
                return DangerMode.DISABLED
            return DangerMode.ENABLED

    def _reset(self) -> None:
        self._danger_mode_enabled_at = None
        self._confirmed.clear()

    def enable_danger_mode(self, acknowledgment: str) -> bool:
        """Returns False, leaving danger mode off, unless the phrase matches (case-insensitive)."""
        if acknowledgment.strip().lower() != ACKNOWLEDGMENT.lower():
            logger.warning("Danger mode acknowledgment rejected", received=acknowledgment)
            return False

        with self._lock:
            self._reset()
            self._danger_mode_enabled_at = datetime.now()
        logger.warning("Danger mode enabled", timeout_seconds=self.config.confirmation_timeout_seconds)
        return True

    def disable_danger_mode(self) -> None:
        with self._lock:
            self._reset()
        logger.info("Danger mode disabled")

    def is_operation_allowed(self, operation_type: OperationType) -> tuple[bool, str]:
        if operation_type == OperationType.READ_ONLY:
            return True, "Read-only"
        if self.danger_mode == DangerMode.DISABLED:
            return False, f"{operation_type.name} operation requires Danger Mode (--danger-mode)"
        return True, "Danger Mode enabled"

    def requires_confirmation(self, operation_type: OperationType) -> bool:
        return self.config.require_confirmation and operation_type in CONFIRMED_OPERATIONS

    def generate_confirmation_string(self, target_identifier: str) -> str:
        return "DESTROY-" + re.sub(r"[^A-Za-z0-9_-]", "", target_identifier).upper()

    def verify_confirmation(self, target_identifier: str, user_input: str, operation_id: str) -> tuple[bool, str]:
        expected = self.generate_confirmation_string(target_identifier)
        if user_input.strip() != expected:
            logger.warning("Confirmation mismatch", expected=expected, operation_id=operation_id)
            return False, f"Confirmation mismatch. Expected: {expected}"

        with self._lock:
            self._confirmed.add(operation_id)
        logger.info("Operation confirmed", operation_id=operation_id, target=target_identifier)
        return True, "Confirmed"

    def is_operation_confirmed(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._confirmed

    def create_execution_plan(
        self,
        operation_type: OperationType,
        description: str,
        target: str,
        steps: list[str],
        warnings: list[str] | None = None,
    ) -> ExecutionPlan:
        return ExecutionPlan(
            operation_type=operation_type,
            description=description,
            target=target,
            steps=steps,
            warnings=warnings or [],
            confirmation_string=(
                self.generate_confirmation_string(target) if self.requires_confirmation(operation_type) else None
            ),
        )


CheckFunc = Callable[[dict[str, Any]], "PreflightCheck | bool"]


class PreflightChecker:
    """
    Named checks run against a context dict before an operation.

    A check returns a PreflightCheck, or a bool for a simple pass/fail.
    A check that raises is reported as a failed error-level check.
    """

    def __init__(self) -> None:
        self._checks: list[tuple[str, CheckFunc]] = []

    def add_check(self, name: str, check_func: CheckFunc) -> None:
        self._checks.append((name, check_func))

    def run_checks(self, context: dict[str, Any]) -> PreflightReport:
        return PreflightReport(checks=[self._run(name, func, context) for name, func in self._checks])

    @staticmethod
    def _run(name: str, check_func: CheckFunc, context: dict[str, Any]) -> PreflightCheck:
        try:
            outcome = check_func(context)
        except Exception as e:
            logger.warning("Preflight check raised", check=name, error=str(e))
            return PreflightCheck(name, False, f"Check failed with error: {e}", "error")
        if isinstance(outcome, PreflightCheck):
            return outcome
        return PreflightCheck(name, bool(outcome), "Passed" if outcome else "Failed", "info" if outcome else "error")


def check_admin(context: dict[str, Any]) -> PreflightCheck:
    from adminkit.platform import is_admin

    if is_admin():
        return PreflightCheck("Administrator", True, "Running elevated")
    return PreflightCheck(
        "Administrator",
        False,
        "Not running with administrative privileges",
        context.get("admin_severity", "warning"),
    )


def check_tool_available(context: dict[str, Any]) -> PreflightCheck:
    """Looks up context["tool"] on PATH."""
    tool = context.get("tool", "")
    location = shutil.which(tool) if tool else None
    if location is None:
        return PreflightCheck("Tool Available", False, f"{tool or '(none)'} not found on PATH", "error")
    return PreflightCheck("Tool Available", True, f"{tool} found", details={"path": location})


def check_free_space(context: dict[str, Any]) -> PreflightCheck:
    """Compares free space at context["target_path"] with context["required_bytes"]."""
    target = Path(context.get("target_path", "."))
    required = int(context.get("required_bytes", 0))

    base = target if target.exists() else target.parent
    try:
        free = psutil.disk_usage(str(base)).free
    except OSError as e:
        return PreflightCheck("Free Space", False, f"Could not read free space for {base}: {e}", "error")

    details = {"free_bytes": free, "required_bytes": required}
    free_text = humanize.naturalsize(free, binary=True)
    if free < required:
        message = f"Only {free_text} free, {humanize.naturalsize(required, binary=True)} required"
        return PreflightCheck("Free Space", False, message, "error", details)
    return PreflightCheck("Free Space", True, f"{free_text} free", details=details)
