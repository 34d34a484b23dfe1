"""
PowerShell invocation and output parsing.

AD, SMB, CIM and Exchange cmdlets are reached by running short PowerShell
scripts and converting their output to JSON.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from adminkit.core.logging import get_logger
from adminkit.platform.base import CommandError, CommandResult, CommandRunner

logger = get_logger(__name__)

STRICT_PREAMBLE = "$ErrorActionPreference = 'Stop'; "
JSON_SUFFIX = " | ConvertTo-Json -Depth 5 -Compress"


def quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted literal."""
    return "'" + str(value).replace("'", "''") + "'"


def format_bool(value: bool) -> str:
    return "$true" if value else "$false"


def format_array(values: Iterable[str]) -> str:
    """Format values as a PowerShell array literal."""
    return "@(" + ",".join(quote(v) for v in values) + ")"


def parse_powershell_json(output: str) -> list[dict[str, Any]]:
    """Parse ConvertTo-Json output; a single object becomes a one-item list."""
    output = output.strip()
    if not output:
        return []

    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        logger.warning("Unparseable PowerShell output", output=output[:200])
        return []

    if data is None:
        return []
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        return [data]
    return []


class PowerShell:
    """Runs PowerShell scripts through a CommandRunner."""

    CANDIDATES = ("powershell.exe", "pwsh")

    def __init__(self, runner: CommandRunner, executable: str | None = None) -> None:
        self.runner = runner
        self._executable = executable

    @property
    def executable(self) -> str:
        if self._executable is None:
            self._executable = next(
                (c for c in self.CANDIDATES if self.runner.which(c)),
                self.CANDIDATES[0],
            )
        return self._executable

    def run(self, script: str, timeout: int = 300) -> CommandResult:
        """Run a PowerShell script; non-terminating errors are promoted to failures."""
        cmd = [
            self.executable,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy", "Bypass",
            "-Command", f"{STRICT_PREAMBLE}{script}",
        ]
        return self.runner.run(cmd, timeout=timeout)

    def run_json(self, script: str, timeout: int = 300) -> list[dict[str, Any]]:
        """Run a script whose pipeline output is converted to JSON."""
        result = self.run(script.rstrip() + JSON_SUFFIX, timeout=timeout)
        if not result.success:
            raise CommandError("PowerShell command failed", result)
        return parse_powershell_json(result.stdout)
