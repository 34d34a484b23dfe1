"""
AdminKit command execution.

Every task drives an existing tool (PowerShell, icacls, dfsutil, mkvmerge),
so all process launching goes through CommandRunner.
"""

from __future__ import annotations

import shutil
import subprocess
import sys
import time

from adminkit.core.logging import get_logger

logger = get_logger(__name__)


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str | list[str],
        duration_seconds: float = 0.0,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.duration_seconds = duration_seconds

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return subprocess.list2cmdline(self.command)

    def error_text(self) -> str:
        """Best available description of a failure."""
        return (self.stderr or self.stdout).strip() or f"exit code {self.returncode}"

    def __repr__(self) -> str:
        return f"CommandResult(rc={self.returncode}, cmd='{self.command_line[:50]}...')"


class CommandError(RuntimeError):
    """Raised when a command that must succeed does not."""

    def __init__(self, message: str, result: CommandResult) -> None:
        super().__init__(f"{message}: {result.error_text()}")
        self.result = result


class CommandRunner:
    """Runs external commands and never raises for process failures."""

    def run(
        self,
        command: list[str],
        timeout: int = 300,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        """Run a command, returning rc -1 on timeout or launch failure."""
        logger.debug("Running command", command=command)
        start_time = time.time()

        kwargs: dict[str, object] = {}
        if sys.platform == "win32":
            startupinfo = subprocess.STARTUPINFO()
            startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
            startupinfo.wShowWindow = subprocess.SW_HIDE
            kwargs["startupinfo"] = startupinfo

        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                input=input_text,
                **kwargs,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {timeout}s",
                command=command,
                duration_seconds=timeout,
            )
        except OSError as e:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=str(e),
                command=command,
                duration_seconds=time.time() - start_time,
            )

        result = CommandResult(
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            command=command,
            duration_seconds=time.time() - start_time,
        )

        if check and not result.success:
            logger.warning(
                "Command failed",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr[:500],
            )

        return result

    def which(self, name: str) -> str | None:
        return shutil.which(name)
