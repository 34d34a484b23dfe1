"""
AdminKit platform layer.

Process execution and PowerShell access shared by all tasks.
"""

from __future__ import annotations

import platform

from adminkit.platform.base import CommandError, CommandResult, CommandRunner
from adminkit.platform.powershell import PowerShell


def get_platform_name() -> str:
    """Get the current platform name."""
    return platform.system().lower()


def is_windows() -> bool:
    return platform.system().lower() == "windows"


def is_admin() -> bool:
    """Check if running with administrative privileges."""
    system = platform.system().lower()

    if system == "windows":
        import ctypes

        try:
            return ctypes.windll.shell32.IsUserAnAdmin() != 0
        except (AttributeError, OSError):
            return False

    import os

    return os.geteuid() == 0


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "PowerShell",
    "get_platform_name",
    "is_windows",
    "is_admin",
]
