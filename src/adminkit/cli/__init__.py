"""
AdminKit CLI Module.

Provides command-line interface for AdminKit operations.
"""

from adminkit.cli.main import cli, main

__all__ = ["main", "cli"]
