"""
Pytest configuration and fixtures for AdminKit tests.

No test launches PowerShell, icacls, dfsutil or mkvmerge: FakeRunner
records every command and answers from scripted results.
"""

import json
import sys
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from adminkit.core.config import AdminKitConfig  # noqa: E402
from adminkit.core.polling import Poller  # noqa: E402
from adminkit.platform.base import CommandResult, CommandRunner  # noqa: E402


class FakeRunner(CommandRunner):
    """CommandRunner that replays scripted results instead of running tools."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self._queued: list[tuple[str, int, str, str]] = []
        self._defaults: list[tuple[str, int, str, str]] = []

    def queue(self, match: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Answer the next command containing `match` once."""
        self._queued.append((match, returncode, stdout, stderr))

    def queue_json(self, match: str, data: Any) -> None:
        self.queue(match, stdout=json.dumps(data))

    def respond(self, match: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Answer every command containing `match` unless a queued result applies."""
        self._defaults.append((match, returncode, stdout, stderr))

    def run(
        self,
        command: list[str],
        timeout: int = 300,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        self.calls.append(list(command))
        line = " ".join(command)

        for index, (match, returncode, stdout, stderr) in enumerate(self._queued):
            if match in line:
                del self._queued[index]
                return CommandResult(returncode, stdout, stderr, command)

        for match, returncode, stdout, stderr in self._defaults:
            if match in line:
                return CommandResult(returncode, stdout, stderr, command)

        return CommandResult(0, "", "", command)

    def which(self, name: str) -> str | None:
        return name

    @property
    def lines(self) -> list[str]:
        return [" ".join(c) for c in self.calls]

    def matching(self, text: str) -> list[str]:
        return [line for line in self.lines if text in line]


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def poller(fake_clock: FakeClock) -> Poller:
    """Poller that never really sleeps."""
    return Poller(interval_seconds=10, timeout_seconds=60, sleep=fake_clock.sleep, clock=fake_clock)


@pytest.fixture
def sample_config(temp_dir: Path) -> AdminKitConfig:
    """Create a sample configuration for testing."""
    config = AdminKitConfig(session_directory=temp_dir / "sessions")
    config.logging.log_directory = temp_dir / "logs"
    config.logging.file_enabled = False
    config.migration.state_directory = temp_dir / "migrations"
    config.active_directory.netbios_domain = "CONTOSO"
    config.active_directory.group_ou = "OU=Groups,DC=contoso,DC=com"
    config.dfs.namespace_root = "\\\\contoso.com\\files"
    config.ensure_directories()
    return config


@pytest.fixture
def session(sample_config: AdminKitConfig, fake_runner: FakeRunner, poller: Poller) -> Any:
    """Session wired to the fake runner and poller."""
    from adminkit.core.session import Session

    return Session(config=sample_config, runner=fake_runner, poller=poller)


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
