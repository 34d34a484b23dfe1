"""
AdminKit Session Management.

A session owns the configuration, logging, safety state and the shared
tool adapters, and records every job it runs into an audit report.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from adminkit.core.config import AdminKitConfig, load_config
from adminkit.core.job import Job, JobResult, JobRunner
from adminkit.core.logging import SessionLogger, get_logger, setup_logging
from adminkit.core.polling import Poller
from adminkit.core.safety import DangerMode, SafetyManager
from adminkit.platform import CommandRunner, PowerShell, get_platform_name

logger = get_logger(__name__)


@dataclass
class SessionReport:
    """Audit trail of one session: what ran, what failed, and danger mode changes."""

    session_id: str
    started_at: datetime
    platform: str = ""
    ended_at: datetime | None = None
    operations: list[dict[str, Any]] = field(default_factory=list)
    danger_mode_events: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def record(self, job: Job[Any], result: JobResult[Any], dry_run: bool) -> None:
        timestamp = datetime.now().isoformat()
        self.operations.append(
            {"timestamp": timestamp, **job.describe(), "dry_run": dry_run, **result.to_dict()}
        )
        if result.error:
            self.errors.append({"timestamp": timestamp, "job_id": job.id, "error": result.error})
        self.warnings.extend(result.warnings)

    def record_danger_mode(self, action: str, success: bool) -> None:
        self.danger_mode_events.append(
            {"timestamp": datetime.now().isoformat(), "action": action, "success": success}
        )

    def summary(self) -> dict[str, int]:
        succeeded = sum(1 for op in self.operations if op["success"])
        return {
            "total_operations": len(self.operations),
            "successful_operations": succeeded,
            "failed_operations": len(self.operations) - succeeded,
            "dry_run_operations": sum(1 for op in self.operations if op["dry_run"]),
            "total_errors": len(self.errors),
            "total_warnings": len(self.warnings),
        }

    def to_dict(self) -> dict[str, Any]:
        ended = self.ended_at
        return {
            "session_id": self.session_id,
            "platform": self.platform,
            "started_at": self.started_at.isoformat(),
            "ended_at": ended.isoformat() if ended else None,
            "duration_seconds": (ended - self.started_at).total_seconds() if ended else None,
            "operations": self.operations,
            "danger_mode_events": self.danger_mode_events,
            "errors": self.errors,
            "warnings": self.warnings,
            "summary": self.summary(),
        }

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)


class Session:
    """
    Entry point for all AdminKit operations.

    The runner, PowerShell host and poller can be injected, which is how
    tests replace external tools.
    """

    def __init__(
        self,
        config: AdminKitConfig | None = None,
        session_id: str | None = None,
        runner: CommandRunner | None = None,
        poller: Poller | None = None,
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.config = config or load_config()
        self.started_at = datetime.now()

        setup_logging(self.config.logging)

        self.safety = SafetyManager(self.config.safety)
        self.job_runner = JobRunner()
        self.runner = runner or CommandRunner()
        self.powershell = PowerShell(self.runner)
        self.poller = poller or Poller.from_config(self.config.polling)
        self.session_logger = SessionLogger(
            self.config.get_session_file(),
            get_logger(f"session.{self.id[:8]}"),
        )

        self._report = SessionReport(
            session_id=self.id,
            started_at=self.started_at,
            platform=get_platform_name(),
        )

        logger.info("Session started", session_id=self.id, platform=self._report.platform)
        self.session_logger.info("Session started", session_id=self.id)

    @property
    def danger_mode(self) -> DangerMode:
        return self.safety.danger_mode

    def enable_danger_mode(self, acknowledgment: str) -> bool:
        success = self.safety.enable_danger_mode(acknowledgment)
        self._report.record_danger_mode("enable_attempt", success)
        if success:
            self.session_logger.warning("Danger mode enabled")
        else:
            self.session_logger.info("Danger mode enable attempt failed")
        return success

    def disable_danger_mode(self) -> None:
        self.safety.disable_danger_mode()
        self._report.record_danger_mode("disable", True)
        self.session_logger.info("Danger mode disabled")

    def run_job(self, job: Job[Any], dry_run: bool = False) -> JobResult[Any]:
        """
        Run a job synchronously and record it in the session report.

        A dry run skips the safety gate and runs the job with its own
        dry_run flag set. Otherwise a job the safety gate refuses is not
        executed; it comes back as a failed result.
        """
        if dry_run:
            job.dry_run = True
        dry_run = job.dry_run
        if not dry_run:
            allowed, reason = self.safety.is_operation_allowed(job.operation_type)
            if not allowed:
                result: JobResult[Any] = JobResult.failed(reason)
                self._record(job, result, dry_run)
                return result

        self.session_logger.info(
            "Executing job",
            job_id=job.id,
            job_name=job.name,
            dry_run=dry_run,
            plan=job.get_plan(),
        )
        result = self.job_runner.run_sync(job)
        self._record(job, result, dry_run)
        return result

    def _record(self, job: Job[Any], result: JobResult[Any], dry_run: bool) -> None:
        self._report.record(job, result, dry_run)
        if result.success:
            self.session_logger.info("Operation completed", job_id=job.id, job_name=job.name)
        else:
            self.session_logger.error("Operation failed", job_id=job.id, job_name=job.name, error=result.error)

    def close(self) -> Path:
        """Save the session log and the report; returns the report path."""
        self._report.ended_at = datetime.now()
        self.session_logger.save()

        report_path = self.config.session_directory / f"report_{self.id[:8]}.json"
        self._report.save(report_path)

        logger.info("Session closed", session_id=self.id, report_path=str(report_path), **self._report.summary())
        return report_path

    def get_report(self) -> SessionReport:
        return self._report

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
