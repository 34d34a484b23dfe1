"""
AdminKit Job Runner.

Every administrative task runs as a Job so that progress, warnings,
cancellation and failures are reported the same way.
"""

from __future__ import annotations

import threading
import traceback
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from adminkit.core.logging import get_logger
from adminkit.core.safety import OperationType

T = TypeVar("T")
logger = get_logger(__name__)


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobProgress:
    """Progress of a running job, usually counted in items or steps."""

    current: int = 0
    total: int = 100
    message: str = ""
    stage: str = ""

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return min(100.0, (self.current / self.total) * 100)


@dataclass
class JobResult(Generic[T]):
    """Outcome of a job. Failures carry the error instead of raising."""

    success: bool
    data: T | None = None
    error: str | None = None
    error_traceback: str | None = None
    warnings: list[str] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @classmethod
    def failed(cls, error: str, warnings: list[str] | None = None, started: datetime | None = None) -> JobResult[T]:
        now = datetime.now()
        return cls(
            success=False,
            error=error,
            warnings=warnings or [],
            start_time=started or now,
            end_time=now,
        )

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "duration_seconds": self.duration_seconds,
        }
        if self.error:
            data["error"] = self.error
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


class JobCancelledException(Exception):
    """Raised inside a job once cancellation was requested."""


class JobContext:
    """Handed to Job.execute: progress reporting, warnings and cancellation."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._progress = JobProgress()
        self._progress_callbacks: list[Callable[[JobProgress], None]] = []
        self._lock = threading.Lock()
        self._warnings: list[str] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise JobCancelledException("Job was cancelled")

    def update_progress(
        self,
        current: int | None = None,
        total: int | None = None,
        message: str | None = None,
        stage: str | None = None,
    ) -> None:
        with self._lock:
            changes = {
                key: value
                for key, value in (("current", current), ("total", total), ("message", message), ("stage", stage))
                if value is not None
            }
            self._progress = replace(self._progress, **changes)
            snapshot = self._progress

        # A broken progress display must not fail the job
        for callback in self._progress_callbacks:
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning("Progress callback error", error=str(e))

    def add_progress_callback(self, callback: Callable[[JobProgress], None]) -> None:
        self._progress_callbacks.append(callback)

    def get_progress(self) -> JobProgress:
        with self._lock:
            return self._progress

    def add_warning(self, warning: str) -> None:
        """Record a non-fatal problem; it ends up in the result and the session report."""
        logger.warning("Job warning", warning=warning)
        with self._lock:
            self._warnings.append(warning)

    def get_warnings(self) -> list[str]:
        with self._lock:
            return list(self._warnings)


class Job(ABC, Generic[T]):
    """
    Base class for all AdminKit tasks.

    Subclasses set ``operation_type``, implement ``execute`` and
    ``get_plan``, and override ``target`` when the confirmation string
    should name something other than the job.
    """

    operation_type: OperationType = OperationType.READ_ONLY
    dry_run: bool = False

    def __init__(self, name: str, description: str) -> None:
        self.id = str(uuid.uuid4())
        self.name = name
        self.description = description
        self.status = JobStatus.PENDING
        self.context = JobContext()
        self.result: JobResult[T] | None = None
        self.created_at = datetime.now()
        self.started_at: datetime | None = None
        self.completed_at: datetime | None = None

    @abstractmethod
    def execute(self, context: JobContext) -> T:
        ...

    @abstractmethod
    def get_plan(self) -> str:
        """Return the steps the job would take, one per line."""

    @property
    def target(self) -> str:
        return self.name

    def validate(self) -> list[str]:
        """Return parameter errors; a job with errors is never executed."""
        return []

    def describe(self) -> dict[str, Any]:
        return {
            "job_id": self.id,
            "job_name": self.name,
            "job_description": self.description,
            "operation_type": self.operation_type.name,
            "target": self.target,
            "status": self.status.value,
        }


class JobRunner:
    """Runs jobs inline or on a background thread and keeps their results."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job[Any]] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def submit(self, job: Job[T]) -> str:
        with self._lock:
            self._jobs[job.id] = job
        logger.debug("Job submitted", job_id=job.id, job_name=job.name)
        return job.id

    def start(self, job_id: str) -> None:
        """Execute a submitted job on a daemon thread."""
        job = self._get_job(job_id)
        if not self._validate(job):
            return

        thread = threading.Thread(target=self._execute, args=(job,), name=f"job-{job_id[:8]}", daemon=True)
        with self._lock:
            self._threads[job_id] = thread
        thread.start()

    def run_sync(self, job: Job[T]) -> JobResult[T]:
        self.submit(job)
        if self._validate(job):
            self._execute(job)
        assert job.result is not None
        return job.result

    def wait(self, job_id: str, timeout: float | None = None) -> JobResult[Any] | None:
        with self._lock:
            thread = self._threads.get(job_id)
        if thread:
            thread.join(timeout)
        return self.get_result(job_id)

    def cancel(self, job_id: str) -> bool:
        """Ask a running job to stop at its next cancellation check."""
        job = self._get_job(job_id)
        if job.status != JobStatus.RUNNING:
            return False
        job.context.cancel()
        logger.info("Job cancellation requested", job_id=job_id)
        return True

    def get_job(self, job_id: str) -> Job[Any] | None:
        return self._jobs.get(job_id)

    def get_result(self, job_id: str) -> JobResult[Any] | None:
        job = self._jobs.get(job_id)
        return job.result if job else None

    def _get_job(self, job_id: str) -> Job[Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Job not found: {job_id}")
        return job

    def _validate(self, job: Job[Any]) -> bool:
        errors = job.validate()
        if errors:
            logger.warning("Job validation failed", job_id=job.id, job_name=job.name, errors=errors)
            self._finish(job, JobStatus.FAILED, JobResult.failed("Validation failed: " + "; ".join(errors)))
        return not errors

    def _execute(self, job: Job[Any]) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now()
        logger.info("Job started", job_id=job.id, job_name=job.name, dry_run=job.dry_run)

        try:
            data = job.execute(job.context)
        except JobCancelledException:
            result: JobResult[Any] = JobResult.failed(
                "Job was cancelled", job.context.get_warnings(), job.started_at
            )
            self._finish(job, JobStatus.CANCELLED, result)
        except Exception as e:
            result = JobResult.failed(str(e), job.context.get_warnings(), job.started_at)
            result.error_traceback = traceback.format_exc()
            self._finish(job, JobStatus.FAILED, result)
        else:
            result = JobResult(
                success=True,
                data=data,
                warnings=job.context.get_warnings(),
                start_time=job.started_at,
                end_time=datetime.now(),
            )
            self._finish(job, JobStatus.COMPLETED, result)

    def _finish(self, job: Job[Any], status: JobStatus, result: JobResult[Any]) -> None:
        job.status = status
        job.result = result
        job.completed_at = datetime.now()
        with self._lock:
            self._threads.pop(job.id, None)

        log = logger.info if status == JobStatus.COMPLETED else logger.error
        log(
            f"Job {status.value}",
            job_id=job.id,
            job_name=job.name,
            error=result.error,
            warnings=len(result.warnings),
            duration_seconds=result.duration_seconds,
        )
