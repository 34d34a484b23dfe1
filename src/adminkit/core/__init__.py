"""
AdminKit Core - Shared service layer.

Configuration, logging, safety gating, polling and job execution used by
every task.
"""

from adminkit.core.config import AdminKitConfig
from adminkit.core.job import Job, JobResult, JobRunner, JobStatus
from adminkit.core.logging import get_logger, setup_logging
from adminkit.core.polling import Poller, PollTimeoutError
from adminkit.core.safety import DangerMode, OperationType, SafetyManager

__all__ = [
    "AdminKitConfig",
    "Job",
    "JobRunner",
    "JobStatus",
    "JobResult",
    "Poller",
    "PollTimeoutError",
    "get_logger",
    "setup_logging",
    "SafetyManager",
    "DangerMode",
    "OperationType",
]
