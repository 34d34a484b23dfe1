"""
AdminKit structured logging.

Every external command and every directory change is logged so that a
session can be audited after the fact. Credentials never reach a log:
credential-like keys are masked and credential arguments inside command
lines are redacted.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import re
import sys
import time
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, WrappedLogger

if TYPE_CHECKING:
    from adminkit.core.config import LoggingConfig


_configured = False

SENSITIVE_KEYS = frozenset({"password", "secret", "token", "certificate_thumbprint"})
SENSITIVE_ARGUMENT = re.compile(
    r"(-(?:CertificateThumbprint|CertificatePassword|Password|ClientSecret)\s+)('[^']*'|\S+)",
    re.IGNORECASE,
)
REDACTED = "***"


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = datetime.now().isoformat()
    return event_dict


def redact(text: str) -> str:
    """Replace the value following a credential parameter in a command line."""
    return SENSITIVE_ARGUMENT.sub(rf"\1{REDACTED}", text)


def mask_sensitive(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
        if key in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, str):
            event_dict[key] = redact(value)
        elif isinstance(value, list) and all(isinstance(v, str) for v in value):
            event_dict[key] = [redact(v) for v in value]
    return event_dict


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog over stdlib logging. Only the first call has an effect."""
    global _configured

    if _configured:
        return

    handlers: list[logging.Handler] = []

    if config.console_enabled:
        # Bound now: click's test runner swaps sys.stderr per invocation
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, config.level))
        handlers.append(console_handler)

    if config.file_enabled:
        config.log_directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            config.log_directory / "adminkit.log",
            when="midnight",
            backupCount=config.retention_days,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    logging.basicConfig(level=logging.DEBUG, handlers=handlers, format="%(message)s")

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_timestamp,
        mask_sensitive,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if config.json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name or "adminkit")


class OperationLogger:
    """
    Logs the start and the end of a multi-step operation with its duration.

    Exceptions are logged and propagate unchanged.
    """

    def __init__(
        self,
        operation: str,
        logger: structlog.stdlib.BoundLogger | None = None,
        **context: Any,
    ):
        self.operation = operation
        self.logger = (logger or get_logger()).bind(operation=operation, **context)
        self._started = 0.0

    @property
    def elapsed(self) -> float:
        return round(time.monotonic() - self._started, 3)

    def __enter__(self) -> OperationLogger:
        self._started = time.monotonic()
        self.logger.info(f"Starting {self.operation}")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if exc_type is None:
            self.logger.info(f"Completed {self.operation}", duration_seconds=self.elapsed)
        else:
            self.logger.error(
                f"Failed {self.operation}",
                duration_seconds=self.elapsed,
                error_type=exc_type.__name__,
                error=str(exc_val),
            )


class SessionLogger:
    """Keeps the entries of one session in memory and writes them as JSON on save()."""

    def __init__(self, session_file: Path, logger: structlog.stdlib.BoundLogger | None = None):
        self.session_file = session_file
        self.logger = logger or get_logger()
        self.entries: list[dict[str, Any]] = []

    def log(self, level: int, message: str, **kwargs: Any) -> None:
        self.entries.append(
            {
                "timestamp": datetime.now().isoformat(),
                "level": logging.getLevelName(level),
                "message": message,
                **kwargs,
            }
        )
        self.logger.log(level, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log(logging.ERROR, message, **kwargs)

    def save(self) -> None:
        levels = Counter(entry["level"] for entry in self.entries)
        self.session_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.session_file, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "entries": self.entries,
                    "summary": {
                        "total_entries": len(self.entries),
                        "errors": levels["ERROR"],
                        "warnings": levels["WARNING"],
                    },
                },
                f,
                indent=2,
                default=str,
            )
