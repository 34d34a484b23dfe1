"""
Polling and retry helpers.

Directory services replicate asynchronously: a group created on one domain
controller is not immediately resolvable everywhere, and objects removed
on-premises disappear from Exchange Online only after a sync cycle.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING, TypeVar

from adminkit.core.logging import get_logger

if TYPE_CHECKING:
    from adminkit.core.config import PollingConfig
    from adminkit.core.job import JobContext

T = TypeVar("T")
logger = get_logger(__name__)


class PollTimeoutError(TimeoutError):
    """Raised when a condition does not become true before the deadline."""

    def __init__(self, description: str, timeout_seconds: float, attempts: int) -> None:
        super().__init__(
            f"Timed out after {timeout_seconds:.0f}s waiting for {description} "
            f"({attempts} attempts)"
        )
        self.description = description
        self.timeout_seconds = timeout_seconds
        self.attempts = attempts


class Poller:
    """Repeatedly evaluates a condition with a fixed interval."""

    def __init__(
        self,
        interval_seconds: float = 10.0,
        timeout_seconds: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, config: PollingConfig) -> Poller:
        return cls(
            interval_seconds=config.interval_seconds,
            timeout_seconds=config.timeout_seconds,
        )

    def with_timing(self, interval_seconds: float, timeout_seconds: float) -> Poller:
        """Return a poller sharing this one's clock and sleep with other timing."""
        return Poller(
            interval_seconds=interval_seconds,
            timeout_seconds=timeout_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )

    def poll_until(
        self,
        predicate: Callable[[], T],
        description: str,
        context: JobContext | None = None,
    ) -> T:
        """Call predicate until it returns a truthy value and return that value."""
        deadline = self._clock() + self.timeout_seconds
        attempts = 0

        while True:
            if context is not None:
                context.check_cancelled()

            attempts += 1
            value = predicate()
            if value:
                logger.debug("Condition met", description=description, attempts=attempts)
                return value

            if self._clock() + self.interval_seconds > deadline:
                raise PollTimeoutError(description, self.timeout_seconds, attempts)

            logger.info(
                "Waiting",
                description=description,
                attempt=attempts,
                retry_in_seconds=self.interval_seconds,
            )
            self._sleep(self.interval_seconds)

    def retry(
        self,
        func: Callable[[], T],
        description: str,
        attempts: int,
        delay_seconds: float,
        retry_if: Callable[[T], bool],
        context: JobContext | None = None,
    ) -> T:
        """
        Call func up to `attempts` times while retry_if(result) holds.

        The last result is returned whether or not it still satisfies
        retry_if; callers decide what a persistent failure means.
        """
        result = func()
        for attempt in range(2, attempts + 1):
            if not retry_if(result):
                break
            if context is not None:
                context.check_cancelled()
            logger.info(
                "Retrying",
                description=description,
                attempt=attempt,
                max_attempts=attempts,
                delay_seconds=delay_seconds,
            )
            self._sleep(delay_seconds)
            result = func()
        return result
