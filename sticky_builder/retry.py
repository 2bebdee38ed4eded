"""Bounded retries and deadline-based polling.

Every wait in the package goes through this module: network retries in the
control-plane clients, unmount retries, and the readiness/shutdown polls of
the daemon supervisor. Retries run on tenacity; clock reads and sleeps use
the module-level ``time`` import only.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

from sticky_builder.errors import ControlPlaneError, StickyBuilderError
from sticky_builder.types import ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryDecision(str, Enum):
    """How an error should be retried, if at all."""

    NO_RETRY = "no_retry"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class PollTimeout(Exception):
    """Raised when a poll deadline elapses before the predicate held."""

    def __init__(
        self,
        description: str,
        timeout: float,
        last_value: Any = None,
        last_error: BaseException | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(f"Timed out after {timeout:g}s waiting for {description}")
        self.description = description
        self.timeout = timeout
        self.last_value = last_value
        self.last_error = last_error
        self.attempts = attempts


def default_retry_decision(error: BaseException) -> RetryDecision:
    """Classify an error for retrying.

    Transient errors are retried; rate-limited ones back off exponentially,
    everything else transient waits a fixed delay.
    """
    if not isinstance(error, StickyBuilderError):
        return RetryDecision.NO_RETRY
    if error.kind is not ErrorKind.TRANSIENT:
        return RetryDecision.NO_RETRY
    if isinstance(error, ControlPlaneError) and error.rate_limited:
        return RetryDecision.EXPONENTIAL
    return RetryDecision.FIXED


@dataclass(frozen=True)
class RetryPolicy:
    """Retry an operation a bounded number of times.

    Attributes:
        max_attempts: Total number of attempts, including the first one.
        base_backoff: Seconds; rate-limited errors wait base_backoff * 2**n.
        fixed_delay: Seconds to wait after other retryable errors.
    """

    max_attempts: int = 5
    base_backoff: float = 0.1
    fixed_delay: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, decision: RetryDecision, attempt_index: int) -> float:
        """Return the sleep before the attempt after ``attempt_index``."""
        if decision is RetryDecision.EXPONENTIAL:
            return self.base_backoff * (2**attempt_index)
        return self.fixed_delay

    def execute(
        self,
        operation: Callable[[], T],
        classify: Callable[[BaseException], RetryDecision] = default_retry_decision,
        description: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds or retries are exhausted.

        Args:
            operation: Zero-argument callable to attempt.
            classify: Maps an error to a RetryDecision.
            description: Used in log messages.

        Returns:
            Whatever ``operation`` returns.

        Raises:
            The last error raised by ``operation``, unchanged.
        """

        def wait(retry_state: RetryCallState) -> float:
            error = retry_state.outcome.exception()
            return self.delay_for(classify(error), retry_state.attempt_number - 1)

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait,
            retry=retry_if_exception(
                lambda e: classify(e) is not RetryDecision.NO_RETRY
            ),
            sleep=sleep,
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        logger.debug("%s (up to %d attempts)", description, self.max_attempts)
        return retrying(operation)


def monotonic() -> float:
    """Current monotonic clock reading."""
    return time.monotonic()


def sleep(seconds: float) -> None:
    """Sleep for ``seconds``."""
    if seconds > 0:
        time.sleep(seconds)


def poll_until(
    probe: Callable[[], T],
    predicate: Callable[[T], bool],
    interval: float,
    timeout: float,
    description: str = "condition",
    tolerate: tuple[type[BaseException], ...] = (),
) -> T:
    """Call ``probe`` until ``predicate`` accepts its result.

    The probe always runs at least once. Exceptions listed in ``tolerate``
    count as a failed probe; anything else propagates immediately.

    Args:
        probe: Zero-argument callable producing the observed value.
        predicate: Returns True once the observed value is acceptable.
        interval: Seconds to sleep between probes.
        timeout: Overall deadline in seconds.
        description: What is being waited for, for messages.
        tolerate: Exception types treated as "not yet".

    Returns:
        The first accepted value.

    Raises:
        PollTimeout: With the last observed value once the deadline passes.
    """
    deadline = monotonic() + timeout
    attempts = 0
    last_value: Any = None
    last_error: BaseException | None = None

    while True:
        attempts += 1
        try:
            value = probe()
        except tolerate as e:
            last_error = e
            logger.debug("Probe for %s failed: %s", description, e)
        else:
            last_value = value
            if predicate(value):
                return value

        remaining = deadline - monotonic()
        if remaining <= 0:
            raise PollTimeout(
                description,
                timeout,
                last_value=last_value,
                last_error=last_error,
                attempts=attempts,
            )
        sleep(min(interval, remaining))


__all__ = [
    "PollTimeout",
    "RetryDecision",
    "RetryPolicy",
    "default_retry_decision",
    "monotonic",
    "poll_until",
    "sleep",
]
