"""Retry and circuit-breaker helpers for outbound LLM calls.

The circuit breaker stops hammering a provider that keeps failing; the retry
decorator (tenacity) absorbs short transport hiccups.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, TypeVar

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT_S = 60.0

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_S = 1.0
DEFAULT_MAX_DELAY_S = 10.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    pass


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================


@dataclass
class CircuitBreaker:
    """Counts consecutive failures and short-circuits calls once tripped."""

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    recovery_timeout_s: float = DEFAULT_RECOVERY_TIMEOUT_S
    name: str = "default"
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float | None = None

    def _maybe_half_open(self) -> None:
        if self.state is not CircuitState.OPEN or self.last_failure_time is None:
            return
        if self.clock() - self.last_failure_time >= self.recovery_timeout_s:
            self.state = CircuitState.HALF_OPEN
            logger.info("circuit_breaker.half_open", name=self.name)

    def allow_request(self) -> bool:
        """True if a call may go through right now."""
        self._maybe_half_open()
        return self.state is not CircuitState.OPEN

    def record_success(self) -> None:
        if self.state is not CircuitState.CLOSED:
            logger.info("circuit_breaker.closed", name=self.name)
        self.state = CircuitState.CLOSED
        self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if (
            self.state is CircuitState.HALF_OPEN
            or self.failure_count >= self.failure_threshold
        ):
            if self.state is not CircuitState.OPEN:
                logger.warning(
                    "circuit_breaker.opened",
                    name=self.name,
                    failures=self.failure_count,
                )
            self.state = CircuitState.OPEN

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run func through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open and not yet recoverable
        """
        if not self.allow_request():
            raise CircuitOpenError(
                f"Circuit '{self.name}' is open; retry after {self.recovery_timeout_s:.0f}s"
            )

        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
        }


# =============================================================================
# RETRY
# =============================================================================


def retrying(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_S,
    max_delay: float = DEFAULT_MAX_DELAY_S,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Build a tenacity retry decorator with exponential backoff.

    Delays grow as base_delay * multiplier**n, capped at max_delay. The last
    exception is re-raised once attempts are exhausted.
    """
    return retry(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=multiplier, max=max_delay),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
    )


def _log_retry(retry_state: Any) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retrying_call",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )
