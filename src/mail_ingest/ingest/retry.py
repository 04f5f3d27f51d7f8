# =============================================================================
# Retry Policy
# =============================================================================
# Classifies failures and retries the transient ones with bounded exponential
# backoff.
#
#   Transient: network timeouts, unreachable server, "try again later",
#              expired sessions (MailboxClient already reconnected once)
#   Fatal:     rejected credentials, TLS/folder/configuration mismatch,
#              consumer-declared fatal conditions, anything unrecognised
#
# The same delay curve drives two layers:
#   - per-operation retries inside one cycle (RetryPolicy.call)
#   - the scheduler's Backoff state between cycles (RetryPolicy.delay_for)
# =============================================================================

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Awaitable, Callable, TypeVar

from mail_ingest.imap.client import (
    MailboxNetworkError,
    MessageNotFoundError,
    SessionExpiredError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Sleep function signature (asyncio.sleep or a test double)
SleepFunc = Callable[[float], Awaitable[None]]

# Past this exponent every realistic ceiling has long been reached
_MAX_EXPONENT = 64


class FailureKind(Enum):
    """How a failure should be handled."""
    TRANSIENT = auto()      # Expected to heal by itself; retry / back off
    FATAL = auto()          # Needs a human; stop ingestion


def classify(error: BaseException) -> FailureKind:
    """
    Decide whether an error is worth retrying.

    Unknown exceptions are fatal: retrying a bug forever hides it.
    """
    if isinstance(error, (MailboxNetworkError, SessionExpiredError, RetryExhaustedError)):
        return FailureKind.TRANSIENT
    return FailureKind.FATAL


@dataclass
class RetryState:
    """
    Attempt bookkeeping for one operation.

    Attributes:
        attempts: Failed attempts so far.
        next_eligible: Wall-clock time (time.time()) before which no new
                       attempt is made.
    """
    attempts: int = 0
    next_eligible: float | None = None

    def record_failure(self, delay: float, now: float | None = None) -> None:
        self.attempts += 1
        self.next_eligible = (time.time() if now is None else now) + delay

    @property
    def next_eligible_at(self) -> datetime | None:
        if self.next_eligible is None:
            return None
        return datetime.fromtimestamp(self.next_eligible)

    def reset(self) -> None:
        self.attempts = 0
        self.next_eligible = None


class RetryPolicy:
    """
    Bounded exponential backoff.

    Usage:
        >>> policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=300.0)
        >>> batch = await policy.call("list unseen", lambda: client.list_unseen(10))

    Attributes:
        max_attempts: Total attempts per operation, including the first one.
        base_delay: Delay after the first failure, in seconds.
        max_delay: Ceiling for any single delay, in seconds.
        multiplier: Growth factor between consecutive delays.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        multiplier: float = 2.0,
        sleep: SleepFunc | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0 or max_delay < base_delay:
            raise ValueError("need 0 <= base_delay <= max_delay")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self._sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """
        Delay after the given failed attempt (1-based).

        Non-decreasing in attempt and never above max_delay.
        """
        exponent = min(max(attempt - 1, 0), _MAX_EXPONENT)
        return min(self.base_delay * self.multiplier ** exponent, self.max_delay)

    async def call(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        *,
        passthrough: tuple[type[BaseException], ...] = (MessageNotFoundError,),
    ) -> T:
        """
        Run func, retrying transient failures.

        Args:
            operation: Human-readable name for log lines and errors.
            func: Zero-argument coroutine factory; called once per attempt.
            passthrough: Exceptions re-raised immediately without counting
                         as an attempt (handled by the caller).

        Raises:
            RetryExhaustedError: All attempts failed transiently.
            Any fatal or passthrough exception, unchanged.
        """
        state = RetryState()

        while True:
            try:
                return await func()
            except passthrough:
                raise
            except Exception as e:
                if classify(e) is FailureKind.FATAL:
                    raise

                delay = self.delay_for(state.attempts + 1)
                state.record_failure(delay)

                if state.attempts >= self.max_attempts:
                    logger.warning(f"{operation} failed {state.attempts} times, giving up: {e}")
                    raise RetryExhaustedError(operation, state.attempts, e) from e

                logger.warning(
                    f"{operation} failed ({e}); attempt {state.attempts}/{self.max_attempts}, "
                    f"retrying in {delay:.1f}s (at {state.next_eligible_at:%H:%M:%S})"
                )
                await self._sleep(delay)


# =============================================================================
# Exceptions
# =============================================================================

class RetryExhaustedError(Exception):
    """Every attempt of an operation failed with a transient error."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
