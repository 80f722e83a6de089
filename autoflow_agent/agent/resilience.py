"""Circuit breaker and retry policy shared by generation and deployment.

CircuitBreaker guards one generation provider:

    CLOSED     calls allowed; consecutive failures are counted
    OPEN       calls refused until the cool-down elapses
    HALF_OPEN  exactly one trial call; success closes, failure re-opens

State only changes through allow_request / record_success / record_failure,
and none of them await, so a transition is never interleaved with another
coroutine on the same event loop.

RetryPolicy bounds the saga's step and compensation retries with exponential
backoff plus a little jitter.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger("autoflow_agent.agent.resilience")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Per-provider failure tracker.

    failure_threshold: consecutive failures that open the circuit.
    cooldown:          seconds the circuit stays OPEN before a trial is allowed.
    clock:             monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown = cooldown
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def allow_request(self) -> bool:
        """True when a call may proceed.

        In HALF_OPEN only the first caller gets True; it holds the single
        trial until record_success / record_failure is called.
        """
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            if self._opened_at is not None and self._clock() - self._opened_at >= self.cooldown:
                self._transition(CircuitState.HALF_OPEN)
            else:
                return False
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        self._failures = 0
        self._trial_in_flight = False
        if self._state != CircuitState.CLOSED:
            self._opened_at = None
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._failures += 1
        was_trial = self._state == CircuitState.HALF_OPEN
        self._trial_in_flight = False
        if was_trial or self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            if self._state != CircuitState.OPEN:
                self._transition(CircuitState.OPEN)

    def release(self) -> None:
        """Give back a reserved trial without deciding the state (cancelled call)."""
        self._trial_in_flight = False

    def _transition(self, new_state: CircuitState) -> None:
        old = self._state
        self._state = new_state
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "[Breaker] %s: %s -> %s (consecutive failures: %d)",
            self.name, old.value, new_state.value, self._failures,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._failures,
        }


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    delay(attempt) = min(initial_delay * exponential_base ** (attempt - 1), max_delay)
    plus up to 10% jitter when jitter is set.
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True
    attempt_timeout: float | None = 30.0

    def delay(self, attempt: int) -> float:
        delay = min(self.initial_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    async def run(
        self,
        func: Callable[[], Awaitable[Any]],
        label: str,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        give_up_on: tuple[type[Exception], ...] = (),
    ) -> Any:
        """Await func() up to max_attempts times; re-raise the last error.

        Each attempt is bounded by attempt_timeout; a timeout counts as a
        failed attempt.  Cancellation is never retried, nor are give_up_on errors.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.attempt_timeout:
                    return await asyncio.wait_for(func(), timeout=self.attempt_timeout)
                return await func()
            except give_up_on:
                raise
            except Exception as e:
                last_error = e
                if attempt >= self.max_attempts:
                    break
                delay = self.delay(attempt)
                logger.warning(
                    "[Retry] %s attempt %d/%d failed: %s; retrying in %.2fs",
                    label, attempt, self.max_attempts, str(e) or type(e).__name__, delay,
                )
                await sleep(delay)
        if last_error is None:
            raise RuntimeError(f"{label}: max_attempts must be >= 1")
        logger.error(
            "[Retry] %s failed after %d attempts: %s",
            label, self.max_attempts, str(last_error) or type(last_error).__name__,
        )
        raise last_error
