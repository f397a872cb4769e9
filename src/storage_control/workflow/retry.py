"""Bounded retry with exponential backoff, jitter, deadline, and cancellation.

Every polling stage of the workflows runs through ``RetryScheduler``:

  attempt -> success                        -> return value
          -> RetryableError                 -> backoff, next attempt
          -> any other exception            -> propagate (terminal)
          -> deadline / attempts exhausted  -> raise on_exhausted(...)
          -> cancellation token fired       -> raise Cancelled

Delays and deadlines are measured against an injected ``Clock`` so the
schedule can be verified without real sleeps.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from ..errors import RetryableError, WorkflowFailure
from .cancellation import CancellationToken, run_cancellable
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar('T')

Operation = Callable[[int], Awaitable[T]]
ExhaustedFactory = Callable[[BaseException | None, int], WorkflowFailure]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff parameters for one polling stage.

    Attributes:
        max_attempts: Hard cap on attempts; ``None`` means until deadline.
        base_delay: Delay after the first failed attempt (seconds).
        multiplier: Growth factor applied per failed attempt.
        max_delay: Ceiling for a single delay (seconds).
        jitter: Fraction of the delay randomized in both directions.
        deadline: Overall budget measured from the first attempt (seconds);
            ``None`` means bounded by ``max_attempts`` only.
        attempt_timeout: Optional per-attempt bound; a slow attempt counts
            as a retryable failure.
    """

    max_attempts: int | None = None
    base_delay: float = 1.0
    multiplier: float = 1.5
    max_delay: float = 10.0
    jitter: float = 0.1
    deadline: float | None = 60.0
    attempt_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts is None and self.deadline is None:
            raise ValueError('retry policy needs max_attempts or deadline')
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError('delays must be >= 0')
        if self.multiplier < 1:
            raise ValueError('multiplier must be >= 1')
        if not 0 <= self.jitter <= 1:
            raise ValueError('jitter must be within [0, 1]')

    def delay_for(self, failures: int) -> float:
        """Nominal (unjittered) delay after ``failures`` failed attempts."""
        if failures < 1:
            return 0.0
        return min(self.base_delay * self.multiplier ** (failures - 1), self.max_delay)

    def jittered_delay(self, failures: int, rng: random.Random) -> float:
        delay = self.delay_for(failures)
        if self.jitter and delay:
            spread = delay * self.jitter
            delay = rng.uniform(delay - spread, delay + spread)
        return min(max(delay, 0.0), self.max_delay)

    def schedule(self) -> list[float]:
        """Nominal delays between attempts, assuming instantaneous attempts.

        ``len(schedule()) + 1`` is the number of attempts made before the
        policy gives up.
        """
        delays: list[float] = []
        elapsed = 0.0
        failures = 1
        while True:
            if self.max_attempts is not None and failures >= self.max_attempts:
                return delays
            delay = self.delay_for(failures)
            if self.deadline is not None and elapsed + delay > self.deadline:
                return delays
            delays.append(delay)
            elapsed += delay
            failures += 1


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RetryableError)


class RetryScheduler:
    """Runs an operation under a ``RetryPolicy``.

    One scheduler instance per workflow run; instances share nothing.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self.attempts = 0

    @property
    def clock(self) -> Clock:
        return self._clock

    async def execute(
        self,
        operation: Operation[T],
        policy: RetryPolicy,
        *,
        on_exhausted: ExhaustedFactory,
        cancel_token: CancellationToken | None = None,
        deadline_at: float | None = None,
        classify: Callable[[BaseException], bool] = is_retryable,
        label: str = 'operation',
    ) -> T:
        """Run ``operation(attempt)`` until it succeeds or the policy gives up.

        Args:
            operation: Coroutine factory receiving the 1-based attempt number.
            policy: Backoff and budget parameters.
            on_exhausted: Builds the failure raised when attempts or the
                deadline run out; receives the last error and attempt count.
            cancel_token: Aborts the loop promptly with ``Cancelled``.
            deadline_at: Absolute clock time that further caps the policy
                deadline (used for workflow-level budgets).
            classify: Returns True for retryable failures.
            label: Name used in log lines.

        Raises:
            Cancelled: The token fired.
            WorkflowFailure: Whatever ``on_exhausted`` builds.
            Exception: Terminal errors from ``operation`` propagate unchanged.
        """
        started = self._clock.monotonic()
        limit = deadline_at
        if policy.deadline is not None:
            policy_limit = started + policy.deadline
            limit = policy_limit if limit is None else min(limit, policy_limit)

        self.attempts = 0
        last_error: BaseException | None = None
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            self.attempts += 1
            attempt = self.attempts
            try:
                call = operation(attempt)
                if policy.attempt_timeout is not None:
                    call = asyncio.wait_for(call, timeout=policy.attempt_timeout)
                return await run_cancellable(call, cancel_token)
            except asyncio.TimeoutError as exc:
                if policy.attempt_timeout is None:
                    raise
                last_error = exc
            except WorkflowFailure:
                raise
            except Exception as exc:
                if not classify(exc):
                    raise
                last_error = exc

            if policy.max_attempts is not None and attempt >= policy.max_attempts:
                logger.info(
                    '%s gave up after %d attempts (attempt limit)', label, attempt,
                )
                raise on_exhausted(last_error, attempt)

            delay = policy.jittered_delay(attempt, self._rng)
            now = self._clock.monotonic()
            if limit is not None and now + delay > limit:
                logger.info(
                    '%s gave up after %d attempts (deadline)', label, attempt,
                )
                raise on_exhausted(last_error, attempt)

            logger.debug(
                '%s attempt %d failed (%s), retrying in %.2fs',
                label,
                attempt,
                type(last_error).__name__,
                delay,
            )
            await run_cancellable(self._clock.sleep(delay), cancel_token)
