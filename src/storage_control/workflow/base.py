"""Shared phase execution for provisioning and teardown workflows."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..errors import (
    BackendIndexTimeout,
    BackendRequestError,
    BackendTransportError,
    BackendUnavailable,
    WorkflowFailure,
    WorkflowTimeout,
)
from ..models import ResourceIdentity
from ..protocols import BackendIndexClient, LedgerGateway
from .cancellation import CancellationToken, run_cancellable
from .clock import Clock, SystemClock, WorkflowDeadline
from .idempotency import IdempotencyGuard
from .retry import RetryPolicy, RetryScheduler

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_FINALITY_TIMEOUT_SECONDS = 120.0


class LedgerWorkflow:
    """Collaborators, budgets, and phase helpers common to both workflows."""

    operation = 'workflow'

    def __init__(
        self,
        *,
        ledger: LedgerGateway,
        backend: BackendIndexClient,
        guard: IdempotencyGuard,
        poll_policy: RetryPolicy | None = None,
        finality_timeout: float = DEFAULT_FINALITY_TIMEOUT_SECONDS,
        workflow_timeout: float | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if finality_timeout <= 0:
            raise ValueError('finality_timeout must be > 0')
        if workflow_timeout is not None and workflow_timeout <= 0:
            raise ValueError('workflow_timeout must be > 0')
        self._ledger = ledger
        self._backend = backend
        self._guard = guard
        self._poll_policy = poll_policy or RetryPolicy()
        self._finality_timeout = finality_timeout
        self._workflow_timeout = workflow_timeout
        self._clock = clock or SystemClock()
        self._rng = rng

    def _new_deadline(self) -> WorkflowDeadline:
        return WorkflowDeadline(self._clock, self._workflow_timeout)

    def _new_scheduler(self) -> RetryScheduler:
        return RetryScheduler(clock=self._clock, rng=self._rng)

    async def _ledger_call(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        budget: float | None,
        workflow_bound: bool,
        cancel_token: CancellationToken | None,
        on_timeout: Callable[[], WorkflowFailure],
        on_error: Callable[[Exception], WorkflowFailure],
        label: str,
    ) -> T:
        """Run one ledger round-trip under a budget and the cancel token.

        Typed failures raised by the gateway propagate unchanged; untyped
        errors are logged and mapped through ``on_error``.
        """
        if budget is not None and budget <= 0:
            raise self._timeout_failure(workflow_bound, on_timeout, label)
        try:
            awaitable = call()
            if budget is not None:
                awaitable = asyncio.wait_for(awaitable, timeout=budget)
            return await run_cancellable(awaitable, cancel_token)
        except WorkflowFailure:
            raise
        except asyncio.TimeoutError:
            raise self._timeout_failure(workflow_bound, on_timeout, label) from None
        except Exception as exc:
            logger.exception('%s %s failed unexpectedly', self.operation, label)
            raise on_error(exc) from exc

    def _timeout_failure(
        self,
        workflow_bound: bool,
        on_timeout: Callable[[], WorkflowFailure],
        label: str,
    ) -> WorkflowFailure:
        if workflow_bound:
            return WorkflowTimeout(
                f'workflow deadline ({self._workflow_timeout}s) elapsed during {label}'
            )
        return on_timeout()

    async def _poll_backend(
        self,
        identity: ResourceIdentity,
        attempt: Callable[[int], Awaitable[T]],
        *,
        scheduler: RetryScheduler,
        deadline: WorkflowDeadline,
        cancel_token: CancellationToken | None,
        waiting_for: str,
    ) -> T:
        """Poll the backend through the retry scheduler.

        Exhaustion maps to ``BackendUnavailable`` when the last attempt was a
        transport failure, ``WorkflowTimeout`` when the workflow deadline was
        the binding limit, and ``BackendIndexTimeout`` otherwise.
        """
        policy = self._poll_policy
        started = self._clock.monotonic()
        workflow_bound = deadline.at is not None and (
            policy.deadline is None or deadline.at < started + policy.deadline
        )

        def exhausted(last_error: BaseException | None, attempts: int) -> WorkflowFailure:
            attempt_limited = (
                policy.max_attempts is not None and attempts >= policy.max_attempts
            )
            if workflow_bound and not attempt_limited:
                return WorkflowTimeout(
                    f'workflow deadline ({self._workflow_timeout}s) elapsed '
                    f'waiting for backend to {waiting_for} {identity}'
                )
            if isinstance(last_error, BackendTransportError):
                return BackendUnavailable(
                    f'backend unreachable after {attempts} attempts: {last_error}'
                )
            return BackendIndexTimeout(
                f'backend did not {waiting_for} {identity} after {attempts} attempts'
            )

        try:
            return await scheduler.execute(
                attempt,
                policy,
                on_exhausted=exhausted,
                cancel_token=cancel_token,
                deadline_at=deadline.at,
                label=f'{self.operation} backend poll {identity}',
            )
        except WorkflowFailure:
            raise
        except BackendRequestError as exc:
            raise BackendUnavailable(str(exc)) from exc
        except Exception as exc:
            logger.exception('%s backend poll for %s failed unexpectedly', self.operation, identity)
            raise BackendUnavailable(str(exc)) from exc
