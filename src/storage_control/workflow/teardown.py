"""Teardown workflow: deletion submission through backend removal.

  submitting -> verifying-onchain -> awaiting-backend -> complete

Readiness is configurable per resource kind. With ``BACKEND`` readiness the
workflow polls until the backend no longer returns the resource; with
``ONCHAIN`` readiness (the default for files, whose data the provider
removes lazily) the run completes once the deletion is final on-chain.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import ExitStack
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from ..errors import (
    Cancelled,
    FinalityTimeout,
    NotReadyYet,
    OnChainRejected,
    SubmissionRejected,
    WorkflowFailure,
    WorkflowTimeout,
)
from ..models import ResourceIdentity, ResourceKind
from ..observability.logging import workflow_context
from .base import LedgerWorkflow
from .cancellation import CancellationToken
from .clock import WorkflowDeadline
from .retry import RetryScheduler
from .state_machine import (
    TEARDOWN_TRANSITIONS,
    ProgressObserver,
    ProgressTracker,
    WorkflowPhase,
    WorkflowResult,
)

logger = logging.getLogger(__name__)


class TeardownReadiness(Enum):
    BACKEND = 'backend'
    ONCHAIN = 'onchain'


DEFAULT_TEARDOWN_READINESS: Mapping[ResourceKind, TeardownReadiness] = MappingProxyType(
    {
        ResourceKind.BUCKET: TeardownReadiness.BACKEND,
        ResourceKind.FILE: TeardownReadiness.ONCHAIN,
    }
)


class TeardownWorkflow(LedgerWorkflow):
    """Deletes a resource and waits until it is gone (per readiness policy)."""

    operation = 'teardown'

    def __init__(
        self,
        *,
        readiness: Mapping[ResourceKind, TeardownReadiness] = DEFAULT_TEARDOWN_READINESS,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._readiness = readiness

    def readiness_for(self, kind: ResourceKind) -> TeardownReadiness:
        return self._readiness.get(kind, TeardownReadiness.BACKEND)

    async def run(
        self,
        identity: ResourceIdentity,
        *,
        on_progress: ProgressObserver | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> WorkflowResult:
        """Run the deletion flow for ``identity``.

        A held lease on ``identity`` fails the run immediately with
        ``ConflictingOperation``; no ledger call is made.
        """
        kind = identity.kind.value
        readiness = self.readiness_for(identity.kind)
        tracker = ProgressTracker(
            transitions=TEARDOWN_TRANSITIONS,
            observer=on_progress,
            label=f'teardown {identity}',
        )
        scheduler = self._new_scheduler()
        deadline = self._new_deadline()
        failure: WorkflowFailure | None = None

        with workflow_context(self.operation, identity.lease_key):
            try:
                with ExitStack() as leases:
                    try:
                        leases.enter_context(
                            self._guard.hold(identity.lease_key, owner=self.operation)
                        )
                        tracker.advance(
                            WorkflowPhase.SUBMITTING,
                            f'Deleting {kind} {identity.value} on-chain...',
                        )
                        await self._submit_deletion(identity, deadline, cancel_token)

                        tracker.advance(
                            WorkflowPhase.VERIFYING_ONCHAIN,
                            f'Verifying deletion of {kind} {identity.value} on-chain...',
                        )
                        await self._verify_deletion(identity, deadline, cancel_token)

                        if readiness is TeardownReadiness.BACKEND:
                            tracker.advance(
                                WorkflowPhase.AWAITING_BACKEND,
                                'Waiting for backend to drop the resource...',
                            )
                            await self._await_removal(
                                identity, scheduler, deadline, cancel_token,
                            )
                    except WorkflowFailure as exc:
                        failure = exc
            except asyncio.CancelledError:
                tracker.fail(Cancelled('workflow task was cancelled'))
                raise

            if failure is not None:
                tracker.fail(failure)
                logger.info(
                    'Teardown of %s failed: %s',
                    identity,
                    failure,
                    extra={'failure_kind': failure.kind},
                )
            else:
                tracker.advance(
                    WorkflowPhase.COMPLETE,
                    f'{kind.capitalize()} deleted successfully!',
                )
                logger.info(
                    'Tore down %s (readiness=%s, polls=%d)',
                    identity,
                    readiness.value,
                    scheduler.attempts,
                )

        return WorkflowResult(
            operation=self.operation,
            identity=identity,
            progress=tuple(tracker.history),
            failure=failure,
            backend_polls=scheduler.attempts,
        )

    # ── Phases ───────────────────────────────────────────────────────

    async def _submit_deletion(
        self,
        identity: ResourceIdentity,
        deadline: WorkflowDeadline,
        cancel_token: CancellationToken | None,
    ) -> None:
        budget, workflow_bound = deadline.bound(None)
        await self._ledger_call(
            lambda: self._ledger.submit_deletion(identity),
            budget=budget,
            workflow_bound=workflow_bound,
            cancel_token=cancel_token,
            on_timeout=lambda: WorkflowTimeout('deletion submission timed out'),
            on_error=lambda exc: SubmissionRejected(str(exc) or type(exc).__name__),
            label='deletion submission',
        )

    async def _verify_deletion(
        self,
        identity: ResourceIdentity,
        deadline: WorkflowDeadline,
        cancel_token: CancellationToken | None,
    ) -> None:
        budget, workflow_bound = deadline.bound(self._finality_timeout)
        await self._ledger_call(
            lambda: self._ledger.await_deletion(identity, budget),
            budget=budget,
            workflow_bound=workflow_bound,
            cancel_token=cancel_token,
            on_timeout=lambda: FinalityTimeout(
                f'deletion of {identity} not finalized within {budget:.0f}s; '
                're-check later'
            ),
            on_error=lambda exc: OnChainRejected(str(exc) or type(exc).__name__),
            label='deletion finality wait',
        )

    async def _await_removal(
        self,
        identity: ResourceIdentity,
        scheduler: RetryScheduler,
        deadline: WorkflowDeadline,
        cancel_token: CancellationToken | None,
    ) -> None:
        async def attempt(number: int) -> None:
            view = await self._backend.get_resource(identity)
            if view is not None:
                raise NotReadyYet(f'{identity} still indexed (attempt {number})')

        await self._poll_backend(
            identity,
            attempt,
            scheduler=scheduler,
            deadline=deadline,
            cancel_token=cancel_token,
            waiting_for='drop',
        )
