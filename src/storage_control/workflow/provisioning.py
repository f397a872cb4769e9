"""Provisioning workflow: ledger submission through backend readiness.

Drives one resource creation through:
  submitting -> verifying-onchain -> awaiting-backend -> complete

At each phase the workflow:
  1. Advances the progress tracker (observer notified once per transition).
  2. Performs the phase's collaborator call under its budget.
  3. Maps any failure to a typed ``WorkflowFailure`` and stops.

Leases: the intent fingerprint is leased before submission and the ledger
identity right after it; both are released before the terminal progress
event is emitted, on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import ExitStack

from ..errors import (
    Cancelled,
    ConflictingOperation,
    FinalityTimeout,
    NotReadyYet,
    OnChainRejected,
    SubmissionRejected,
    WorkflowFailure,
    WorkflowTimeout,
)
from ..models import (
    BackendView,
    LedgerRecord,
    ResourceDescriptor,
    ResourceIdentity,
    ResourceIntent,
    views_consistent,
)
from ..observability.logging import workflow_context
from .base import LedgerWorkflow
from .cancellation import CancellationToken
from .clock import WorkflowDeadline
from .retry import RetryScheduler
from .state_machine import (
    PROVISIONING_TRANSITIONS,
    ProgressObserver,
    ProgressTracker,
    WorkflowPhase,
    WorkflowResult,
)

logger = logging.getLogger(__name__)


class ProvisioningWorkflow(LedgerWorkflow):
    """Creates a bucket or file and waits until the backend mirrors it.

    One instance may serve many runs; each run gets its own tracker,
    scheduler, and deadline. Runs for different resources may proceed
    concurrently; runs for the same resource are excluded by the guard.
    """

    operation = 'provision'

    async def run(
        self,
        intent: ResourceIntent,
        *,
        on_progress: ProgressObserver | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> WorkflowResult:
        """Run the full creation flow for ``intent``.

        Returns a ``WorkflowResult`` carrying either the reconciled
        descriptor or a typed failure. ``asyncio.CancelledError`` is
        re-raised after leases are released and ``failed`` is emitted.
        """
        kind = intent.kind.value
        tracker = ProgressTracker(
            transitions=PROVISIONING_TRANSITIONS,
            observer=on_progress,
            label=f'provision {kind} {intent.name!r}',
        )
        scheduler = self._new_scheduler()
        deadline = self._new_deadline()
        identity: ResourceIdentity | None = None
        descriptor: ResourceDescriptor | None = None
        failure: WorkflowFailure | None = None

        with workflow_context(self.operation, f'{kind}:{intent.name}'):
            try:
                with ExitStack() as leases:
                    try:
                        leases.enter_context(
                            self._guard.hold(intent.lease_key, owner=self.operation)
                        )
                        tracker.advance(
                            WorkflowPhase.SUBMITTING,
                            f'Creating {kind} {intent.name!r} on-chain...',
                        )
                        identity = await self._submit(intent, deadline, cancel_token)
                        try:
                            leases.enter_context(
                                self._guard.hold(identity.lease_key, owner=self.operation)
                            )
                        except ConflictingOperation as exc:
                            exc.phase = WorkflowPhase.SUBMITTING.value
                            raise

                        tracker.advance(
                            WorkflowPhase.VERIFYING_ONCHAIN,
                            f'Verifying {kind} {identity.value} on-chain...',
                        )
                        record = await self._verify_onchain(identity, deadline, cancel_token)

                        tracker.advance(
                            WorkflowPhase.AWAITING_BACKEND,
                            'Waiting for backend to index...',
                        )
                        view = await self._await_backend(
                            record, scheduler, deadline, cancel_token,
                        )
                        descriptor = ResourceDescriptor(record=record, view=view)
                    except WorkflowFailure as exc:
                        failure = exc
            except asyncio.CancelledError:
                tracker.fail(Cancelled('workflow task was cancelled'))
                raise

            if failure is not None:
                tracker.fail(failure)
                logger.info(
                    'Provisioning %s %r failed: %s (polls=%d)',
                    kind,
                    intent.name,
                    failure,
                    scheduler.attempts,
                    extra={'failure_kind': failure.kind},
                )
            else:
                tracker.advance(
                    WorkflowPhase.COMPLETE,
                    f'{kind.capitalize()} created successfully!',
                )
                logger.info(
                    'Provisioned %s %s (root=%s, polls=%d)',
                    kind,
                    identity.value if identity else '?',
                    descriptor.root if descriptor else '?',
                    scheduler.attempts,
                )

        return WorkflowResult(
            operation=self.operation,
            identity=identity,
            progress=tuple(tracker.history),
            descriptor=descriptor,
            failure=failure,
            backend_polls=scheduler.attempts,
        )

    # ── Phases ───────────────────────────────────────────────────────

    async def _submit(
        self,
        intent: ResourceIntent,
        deadline: WorkflowDeadline,
        cancel_token: CancellationToken | None,
    ) -> ResourceIdentity:
        intent.validate()
        budget, workflow_bound = deadline.bound(None)
        identity = await self._ledger_call(
            lambda: self._ledger.submit(intent),
            budget=budget,
            workflow_bound=workflow_bound,
            cancel_token=cancel_token,
            on_timeout=lambda: WorkflowTimeout('submission timed out'),
            on_error=lambda exc: SubmissionRejected(str(exc) or type(exc).__name__),
            label='submission',
        )
        if identity.kind is not intent.kind:
            raise SubmissionRejected(
                f'ledger returned a {identity.kind.value} identity for a '
                f'{intent.kind.value} intent'
            )
        return identity

    async def _verify_onchain(
        self,
        identity: ResourceIdentity,
        deadline: WorkflowDeadline,
        cancel_token: CancellationToken | None,
    ) -> LedgerRecord:
        budget, workflow_bound = deadline.bound(self._finality_timeout)
        record = await self._ledger_call(
            lambda: self._ledger.await_finality(identity, budget),
            budget=budget,
            workflow_bound=workflow_bound,
            cancel_token=cancel_token,
            on_timeout=lambda: FinalityTimeout(
                f'{identity} not finalized within {budget:.0f}s; '
                'it may still finalize, re-check later'
            ),
            on_error=lambda exc: OnChainRejected(str(exc) or type(exc).__name__),
            label='finality wait',
        )
        if record.identity != identity:
            raise OnChainRejected(
                f'finalized record {record.identity} does not match submitted {identity}'
            )
        return record

    async def _await_backend(
        self,
        record: LedgerRecord,
        scheduler: RetryScheduler,
        deadline: WorkflowDeadline,
        cancel_token: CancellationToken | None,
    ) -> BackendView:
        identity = record.identity

        async def attempt(number: int) -> BackendView:
            view = await self._backend.get_resource(identity)
            if view is None:
                raise NotReadyYet(f'{identity} not indexed yet (attempt {number})')
            if not views_consistent(record, view):
                raise NotReadyYet(
                    f'{identity} indexed with stale root {view.root} '
                    f'(ledger root {record.root})'
                )
            return view

        return await self._poll_backend(
            identity,
            attempt,
            scheduler=scheduler,
            deadline=deadline,
            cancel_token=cancel_token,
            waiting_for='index',
        )
