"""Caller-facing storage operations.

StorageService wires the workflows to one shared IdempotencyGuard, one
ListingCache, and one ProgressBoard. It is the only place the cache is
invalidated: after every successful provisioning or teardown, never from
inside a workflow, and whenever the session disconnects.

Operation keys identify in-flight runs for progress and cancellation:
  - creation: ``intent:<fingerprint>`` (known before the ledger identity)
  - deletion: ``<kind>:<identity>``

Runs can be awaited (``create_resource`` / ``delete_resource``) or started
in the background (``start_creation`` / ``start_deletion``), which return
the operation key immediately so callers can poll or cancel the run.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable

from .cache import ListingCache
from .errors import (
    BackendRequestError,
    BackendTransportError,
    BackendUnavailable,
    ConflictingOperation,
)
from .models import (
    BackendView,
    FileContent,
    LedgerRecord,
    PayloadReference,
    ResourceIdentity,
    ResourceIntent,
    ResourceKind,
    views_consistent,
)
from .progress_board import ProgressBoard
from .protocols import BackendIndexClient, LedgerGateway
from .session import StorageSession
from .settings import StorageControlSettings
from .workflow.cancellation import CancellationToken
from .workflow.clock import Clock, SystemClock
from .workflow.idempotency import IdempotencyGuard
from .workflow.provisioning import ProvisioningWorkflow
from .workflow.state_machine import (
    ProgressObserver,
    WorkflowPhase,
    WorkflowProgress,
    WorkflowResult,
)
from .workflow.teardown import TeardownWorkflow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResourceInspection:
    """Fresh read of both authorities for one resource."""

    identity: ResourceIdentity
    record: LedgerRecord | None
    view: BackendView | None

    @property
    def exists_onchain(self) -> bool:
        return self.record is not None

    @property
    def consistent(self) -> bool:
        if self.record is None or self.view is None:
            return False
        return views_consistent(self.record, self.view)


class StorageService:
    def __init__(
        self,
        *,
        ledger: LedgerGateway,
        backend: BackendIndexClient,
        session: StorageSession,
        settings: StorageControlSettings | None = None,
        guard: IdempotencyGuard | None = None,
        cache: ListingCache | None = None,
        board: ProgressBoard | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        settings = settings or StorageControlSettings()
        clock = clock or SystemClock()
        self._ledger = ledger
        self._backend = backend
        self._session = session
        self._guard = guard or IdempotencyGuard()
        self._cache = cache or ListingCache(
            max_age=settings.listing_max_age_seconds, clock=clock,
        )
        self._board = board or ProgressBoard(
            reset_after=settings.progress_reset_seconds,
            max_entries=settings.progress_max_entries,
            clock=clock,
        )
        workflow_kwargs = dict(
            ledger=ledger,
            backend=backend,
            guard=self._guard,
            poll_policy=settings.backend_poll_policy(),
            finality_timeout=settings.finality_timeout_seconds,
            workflow_timeout=settings.workflow_timeout_seconds,
            clock=clock,
            rng=rng,
        )
        self._provisioning = ProvisioningWorkflow(**workflow_kwargs)
        self._teardown = TeardownWorkflow(
            readiness=settings.teardown_readiness, **workflow_kwargs,
        )
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        session.on_disconnect(self._cache.invalidate)

    @property
    def guard(self) -> IdempotencyGuard:
        return self._guard

    @property
    def cache(self) -> ListingCache:
        return self._cache

    @property
    def board(self) -> ProgressBoard:
        return self._board

    @property
    def session(self) -> StorageSession:
        return self._session

    # ── Intent construction ──────────────────────────────────────────

    def bucket_intent(
        self,
        name: str,
        *,
        private: bool = False,
        value_proposition_id: str | None = None,
    ) -> ResourceIntent:
        return ResourceIntent(
            kind=ResourceKind.BUCKET,
            name=name.strip(),
            owner=self._session.require_address(),
            private=private,
            value_proposition_id=value_proposition_id,
        )

    def file_intent(
        self,
        bucket: ResourceIdentity,
        name: str,
        payload: PayloadReference,
        *,
        private: bool = False,
    ) -> ResourceIntent:
        return ResourceIntent(
            kind=ResourceKind.FILE,
            name=name.strip(),
            owner=self._session.require_address(),
            private=private,
            parent=bucket,
            payload=payload,
        )

    # ── Workflows ────────────────────────────────────────────────────

    async def create_resource(
        self,
        intent: ResourceIntent,
        on_progress: ProgressObserver | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> WorkflowResult:
        """Provision ``intent``; invalidates listings on success."""
        key = intent.lease_key
        token = cancel_token or CancellationToken()
        registered = self._register(key, token)
        return await self._provision(intent, key, token, registered, on_progress)

    async def delete_resource(
        self,
        identity: ResourceIdentity,
        on_progress: ProgressObserver | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> WorkflowResult:
        """Tear down ``identity``; invalidates listings on success."""
        key = identity.lease_key
        token = cancel_token or CancellationToken()
        registered = self._register(key, token)
        return await self._tear_down(identity, key, token, registered, on_progress)

    def start_creation(
        self,
        intent: ResourceIntent,
        on_progress: ProgressObserver | None = None,
    ) -> str:
        """Start provisioning ``intent`` in the background.

        Returns the operation key at once; the run is cancellable through
        ``cancel`` before its first suspension point.

        Raises:
            ConflictingOperation: A run for the same key is in flight.
        """
        key = intent.lease_key
        token = self._register_or_conflict(key)
        self._spawn(key, self._provision(intent, key, token, True, on_progress))
        return key

    def start_deletion(
        self,
        identity: ResourceIdentity,
        on_progress: ProgressObserver | None = None,
    ) -> str:
        """Background counterpart of ``delete_resource``; see ``start_creation``."""
        key = identity.lease_key
        token = self._register_or_conflict(key)
        self._spawn(key, self._tear_down(identity, key, token, True, on_progress))
        return key

    def cancel(self, operation_key: str, reason: str = 'cancelled by caller') -> bool:
        """Cancel an in-flight run. Returns False if none is running."""
        token = self._tokens.get(operation_key)
        if token is None:
            return False
        token.cancel(reason)
        logger.info('Cancellation requested for %s', operation_key)
        return True

    def progress(self, operation_key: str) -> WorkflowProgress:
        return self._board.get(operation_key)

    def running_operations(self) -> list[str]:
        return sorted(self._tokens)

    async def aclose(self) -> None:
        """Cancel background runs and wait for them to release their leases."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Reads ────────────────────────────────────────────────────────

    async def list_resources(self) -> list[BackendView]:
        """Buckets of the connected owner, from cache or the backend.

        Raises:
            WalletNotConnected: No wallet address to scope the listing to.
        """
        owner = self._session.require_address()
        return await self._cached(
            ListingCache.buckets_key(owner),
            lambda: self._backend.list_resources(owner),
        )

    async def list_files(self, bucket: ResourceIdentity) -> list[BackendView]:
        return await self._cached(
            ListingCache.files_key(bucket),
            lambda: self._backend.list_files(bucket),
        )

    async def download_file(self, identity: ResourceIdentity) -> FileContent | None:
        """Fetch a file's content from the backend; None when it holds none."""
        if identity.kind is not ResourceKind.FILE:
            raise ValueError(f'only files can be downloaded, got {identity}')
        try:
            return await self._backend.download_file(identity)
        except (BackendTransportError, BackendRequestError) as exc:
            logger.warning('Download of %s failed: %s', identity, exc)
            raise BackendUnavailable(str(exc)) from exc

    async def inspect_resource(self, identity: ResourceIdentity) -> ResourceInspection:
        """Re-read ledger and backend, bypassing the cache.

        Used to re-check a resource after a recoverable failure such as
        ``FinalityTimeout``.
        """
        record = await self._ledger.get_record(identity)
        try:
            view = await self._backend.get_resource(identity)
        except (BackendTransportError, BackendRequestError) as exc:
            raise BackendUnavailable(str(exc)) from exc
        return ResourceInspection(identity=identity, record=record, view=view)

    # ── Internals ────────────────────────────────────────────────────

    async def _provision(
        self,
        intent: ResourceIntent,
        key: str,
        token: CancellationToken,
        registered: bool,
        on_progress: ProgressObserver | None,
    ) -> WorkflowResult:
        try:
            result = await self._provisioning.run(
                intent,
                on_progress=self._observer(key, on_progress, registered),
                cancel_token=token,
            )
        finally:
            if registered:
                self._tokens.pop(key, None)
        if result.success:
            self._cache.invalidate()
        return result

    async def _tear_down(
        self,
        identity: ResourceIdentity,
        key: str,
        token: CancellationToken,
        registered: bool,
        on_progress: ProgressObserver | None,
    ) -> WorkflowResult:
        try:
            result = await self._teardown.run(
                identity,
                on_progress=self._observer(key, on_progress, registered),
                cancel_token=token,
            )
        finally:
            if registered:
                self._tokens.pop(key, None)
        if result.success:
            self._cache.invalidate()
        return result

    def _register(self, key: str, token: CancellationToken) -> bool:
        # A conflicting run fails fast in the guard; it must not replace
        # the running run's token.
        if key in self._tokens:
            return False
        self._tokens[key] = token
        return True

    def _register_or_conflict(self, key: str) -> CancellationToken:
        token = CancellationToken()
        if self._guard.is_held(key) or not self._register(key, token):
            raise ConflictingOperation(key, phase=WorkflowPhase.IDLE.value)
        # Drop the previous run's terminal state so pollers never see it
        # as the outcome of this one.
        self._board.clear(key)
        return token

    def _spawn(self, key: str, run: Awaitable[WorkflowResult]) -> None:
        task = asyncio.ensure_future(run)
        self._tasks[key] = task
        task.add_done_callback(lambda done: self._on_task_done(key, done))

    def _on_task_done(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error('Background operation %s crashed: %r', key, exc)

    def _observer(
        self,
        key: str,
        on_progress: ProgressObserver | None,
        record_on_board: bool,
    ) -> ProgressObserver:
        record = self._board.observer(key) if record_on_board else None

        def observe(progress: WorkflowProgress) -> None:
            if record is not None:
                record(progress)
            if on_progress is not None:
                on_progress(progress)

        return observe

    async def _cached(self, key, fetch) -> list[BackendView]:
        try:
            return await self._cache.get_or_fetch(key, fetch)
        except (BackendTransportError, BackendRequestError) as exc:
            logger.warning('Listing %s failed: %s', key, exc)
            raise BackendUnavailable(str(exc)) from exc
