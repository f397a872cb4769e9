"""Failure taxonomy for storage provisioning and teardown workflows.

Every workflow exit path ends in either a reconciled resource or one of the
``WorkflowFailure`` kinds below. Collaborator-level errors (``RetryableError``
and ``BackendRequestError``) are classified by the retry scheduler and never
reach callers directly.

Kinds and how callers should treat them:
  - ``SubmissionRejected``: fatal, the intent must be corrected.
  - ``OnChainRejected``: fatal.
  - ``FinalityTimeout``: recoverable, the submission may still finalize.
  - ``BackendIndexTimeout`` / ``BackendUnavailable``: recoverable, the
    resource is valid on-chain and only backend visibility lags.
  - ``ConflictingOperation``: fatal for this call, wait and retry.
  - ``Cancelled``: caller initiated.
  - ``WorkflowTimeout``: recoverable, the workflow-level deadline elapsed.
"""

from __future__ import annotations


class WorkflowFailure(Exception):
    """Base class for typed workflow failures."""

    kind = 'workflow_failure'
    recoverable = False

    def __init__(self, message: str = '', *, phase: str | None = None) -> None:
        self.message = message or self.kind
        self.phase = phase
        super().__init__(self.message)

    def at_phase(self, phase: str) -> WorkflowFailure:
        """Record the phase the failure surfaced in, if not already set."""
        if self.phase is None:
            self.phase = phase
        return self

    def to_dict(self) -> dict:
        return {
            'error': self.kind,
            'detail': self.message,
            'recoverable': self.recoverable,
            'phase': self.phase,
        }

    def __str__(self) -> str:
        if self.phase:
            return f'{self.kind} during {self.phase}: {self.message}'
        return f'{self.kind}: {self.message}'


class SubmissionRejected(WorkflowFailure):
    """The ledger (or local validation) refused the intent."""

    kind = 'submission_rejected'


class OnChainRejected(WorkflowFailure):
    """The transaction was included but rejected on-chain."""

    kind = 'onchain_rejected'


class FinalityTimeout(WorkflowFailure):
    """Finality was not observed within the phase budget."""

    kind = 'finality_timeout'
    recoverable = True


class BackendIndexTimeout(WorkflowFailure):
    """The backend never reported a view consistent with the ledger."""

    kind = 'backend_index_timeout'
    recoverable = True


class BackendUnavailable(BackendIndexTimeout):
    """The backend could not be reached (or refused) while polling.

    Subclasses ``BackendIndexTimeout`` so callers handling the timeout kind
    also handle exhausted transport failures.
    """

    kind = 'backend_unavailable'


class ConflictingOperation(WorkflowFailure):
    """Another workflow holds the lease for the same resource."""

    kind = 'conflicting_operation'

    def __init__(self, key: str, *, holder: str | None = None, phase: str | None = None) -> None:
        self.key = key
        self.holder = holder
        detail = f'operation already in progress for {key!r}'
        if holder:
            detail = f'{detail} (held by {holder})'
        super().__init__(detail, phase=phase)


class Cancelled(WorkflowFailure):
    """The caller cancelled the workflow."""

    kind = 'cancelled'
    recoverable = True


class WorkflowTimeout(WorkflowFailure):
    """The workflow-level deadline elapsed before completion."""

    kind = 'workflow_timeout'
    recoverable = True


# ── Collaborator-level errors (classified by the retry scheduler) ────


class RetryableError(Exception):
    """An attempt failed in a way that may succeed if repeated."""


class NotReadyYet(RetryableError):
    """The backend has no consistent view of the resource yet."""


class BackendTransportError(RetryableError):
    """Transport-level failure talking to the backend (timeout, 5xx, 429)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class BackendRequestError(Exception):
    """The backend answered with a non-retryable error status."""

    def __init__(self, status_code: int, message: str = '') -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f'backend error {status_code}: {message}')


class WalletNotConnected(RuntimeError):
    """An operation needs a wallet address but no wallet is connected."""

    def __init__(self) -> None:
        super().__init__('wallet is not connected')


FAILURE_KINDS: dict[str, type[WorkflowFailure]] = {
    cls.kind: cls
    for cls in (
        SubmissionRejected,
        OnChainRejected,
        FinalityTimeout,
        BackendIndexTimeout,
        BackendUnavailable,
        ConflictingOperation,
        Cancelled,
        WorkflowTimeout,
    )
}
