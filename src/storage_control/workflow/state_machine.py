"""Workflow phases, transition rules, progress events, and results.

Provisioning flow:
  idle -> submitting -> verifying-onchain -> awaiting-backend -> complete

Teardown flow (same phases; ``awaiting-backend`` is skipped when the
resource kind's readiness policy is "accepted on-chain"):
  idle -> submitting -> verifying-onchain -> [awaiting-backend] -> complete

Any non-terminal phase may move to ``failed``. Transitions are monotonic:
no phase is entered twice within one run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping

from ..errors import WorkflowFailure
from ..models import ResourceDescriptor, ResourceIdentity

logger = logging.getLogger(__name__)


class WorkflowPhase(Enum):
    IDLE = 'idle'
    SUBMITTING = 'submitting'
    VERIFYING_ONCHAIN = 'verifying-onchain'
    AWAITING_BACKEND = 'awaiting-backend'
    COMPLETE = 'complete'
    FAILED = 'failed'


TERMINAL_PHASES = frozenset({WorkflowPhase.COMPLETE, WorkflowPhase.FAILED})

PROVISIONING_SEQUENCE = (
    WorkflowPhase.IDLE,
    WorkflowPhase.SUBMITTING,
    WorkflowPhase.VERIFYING_ONCHAIN,
    WorkflowPhase.AWAITING_BACKEND,
    WorkflowPhase.COMPLETE,
)

_FAILABLE = frozenset({WorkflowPhase.FAILED})

PROVISIONING_TRANSITIONS: Mapping[WorkflowPhase, frozenset[WorkflowPhase]] = MappingProxyType(
    {
        WorkflowPhase.IDLE: frozenset({WorkflowPhase.SUBMITTING}) | _FAILABLE,
        WorkflowPhase.SUBMITTING: frozenset({WorkflowPhase.VERIFYING_ONCHAIN}) | _FAILABLE,
        WorkflowPhase.VERIFYING_ONCHAIN: frozenset({WorkflowPhase.AWAITING_BACKEND}) | _FAILABLE,
        WorkflowPhase.AWAITING_BACKEND: frozenset({WorkflowPhase.COMPLETE}) | _FAILABLE,
        WorkflowPhase.COMPLETE: frozenset(),
        WorkflowPhase.FAILED: frozenset(),
    }
)

TEARDOWN_TRANSITIONS: Mapping[WorkflowPhase, frozenset[WorkflowPhase]] = MappingProxyType(
    {
        **PROVISIONING_TRANSITIONS,
        WorkflowPhase.VERIFYING_ONCHAIN: frozenset(
            {WorkflowPhase.AWAITING_BACKEND, WorkflowPhase.COMPLETE}
        ) | _FAILABLE,
    }
)


class InvalidPhaseTransition(ValueError):
    """Raised for transitions the flow does not allow."""

    def __init__(self, from_phase: WorkflowPhase, to_phase: WorkflowPhase) -> None:
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(
            f'invalid phase transition: {from_phase.value!r} -> {to_phase.value!r}'
        )


@dataclass(frozen=True, slots=True)
class WorkflowProgress:
    """The current phase of a workflow run plus a human-readable message.

    ``failure_kind`` and ``failed_phase`` are only set on ``failed``.
    """

    phase: WorkflowPhase
    message: str = ''
    failure_kind: str | None = None
    failed_phase: WorkflowPhase | None = None
    recoverable: bool | None = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_dict(self) -> dict:
        return {
            'phase': self.phase.value,
            'message': self.message,
            'failure_kind': self.failure_kind,
            'failed_phase': self.failed_phase.value if self.failed_phase else None,
            'recoverable': self.recoverable,
            'at': self.at.isoformat(),
        }


IDLE_PROGRESS = WorkflowProgress(phase=WorkflowPhase.IDLE)

ProgressObserver = Callable[[WorkflowProgress], None]


class ProgressTracker:
    """Holds the single current progress value and notifies an observer.

    Observer errors are logged and never interrupt the workflow.
    """

    def __init__(
        self,
        *,
        transitions: Mapping[WorkflowPhase, frozenset[WorkflowPhase]] = PROVISIONING_TRANSITIONS,
        observer: ProgressObserver | None = None,
        label: str = 'workflow',
    ) -> None:
        self._transitions = transitions
        self._observer = observer
        self._label = label
        self._current = IDLE_PROGRESS
        self.history: list[WorkflowProgress] = []

    @property
    def current(self) -> WorkflowProgress:
        return self._current

    @property
    def phase(self) -> WorkflowPhase:
        return self._current.phase

    def advance(self, phase: WorkflowPhase, message: str) -> WorkflowProgress:
        self._check(phase)
        return self._emit(WorkflowProgress(phase=phase, message=message))

    def fail(self, failure: WorkflowFailure) -> WorkflowProgress:
        failed_phase = self._current.phase
        self._check(WorkflowPhase.FAILED)
        failure.at_phase(failed_phase.value)
        return self._emit(
            WorkflowProgress(
                phase=WorkflowPhase.FAILED,
                message=failure.message,
                failure_kind=failure.kind,
                failed_phase=failed_phase,
                recoverable=failure.recoverable,
            )
        )

    def _check(self, phase: WorkflowPhase) -> None:
        allowed = self._transitions.get(self._current.phase, frozenset())
        if phase not in allowed:
            raise InvalidPhaseTransition(self._current.phase, phase)

    def _emit(self, progress: WorkflowProgress) -> WorkflowProgress:
        self._current = progress
        self.history.append(progress)
        if self._observer is not None:
            try:
                self._observer(progress)
            except Exception:
                logger.exception(
                    'Progress observer failed for %s at phase=%s',
                    self._label,
                    progress.phase.value,
                )
        return progress


@dataclass(frozen=True, slots=True)
class WorkflowResult:
    """Outcome of one workflow run.

    Exactly one of ``descriptor`` (provisioning success) or ``failure`` is
    set, except for a successful teardown where both are ``None``.
    """

    operation: str
    identity: ResourceIdentity | None
    progress: tuple[WorkflowProgress, ...]
    descriptor: ResourceDescriptor | None = None
    failure: WorkflowFailure | None = None
    backend_polls: int = 0

    @property
    def success(self) -> bool:
        return self.failure is None

    @property
    def phases(self) -> list[WorkflowPhase]:
        return [p.phase for p in self.progress]

    @property
    def final(self) -> WorkflowProgress:
        return self.progress[-1] if self.progress else IDLE_PROGRESS

    def unwrap(self) -> ResourceDescriptor | None:
        """Return the descriptor or raise the failure."""
        if self.failure is not None:
            raise self.failure
        return self.descriptor

    def to_dict(self) -> dict:
        payload: dict = {
            'operation': self.operation,
            'success': self.success,
            'identity': str(self.identity) if self.identity else None,
            'progress': [p.to_dict() for p in self.progress],
            'backend_polls': self.backend_polls,
        }
        if self.descriptor is not None:
            payload['resource'] = self.descriptor.to_dict()
        if self.failure is not None:
            payload['failure'] = self.failure.to_dict()
        return payload
