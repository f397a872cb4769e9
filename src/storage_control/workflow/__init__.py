"""Provisioning and teardown workflows plus their shared primitives."""

from .cancellation import CancellationToken, run_cancellable
from .clock import Clock, ManualClock, SystemClock, WorkflowDeadline
from .idempotency import IdempotencyGuard, Lease
from .provisioning import ProvisioningWorkflow
from .retry import RetryPolicy, RetryScheduler
from .state_machine import (
    PROVISIONING_SEQUENCE,
    TERMINAL_PHASES,
    InvalidPhaseTransition,
    ProgressTracker,
    WorkflowPhase,
    WorkflowProgress,
    WorkflowResult,
)
from .teardown import DEFAULT_TEARDOWN_READINESS, TeardownReadiness, TeardownWorkflow

__all__ = [
    'CancellationToken',
    'Clock',
    'DEFAULT_TEARDOWN_READINESS',
    'IdempotencyGuard',
    'InvalidPhaseTransition',
    'Lease',
    'ManualClock',
    'PROVISIONING_SEQUENCE',
    'ProgressTracker',
    'ProvisioningWorkflow',
    'RetryPolicy',
    'RetryScheduler',
    'SystemClock',
    'TERMINAL_PHASES',
    'TeardownReadiness',
    'TeardownWorkflow',
    'WorkflowDeadline',
    'WorkflowPhase',
    'WorkflowProgress',
    'WorkflowResult',
    'run_cancellable',
]
