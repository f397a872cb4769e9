"""Caller-owned view of the latest progress per operation.

Workflows only ever emit progress; deciding when a finished operation's
``complete``/``failed`` state should fall back to ``idle`` belongs to the
caller. ``ProgressBoard`` applies that reset policy against an injected
clock, with no dependency on any rendering layer.

Terminal entries are dropped once their reset window has passed, both on
read and whenever a new event is recorded, and at most ``max_entries``
operations are retained. In-flight entries are never evicted.
"""

from __future__ import annotations

from dataclasses import dataclass

from .workflow.clock import Clock, SystemClock
from .workflow.state_machine import IDLE_PROGRESS, ProgressObserver, WorkflowProgress

DEFAULT_RESET_AFTER_SECONDS = 5.0
DEFAULT_MAX_ENTRIES = 1024


@dataclass(frozen=True, slots=True)
class _BoardEntry:
    progress: WorkflowProgress
    recorded_at: float


class ProgressBoard:
    def __init__(
        self,
        *,
        reset_after: float | None = DEFAULT_RESET_AFTER_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock | None = None,
    ) -> None:
        if reset_after is not None and reset_after < 0:
            raise ValueError('reset_after must be >= 0')
        if max_entries < 1:
            raise ValueError('max_entries must be >= 1')
        self._reset_after = reset_after
        self._max_entries = max_entries
        self._clock = clock or SystemClock()
        # Insertion order is recency order; record() re-inserts.
        self._entries: dict[str, _BoardEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, key: str, progress: WorkflowProgress) -> None:
        now = self._clock.monotonic()
        self._entries.pop(key, None)
        self._entries[key] = _BoardEntry(progress, now)
        self._prune(now)

    def observer(self, key: str) -> ProgressObserver:
        """Progress observer that records under ``key``."""
        return lambda progress: self.record(key, progress)

    def get(self, key: str) -> WorkflowProgress:
        entry = self._entries.get(key)
        if entry is None:
            return IDLE_PROGRESS
        if self._expired(entry, self._clock.monotonic()):
            del self._entries[key]
            return IDLE_PROGRESS
        return entry.progress

    def clear(self, key: str) -> None:
        self._entries.pop(key, None)

    def _expired(self, entry: _BoardEntry, now: float) -> bool:
        return (
            entry.progress.is_terminal
            and self._reset_after is not None
            and now - entry.recorded_at >= self._reset_after
        )

    def _prune(self, now: float) -> None:
        for key in [k for k, e in self._entries.items() if self._expired(e, now)]:
            del self._entries[key]
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        oldest_terminal = [k for k, e in self._entries.items() if e.progress.is_terminal]
        for key in oldest_terminal[:overflow]:
            del self._entries[key]
