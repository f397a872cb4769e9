"""Exclusive, non-queuing leases keyed by resource identity.

A lease is held for the full duration of one workflow run. ``acquire`` on a
held key fails immediately with ``ConflictingOperation``; callers never
queue behind a holder.

The guard is synchronous. Under asyncio there is no suspension point
between the membership check and the insert, so acquisition is atomic.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from ..errors import ConflictingOperation

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Lease:
    """Proof of exclusive ownership of ``key``."""

    key: str
    owner: str
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    acquired_at: float = field(default_factory=time.monotonic)


class IdempotencyGuard:
    """Registry of currently held leases.

    Shared by every workflow instance of a service so provisioning and
    teardown on the same identity exclude each other.
    """

    def __init__(self) -> None:
        self._leases: dict[str, Lease] = {}

    def acquire(self, key: str, *, owner: str = '') -> Lease:
        """Take the lease for ``key`` or fail fast.

        Raises:
            ConflictingOperation: The key is already held.
        """
        if not key:
            raise ValueError('lease key must not be empty')
        current = self._leases.get(key)
        if current is not None:
            logger.info(
                'Lease conflict for %s (held by %s)', key, current.owner or '?',
            )
            raise ConflictingOperation(key, holder=current.owner or None)
        lease = Lease(key=key, owner=owner)
        self._leases[key] = lease
        return lease

    def release(self, lease: Lease) -> bool:
        """Release ``lease``. Returns False if it was no longer current."""
        current = self._leases.get(lease.key)
        if current is None or current.token != lease.token:
            return False
        del self._leases[lease.key]
        return True

    def is_held(self, key: str) -> bool:
        return key in self._leases

    def held_keys(self) -> frozenset[str]:
        return frozenset(self._leases)

    @contextmanager
    def hold(self, key: str, *, owner: str = '') -> Iterator[Lease]:
        """Scoped acquisition: the lease is released on every exit path."""
        lease = self.acquire(key, owner=owner)
        try:
            yield lease
        finally:
            self.release(lease)
