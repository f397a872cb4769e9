"""Process-wide, init-once bootstrap of the chain client runtime.

The chain client needs a one-time runtime initialization (WASM module and
API connection) before any ledger call. ``ChainRuntime.ensure_initialized``
is idempotent and safe under concurrent callers: the bootstrap runs at most
once per successful initialization, and a failed bootstrap is retried on
the next call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Bootstrap = Callable[[], Awaitable[None]]


class RuntimeInitError(RuntimeError):
    """Raised when the chain runtime bootstrap fails."""


async def _noop_bootstrap() -> None:
    return None


class ChainRuntime:
    """Guards one-time initialization of the chain client runtime."""

    def __init__(self, bootstrap: Bootstrap = _noop_bootstrap) -> None:
        self._bootstrap = bootstrap
        self._initialized = False
        self._lock = asyncio.Lock()
        self.init_count = 0

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            try:
                await self._bootstrap()
            except Exception as exc:
                logger.warning('Chain runtime bootstrap failed: %s', exc)
                raise RuntimeInitError(f'chain runtime bootstrap failed: {exc}') from exc
            self._initialized = True
            self.init_count += 1
            logger.info('Chain runtime initialized')


# ── Module-level shared runtime ──────────────────────────────────

_shared_runtime: ChainRuntime | None = None


def get_runtime(bootstrap: Bootstrap | None = None) -> ChainRuntime:
    """Return the process-wide runtime, creating it on first use.

    ``bootstrap`` is only honoured when the runtime is created.
    """
    global _shared_runtime
    if _shared_runtime is None:
        _shared_runtime = ChainRuntime(bootstrap or _noop_bootstrap)
    return _shared_runtime


def _reset_runtime_for_tests() -> None:
    global _shared_runtime
    _shared_runtime = None
