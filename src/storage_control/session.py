"""Connection state for one user session: wallet, chain runtime, backend.

Wallet connection, key management, and session persistence are owned by
external collaborators; this module only sequences them and keeps a
snapshot the caller can render. Each action clears ``last_error`` on start
and records it on failure before re-raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable

from .errors import WalletNotConnected
from .protocols import BackendIndexClient, WalletSession
from .runtime import ChainRuntime

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionState:
    wallet_connected: bool = False
    backend_connected: bool = False
    address: str | None = None
    backend_info: dict[str, Any] | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'wallet_connected': self.wallet_connected,
            'backend_connected': self.backend_connected,
            'address': self.address,
            'backend_info': self.backend_info,
            'last_error': self.last_error,
        }


class StorageSession:
    def __init__(
        self,
        *,
        wallet: WalletSession,
        backend: BackendIndexClient,
        runtime: ChainRuntime,
    ) -> None:
        self._wallet = wallet
        self._backend = backend
        self._runtime = runtime
        self._state = SessionState()
        self._disconnect_hooks: list[Callable[[], None]] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def runtime(self) -> ChainRuntime:
        return self._runtime

    def current_address(self) -> str | None:
        return self._wallet.current_address()

    def require_address(self) -> str:
        address = self._wallet.current_address()
        if not address:
            raise WalletNotConnected()
        return address

    async def connect_wallet(self) -> str:
        """Initialize the chain runtime (once) and connect the wallet."""
        self._state = replace(self._state, last_error=None)
        try:
            await self._runtime.ensure_initialized()
            address = await self._wallet.connect()
        except Exception as exc:
            self._state = replace(self._state, last_error=str(exc) or 'failed to connect wallet')
            raise
        self._state = replace(self._state, wallet_connected=True, address=address)
        logger.info('Wallet connected: %s', address)
        return address

    async def connect_backend(self) -> dict[str, Any]:
        """Connect to the MSP backend and fetch its info."""
        self._state = replace(self._state, last_error=None)
        try:
            info = await self._backend.info()
        except Exception as exc:
            self._state = replace(self._state, last_error=str(exc) or 'failed to connect to MSP')
            raise
        self._state = replace(self._state, backend_connected=True, backend_info=info)
        return info

    async def restore(self) -> SessionState:
        """Re-derive the session from the wallet's current address.

        Nothing is restored when the wallet reports no address.
        """
        address = self._wallet.current_address()
        if not address:
            return self._state
        await self._runtime.ensure_initialized()
        self._state = replace(self._state, wallet_connected=True, address=address)
        await self.connect_backend()
        return self._state

    async def backend_health(self) -> dict[str, Any]:
        try:
            return await self._backend.health()
        except Exception as exc:
            self._state = replace(self._state, last_error=str(exc) or 'failed to get MSP health')
            raise

    def on_disconnect(self, hook: Callable[[], None]) -> None:
        """Register ``hook`` to run after every disconnect."""
        self._disconnect_hooks.append(hook)

    def disconnect(self) -> None:
        self._wallet.disconnect()
        self._state = SessionState()
        for hook in self._disconnect_hooks:
            hook()
        logger.info('Session disconnected')

    def clear_error(self) -> None:
        self._state = replace(self._state, last_error=None)
