"""Collaborator protocols the workflows depend on.

Concrete implementations: ``inmemory`` fakes (local development, tests),
``clients.msp_client.MspIndexClient`` for the backend. Ledger and wallet
implementations live outside this package; anything matching these
protocols can be injected into ``create_app`` / ``StorageService``.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .models import (
    BackendView,
    FileContent,
    LedgerRecord,
    ResourceIdentity,
    ResourceIntent,
)


@runtime_checkable
class LedgerGateway(Protocol):
    """Submits intents to the chain and reports finality."""

    async def submit(self, intent: ResourceIntent) -> ResourceIdentity:
        """Submit a creation intent. Raises ``SubmissionRejected``."""
        ...

    async def await_finality(
        self, identity: ResourceIdentity, timeout: float,
    ) -> LedgerRecord:
        """Wait for the creation to finalize.

        Raises ``OnChainRejected`` or ``FinalityTimeout``.
        """
        ...

    async def submit_deletion(self, identity: ResourceIdentity) -> None:
        """Submit a deletion intent. Raises ``SubmissionRejected``."""
        ...

    async def await_deletion(self, identity: ResourceIdentity, timeout: float) -> None:
        """Wait for the deletion to finalize.

        Raises ``OnChainRejected`` or ``FinalityTimeout``.
        """
        ...

    async def get_record(self, identity: ResourceIdentity) -> LedgerRecord | None:
        """Read the finalized record, or None if it does not exist."""
        ...


@runtime_checkable
class BackendIndexClient(Protocol):
    """Read-only queries against the MSP indexing backend."""

    async def get_resource(self, identity: ResourceIdentity) -> BackendView | None:
        """Return the backend view, or None when not indexed (yet).

        Raises ``BackendTransportError`` on transport failures.
        """
        ...

    async def list_resources(self, owner: str | None = None) -> list[BackendView]: ...

    async def list_files(self, bucket: ResourceIdentity) -> list[BackendView]: ...

    async def download_file(self, identity: ResourceIdentity) -> FileContent | None:
        """Fetch a file's bytes, or None when the backend does not hold it."""
        ...

    async def health(self) -> dict[str, Any]: ...

    async def info(self) -> dict[str, Any]: ...


@runtime_checkable
class WalletSession(Protocol):
    """Read access to the connected wallet."""

    def current_address(self) -> str | None: ...

    async def connect(self) -> str: ...

    def disconnect(self) -> None: ...
