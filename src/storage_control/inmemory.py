"""In-memory collaborator implementations for local development and tests.

These are used when ENVIRONMENT=local. They satisfy the protocol interfaces
but keep all state in dicts (no persistence across restarts). The ledger
fake can publish finalized records to the backend fake so the whole flow
works end to end; tests script responses directly.
"""

from __future__ import annotations

import asyncio
import hashlib
from typing import Any

from .errors import (
    BackendTransportError,
    FinalityTimeout,
    OnChainRejected,
    SubmissionRejected,
)
from .models import (
    BackendView,
    FileContent,
    LedgerRecord,
    ResourceIdentity,
    ResourceIntent,
    ResourceKind,
)

_EMPTY_ROOT = '0x' + '0' * 64


def _hex_id(*parts: str) -> str:
    digest = hashlib.sha256('\x1f'.join(parts).encode('utf-8')).hexdigest()
    return f'0x{digest}'


def derive_identity(intent: ResourceIntent) -> ResourceIdentity:
    """Deterministic identity, mirroring how the chain derives ids."""
    if intent.kind is ResourceKind.BUCKET:
        return ResourceIdentity(ResourceKind.BUCKET, _hex_id(intent.owner, intent.name))
    parent = intent.parent.value if intent.parent else ''
    fingerprint = intent.payload.fingerprint if intent.payload else ''
    return ResourceIdentity(
        ResourceKind.FILE, _hex_id(intent.owner, parent, intent.name, fingerprint),
    )


class InMemoryBackendIndex:
    """Backend index fake with per-identity scripted responses.

    ``script(identity, [...])`` queues responses for ``get_resource``:
    ``None`` (not found yet), a ``BackendView``, or an exception instance to
    raise. Once the script is drained, published state is returned.
    """

    def __init__(self, *, provider_id: str = '0xmsp-local') -> None:
        self.provider_id = provider_id
        self._views: dict[ResourceIdentity, BackendView] = {}
        self._owners: dict[ResourceIdentity, str] = {}
        self._scripts: dict[ResourceIdentity, list[Any]] = {}
        self._hidden_for: dict[ResourceIdentity, int] = {}
        self._contents: dict[ResourceIdentity, FileContent] = {}
        self.unavailable = False
        self.calls: list[tuple[str, str]] = []

    # ── Test / fake-ledger controls ──────────────────────────────────

    def script(self, identity: ResourceIdentity, responses: list[Any]) -> None:
        self._scripts.setdefault(identity, []).extend(responses)

    def publish(self, view: BackendView, *, owner: str = '', visible_after: int = 0) -> None:
        """Index ``view``; it stays hidden for ``visible_after`` lookups."""
        self._views[view.identity] = view
        self._owners[view.identity] = owner
        if visible_after:
            self._hidden_for[view.identity] = visible_after

    def store_content(
        self,
        identity: ResourceIdentity,
        content: bytes,
        *,
        content_type: str = 'application/octet-stream',
    ) -> None:
        """Make ``content`` downloadable for a file."""
        view = self._views.get(identity)
        self._contents[identity] = FileContent(
            identity=identity,
            content=content,
            content_type=content_type,
            filename=view.name if view else '',
        )

    def remove(self, identity: ResourceIdentity) -> None:
        self._views.pop(identity, None)
        self._contents.pop(identity, None)
        self._owners.pop(identity, None)
        self._hidden_for.pop(identity, None)

    def get_call_count(self, identity: ResourceIdentity) -> int:
        return sum(
            1 for name, value in self.calls
            if name == 'get_resource' and value == identity.value
        )

    # ── BackendIndexClient ───────────────────────────────────────────

    async def get_resource(self, identity: ResourceIdentity) -> BackendView | None:
        self.calls.append(('get_resource', identity.value))
        script = self._scripts.get(identity)
        if script:
            response = script.pop(0)
            if isinstance(response, BaseException):
                raise response
            return response
        if self.unavailable:
            raise BackendTransportError('backend unavailable', status_code=503)
        hidden = self._hidden_for.get(identity, 0)
        if hidden:
            self._hidden_for[identity] = hidden - 1
            return None
        return self._views.get(identity)

    async def list_resources(self, owner: str | None = None) -> list[BackendView]:
        self.calls.append(('list_resources', owner or ''))
        if self.unavailable:
            raise BackendTransportError('backend unavailable', status_code=503)
        return [
            view for identity, view in self._views.items()
            if identity.kind is ResourceKind.BUCKET
            and (owner is None or self._owners.get(identity, '') == owner)
            and not self._hidden_for.get(identity)
        ]

    async def list_files(self, bucket: ResourceIdentity) -> list[BackendView]:
        self.calls.append(('list_files', bucket.value))
        if self.unavailable:
            raise BackendTransportError('backend unavailable', status_code=503)
        return [
            view for view in self._views.values()
            if view.identity.kind is ResourceKind.FILE and view.parent == bucket
        ]

    async def download_file(self, identity: ResourceIdentity) -> FileContent | None:
        self.calls.append(('download_file', identity.value))
        if self.unavailable:
            raise BackendTransportError('backend unavailable', status_code=503)
        view = self._views.get(identity)
        if view is None or self._hidden_for.get(identity):
            return None
        stored = self._contents.get(identity)
        if stored is not None:
            return stored
        return FileContent(identity=identity, content=b'', filename=view.name)

    async def health(self) -> dict[str, Any]:
        if self.unavailable:
            raise BackendTransportError('backend unavailable', status_code=503)
        return {'status': 'healthy', 'components': {'indexer': 'healthy'}}

    async def info(self) -> dict[str, Any]:
        return {'mspId': self.provider_id, 'version': 'in-memory'}


class InMemoryLedgerGateway:
    """Ledger fake that tracks calls and finalizes instantly by default.

    Knobs:
      - ``reject_submission``: message for ``SubmissionRejected``.
      - ``reject_onchain``: message for ``OnChainRejected`` at finality.
      - ``finality_timeout``: raise ``FinalityTimeout`` at finality.
      - ``finality_delay``: real seconds to block in finality waits.
      - ``roots``: identity value -> root override for finalized records.
      - ``next_identities``: identities handed out by ``submit`` in order.
      - ``backend`` + ``index_lag``: publish finalized state to a backend
        fake, hidden for ``index_lag`` lookups.
    """

    def __init__(
        self,
        *,
        backend: InMemoryBackendIndex | None = None,
        index_lag: int = 0,
        provider_id: str = '0xmsp-local',
    ) -> None:
        self.backend = backend
        self.index_lag = index_lag
        self.provider_id = provider_id
        self.reject_submission: str | None = None
        self.reject_deletion: str | None = None
        self.reject_onchain: str | None = None
        self.finality_timeout = False
        self.finality_delay = 0.0
        self.roots: dict[str, str] = {}
        self.next_identities: list[ResourceIdentity] = []
        self.records: dict[ResourceIdentity, LedgerRecord] = {}
        self._pending: dict[ResourceIdentity, ResourceIntent] = {}
        self.calls: list[tuple[str, str]] = []

    async def submit(self, intent: ResourceIntent) -> ResourceIdentity:
        self.calls.append(('submit', intent.name))
        if self.reject_submission:
            raise SubmissionRejected(self.reject_submission)
        if self.next_identities:
            identity = self.next_identities.pop(0)
        else:
            identity = derive_identity(intent)
        self._pending[identity] = intent
        return identity

    async def await_finality(
        self, identity: ResourceIdentity, timeout: float,
    ) -> LedgerRecord:
        self.calls.append(('await_finality', identity.value))
        await self._finality_wait(timeout)
        if self.reject_onchain:
            raise OnChainRejected(self.reject_onchain)
        intent = self._pending.pop(identity, None)
        record = self._build_record(identity, intent)
        self.records[identity] = record
        if self.backend is not None:
            self.backend.publish(
                _view_from_record(record),
                owner=record.owner,
                visible_after=self.index_lag,
            )
        return record

    async def submit_deletion(self, identity: ResourceIdentity) -> None:
        self.calls.append(('submit_deletion', identity.value))
        if self.reject_deletion:
            raise SubmissionRejected(self.reject_deletion)

    async def await_deletion(self, identity: ResourceIdentity, timeout: float) -> None:
        self.calls.append(('await_deletion', identity.value))
        await self._finality_wait(timeout)
        if self.reject_onchain:
            raise OnChainRejected(self.reject_onchain)
        self.records.pop(identity, None)
        if self.backend is not None:
            self.backend.remove(identity)

    async def get_record(self, identity: ResourceIdentity) -> LedgerRecord | None:
        self.calls.append(('get_record', identity.value))
        return self.records.get(identity)

    async def _finality_wait(self, timeout: float) -> None:
        if self.finality_timeout:
            raise FinalityTimeout(f'finality not reached within {timeout:.0f}s')
        if self.finality_delay:
            await asyncio.sleep(self.finality_delay)

    def _build_record(
        self, identity: ResourceIdentity, intent: ResourceIntent | None,
    ) -> LedgerRecord:
        if intent is None:
            return LedgerRecord(
                identity=identity,
                root=self.roots.get(identity.value, _EMPTY_ROOT),
                provider_id=self.provider_id,
            )
        if identity.kind is ResourceKind.FILE and intent.payload is not None:
            default_root = intent.payload.fingerprint
        else:
            default_root = _EMPTY_ROOT
        return LedgerRecord(
            identity=identity,
            root=self.roots.get(identity.value, default_root),
            owner=intent.owner,
            provider_id=self.provider_id,
            private=intent.private,
            name=intent.name,
            value_proposition_id=intent.value_proposition_id,
            parent=intent.parent,
            size=intent.payload.size if intent.payload else 0,
        )


class InMemoryWalletSession:
    def __init__(self, address: str | None = None) -> None:
        self._default_address = address or '0x' + 'ab' * 20
        self._address: str | None = address

    def current_address(self) -> str | None:
        return self._address

    async def connect(self) -> str:
        self._address = self._default_address
        return self._address

    def disconnect(self) -> None:
        self._address = None


def _view_from_record(record: LedgerRecord) -> BackendView:
    return BackendView(
        identity=record.identity,
        root=record.root,
        name=record.name,
        private=record.private,
        parent=record.parent,
        size=record.size,
        file_count=0 if record.identity.kind is ResourceKind.BUCKET else None,
    )
