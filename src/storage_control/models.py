"""Resource data model shared by workflows, clients, and routes.

``LedgerRecord`` is authoritative. ``BackendView`` is the MSP backend's
eventually-consistent copy and is only ever compared against a record,
never trusted on its own.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from .errors import SubmissionRejected


class ResourceKind(Enum):
    BUCKET = 'bucket'
    FILE = 'file'


@dataclass(frozen=True, slots=True)
class PayloadReference:
    """Where a file's content lives before upload, plus its fingerprint."""

    location: str
    fingerprint: str
    size: int = 0


@dataclass(frozen=True, slots=True)
class ResourceIdentity:
    """Canonical identifier assigned by the ledger (bucket id or file key)."""

    kind: ResourceKind
    value: str

    @property
    def lease_key(self) -> str:
        return f'{self.kind.value}:{self.value}'

    def __str__(self) -> str:
        return self.lease_key


@dataclass(frozen=True, slots=True)
class ResourceIntent:
    """Caller-supplied description of a resource to create."""

    kind: ResourceKind
    name: str
    owner: str = ''
    private: bool = False
    parent: ResourceIdentity | None = None
    payload: PayloadReference | None = None
    value_proposition_id: str | None = None

    def fingerprint(self) -> str:
        """Stable hash of what makes two intents target the same resource."""
        parent = self.parent.value if self.parent else ''
        material = '\x1f'.join(
            (self.kind.value, self.owner, parent, self.name.strip())
        )
        return hashlib.sha256(material.encode('utf-8')).hexdigest()

    @property
    def lease_key(self) -> str:
        return f'intent:{self.fingerprint()}'

    def validate(self) -> None:
        """Raise ``SubmissionRejected`` if the intent cannot be submitted."""
        if not self.name or not self.name.strip():
            raise SubmissionRejected('resource name must not be empty')
        if self.kind is ResourceKind.FILE:
            if self.parent is None or not self.parent.value:
                raise SubmissionRejected('file intent requires a parent bucket')
            if self.parent.kind is not ResourceKind.BUCKET:
                raise SubmissionRejected(
                    f'file parent must be a bucket, got {self.parent.kind.value}'
                )
            if self.payload is None:
                raise SubmissionRejected('file intent requires a payload reference')
        elif self.parent is not None:
            raise SubmissionRejected('bucket intent must not have a parent')


@dataclass(frozen=True, slots=True)
class LedgerRecord:
    """Finalized on-chain state of a resource."""

    identity: ResourceIdentity
    root: str
    owner: str = ''
    provider_id: str = ''
    private: bool = False
    name: str = ''
    value_proposition_id: str | None = None
    parent: ResourceIdentity | None = None
    size: int = 0


@dataclass(frozen=True, slots=True)
class BackendView:
    """Snapshot of the backend's copy of a resource."""

    identity: ResourceIdentity
    root: str
    name: str = ''
    private: bool = False
    parent: ResourceIdentity | None = None
    size: int = 0
    file_count: int | None = None
    raw: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}), compare=False,
    )


@dataclass(frozen=True, slots=True)
class FileContent:
    """Downloaded bytes of a stored file."""

    identity: ResourceIdentity
    content: bytes
    content_type: str = 'application/octet-stream'
    filename: str = ''

    @property
    def size(self) -> int:
        return len(self.content)


def views_consistent(record: LedgerRecord, view: BackendView) -> bool:
    """True when the backend view reflects the finalized ledger record.

    A view that exists but reports a different root is stale, not ready.
    """
    return view.identity == record.identity and view.root == record.root


@dataclass(frozen=True, slots=True)
class ResourceDescriptor:
    """A ledger record merged with a backend view confirmed consistent with it."""

    record: LedgerRecord
    view: BackendView

    @property
    def identity(self) -> ResourceIdentity:
        return self.record.identity

    @property
    def root(self) -> str:
        return self.record.root

    def to_dict(self) -> dict[str, Any]:
        record = self.record
        return {
            'kind': record.identity.kind.value,
            'id': record.identity.value,
            'name': record.name or self.view.name,
            'owner': record.owner,
            'provider_id': record.provider_id,
            'root': record.root,
            'private': record.private,
            'value_proposition_id': record.value_proposition_id,
            'parent': record.parent.value if record.parent else None,
            'size': record.size or self.view.size,
            'file_count': self.view.file_count,
        }


def view_to_dict(view: BackendView) -> dict[str, Any]:
    return {
        'kind': view.identity.kind.value,
        'id': view.identity.value,
        'name': view.name,
        'root': view.root,
        'private': view.private,
        'parent': view.parent.value if view.parent else None,
        'size': view.size,
        'file_count': view.file_count,
    }


def record_to_dict(record: LedgerRecord) -> dict[str, Any]:
    return {
        'kind': record.identity.kind.value,
        'id': record.identity.value,
        'name': record.name,
        'owner': record.owner,
        'provider_id': record.provider_id,
        'root': record.root,
        'private': record.private,
        'value_proposition_id': record.value_proposition_id,
        'parent': record.parent.value if record.parent else None,
        'size': record.size,
    }
