"""Async HTTP client for the MSP indexing backend.

Implements ``BackendIndexClient`` over the backend's REST API:
  GET /buckets                      -> buckets of the authenticated owner
  GET /buckets/{bucket_id}          -> one bucket
  GET /buckets/{bucket_id}/files    -> files of a bucket
  GET /files/{file_key}             -> one file
  GET /files/{file_key}/download    -> file content (raw bytes)
  GET /health, GET /info

Each call is a single request; retrying is the workflow's retry
scheduler's job. Status mapping:
  404                       -> None (not indexed yet)
  timeout / connect errors  -> BackendTransportError
  429, 5xx                  -> BackendTransportError
  other >= 400              -> BackendRequestError
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import BackendRequestError, BackendTransportError
from ..models import BackendView, FileContent, ResourceIdentity, ResourceKind

logger = logging.getLogger(__name__)

# Status codes treated as transient.
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    global _shared_async_client
    _shared_async_client = None


# ── Payload mapping ──────────────────────────────────────────────


def bucket_view_from_payload(payload: dict[str, Any]) -> BackendView:
    bucket_id = payload.get('bucketId') or payload.get('id')
    if not bucket_id:
        raise BackendRequestError(0, 'bucket payload missing bucketId')
    return BackendView(
        identity=ResourceIdentity(ResourceKind.BUCKET, str(bucket_id)),
        root=str(payload.get('root', '')),
        name=str(payload.get('name', '')),
        private=not payload.get('isPublic', True),
        size=int(payload.get('sizeBytes', 0) or 0),
        file_count=(
            int(payload['fileCount']) if payload.get('fileCount') is not None else None
        ),
        raw=payload,
    )


def file_view_from_payload(payload: dict[str, Any]) -> BackendView:
    file_key = payload.get('fileKey') or payload.get('id')
    if not file_key:
        raise BackendRequestError(0, 'file payload missing fileKey')
    bucket_id = payload.get('bucketId')
    return BackendView(
        identity=ResourceIdentity(ResourceKind.FILE, str(file_key)),
        root=str(payload.get('fingerprint', '')),
        name=str(payload.get('location') or payload.get('name') or ''),
        private=not payload.get('isPublic', True),
        parent=(
            ResourceIdentity(ResourceKind.BUCKET, str(bucket_id)) if bucket_id else None
        ),
        size=int(payload.get('size', 0) or 0),
        raw=payload,
    )


# ── Client ───────────────────────────────────────────────────────


class MspIndexClient:
    """``BackendIndexClient`` backed by the MSP REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        auth_token: str = '',
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        if not base_url:
            raise ValueError('base_url is required')
        self._base_url = base_url.rstrip('/')
        self._auth_token = auth_token
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)

    def _headers(self, accept: str) -> dict[str, str]:
        headers = {'Accept': accept}
        if self._auth_token:
            headers['Authorization'] = f'Bearer {self._auth_token}'
        return headers

    async def _send(
        self,
        path: str,
        *,
        params: dict[str, str] | None = None,
        accept: str = 'application/json',
    ) -> httpx.Response | None:
        """GET ``path``; return the response, or None on 404."""
        url = f'{self._base_url}{path}'
        try:
            resp = await self._client.request(
                'GET',
                url,
                headers=self._headers(accept),
                params=params,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise BackendTransportError(f'timeout calling {path}: {exc}') from exc
        except httpx.TransportError as exc:
            raise BackendTransportError(f'transport error calling {path}: {exc}') from exc

        if resp.status_code == 404:
            return None
        if resp.status_code in _RETRYABLE_STATUS_CODES:
            logger.warning('MSP GET %s returned %d', path, resp.status_code)
            raise BackendTransportError(
                f'{path} returned {resp.status_code}', status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            raise BackendRequestError(resp.status_code, _error_message(resp))
        return resp

    async def _get(self, path: str, *, params: dict[str, str] | None = None) -> Any | None:
        """GET ``path``; return decoded JSON, or None on 404."""
        resp = await self._send(path, params=params)
        if resp is None:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendRequestError(resp.status_code, f'invalid JSON from {path}') from exc

    # ── BackendIndexClient ───────────────────────────────────────────

    async def get_resource(self, identity: ResourceIdentity) -> BackendView | None:
        if identity.kind is ResourceKind.BUCKET:
            payload = await self._get(f'/buckets/{identity.value}')
            return bucket_view_from_payload(payload) if payload is not None else None
        payload = await self._get(f'/files/{identity.value}')
        return file_view_from_payload(payload) if payload is not None else None

    async def list_resources(self, owner: str | None = None) -> list[BackendView]:
        params = {'owner': owner} if owner else None
        payload = await self._get('/buckets', params=params)
        return [bucket_view_from_payload(item) for item in _expect_list(payload, '/buckets')]

    async def list_files(self, bucket: ResourceIdentity) -> list[BackendView]:
        path = f'/buckets/{bucket.value}/files'
        payload = await self._get(path)
        if isinstance(payload, dict):
            payload = payload.get('files', [])
        views = []
        for item in _expect_list(payload, path):
            item.setdefault('bucketId', bucket.value)
            views.append(file_view_from_payload(item))
        return views

    async def download_file(self, identity: ResourceIdentity) -> FileContent | None:
        if identity.kind is not ResourceKind.FILE:
            raise ValueError(f'only files can be downloaded, got {identity}')
        resp = await self._send(
            f'/files/{identity.value}/download', accept='application/octet-stream',
        )
        if resp is None:
            return None
        return FileContent(
            identity=identity,
            content=resp.content,
            content_type=resp.headers.get('content-type', 'application/octet-stream'),
            filename=_disposition_filename(resp.headers.get('content-disposition', '')),
        )

    async def health(self) -> dict[str, Any]:
        payload = await self._get('/health')
        return payload if isinstance(payload, dict) else {'status': 'unknown'}

    async def info(self) -> dict[str, Any]:
        payload = await self._get('/info')
        return payload if isinstance(payload, dict) else {}


def _expect_list(payload: Any, path: str) -> list[dict[str, Any]]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise BackendRequestError(
            0, f'expected list from {path}, got {type(payload).__name__}',
        )
    return [item for item in payload if isinstance(item, dict)]


def _error_message(resp: httpx.Response) -> str:
    body = resp.text
    message = body[:200] if body else f'HTTP {resp.status_code}'
    try:
        payload = resp.json()
    except ValueError:
        return message
    if isinstance(payload, dict):
        return str(payload.get('error', payload.get('message', message)))
    return message


def _disposition_filename(header: str) -> str:
    """Extract ``filename`` from a Content-Disposition header, if present."""
    for part in header.split(';'):
        name, _, value = part.strip().partition('=')
        if name.lower() == 'filename' and value:
            return value.strip().strip('"')
    return ''
