"""Unit tests for MspIndexClient.

Tests the MSP REST client with a mocked httpx transport: request shape,
payload mapping, and how HTTP outcomes are classified for the retry
scheduler (404 -> not found, 429/5xx/transport -> retryable, other 4xx ->
terminal).
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from storage_control.clients.msp_client import (
    MspIndexClient,
    bucket_view_from_payload,
    file_view_from_payload,
)
from storage_control.errors import BackendRequestError, BackendTransportError, RetryableError
from storage_control.models import ResourceIdentity, ResourceKind

B1 = ResourceIdentity(ResourceKind.BUCKET, '0xb1')
F1 = ResourceIdentity(ResourceKind.FILE, '0xf1')


def _make_client(response: httpx.Response | None = None, **kwargs):
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(return_value=response or httpx.Response(200, json={}))
    client = MspIndexClient(
        base_url='https://msp.example.net/',
        auth_token='msp-token',
        http_client=mock_http,
        **kwargs,
    )
    return client, mock_http


# ── Request shape ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_get_bucket_sends_authenticated_request():
    client, mock_http = _make_client(
        httpx.Response(
            200,
            json={'bucketId': '0xb1', 'name': 'docs', 'root': '0xaa', 'isPublic': True},
        ),
        timeout_seconds=3.0,
    )

    view = await client.get_resource(B1)

    call = mock_http.request.call_args
    assert call.args[0] == 'GET'
    assert call.args[1] == 'https://msp.example.net/buckets/0xb1'
    assert call.kwargs['headers']['Authorization'] == 'Bearer msp-token'
    assert call.kwargs['timeout'] == 3.0
    assert view.identity == B1
    assert view.root == '0xaa'
    assert view.private is False


@pytest.mark.asyncio
async def test_get_file_uses_file_endpoint():
    client, mock_http = _make_client(
        httpx.Response(
            200,
            json={'fileKey': '0xf1', 'fingerprint': '0xfeed', 'bucketId': '0xb1', 'size': 12},
        )
    )

    view = await client.get_resource(F1)

    assert mock_http.request.call_args.args[1].endswith('/files/0xf1')
    assert view.root == '0xfeed'
    assert view.parent == B1
    assert view.size == 12


@pytest.mark.asyncio
async def test_no_auth_header_without_token():
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(return_value=httpx.Response(200, json={'status': 'healthy'}))
    client = MspIndexClient(base_url='https://msp.example.net', http_client=mock_http)

    await client.health()

    assert 'Authorization' not in mock_http.request.call_args.kwargs['headers']


@pytest.mark.asyncio
async def test_list_buckets_filters_by_owner():
    client, mock_http = _make_client(
        httpx.Response(200, json=[{'bucketId': '0xb1', 'root': '0xaa', 'fileCount': 2}])
    )

    views = await client.list_resources('0xowner')

    assert mock_http.request.call_args.kwargs['params'] == {'owner': '0xowner'}
    assert [v.identity for v in views] == [B1]
    assert views[0].file_count == 2


@pytest.mark.asyncio
async def test_list_files_accepts_wrapped_payload():
    client, _ = _make_client(
        httpx.Response(200, json={'files': [{'fileKey': '0xf1', 'fingerprint': '0x01'}]})
    )

    views = await client.list_files(B1)

    assert [v.identity for v in views] == [F1]
    assert views[0].parent == B1


# ── Status classification ────────────────────────────────────────


@pytest.mark.asyncio
async def test_404_is_not_found_yet():
    client, _ = _make_client(httpx.Response(404, json={'error': 'not found'}))
    assert await client.get_resource(B1) is None


@pytest.mark.asyncio
@pytest.mark.parametrize('status', [429, 500, 502, 503, 504])
async def test_transient_statuses_are_retryable(status):
    client, _ = _make_client(httpx.Response(status, text='busy'))

    with pytest.raises(BackendTransportError) as exc_info:
        await client.get_resource(B1)

    assert exc_info.value.status_code == status
    assert isinstance(exc_info.value, RetryableError)


@pytest.mark.asyncio
async def test_client_error_is_terminal():
    client, _ = _make_client(httpx.Response(400, json={'error': 'invalid bucket id'}))

    with pytest.raises(BackendRequestError) as exc_info:
        await client.get_resource(B1)

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == 'invalid bucket id'
    assert not isinstance(exc_info.value, RetryableError)


@pytest.mark.asyncio
async def test_timeout_is_retryable():
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(side_effect=httpx.ReadTimeout('slow'))
    client = MspIndexClient(base_url='https://msp.example.net', http_client=mock_http)

    with pytest.raises(BackendTransportError, match='timeout'):
        await client.get_resource(B1)


@pytest.mark.asyncio
async def test_connection_error_is_retryable():
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(side_effect=httpx.ConnectError('refused'))
    client = MspIndexClient(base_url='https://msp.example.net', http_client=mock_http)

    with pytest.raises(BackendTransportError, match='transport error'):
        await client.info()


@pytest.mark.asyncio
async def test_invalid_json_is_terminal():
    client, _ = _make_client(httpx.Response(200, text='<html>oops</html>'))

    with pytest.raises(BackendRequestError, match='invalid JSON'):
        await client.info()


@pytest.mark.asyncio
async def test_list_rejects_non_list_payload():
    client, _ = _make_client(httpx.Response(200, json={'unexpected': True}))

    with pytest.raises(BackendRequestError):
        await client.list_resources()


# ── Downloads ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_download_file_returns_content():
    client, mock_http = _make_client(
        httpx.Response(
            200,
            content=b'%PDF-1.7',
            headers={
                'content-type': 'application/pdf',
                'content-disposition': 'attachment; filename="report.pdf"',
            },
        )
    )

    downloaded = await client.download_file(F1)

    call = mock_http.request.call_args
    assert call.args[1] == 'https://msp.example.net/files/0xf1/download'
    assert call.kwargs['headers']['Accept'] == 'application/octet-stream'
    assert call.kwargs['headers']['Authorization'] == 'Bearer msp-token'
    assert downloaded.identity == F1
    assert downloaded.content == b'%PDF-1.7'
    assert downloaded.content_type == 'application/pdf'
    assert downloaded.filename == 'report.pdf'
    assert downloaded.size == 8


@pytest.mark.asyncio
async def test_download_without_disposition_has_no_filename():
    client, _ = _make_client(httpx.Response(200, content=b'raw'))

    downloaded = await client.download_file(F1)

    assert downloaded.filename == ''
    assert downloaded.content == b'raw'


@pytest.mark.asyncio
async def test_download_missing_file():
    client, _ = _make_client(httpx.Response(404, json={'error': 'not found'}))
    assert await client.download_file(F1) is None


@pytest.mark.asyncio
async def test_download_unavailable_is_retryable():
    client, _ = _make_client(httpx.Response(503, text='busy'))

    with pytest.raises(BackendTransportError):
        await client.download_file(F1)


@pytest.mark.asyncio
async def test_download_rejects_bucket():
    client, mock_http = _make_client()

    with pytest.raises(ValueError):
        await client.download_file(B1)

    mock_http.request.assert_not_called()


# ── Payload mapping ──────────────────────────────────────────────


def test_bucket_payload_requires_id():
    with pytest.raises(BackendRequestError):
        bucket_view_from_payload({'name': 'docs'})


def test_private_bucket_mapping():
    view = bucket_view_from_payload({'bucketId': '0xb1', 'isPublic': False, 'sizeBytes': '42'})
    assert view.private is True
    assert view.size == 42
    assert view.raw['bucketId'] == '0xb1'


def test_file_payload_falls_back_to_name():
    view = file_view_from_payload({'fileKey': '0xf1', 'name': 'a.txt'})
    assert view.name == 'a.txt'
    assert view.parent is None


def test_base_url_required():
    with pytest.raises(ValueError):
        MspIndexClient(base_url='')
