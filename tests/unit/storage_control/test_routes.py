"""HTTP route tests for the storage-control app.

Validates:
  - The session must connect a wallet before resources can be created.
  - Workflow routes answer with the full progress history.
  - Failure kinds map to stable status codes and a uniform error body.
  - Listing, inspection, progress, and cancellation endpoints.
  - Background runs answer 202 with an operation key that can be cancelled.
  - File content downloads.
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from storage_control.main import create_app
from storage_control.models import ResourceIdentity, ResourceKind
from storage_control.runtime import ChainRuntime
from storage_control.settings import StorageControlSettings


@pytest.fixture
def app():
    return create_app(
        StorageControlSettings(backend_poll_jitter=0, backend_poll_max_attempts=3),
        runtime=ChainRuntime(),
    )


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def connected(client):
    resp = client.post('/api/v1/session/connect')
    assert resp.status_code == 200
    return client


def _create_bucket(client, name='docs', **extra):
    return client.post('/api/v1/buckets', json={'name': name, **extra})


# ── App basics ───────────────────────────────────────────────────


class TestHealth:
    def test_health(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        body = resp.json()
        assert body['status'] == 'ok'
        assert body['environment'] == 'local'
        assert body['running_operations'] == []

    def test_request_id_echoed(self, client):
        resp = client.get('/health', headers={'X-Request-ID': 'req-123'})
        assert resp.headers['X-Request-ID'] == 'req-123'

    def test_request_id_generated(self, client):
        resp = client.get('/health')
        assert resp.headers['X-Request-ID']


class TestSession:
    def test_connect_reports_wallet_and_backend(self, client):
        body = client.post('/api/v1/session/connect').json()
        assert body['wallet_connected'] is True
        assert body['backend_connected'] is True
        assert body['address'].startswith('0x')

    def test_disconnect(self, connected):
        body = connected.delete('/api/v1/session').json()
        assert body['wallet_connected'] is False
        assert connected.get('/api/v1/session').json()['address'] is None

    def test_msp_health(self, client):
        assert client.get('/api/v1/msp/health').json()['status'] == 'healthy'

    def test_msp_health_unavailable(self, app, client):
        app.state.deps.backend.unavailable = True
        resp = client.get('/api/v1/msp/health')
        assert resp.status_code == 503
        assert resp.json()['error'] == 'backend_unavailable'


# ── Provisioning ─────────────────────────────────────────────────


class TestCreateBucket:
    def test_requires_wallet(self, client):
        resp = _create_bucket(client)
        assert resp.status_code == 401
        assert resp.json()['error'] == 'wallet_not_connected'

    def test_created_with_progress(self, connected):
        resp = _create_bucket(connected, private=True)

        assert resp.status_code == 201
        body = resp.json()
        assert body['success'] is True
        assert [p['phase'] for p in body['progress']] == [
            'submitting',
            'verifying-onchain',
            'awaiting-backend',
            'complete',
        ]
        assert body['resource']['name'] == 'docs'
        assert body['resource']['private'] is True
        assert body['identity'].startswith('bucket:0x')

    def test_listed_after_creation(self, connected):
        created = _create_bucket(connected).json()

        listed = connected.get('/api/v1/buckets').json()['buckets']

        assert [b['id'] for b in listed] == [created['resource']['id']]

    def test_submission_rejected(self, app, connected):
        app.state.deps.ledger.reject_submission = 'insufficient balance'

        resp = _create_bucket(connected)

        assert resp.status_code == 422
        body = resp.json()
        assert body['error'] == 'submission_rejected'
        assert body['detail'] == 'insufficient balance'
        assert body['phase'] == 'submitting'
        assert body['recoverable'] is False
        assert body['result']['progress'][-1]['phase'] == 'failed'

    def test_empty_name_rejected(self, connected):
        resp = _create_bucket(connected, name='  ')
        assert resp.status_code == 422
        assert resp.json()['error'] == 'submission_rejected'

    def test_missing_name_is_schema_error(self, connected):
        resp = connected.post('/api/v1/buckets', json={})
        assert resp.status_code == 422
        assert 'detail' in resp.json()

    def test_onchain_rejected(self, app, connected):
        app.state.deps.ledger.reject_onchain = 'reverted'
        resp = _create_bucket(connected)
        assert resp.status_code == 422
        assert resp.json()['error'] == 'onchain_rejected'

    def test_finality_timeout(self, app, connected):
        app.state.deps.ledger.finality_timeout = True
        resp = _create_bucket(connected)
        assert resp.status_code == 504
        assert resp.json()['recoverable'] is True

    def test_conflict(self, app, connected):
        service = app.state.deps.service
        service.guard.acquire(service.bucket_intent('docs').lease_key, owner='provision')

        resp = _create_bucket(connected)

        assert resp.status_code == 409
        body = resp.json()
        assert body['error'] == 'conflicting_operation'
        assert body['phase'] == 'idle'


class TestFiles:
    def test_create_and_list_file(self, connected):
        bucket_id = _create_bucket(connected).json()['resource']['id']

        resp = connected.post(
            f'/api/v1/buckets/{bucket_id}/files',
            json={
                'name': 'report.pdf',
                'location': '/tmp/report.pdf',
                'fingerprint': '0xfeed',
                'size': 2048,
            },
        )

        assert resp.status_code == 201
        assert resp.json()['resource']['root'] == '0xfeed'
        files = connected.get(f'/api/v1/buckets/{bucket_id}/files').json()
        assert files['bucket_id'] == bucket_id
        assert [f['name'] for f in files['files']] == ['report.pdf']

    def test_negative_size_is_schema_error(self, connected):
        resp = connected.post(
            '/api/v1/buckets/0xb1/files',
            json={'name': 'a', 'location': '/tmp/a', 'fingerprint': '0x1', 'size': -1},
        )
        assert resp.status_code == 422


class TestListing:
    def test_backend_unavailable(self, app, connected):
        app.state.deps.backend.unavailable = True
        resp = connected.get('/api/v1/buckets')
        assert resp.status_code == 503
        assert resp.json()['error'] == 'backend_unavailable'


# ── Inspection / teardown ────────────────────────────────────────


class TestResources:
    def test_inspect_created_bucket(self, connected):
        bucket_id = _create_bucket(connected).json()['resource']['id']

        body = connected.get(f'/api/v1/resources/bucket/{bucket_id}').json()

        assert body['consistent'] is True
        assert body['onchain']['id'] == bucket_id
        assert body['backend']['id'] == bucket_id

    def test_inspect_unknown_kind(self, client):
        resp = client.get('/api/v1/resources/volume/0x1')
        assert resp.status_code == 404
        assert resp.json()['error'] == 'unknown_resource_kind'

    def test_inspect_missing(self, client):
        resp = client.get('/api/v1/resources/bucket/0xmissing')
        assert resp.status_code == 404
        assert resp.json()['error'] == 'resource_not_found'

    def test_delete_bucket(self, connected):
        bucket_id = _create_bucket(connected).json()['resource']['id']

        resp = connected.delete(f'/api/v1/resources/bucket/{bucket_id}')

        assert resp.status_code == 200
        assert resp.json()['progress'][-1]['phase'] == 'complete'
        assert connected.get('/api/v1/buckets').json()['buckets'] == []

    def test_delete_rejected(self, app, connected):
        app.state.deps.ledger.reject_deletion = 'bucket not empty'
        resp = connected.delete('/api/v1/resources/bucket/0xb1')
        assert resp.status_code == 422
        assert resp.json()['detail'] == 'bucket not empty'


class TestOperations:
    def test_progress_after_completion(self, app, connected):
        _create_bucket(connected)
        key = app.state.deps.service.bucket_intent('docs').lease_key

        body = connected.get(f'/api/v1/operations/{key}/progress').json()

        assert body['operation'] == key
        assert body['progress']['phase'] == 'complete'

    def test_progress_unknown_is_idle(self, client):
        body = client.get('/api/v1/operations/intent:nothing/progress').json()
        assert body['progress']['phase'] == 'idle'

    def test_cancel_unknown(self, client):
        resp = client.post('/api/v1/operations/intent:nothing/cancel')
        assert resp.status_code == 404
        assert resp.json()['error'] == 'no_running_operation'


# ── Background runs ──────────────────────────────────────────────


@pytest.fixture
def live(app):
    # One event loop for the whole test; background runs outlive requests.
    with TestClient(app) as client:
        assert client.post('/api/v1/session/connect').status_code == 200
        yield client


def _wait_until_settled(client, key, attempts=200):
    for _ in range(attempts):
        body = client.get(f'/api/v1/operations/{key}/progress').json()
        if not body['running'] and body['progress']['phase'] != 'idle':
            return body
        time.sleep(0.01)
    pytest.fail(f'operation {key} did not settle')


class TestBackgroundRuns:
    def test_blocking_create_reports_operation_key(self, app, connected):
        resp = _create_bucket(connected)

        key = app.state.deps.service.bucket_intent('docs').lease_key
        assert resp.json()['operation_key'] == key
        assert resp.headers['X-Operation-Key'] == key

    def test_failure_reports_operation_key(self, app, connected):
        app.state.deps.ledger.reject_submission = 'insufficient balance'

        resp = _create_bucket(connected)

        assert resp.json()['operation_key'].startswith('intent:')

    def test_create_without_waiting(self, live):
        resp = live.post('/api/v1/buckets?wait=false', json={'name': 'docs'})

        assert resp.status_code == 202
        body = resp.json()
        key = body['operation_key']
        assert resp.headers['X-Operation-Key'] == key
        assert body['progress'] == f'/api/v1/operations/{key}/progress'
        assert body['cancel'] == f'/api/v1/operations/{key}/cancel'
        settled = _wait_until_settled(live, key)
        assert settled['progress']['phase'] == 'complete'
        assert len(live.get('/api/v1/buckets').json()['buckets']) == 1

    def test_cancel_running_creation(self, app, live):
        app.state.deps.ledger.finality_delay = 5.0

        key = live.post('/api/v1/buckets?wait=false', json={'name': 'docs'}).json()['operation_key']
        assert live.get(f'/api/v1/operations/{key}/progress').json()['running'] is True
        resp = live.post(f'/api/v1/operations/{key}/cancel')

        assert resp.status_code == 202
        settled = _wait_until_settled(live, key)
        assert settled['progress']['phase'] == 'failed'
        assert settled['progress']['failure_kind'] == 'cancelled'
        assert app.state.deps.service.guard.held_keys() == frozenset()
        assert live.get('/api/v1/buckets').json()['buckets'] == []

    def test_second_background_run_conflicts(self, app, live):
        app.state.deps.ledger.finality_delay = 5.0
        first = live.post('/api/v1/buckets?wait=false', json={'name': 'docs'})

        second = live.post('/api/v1/buckets?wait=false', json={'name': 'docs'})

        assert second.status_code == 409
        assert second.json()['error'] == 'conflicting_operation'
        assert second.json()['operation_key'] == first.json()['operation_key']
        live.post(f"/api/v1/operations/{first.json()['operation_key']}/cancel")

    def test_delete_without_waiting(self, live):
        bucket_id = _create_bucket(live).json()['resource']['id']

        resp = live.delete(f'/api/v1/resources/bucket/{bucket_id}?wait=false')

        assert resp.status_code == 202
        key = resp.json()['operation_key']
        assert key == f'bucket:{bucket_id}'
        assert _wait_until_settled(live, key)['progress']['phase'] == 'complete'


# ── Owner scoping / downloads ────────────────────────────────────


class TestListingScope:
    def test_listing_requires_wallet(self, client):
        resp = client.get('/api/v1/buckets')
        assert resp.status_code == 401
        assert resp.json()['error'] == 'wallet_not_connected'

    def test_listing_after_disconnect(self, connected):
        _create_bucket(connected)
        connected.delete('/api/v1/session')

        assert connected.get('/api/v1/buckets').status_code == 401


class TestDownload:
    def _create_file(self, client):
        bucket_id = _create_bucket(client).json()['resource']['id']
        resp = client.post(
            f'/api/v1/buckets/{bucket_id}/files',
            json={'name': 'report.txt', 'location': '/tmp/report.txt', 'fingerprint': '0xfeed'},
        )
        return resp.json()['resource']['id']

    def test_download_content(self, app, connected):
        file_id = self._create_file(connected)
        backend = app.state.deps.backend
        backend.store_content(
            ResourceIdentity(ResourceKind.FILE, file_id), b'quarterly numbers', content_type='text/plain',
        )

        resp = connected.get(f'/api/v1/files/{file_id}/content')

        assert resp.status_code == 200
        assert resp.content == b'quarterly numbers'
        assert resp.headers['content-type'].startswith('text/plain')
        assert resp.headers['content-disposition'] == 'attachment; filename="report.txt"'

    def test_download_missing(self, client):
        resp = client.get('/api/v1/files/0xmissing/content')
        assert resp.status_code == 404
        assert resp.json()['error'] == 'file_not_found'

    def test_download_backend_unavailable(self, app, connected):
        file_id = self._create_file(connected)
        app.state.deps.backend.unavailable = True

        resp = connected.get(f'/api/v1/files/{file_id}/content')

        assert resp.status_code == 503
        assert resp.json()['error'] == 'backend_unavailable'
