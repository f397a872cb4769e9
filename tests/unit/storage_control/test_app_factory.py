"""create_app() wiring tests: settings validation and collaborator injection."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from storage_control.clients.msp_client import MspIndexClient
from storage_control.inmemory import (
    InMemoryBackendIndex,
    InMemoryLedgerGateway,
    InMemoryWalletSession,
)
from storage_control.main import create_app
from storage_control.runtime import ChainRuntime
from storage_control.settings import StorageControlSettings


class TestLocal:
    def test_defaults_to_inmemory_collaborators(self):
        app = create_app()
        deps = app.state.deps
        assert isinstance(deps.ledger, InMemoryLedgerGateway)
        assert isinstance(deps.backend, InMemoryBackendIndex)
        assert deps.ledger.backend is deps.backend
        assert isinstance(deps.wallet, InMemoryWalletSession)

    def test_injected_backend_is_used(self):
        backend = InMemoryBackendIndex(provider_id='0xcustom')
        app = create_app(backend_client=backend)
        assert app.state.deps.backend is backend
        assert app.state.deps.session.runtime is not None

    def test_lifespan_runs(self):
        app = create_app(runtime=ChainRuntime())
        with TestClient(app) as client:
            assert client.get('/health').status_code == 200

    def test_shutdown_stops_background_runs(self):
        app = create_app(runtime=ChainRuntime())
        deps = app.state.deps
        deps.ledger.finality_delay = 5.0
        with TestClient(app) as client:
            client.post('/api/v1/session/connect')
            resp = client.post('/api/v1/buckets?wait=false', json={'name': 'docs'})
            assert resp.status_code == 202
        assert deps.service.running_operations() == []
        assert deps.service.guard.held_keys() == frozenset()


class TestNonLocal:
    def test_invalid_settings_rejected(self):
        with pytest.raises(ValueError, match='validation failed'):
            create_app(StorageControlSettings(environment='production'))

    def test_requires_ledger_and_wallet(self):
        settings = StorageControlSettings(
            environment='staging', msp_base_url='https://msp.example.net',
        )
        with pytest.raises(ValueError, match='ledger_gateway, wallet'):
            create_app(settings)

    def test_builds_msp_client_from_settings(self):
        settings = StorageControlSettings(
            environment='production',
            msp_base_url='https://msp.example.net',
            msp_auth_token='token',
        )
        app = create_app(
            settings,
            ledger_gateway=InMemoryLedgerGateway(),
            wallet=InMemoryWalletSession(),
            runtime=ChainRuntime(),
        )
        assert isinstance(app.state.deps.backend, MspIndexClient)
        assert app.state.settings is settings
