"""Chain runtime init-once tests."""

from __future__ import annotations

import asyncio

import pytest

from storage_control.runtime import ChainRuntime, RuntimeInitError, get_runtime


class TestEnsureInitialized:
    @pytest.mark.asyncio
    async def test_bootstrap_runs_once(self):
        calls = []

        async def bootstrap():
            calls.append(1)

        runtime = ChainRuntime(bootstrap)
        await runtime.ensure_initialized()
        await runtime.ensure_initialized()

        assert runtime.initialized is True
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_bootstrap(self):
        calls = []

        async def bootstrap():
            calls.append(1)
            await asyncio.sleep(0.01)

        runtime = ChainRuntime(bootstrap)
        await asyncio.gather(*(runtime.ensure_initialized() for _ in range(5)))

        assert calls == [1]
        assert runtime.init_count == 1

    @pytest.mark.asyncio
    async def test_failed_bootstrap_can_be_retried(self):
        attempts = []

        async def bootstrap():
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError('wasm module missing')

        runtime = ChainRuntime(bootstrap)
        with pytest.raises(RuntimeInitError, match='wasm module missing'):
            await runtime.ensure_initialized()
        assert runtime.initialized is False

        await runtime.ensure_initialized()
        assert runtime.initialized is True
        assert len(attempts) == 2


class TestSharedRuntime:
    def test_get_runtime_is_process_wide(self):
        assert get_runtime() is get_runtime()
