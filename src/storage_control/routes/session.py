"""Session routes: wallet/backend connection state and MSP health.

  GET    /api/v1/session          -> current session snapshot
  POST   /api/v1/session/connect  -> init runtime, connect wallet and backend
  DELETE /api/v1/session          -> disconnect
  GET    /api/v1/msp/health       -> backend health passthrough
"""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from storage_control.errors import BackendRequestError, BackendTransportError
from storage_control.runtime import RuntimeInitError
from storage_control.session import StorageSession

logger = logging.getLogger(__name__)


def create_session_router(session: StorageSession) -> APIRouter:
    router = APIRouter(prefix='/api/v1', tags=['session'])

    @router.get('/session')
    async def get_session():
        return session.state.to_dict()

    @router.post('/session/connect')
    async def connect():
        try:
            await session.connect_wallet()
        except RuntimeInitError as exc:
            return JSONResponse(
                status_code=503,
                content={'error': 'runtime_init_failed', 'detail': str(exc)},
            )
        try:
            await session.connect_backend()
        except (BackendTransportError, BackendRequestError) as exc:
            logger.warning('MSP connect failed: %s', exc)
            return JSONResponse(
                status_code=503,
                content={
                    'error': 'backend_unavailable',
                    'detail': str(exc),
                    'session': session.state.to_dict(),
                },
            )
        return session.state.to_dict()

    @router.delete('/session')
    async def disconnect():
        session.disconnect()
        return session.state.to_dict()

    @router.get('/msp/health')
    async def msp_health():
        try:
            return await session.backend_health()
        except (BackendTransportError, BackendRequestError) as exc:
            return JSONResponse(
                status_code=503,
                content={'error': 'backend_unavailable', 'detail': str(exc)},
            )

    return router
