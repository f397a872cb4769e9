"""Storage control FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires middleware (request-ID, CORS), the resource and
session routers, and injects ledger/backend/wallet collaborators.

Usage:
    # Local development (in-memory ledger, backend, and wallet)
    from storage_control import create_app, StorageControlSettings
    app = create_app(StorageControlSettings())

    # Non-local (real ledger gateway and wallet injected, MSP client from settings)
    settings = StorageControlSettings.from_env()
    app = create_app(settings, ledger_gateway=gateway, wallet=wallet)

    # Testing (full DI control)
    app = create_app(settings, ledger_gateway=fake_ledger, backend_client=fake_backend)
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from .observability.logging import configure_logging, request_id_ctx
from .protocols import BackendIndexClient, LedgerGateway, WalletSession
from .runtime import ChainRuntime, get_runtime
from .service import StorageService
from .session import StorageSession
from .settings import StorageControlSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for injected collaborators and the services built on them.

    Stored on ``app.state.deps`` so route handlers and tests can reach them.
    """

    ledger: LedgerGateway
    backend: BackendIndexClient
    wallet: WalletSession
    runtime: ChainRuntime
    session: StorageSession
    service: StorageService


# ── Middleware ──────────────────────────────────────────────────────


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Generate or propagate X-Request-ID and expose it to log records."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


# ── Dependency wiring ───────────────────────────────────────────────


def _build_deps(
    settings: StorageControlSettings,
    *,
    ledger_gateway: LedgerGateway | None,
    backend_client: BackendIndexClient | None,
    wallet: WalletSession | None,
    runtime: ChainRuntime | None,
) -> AppDependencies:
    if settings.is_local:
        from .inmemory import (
            InMemoryBackendIndex,
            InMemoryLedgerGateway,
            InMemoryWalletSession,
        )

        backend = backend_client or InMemoryBackendIndex()
        ledger = ledger_gateway or InMemoryLedgerGateway(
            backend=backend if isinstance(backend, InMemoryBackendIndex) else None,
        )
        wallet = wallet or InMemoryWalletSession()
    else:
        missing = []
        if ledger_gateway is None:
            missing.append("ledger_gateway")
        if wallet is None:
            missing.append("wallet")
        if missing:
            raise ValueError(
                f"Non-local environment ({settings.environment}) requires "
                f"explicit collaborators. Missing: {', '.join(missing)}"
            )
        if backend_client is None:
            from .clients.msp_client import MspIndexClient

            backend_client = MspIndexClient(
                base_url=settings.msp_base_url,
                auth_token=settings.msp_auth_token,
                timeout_seconds=settings.msp_timeout_seconds,
            )
        backend = backend_client
        ledger = ledger_gateway  # type: ignore[assignment]

    runtime = runtime or get_runtime()
    session = StorageSession(wallet=wallet, backend=backend, runtime=runtime)  # type: ignore[arg-type]
    service = StorageService(
        ledger=ledger,
        backend=backend,
        session=session,
        settings=settings,
    )
    return AppDependencies(
        ledger=ledger,
        backend=backend,
        wallet=wallet,  # type: ignore[arg-type]
        runtime=runtime,
        session=session,
        service=service,
    )


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: StorageControlSettings | None = None,
    *,
    ledger_gateway: LedgerGateway | None = None,
    backend_client: BackendIndexClient | None = None,
    wallet: WalletSession | None = None,
    runtime: ChainRuntime | None = None,
) -> FastAPI:
    """Create a configured storage-control FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        ledger_gateway, backend_client, wallet, runtime: Collaborator
            overrides. Local mode fills gaps with in-memory fakes.
            Non-local mode requires a ledger gateway and a wallet, and
            builds an MSP client from settings when no backend is given.

    Raises:
        ValueError: If settings validation fails or non-local
            collaborators are missing.
    """
    if settings is None:
        settings = StorageControlSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Storage control settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    deps = _build_deps(
        settings,
        ledger_gateway=ledger_gateway,
        backend_client=backend_client,
        wallet=wallet,
        runtime=runtime,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(
            level=settings.log_level,
            json_output=settings.log_format == "json",
        )
        logger.info("Storage control startup (environment=%s)", settings.environment)
        yield
        await deps.service.aclose()
        logger.info("Storage control shutdown")

    app = FastAPI(
        title="Storage Control",
        description="Bucket and file provisioning against an on-chain ledger and MSP backend",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings

    # ── Middleware stack (applied in reverse order) ──────────────

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)

    # ── Routes ──────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
            "wallet_connected": deps.session.state.wallet_connected,
            "backend_connected": deps.session.state.backend_connected,
            "running_operations": deps.service.running_operations(),
        }

    from .routes import create_resources_router, create_session_router

    app.include_router(create_resources_router(deps.service))
    app.include_router(create_session_router(deps.session))

    return app


# For uvicorn, use --factory flag:
#   uvicorn storage_control.main:create_app --factory
