"""Storage control configuration settings.

StorageControlSettings is the single configuration object accepted by
create_app() and StorageService. It is a plain dataclass (not env-coupled)
so tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from .models import ResourceKind
from .workflow.retry import RetryPolicy
from .workflow.teardown import DEFAULT_TEARDOWN_READINESS, TeardownReadiness

_ENVIRONMENTS = ('local', 'staging', 'production')
_LOG_FORMATS = ('json', 'console')

_DEFAULT_CORS_ORIGINS = (
    'http://localhost:5173',
    'http://localhost:3000',
)


@dataclass(frozen=True, slots=True)
class StorageControlSettings:
    """Configuration for the storage control service and HTTP app.

    All fields have sensible defaults for local development. Non-local
    environments must point at a real MSP backend.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = 'local'
    """One of: local, staging, production."""

    # ── MSP backend ────────────────────────────────────────────────
    msp_base_url: str = ''
    """MSP backend base URL (e.g. https://msp.example.net)."""

    msp_auth_token: str = ''
    """Bearer token for authenticated MSP queries. Never log this."""

    msp_timeout_seconds: float = 10.0
    """Per-request HTTP timeout for MSP calls."""

    # ── Phase budgets ──────────────────────────────────────────────
    finality_timeout_seconds: float = 120.0
    """Budget for one on-chain finality wait."""

    workflow_timeout_seconds: float | None = None
    """Optional cap over the whole workflow; None disables it."""

    # ── Backend polling ────────────────────────────────────────────
    backend_poll_base_delay: float = 1.0
    backend_poll_multiplier: float = 1.5
    backend_poll_max_delay: float = 10.0
    backend_poll_jitter: float = 0.1
    backend_poll_deadline: float | None = 60.0
    backend_poll_max_attempts: int | None = None

    # ── Teardown ───────────────────────────────────────────────────
    teardown_readiness: Mapping[ResourceKind, TeardownReadiness] = field(
        default_factory=lambda: DEFAULT_TEARDOWN_READINESS,
    )
    """Per-kind readiness: wait for backend removal or on-chain only."""

    # ── Caller-side progress / listing ─────────────────────────────
    progress_reset_seconds: float | None = 5.0
    """How long terminal progress stays visible before reading as idle."""

    progress_max_entries: int = 1024
    """Upper bound on operations the progress board retains."""

    listing_max_age_seconds: float | None = None
    """Optional expiry for cached listings; None keeps them until invalidated."""

    # ── Logging ────────────────────────────────────────────────────
    log_level: str = 'INFO'
    log_format: str = 'json'
    """'json' for JSON lines, 'console' for human-readable output."""

    # ── CORS ───────────────────────────────────────────────────────
    cors_origins: tuple[str, ...] = _DEFAULT_CORS_ORIGINS

    @property
    def is_local(self) -> bool:
        return self.environment == 'local'

    def backend_poll_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.backend_poll_max_attempts,
            base_delay=self.backend_poll_base_delay,
            multiplier=self.backend_poll_multiplier,
            max_delay=self.backend_poll_max_delay,
            jitter=self.backend_poll_jitter,
            deadline=self.backend_poll_deadline,
        )

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.environment not in _ENVIRONMENTS:
            errors.append(
                f'environment must be one of {", ".join(_ENVIRONMENTS)}, '
                f'got {self.environment!r}'
            )
        if not self.is_local and not self.msp_base_url:
            errors.append(f'{self.environment}: msp_base_url is required')
        if self.finality_timeout_seconds <= 0:
            errors.append('finality_timeout_seconds must be > 0')
        if self.workflow_timeout_seconds is not None and self.workflow_timeout_seconds <= 0:
            errors.append('workflow_timeout_seconds must be > 0')
        if self.progress_max_entries < 1:
            errors.append('progress_max_entries must be >= 1')
        if self.log_format not in _LOG_FORMATS:
            errors.append(
                f'log_format must be one of {", ".join(_LOG_FORMATS)}, '
                f'got {self.log_format!r}'
            )
        if self.backend_poll_deadline is None and self.backend_poll_max_attempts is None:
            errors.append('backend polling needs a deadline or max attempts')
        try:
            self.backend_poll_policy()
        except ValueError as exc:
            errors.append(f'backend poll policy: {exc}')
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> StorageControlSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct StorageControlSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        cors_raw = env.get('CORS_ORIGINS', '')
        cors = (
            tuple(o.strip() for o in cors_raw.split(',') if o.strip())
            if cors_raw
            else _DEFAULT_CORS_ORIGINS
        )

        return cls(
            environment=env.get('ENVIRONMENT', 'local').strip().lower(),
            msp_base_url=env.get('MSP_BASE_URL', '').strip().rstrip('/'),
            msp_auth_token=env.get('MSP_AUTH_TOKEN', ''),
            msp_timeout_seconds=_float(env, 'MSP_TIMEOUT_SECONDS', 10.0),
            finality_timeout_seconds=_float(env, 'FINALITY_TIMEOUT_SECONDS', 120.0),
            workflow_timeout_seconds=_optional_float(env, 'WORKFLOW_TIMEOUT_SECONDS', None),
            backend_poll_base_delay=_float(env, 'BACKEND_POLL_BASE_DELAY', 1.0),
            backend_poll_multiplier=_float(env, 'BACKEND_POLL_MULTIPLIER', 1.5),
            backend_poll_max_delay=_float(env, 'BACKEND_POLL_MAX_DELAY', 10.0),
            backend_poll_jitter=_float(env, 'BACKEND_POLL_JITTER', 0.1),
            backend_poll_deadline=_optional_float(env, 'BACKEND_POLL_DEADLINE', 60.0),
            backend_poll_max_attempts=_optional_int(env, 'BACKEND_POLL_MAX_ATTEMPTS'),
            teardown_readiness=parse_teardown_readiness(env.get('TEARDOWN_READINESS', '')),
            progress_reset_seconds=_optional_float(env, 'PROGRESS_RESET_SECONDS', 5.0),
            progress_max_entries=_int(env, 'PROGRESS_MAX_ENTRIES', 1024),
            listing_max_age_seconds=_optional_float(env, 'LISTING_MAX_AGE_SECONDS', None),
            log_level=env.get('LOG_LEVEL', '').strip().upper() or 'INFO',
            log_format=env.get('LOG_FORMAT', '').strip().lower() or 'json',
            cors_origins=cors,
        )


def parse_teardown_readiness(raw: str) -> Mapping[ResourceKind, TeardownReadiness]:
    """Parse ``bucket=backend,file=onchain`` over the defaults.

    Raises:
        ValueError: Unknown kind or readiness value.
    """
    readiness = dict(DEFAULT_TEARDOWN_READINESS)
    for pair in raw.split(','):
        if '=' not in pair:
            continue
        kind_raw, value_raw = pair.split('=', 1)
        kind = ResourceKind(kind_raw.strip().lower())
        readiness[kind] = TeardownReadiness(value_raw.strip().lower())
    return MappingProxyType(readiness)


def _float(env: dict[str, str], name: str, default: float) -> float:
    raw = env.get(name, '').strip()
    return float(raw) if raw else default


def _optional_float(env: dict[str, str], name: str, default: float | None) -> float | None:
    raw = env.get(name, '').strip().lower()
    if not raw:
        return default
    if raw in ('none', 'off'):
        return None
    return float(raw)


def _optional_int(env: dict[str, str], name: str) -> int | None:
    raw = env.get(name, '').strip()
    return int(raw) if raw else None


def _int(env: dict[str, str], name: str, default: int) -> int:
    raw = env.get(name, '').strip()
    return int(raw) if raw else default
