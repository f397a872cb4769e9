"""Structured logging for storage-control.

Module loggers stay plain ``logging.getLogger(__name__)`` with %-style
messages and ``extra=`` fields. Their records are rendered by structlog's
ProcessorFormatter, which enriches every line with:

  - ``request_id``: the HTTP request being served, if any
  - ``workflow`` / ``resource``: bound for the duration of one workflow run
    via ``workflow_context``
  - any ``extra=`` fields (``failure_kind``, ...)

Credential-bearing keys (MSP bearer tokens, Authorization headers) are
redacted before rendering.

Usage::

    from storage_control.observability.logging import configure_logging, workflow_context

    configure_logging(level=settings.log_level, json_output=settings.log_format == 'json')
    with workflow_context('provision', 'bucket:docs'):
        logger.info('Provisioned %s', identity)
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, ContextManager, Mapping

import structlog

# Correlation ID of the HTTP request being served.
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

_SENSITIVE_KEYS = frozenset(
    {"authorization", "auth_token", "msp_auth_token", "token", "secret"}
)

_configured = False
_handler: logging.Handler | None = None


def _add_request_id(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict["request_id"] = rid
    return event_dict


def _redact_sensitive(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    for key, value in event_dict.items():
        if key.lower() in _SENSITIVE_KEYS:
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, Mapping):
            event_dict[key] = _redact_mapping(value)
    return event_dict


def _redact_mapping(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: "[REDACTED]" if str(key).lower() in _SENSITIVE_KEYS
        else _redact_mapping(value) if isinstance(value, Mapping)
        else value
        for key, value in payload.items()
    }


def shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        _add_request_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Install the structlog formatter on the root logger (once).

    Args:
        level: Log level name. Defaults to LOG_LEVEL or INFO.
        json_output: JSON lines when True, console output when False.
            Defaults to LOG_FORMAT == "json".
    """
    global _configured, _handler
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            *shared_processors(),
            _redact_sensitive,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            *shared_processors(),
            structlog.stdlib.ExtraAdder(),
            _redact_sensitive,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    _handler = handler
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Quiet per-request HTTP client and access logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def workflow_context(workflow: str, resource: str) -> ContextManager[Any]:
    """Bind ``workflow`` and ``resource`` to every log line in the block."""
    return structlog.contextvars.bound_contextvars(workflow=workflow, resource=resource)


def _reset_logging_for_tests() -> None:
    global _configured, _handler
    _configured = False
    if _handler is not None:
        logging.getLogger().removeHandler(_handler)
        _handler = None
    structlog.reset_defaults()


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
