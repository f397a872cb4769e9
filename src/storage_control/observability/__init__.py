"""Observability helpers (structured logging)."""

from .logging import configure_logging, get_logger, request_id_ctx, workflow_context

__all__ = ['configure_logging', 'get_logger', 'request_id_ctx', 'workflow_context']
