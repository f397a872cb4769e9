"""HTTP route factories."""

from .resources import create_resources_router
from .session import create_session_router

__all__ = ['create_resources_router', 'create_session_router']
