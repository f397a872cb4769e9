"""Pytest configuration for storage_control tests."""
import logging
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_SRC = Path(__file__).parent.parent / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from storage_control.clients.msp_client import _reset_shared_async_client_for_tests
from storage_control.observability.logging import _reset_logging_for_tests
from storage_control.runtime import _reset_runtime_for_tests


@pytest.fixture(autouse=True)
def _reset_module_state():
    """Module-level singletons and logging config must not leak between tests."""
    level = logging.getLogger().level
    yield
    _reset_runtime_for_tests()
    _reset_shared_async_client_for_tests()
    _reset_logging_for_tests()
    logging.getLogger().setLevel(level)
