"""Storage control: bucket and file provisioning over an on-chain ledger and MSP backend."""

from .main import create_app
from .service import StorageService
from .settings import StorageControlSettings

__all__ = ["create_app", "StorageControlSettings", "StorageService"]
