"""Backend clients for the storage control service."""

from .msp_client import MspIndexClient, bucket_view_from_payload, file_view_from_payload

__all__ = [
    'MspIndexClient',
    'bucket_view_from_payload',
    'file_view_from_payload',
]
