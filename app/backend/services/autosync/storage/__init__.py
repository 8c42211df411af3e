"""Destination blob stores."""

from backend.services.autosync.storage.base import BlobStore
from backend.services.autosync.storage.factory import BlobStoreFactory, LocalBlobStoreFactory
from backend.services.autosync.storage.local import LocalBlobStore, LocalConfig

__all__ = [
    "BlobStore",
    "BlobStoreFactory",
    "LocalBlobStore",
    "LocalBlobStoreFactory",
    "LocalConfig",
]
