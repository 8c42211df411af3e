"""Blob store factory.

A job's destination is identified by its destination token. The factory
turns that token into a concrete `BlobStore`, so the scheduler, executor and
bulk endpoints resolve destinations the same way.

Adding a destination backend should only require implementing `BlobStore`
and a factory callable with the same signature.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Callable

from backend.services.autosync.errors import ValidationError
from backend.services.autosync.storage.base import BlobStore
from backend.services.autosync.storage.local import LocalBlobStore, LocalConfig


BlobStoreFactory = Callable[[str], BlobStore]


class LocalBlobStoreFactory:
    """Map each destination token to its own directory under `base_path`.

    The directory name is a digest of the token, so the token itself never
    appears on disk.
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

    def __call__(self, destination_token: str) -> BlobStore:
        if not destination_token:
            raise ValidationError("destination_token is required")

        scope = hashlib.sha256(destination_token.encode("utf-8")).hexdigest()[:32]
        return LocalBlobStore(LocalConfig(base_path=str(self.base_path / scope)))
