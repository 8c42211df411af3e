"""Blob store interface for auto-sync destinations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Set


class BlobStore(ABC):
    """Object store keyed by `(namespace, key)`.

    Implementations are blocking; async callers run them through a thread
    pool. `get` and `list_keys` raise `BlobNotFoundError` when the object or
    namespace does not exist; any other failure is a `BlobStoreError`.
    """

    @abstractmethod
    def put(self, namespace: str, key: str, data: bytes) -> None:
        """Store `data` under `key`, replacing any existing object."""

    @abstractmethod
    def get(self, namespace: str, key: str) -> bytes:
        """Return the object's bytes."""

    @abstractmethod
    def delete(self, namespace: str, key: str) -> None:
        """Delete an object. Deleting a missing object is a no-op."""

    @abstractmethod
    def list_keys(self, namespace: str, prefix: str = "") -> Set[str]:
        """Return the keys in `namespace` that start with `prefix`."""

    def ensure_namespace(self, namespace: str) -> None:
        """Prepare `namespace` for writes; called once before a batch of uploads.

        Stores that create namespaces implicitly keep this no-op.
        """
