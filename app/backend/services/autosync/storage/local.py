"""Local filesystem blob store.

Objects are stored as files under `<base_path>/<namespace>/<key>`. Keys may
contain `/`, which maps to subdirectories. Intended for single-host
deployments, development and tests.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Set

from backend.services.autosync.errors import BlobNotFoundError, BlobStoreError
from backend.services.autosync.storage.base import BlobStore


logger = logging.getLogger(__name__)


@dataclass
class LocalConfig:
    """Configuration for local storage.

    Attributes:
        base_path: Base directory holding one subdirectory per namespace.
    """

    base_path: str = "/app/blobs"


class LocalBlobStore(BlobStore):
    """Local filesystem blob store."""

    def __init__(self, config: LocalConfig):
        self.config = config
        self.base_path = Path(config.base_path)

    def _namespace_path(self, namespace: str) -> Path:
        if not namespace or "/" in namespace or namespace in (".", ".."):
            raise BlobStoreError(f"Invalid namespace: {namespace!r}")
        return self.base_path / namespace

    def _object_path(self, namespace: str, key: str) -> Path:
        root = self._namespace_path(namespace)
        path = (root / key).resolve()
        if not key or root.resolve() not in path.parents:
            raise BlobStoreError(f"Invalid object key: {key!r}")
        return path

    def ensure_namespace(self, namespace: str) -> None:
        path = self._namespace_path(namespace)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BlobStoreError(f"Failed to prepare namespace {namespace}: {exc}") from exc

    def put(self, namespace: str, key: str, data: bytes) -> None:
        path = self._object_path(namespace, key)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write then rename so readers never see a half-written object.
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".upload-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            raise BlobStoreError(f"Failed to store {namespace}/{key}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError as exc:
                    logger.warning("Could not remove temporary upload %s: %s", tmp_name, exc)

        logger.debug("Stored %s/%s (%d bytes)", namespace, key, len(data))

    def get(self, namespace: str, key: str) -> bytes:
        path = self._object_path(namespace, key)
        if not path.is_file():
            raise BlobNotFoundError(f"Object not found: {namespace}/{key}")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise BlobStoreError(f"Failed to read {namespace}/{key}: {exc}") from exc

    def delete(self, namespace: str, key: str) -> None:
        path = self._object_path(namespace, key)
        root = self._namespace_path(namespace).resolve()
        if not path.exists():
            return

        try:
            path.unlink()
        except OSError as exc:
            raise BlobStoreError(f"Failed to delete {namespace}/{key}: {exc}") from exc

        # Clean up empty parent directories
        parent = path.parent
        while parent != root and parent.exists():
            try:
                parent.rmdir()
                parent = parent.parent
            except OSError:
                break

    def list_keys(self, namespace: str, prefix: str = "") -> Set[str]:
        root = self._namespace_path(namespace)
        if not root.is_dir():
            raise BlobNotFoundError(f"Namespace not found: {namespace}")

        keys: Set[str] = set()
        try:
            for dirpath, _dirs, files in os.walk(root):
                for filename in files:
                    if filename.startswith(".upload-"):
                        continue
                    rel = (Path(dirpath) / filename).relative_to(root).as_posix()
                    if rel.startswith(prefix):
                        keys.add(rel)
        except OSError as exc:
            raise BlobStoreError(f"Failed to list {namespace}: {exc}") from exc
        return keys
