"""Source / destination reconciliation.

Decides which source items already exist in the destination. The
destination listing is sorted once and each source key is looked up with a
binary search, so a run costs O((S + D) log D) rather than O(S * D).
"""

from __future__ import annotations

import bisect
import logging
from typing import Callable, Iterable, List, Sequence, Set, Tuple, TypeVar

from backend.services.autosync.errors import BlobNotFoundError
from backend.services.autosync.storage.base import BlobStore


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _contains(sorted_keys: Sequence[str], key: str) -> bool:
    index = bisect.bisect_left(sorted_keys, key)
    return index < len(sorted_keys) and sorted_keys[index] == key


def reconcile(source_keys: Sequence[str], destination_keys: Iterable[str]) -> List[bool]:
    """Return one `synced` flag per source key, in source order."""

    ordered = sorted(destination_keys)
    return [_contains(ordered, key) for key in source_keys]


def load_destination_keys(store: BlobStore, namespace: str, prefix: str = "") -> Set[str]:
    """List the destination keys, treating a missing namespace as empty.

    Raises:
        BlobStoreError: Any listing failure other than a missing namespace.
    """

    try:
        return store.list_keys(namespace, prefix)
    except BlobNotFoundError:
        logger.debug("Namespace %s not found; nothing synced yet", namespace)
        return set()


def split_synced(
    items: Sequence[T],
    destination_keys: Iterable[str],
    key: Callable[[T], str],
) -> Tuple[List[T], List[T]]:
    """Partition items into (synced, unsynced), keeping source order."""

    flags = reconcile([key(item) for item in items], destination_keys)
    synced = [item for item, flag in zip(items, flags) if flag]
    unsynced = [item for item, flag in zip(items, flags) if not flag]
    return synced, unsynced
