"""Bounded-concurrency fan-out transfer.

`run_fanout` runs a per-item transfer over a batch with a hard ceiling on the
number of transfers in flight. A fixed pool of `min(concurrency, len(items))`
workers drains a shared queue, so the ceiling holds regardless of batch size.

Guarantees:
- every item is attempted at most once, and exactly once unless the batch is
  cancelled;
- a failing item is recorded in `failed` and never aborts the batch;
- only a failing `setup` raises (`TransferSetupError`), before any item runs;
- on cancellation or timeout no new item starts, in-flight items finish and
  are recorded, and unstarted items are reported as `skipped`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from fastapi.concurrency import run_in_threadpool

from backend.services.autosync.errors import TransferSetupError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrentCollector(Generic[T]):
    """Append-only collection that is safe to share between workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: List[T] = []

    def add(self, item: T) -> None:
        with self._lock:
            self._items.append(item)

    def snapshot(self) -> List[T]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass
class FanoutResult:
    """Aggregated outcome of a fan-out batch.

    Attributes:
        processed: Keys transferred successfully.
        failed: Keys whose transfer raised.
        skipped: Keys never started because the batch was cancelled.
        errors: Error text per failed key.
        cancelled: True when cancellation or the timeout stopped the batch early.
        max_in_flight: Highest number of concurrent transfers observed.
    """

    processed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    max_in_flight: int = 0

    @property
    def attempted(self) -> int:
        return len(self.processed) + len(self.failed)


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await run_in_threadpool(fn, *args)
    if inspect.isawaitable(result):
        return await result
    return result


async def run_fanout(
    items: Iterable[T],
    transfer: Callable[[T], Any],
    *,
    key: Callable[[T], str] = str,
    concurrency: int = 10,
    cancel_event: Optional[asyncio.Event] = None,
    timeout: Optional[float] = None,
    setup: Optional[Callable[[], Any]] = None,
) -> FanoutResult:
    """Transfer every item with at most `concurrency` transfers in flight.

    Args:
        items: Work items.
        transfer: Per-item callable, sync (run in a thread pool) or async.
        key: Returns the reporting key of an item.
        concurrency: Concurrency ceiling; values below 1 are treated as 1.
        cancel_event: When set, no new item starts.
        timeout: Seconds after which no new item starts.
        setup: Optional callable run once before any item (e.g. acquiring a
            client). Its failure aborts the batch.

    Returns:
        FanoutResult: Processed, failed and skipped keys.

    Raises:
        TransferSetupError: If `setup` fails.
    """

    work = list(items)

    if setup is not None:
        try:
            await _call(setup)
        except Exception as exc:
            logger.warning("Transfer setup failed: %s", exc)
            raise TransferSetupError(f"transfer setup failed: {exc}", detail=str(exc)) from exc

    result = FanoutResult()
    if not work:
        return result

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None

    def should_stop() -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return deadline is not None and loop.time() >= deadline

    queue: "asyncio.Queue[T]" = asyncio.Queue()
    for item in work:
        queue.put_nowait(item)

    outcomes: ConcurrentCollector = ConcurrentCollector()
    in_flight = 0
    peak = 0

    async def worker() -> None:
        nonlocal in_flight, peak
        while not should_stop():
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            item_key = key(item)
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                await _call(transfer, item)
            except Exception as exc:
                logger.debug("Transfer of %s failed: %s", item_key, exc)
                outcomes.add((item_key, str(exc) or exc.__class__.__name__))
            else:
                outcomes.add((item_key, None))
            finally:
                in_flight -= 1

    workers = max(1, min(int(concurrency or 1), len(work)))
    await asyncio.gather(*(worker() for _ in range(workers)))

    for item_key, error in outcomes.snapshot():
        if error is None:
            result.processed.append(item_key)
        else:
            result.failed.append(item_key)
            result.errors[item_key] = error

    while not queue.empty():
        result.skipped.append(key(queue.get_nowait()))

    result.cancelled = bool(result.skipped)
    result.max_in_flight = peak

    logger.info(
        "Fan-out finished: processed=%d failed=%d skipped=%d workers=%d",
        len(result.processed),
        len(result.failed),
        len(result.skipped),
        workers,
    )
    return result
