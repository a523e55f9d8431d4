"""Single-consumer fan-in of results produced by concurrent tasks."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class FanInCollector(Generic[T]):
    """Drain a bounded queue into a list on one dedicated thread.

    Producers call :meth:`put` from any thread and block while the queue is
    full, so nothing is ever dropped. Once every producer has finished the
    owner calls :meth:`close` and then :meth:`result`, which waits for the
    draining thread before handing out the accumulated items.
    """

    def __init__(
        self,
        maxsize: int = 30,
        name: str = "fan-in",
        on_item: Callable[[T], None] | None = None,
    ):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._items: list[T] = []
        self._on_item = on_item
        self._closed = False
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._drain, name=name, daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            self._items.append(item)
            if self._on_item is not None:
                try:
                    self._on_item(item)
                except Exception:
                    logger.exception("fan-in callback failed")

    def put(self, item: T) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("cannot put into a closed collector")
            # The drain thread never takes the lock, so blocking here is safe.
            self._queue.put(item)

    def close(self) -> None:
        """Signal that no more items will arrive. Safe to call twice."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def result(self) -> list[T]:
        """Wait for the drain to finish and return the collected items."""
        if not self._closed:
            raise RuntimeError("collector must be closed before reading results")
        self._thread.join()
        return list(self._items)
