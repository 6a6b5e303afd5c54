"""Coalesces high-frequency log emission into ordered batches.

Entries are buffered and drained by a single scheduled flush on the next
event-loop iteration (or after ``window`` seconds), or immediately once
``max_size`` entries are waiting. Flush order is always arrival order.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger("taskrelay.batcher")

T = TypeVar("T")


class LogBatcher(Generic[T]):

    def __init__(
        self,
        sink: Callable[[List[T]], None],
        on_flushed: Optional[Callable[[int], None]] = None,
        window: float = 0.0,
        max_size: int = 500,
    ) -> None:
        self._sink = sink
        self._on_flushed = on_flushed
        self.window = window
        self.max_size = max(1, max_size)
        self._buffer: List[T] = []
        self._handle: Optional[asyncio.Handle] = None

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def add(self, item: T) -> None:
        self._buffer.append(item)
        if len(self._buffer) >= self.max_size:
            self.flush()
            return
        if self._handle is None:
            loop = asyncio.get_running_loop()
            if self.window > 0:
                self._handle = loop.call_later(self.window, self.flush)
            else:
                self._handle = loop.call_soon(self.flush)

    def flush(self) -> int:
        """Drain the buffer into the sink. Returns the number of entries flushed."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self._buffer:
            return 0
        batch, self._buffer = self._buffer, []
        self._sink(batch)
        if self._on_flushed is not None:
            try:
                self._on_flushed(len(batch))
            except Exception:  # noqa: BLE001
                logger.exception("on_flushed hook failed")
        return len(batch)

    def cancel(self) -> None:
        """Cancel the scheduled flush; buffered entries wait for the next add or flush."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def reset(self) -> None:
        """Cancel the scheduled flush and drop anything still buffered."""
        self.cancel()
        self._buffer = []
