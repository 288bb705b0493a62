"""
Per-record debounce buffer for UPDATE events.

Several UPDATE events for the same lead can arrive within milliseconds
(a single logical transfer may write the row more than once). The
Coalescer keeps one pending timer per lead id; each new state restarts the
timer, and only the latest state is applied when it fires.

Invariants:
    - At most one pending timer per record id
    - A fired timer removes its own entry before applying
    - cancel() guarantees the pending state is never applied

How to change safely:
    - Keep the window short enough not to be perceived as lag
    - DELETE handling depends on cancel(); do not make it asynchronous
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Coalescer(Generic[T]):
    """Map of cancelable per-id timers applying the latest state.

    Attributes:
        window: Debounce delay in seconds
        applied_count: Number of states applied so far

    Example:
        >>> coalescer = Coalescer(apply=collection.upsert, window=0.075)
        >>> coalescer.enqueue("l1", lead_v1)
        >>> coalescer.enqueue("l1", lead_v2)   # only lead_v2 is applied
    """

    def __init__(
        self,
        apply: Callable[[T], None],
        window: float = 0.075,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.window = window
        self.applied_count = 0
        self._apply = apply
        self._loop = loop
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    @property
    def pending(self) -> int:
        return len(self._timers)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._timers

    def enqueue(self, record_id: str, state: T) -> None:
        """Buffer ``state`` for ``record_id``, restarting its timer."""
        existing = self._timers.pop(record_id, None)
        if existing is not None:
            existing.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._timers[record_id] = loop.call_later(self.window, self._fire, record_id, state)

    def cancel(self, record_id: str) -> bool:
        """Drop the pending state for ``record_id``; returns whether one existed."""
        handle = self._timers.pop(record_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every pending timer; returns how many were dropped."""
        handles = list(self._timers.values())
        self._timers.clear()
        for handle in handles:
            handle.cancel()
        return len(handles)

    def _fire(self, record_id: str, state: T) -> None:
        self._timers.pop(record_id, None)
        try:
            self._apply(state)
            self.applied_count += 1
        except Exception as e:
            logger.error(
                f"Failed to apply coalesced update: {e}",
                exc_info=True,
                extra={"record_id": record_id},
            )
