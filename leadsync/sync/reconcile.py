"""
Reconciliation loop: focus/visibility/interval-triggered refetch.

Restricted sessions can miss events (transport gaps, dropped broadcasts,
a subscription replaced mid-flight). The loop bounds that staleness by
re-running the full scoped fetch when the host window regains focus,
when the document becomes visible, and on a fixed interval.

Invariants:
    - Only restricted identities reconcile; privileged sessions never do
    - At most one refetch runs at a time; overlapping triggers are dropped
    - stop() removes every listener and the interval task, idempotently
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..feed.base import FOCUS, VISIBILITY_CHANGE, HostSignals
from ..models import Identity
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

Refetch = Callable[[], Awaitable[None]]


class ReconciliationLoop:
    """Backstop refetch driver for restricted sessions.

    Attributes:
        interval: Seconds between interval-triggered refetches
        runs: Number of refetches started
    """

    def __init__(
        self,
        refetch: Refetch,
        identity: Callable[[], Optional[Identity]],
        tasks: BackgroundTasks,
        signals: Optional[HostSignals] = None,
        interval: float = 60.0,
        enabled: bool = True,
    ) -> None:
        self.interval = interval
        self.enabled = enabled
        self.runs = 0
        self._refetch = refetch
        self._identity = identity
        self._tasks = tasks
        self._signals = signals
        self._listening = False
        self._interval_task: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._listening or self._interval_task is not None

    def _should_run(self) -> bool:
        identity = self._identity()
        return self.enabled and identity is not None and identity.is_restricted

    def start(self) -> None:
        """Register host listeners and, for restricted sessions, the interval."""
        if not self.enabled or self.active:
            return

        if self._signals is not None:
            self._signals.add_listener(FOCUS, self.on_focus)
            self._signals.add_listener(VISIBILITY_CHANGE, self.on_visibility_change)
            self._listening = True

        if self._should_run():
            self._interval_task = asyncio.get_running_loop().create_task(
                self._interval_loop(), name="reconcile:interval"
            )

    def on_focus(self) -> None:
        if self._should_run():
            self.trigger("focus")

    def on_visibility_change(self, state: str) -> None:
        if state == "visible" and self._should_run():
            self.trigger("visibility")

    def trigger(self, reason: str) -> Optional[asyncio.Task]:
        """Start a refetch unless one is already running."""
        if self._in_flight is not None and not self._in_flight.done():
            logger.debug("refetch skipped, already running", extra={"reason": reason})
            return None
        logger.debug(f"refetch:{reason}")
        self.runs += 1
        self._in_flight = self._tasks.spawn(self._refetch(), name=f"reconcile:{reason}")
        return self._in_flight

    async def _interval_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self._should_run():
                task = self.trigger("interval")
                if task is not None:
                    await asyncio.gather(task, return_exceptions=True)

    async def stop(self) -> None:
        """Remove listeners and cancel the interval. Safe to call more than once."""
        if self._listening and self._signals is not None:
            self._signals.remove_listener(FOCUS, self.on_focus)
            self._signals.remove_listener(VISIBILITY_CHANGE, self.on_visibility_change)
        self._listening = False

        task, self._interval_task = self._interval_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
