"""
Change-stream consumer for the lead table.

The consumer subscribes once per mount to the store's row change feed and
turns each event into a local collection update:
- INSERT: enrich with cached owner info, insert at the head
- UPDATE: detect ownership transfers against the last-applied snapshot,
  then hand the new state to the Coalescer
- DELETE: cancel any pending coalesced update and remove immediately

Invariants:
    - Exactly one feed subscription per mount, with no server-side filter
    - Transfer detection compares against the applied snapshot, never the
      event's ``old`` row (which may be absent or stale)
    - A DELETE always wins over a pending coalesced UPDATE for the same id
    - Hydration and broadcast work never blocks or fails the state update
    - Owner lookups start only for leads this session can see

How to change safely:
    - Keep handle() synchronous; side effects go through BackgroundTasks
    - Malformed events are logged and skipped, never raised to the loop
    - Subscription failures are not retried here; reconciliation covers them
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from ..errors import PayloadError
from ..feed.base import ChangeFeed
from ..models import ChangeEvent, ChangeType, Lead
from .besteffort import best_effort
from .broadcast import BroadcastSideChannel
from .coalescer import Coalescer
from .collection import LeadCollection
from .hydration import HydrationCache
from .tasks import BackgroundTasks
from .transfer import ownership_changed, transfer_notice
from .visibility import is_visible

logger = logging.getLogger(__name__)


class ChangeStreamConsumer:
    """Consumes lead change events and applies them to the local collection.

    Attributes:
        coalescer: Debounce buffer for UPDATE events
        side_channel: Where privileged sessions republish transfers
        subscription_id: Id of the active subscription, if any

    Example:
        >>> consumer = ChangeStreamConsumer(feed, collection, hydration, tasks)
        >>> task = asyncio.create_task(consumer.run("leads_changes_1_ab"))
    """

    def __init__(
        self,
        feed: ChangeFeed,
        collection: LeadCollection,
        hydration: HydrationCache,
        tasks: BackgroundTasks,
        side_channel: Optional[BroadcastSideChannel] = None,
        table: str = "leads",
        coalesce_window: float = 0.075,
        enrich: Optional[Callable[[Lead], Lead]] = None,
    ) -> None:
        self.feed = feed
        self.table = table
        self.side_channel = side_channel
        self.coalescer: Coalescer[Lead] = Coalescer(self.apply_update, window=coalesce_window)
        self.subscription_id: Optional[str] = None

        self._collection = collection
        self._hydration = hydration
        self._tasks = tasks
        self._enrich = enrich
        self._running = False
        self._processed_count = 0
        self._error_count = 0
        self._transfer_count = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, subscription_id: str) -> None:
        """Consume the change feed until unsubscribed or cancelled."""
        self.subscription_id = subscription_id
        self._running = True
        logger.info(
            "Subscribing to change feed",
            extra={"table": self.table, "subscription_id": subscription_id},
        )

        try:
            async for event in self.feed.subscribe(self.table, subscription_id):
                self.dispatch(event)
        except asyncio.CancelledError:
            logger.info("Change stream consumer cancelled")
            raise
        except Exception as e:
            logger.error(
                f"Change feed subscription failed: {e}",
                exc_info=True,
                extra={"subscription_id": subscription_id},
            )
        finally:
            self._running = False

    async def unsubscribe(self) -> None:
        """Release the feed subscription. Safe to call more than once."""
        subscription_id, self.subscription_id = self.subscription_id, None
        if subscription_id is None:
            return
        await best_effort(
            "feed.unsubscribe",
            lambda: self.feed.unsubscribe(subscription_id),
            subscription_id=subscription_id,
        )

    def dispatch(self, event: ChangeEvent) -> None:
        """Handle an event against the current applied snapshot."""
        record_id = event.record_id
        prior = self._collection.get(record_id) if record_id else None
        self.handle(event, prior)

    def handle(self, event: ChangeEvent, prior: Optional[Lead]) -> None:
        """Apply one change event.

        Args:
            event: The change notification
            prior: Last-applied local snapshot of the same lead, if any
        """
        if event.table and event.table != self.table:
            return

        logger.debug(
            "event",
            extra={"event_type": event.event_type.value, "lead_id": event.record_id},
        )

        try:
            if event.event_type is ChangeType.INSERT:
                self._on_insert(event)
            elif event.event_type is ChangeType.UPDATE:
                self._on_update(event, prior)
            elif event.event_type is ChangeType.DELETE:
                self._on_delete(event)
        except PayloadError as e:
            self._error_count += 1
            logger.warning(
                f"Skipping malformed change event: {e}",
                extra={"event_type": event.event_type.value, "lead_id": event.record_id},
            )
            return

        self._processed_count += 1

    def _on_insert(self, event: ChangeEvent) -> None:
        lead = Lead.from_row(event.new or {})
        self._collection.insert_head(self._prepare(lead))

    def _on_update(self, event: ChangeEvent, prior: Optional[Lead]) -> None:
        lead = Lead.from_row(event.new or {})
        if ownership_changed(prior, lead.owner_id) and (
            prior is not None or is_visible(lead, self._collection.identity)
        ):
            self._on_transfer(lead, prior)
        self.coalescer.enqueue(lead.id, lead)

    def _on_delete(self, event: ChangeEvent) -> None:
        record_id = event.record_id
        if not record_id:
            raise PayloadError("DELETE event carries no id", field_name="id")
        self.coalescer.cancel(record_id)
        self._collection.remove(record_id)

    def _on_transfer(self, lead: Lead, prior: Optional[Lead]) -> None:
        self._transfer_count += 1
        logger.debug(
            "transfer",
            extra={
                "lead_id": lead.id,
                "from_owner": prior.owner_id if prior else None,
                "to_owner": lead.owner_id,
            },
        )

        identity = self._collection.identity
        if (
            lead.owner_id
            and self._hydration.get(lead.owner_id) is None
            and is_visible(lead, identity)
        ):
            self._tasks.spawn(
                self._hydration.ensure(lead.owner_id, lead.id),
                name=f"hydrate:{lead.owner_id}",
            )

        if identity.is_restricted or self.side_channel is None:
            return
        if lead.company_id != identity.company_id:
            return
        notice = transfer_notice(lead.id, lead.owner_id, identity.company_id)
        if notice is not None:
            self._tasks.spawn(self.side_channel.publish(notice), name=f"republish:{lead.id}")

    def apply_update(self, lead: Lead) -> None:
        """Apply a (coalesced) UPDATE state to the collection."""
        self._collection.upsert(self._prepare(lead))

    def _prepare(self, lead: Lead) -> Lead:
        if self._enrich is not None:
            lead = self._enrich(lead)
        if not is_visible(lead, self._collection.identity):
            return lead
        return self._hydration.attach(lead, self._tasks)

    @property
    def stats(self) -> Dict[str, Any]:
        """Get consumer statistics."""
        return {
            "running": self._running,
            "subscription_id": self.subscription_id,
            "processed_count": self._processed_count,
            "error_count": self._error_count,
            "transfer_count": self._transfer_count,
            "pending_updates": self.coalescer.pending,
        }
