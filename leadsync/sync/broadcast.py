"""
Company-scoped broadcast side-channel for ownership transfers.

The primary change feed, filtered by visibility, cannot tell a restricted
session "you now own this lead": until the transfer is applied, the lead
is not in that session's view and its events are dropped (or never
delivered). Whichever session performs or first observes an ownership
change therefore publishes a compact TransferNotice on a per-company
channel; every session of that company reacts to it directly.

Invariants:
    - One channel per company, opened lazily and kept for the session's lifetime
    - Publishing is best-effort and never raises
    - Notices for another company or with malformed payloads are ignored
    - Receivers fetch the lead themselves; the notice carries no row data

How to change safely:
    - The event name and payload shape are shared by every session version
    - Receipt handling must stay idempotent; duplicate notices are normal
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import ValidationError

from ..errors import TransportError
from ..feed.base import BroadcastChannel, BroadcastTransport
from ..models import Lead, TransferNotice
from .besteffort import BestEffortResult, best_effort
from .coalescer import Coalescer
from .collection import LeadCollection
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

LeadFetcher = Callable[[str], Awaitable[Optional[Lead]]]


class BroadcastSideChannel:
    """Publishes and applies TransferNotices for one session.

    Attributes:
        enabled: Whether the side-channel is used at all
        received: Number of notices accepted for handling
    """

    def __init__(
        self,
        transport: BroadcastTransport,
        collection: LeadCollection,
        fetch_lead: LeadFetcher,
        tasks: BackgroundTasks,
        coalescer: Optional[Coalescer] = None,
        channel_template: str = "company_{company_id}_leads",
        event: str = "lead_transfer",
        enabled: bool = True,
    ) -> None:
        self.enabled = enabled
        self.event = event
        self.received = 0
        self._transport = transport
        self._collection = collection
        self._fetch_lead = fetch_lead
        self._tasks = tasks
        self.coalescer = coalescer
        self._channel_template = channel_template
        self._channel: Optional[BroadcastChannel] = None

    @property
    def channel(self) -> Optional[BroadcastChannel]:
        return self._channel

    def open(self) -> Optional[BroadcastChannel]:
        """Open the company channel if not already open.

        Returns:
            The channel, or None if disabled, tenant-less, or the transport
            refused (a later call retries)
        """
        if not self.enabled:
            return None
        if self._channel is not None:
            return self._channel

        company_id = self._collection.identity.company_id
        if not company_id:
            return None

        name = self._channel_template.format(company_id=company_id)
        try:
            channel = self._transport.channel(name)
            channel.subscribe(self.event, self._on_message)
        except TransportError as e:
            logger.error(
                f"Failed to open broadcast channel: {e}",
                extra={"channel": name},
            )
            return None

        self._channel = channel
        logger.debug("broadcast subscribed", extra={"channel": name})
        return channel

    async def publish(self, notice: TransferNotice) -> BestEffortResult:
        """Send a TransferNotice; failures are logged and returned, never raised."""
        channel = self.open()
        if channel is None:
            return BestEffortResult(operation="broadcast.publish", ok=False)

        logger.debug(
            "broadcast send lead_transfer",
            extra={"lead_id": notice.record_id, "new_owner_id": notice.new_owner_id},
        )
        payload = notice.to_payload()
        return await best_effort(
            "broadcast.publish",
            lambda: channel.publish(self.event, payload),
            channel=channel.name,
            lead_id=notice.record_id,
        )

    def _on_message(self, payload: Mapping[str, Any]) -> None:
        try:
            notice = TransferNotice.from_payload(payload)
        except ValidationError:
            logger.warning("Ignoring malformed transfer notice", extra={"payload": dict(payload)})
            return
        self._tasks.spawn(self.handle(notice), name=f"transfer:{notice.record_id}")

    async def handle(self, notice: TransferNotice) -> None:
        """Apply a received notice to the local collection.

        Restricted sessions fetch the lead if they are the new owner and
        evict it otherwise; privileged sessions always refetch it so
        denormalized owner data stays fresh.
        """
        identity = self._collection.identity
        if notice.company_id != identity.company_id:
            return

        self.received += 1
        logger.debug(
            "broadcast recv lead_transfer",
            extra={"lead_id": notice.record_id, "new_owner_id": notice.new_owner_id},
        )

        if identity.is_restricted and notice.new_owner_id != identity.user_id:
            self._drop_pending(notice.record_id)
            self._collection.remove(notice.record_id)
            return

        try:
            lead = await self._fetch_lead(notice.record_id)
        except Exception as e:
            logger.warning(
                f"Transfer fetch failed: {e}",
                extra={"lead_id": notice.record_id},
            )
            return
        if lead is None:
            return

        self._drop_pending(lead.id)
        self._collection.upsert(lead)

    def _drop_pending(self, record_id: str) -> None:
        if self.coalescer is not None:
            self.coalescer.cancel(record_id)

    async def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        channel, self._channel = self._channel, None
        if channel is None:
            return
        result = await best_effort("broadcast.close", channel.close, channel=channel.name)
        if result.ok:
            logger.debug("broadcast closed", extra={"channel": channel.name})
