"""
LeadSync engine: wires every component for one mounted session.

The engine owns the lifecycle of a session's synchronized lead view:
- resolve the identity and bind the visibility-filtered collection
- subscribe to the change feed (unique subscription id per mount)
- run the initial scoped fetch, seeding the owner cache
- open the company broadcast channel
- start reconciliation for restricted sessions
- expose the Mutation API and derived read-only views

Invariants:
    - Everything runs on one event loop; no locks are needed
    - stop() clears timers, the feed subscription, the broadcast channel,
      host listeners and background tasks, and is safe after a partial start
    - A failed refresh keeps the last good snapshot and records the error
    - An engine is started once; remounting builds a new engine

How to change safely:
    - Wire new components in start() and release them in stop()
    - Keep refresh() non-raising; the reconciliation loop calls it blindly
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from ..config import SyncConfig
from ..errors import LeadSyncError, NotAuthenticatedError, PayloadError
from ..feed.base import AuditSink, BroadcastTransport, ChangeFeed, HostSignals, LeadStore
from ..models import Identity, Lead, LeadStage, OwnerDisplayInfo
from .broadcast import BroadcastSideChannel
from .collection import LeadCollection, SnapshotListener
from .consumer import ChangeStreamConsumer
from .hydration import HydrationCache
from .mutations import MutationApi
from .reconcile import ReconciliationLoop
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)


def new_subscription_id(prefix: str = "leads_changes") -> str:
    """Generate a per-mount subscription id: ``<prefix>_<ms>_<random>``."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class LeadSyncEngine:
    """Real-time, visibility-scoped lead view for one session.

    Example:
        >>> engine = LeadSyncEngine(store, feed, hub, audit=audit, signals=signals)
        >>> async with engine:
        ...     await engine.set_stage("l1", LeadStage.QUALIFIED)
        ...     print(engine.leads)
    """

    def __init__(
        self,
        store: LeadStore,
        feed: ChangeFeed,
        broadcast: BroadcastTransport,
        audit: Optional[AuditSink] = None,
        signals: Optional[HostSignals] = None,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.config = config or SyncConfig()
        self._store = store
        self._feed = feed
        self._broadcast = broadcast
        self._audit = audit
        self._signals = signals

        self._tasks = BackgroundTasks()
        self._listeners: List[SnapshotListener] = []
        self._listing_types: Dict[str, str] = {}

        self._collection: Optional[LeadCollection] = None
        self._hydration: Optional[HydrationCache] = None
        self._consumer: Optional[ChangeStreamConsumer] = None
        self._side_channel: Optional[BroadcastSideChannel] = None
        self._reconcile: Optional[ReconciliationLoop] = None
        self._mutations: Optional[MutationApi] = None
        self._consumer_task: Optional[asyncio.Task] = None

        self._loading = False
        self._error: Optional[BaseException] = None
        self._started = False
        self._stopped = False

    # Lifecycle

    async def start(self) -> None:
        """Mount the engine.

        Raises:
            NotAuthenticatedError: If the store reports no identity
            LeadSyncError: If the engine was already started
        """
        if self._started:
            raise LeadSyncError("Engine already started", code="ALREADY_STARTED")
        self._started = True

        identity = await self._resolve_identity()
        if identity is None:
            raise NotAuthenticatedError()

        logger.info(
            "Starting lead sync engine",
            extra={
                "user_id": identity.user_id,
                "role": identity.role.value,
                "company_id": identity.company_id,
            },
        )

        collection = LeadCollection(identity)
        for listener in self._listeners:
            collection.add_listener(listener)
        self._collection = collection

        self._hydration = HydrationCache(
            lookup=self._lookup_owner,
            on_resolved=self._on_owner_resolved,
        )
        self._consumer = ChangeStreamConsumer(
            self._feed,
            collection,
            self._hydration,
            self._tasks,
            table=self.config.table,
            coalesce_window=self.config.coalesce_window,
            enrich=self._enrich,
        )
        self._side_channel = BroadcastSideChannel(
            self._broadcast,
            collection,
            self._fetch_lead,
            self._tasks,
            coalescer=self._consumer.coalescer,
            channel_template=self.config.channel_template,
            event=self.config.transfer_event,
            enabled=self.config.broadcast_enabled,
        )
        self._consumer.side_channel = self._side_channel
        self._mutations = MutationApi(
            self._store,
            collection,
            self._hydration,
            self._tasks,
            side_channel=self._side_channel,
            audit=self._audit,
            coalescer=self._consumer.coalescer,
        )
        self._reconcile = ReconciliationLoop(
            self.refresh,
            lambda: self._collection.identity if self._collection else None,
            self._tasks,
            signals=self._signals,
            interval=self.config.reconcile_interval_seconds,
            enabled=self.config.reconcile_enabled,
        )

        # Subscribe before the initial fetch so no change falls in between.
        subscription_id = new_subscription_id(self.config.subscription_prefix)
        self._consumer_task = asyncio.get_running_loop().create_task(
            self._consumer.run(subscription_id), name=f"consumer:{subscription_id}"
        )
        await asyncio.sleep(0)

        await self.refresh()
        self._side_channel.open()
        self._reconcile.start()

    async def stop(self) -> None:
        """Unmount the engine. Safe to call more than once or after a failed start."""
        if self._stopped:
            return
        self._stopped = True

        if self._reconcile is not None:
            await self._reconcile.stop()

        if self._consumer is not None:
            dropped = self._consumer.coalescer.cancel_all()
            if dropped:
                logger.debug("Dropped pending updates on stop", extra={"count": dropped})
            await self._consumer.unsubscribe()

        task, self._consumer_task = self._consumer_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if self._side_channel is not None:
            await self._side_channel.close()

        await self._tasks.cancel_all()
        logger.info("Lead sync engine stopped")

    async def __aenter__(self) -> LeadSyncEngine:
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def settle(self) -> None:
        """Wait until pending coalesced updates and background tasks are done.

        Intended for tests and scripted callers; events from other
        sessions that have not been delivered yet are not waited for.
        """
        while True:
            for _ in range(3):
                await asyncio.sleep(0)
            if len(self._tasks):
                await self._tasks.join()
                continue
            if self._consumer is not None and self._consumer.coalescer.pending:
                await asyncio.sleep(self._consumer.coalescer.window)
                continue
            return

    # Full fetch

    async def refresh(self) -> None:
        """Re-run the scoped full fetch and replace the collection.

        Never raises; failures are logged and exposed through ``error``.
        """
        collection = self._collection
        if collection is None:
            return

        self._loading = True
        try:
            identity = await self._resolve_identity()
            if identity is None:
                raise NotAuthenticatedError()
            if identity != collection.identity:
                logger.info(
                    "Identity changed, rebinding visibility",
                    extra={"user_id": identity.user_id, "role": identity.role.value},
                )
                collection.rebind(identity)

            owner_filter = identity.user_id if identity.is_restricted else None
            rows = await self._store.fetch_leads(identity.company_id, owner_id=owner_filter)
            leads = self._leads_from_rows(rows)
            if self.config.enrich_listings:
                leads = await self._enrich_listings(leads)
            collection.replace_all(leads)
            self._error = None
            logger.debug(
                "refetch complete",
                extra={"count": len(collection), "restricted": identity.is_restricted},
            )
        except Exception as e:
            self._error = e
            logger.error(f"Failed to refresh leads: {e}", extra={"error_type": type(e).__name__})
        finally:
            self._loading = False

    async def _resolve_identity(self) -> Optional[Identity]:
        data = await self._store.current_identity()
        if not data:
            return None
        return Identity.from_dict(data)

    def _leads_from_rows(self, rows: Iterable[Mapping[str, Any]]) -> List[Lead]:
        leads = []
        for row in rows:
            try:
                lead = Lead.from_row(row)
            except PayloadError as e:
                logger.warning(f"Skipping malformed lead row: {e}", extra={"lead_id": row.get("id")})
                continue
            leads.append(self._hydration.attach(self._enrich(lead), self._tasks))
        return leads

    async def _enrich_listings(self, leads: List[Lead]) -> List[Lead]:
        wanted = sorted({lead.listing_id for lead in leads if lead.listing_id})
        if not wanted:
            return leads
        try:
            found = await self._store.lookup_listing_types(wanted)
        except Exception as e:
            logger.warning(f"Listing enrichment failed: {e}", extra={"count": len(wanted)})
            return leads
        self._listing_types.update(found)
        return [self._enrich(lead) for lead in leads]

    def _enrich(self, lead: Lead) -> Lead:
        listing_type = self._listing_types.get(lead.listing_id or "")
        if listing_type is None or listing_type == lead.listing_type:
            return lead
        return dataclasses.replace(lead, listing_type=listing_type)

    # Collaborator callbacks

    async def _lookup_owner(self, owner_id: str) -> Optional[OwnerDisplayInfo]:
        row = await self._store.fetch_owner(owner_id)
        return OwnerDisplayInfo.from_row(row) if row else None

    def _on_owner_resolved(self, record_id: str, info: OwnerDisplayInfo) -> None:
        if self._collection is not None:
            self._collection.patch(record_id, lambda lead: lead.with_owner(info))

    async def _fetch_lead(self, lead_id: str) -> Optional[Lead]:
        row = await self._store.fetch_lead(lead_id)
        if row is None:
            return None
        return self._hydration.attach(self._enrich(Lead.from_row(row)), self._tasks)

    # State

    @property
    def leads(self) -> Tuple[Lead, ...]:
        return self._collection.snapshot if self._collection else ()

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def identity(self) -> Optional[Identity]:
        return self._collection.identity if self._collection else None

    @property
    def subscription_id(self) -> Optional[str]:
        return self._consumer.subscription_id if self._consumer else None

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call ``listener(snapshot)`` after every snapshot change.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)
        remove_from_collection = (
            self._collection.add_listener(listener) if self._collection else None
        )

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
            if remove_from_collection is not None:
                remove_from_collection()

        return remove

    @property
    def stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        stats: Dict[str, Any] = {
            "started": self._started,
            "stopped": self._stopped,
            "lead_count": len(self.leads),
            "version": self._collection.version if self._collection else 0,
            "background_tasks": len(self._tasks),
        }
        if self._consumer is not None:
            stats["consumer"] = self._consumer.stats
        if self._hydration is not None:
            stats["hydration"] = {
                "cached": len(self._hydration),
                "lookups": self._hydration.lookups,
                "hits": self._hydration.hits,
                "coalesced": self._hydration.coalesced,
            }
        if self._side_channel is not None:
            stats["broadcast_received"] = self._side_channel.received
        if self._reconcile is not None:
            stats["reconcile_runs"] = self._reconcile.runs
        return stats

    # Derived views

    def leads_by_stage(self, stage: LeadStage) -> Tuple[Lead, ...]:
        return self._collection.by_stage(stage) if self._collection else ()

    @property
    def total_leads(self) -> int:
        return len(self.leads)

    @property
    def total_value(self) -> float:
        return self._collection.total_value if self._collection else 0.0

    def stage_counts(self) -> Dict[LeadStage, int]:
        return self._collection.stage_counts() if self._collection else {}

    # Mutations

    def _api(self) -> MutationApi:
        if self._mutations is None or self._stopped:
            raise LeadSyncError("Engine is not running", code="NOT_RUNNING")
        return self._mutations

    async def set_stage(self, lead_id: str, stage: LeadStage) -> None:
        await self._api().set_stage(lead_id, stage)

    async def create(
        self,
        data: Mapping[str, Any],
        owner_override: Optional[str] = None,
    ) -> Lead:
        return await self._api().create(data, owner_override=owner_override)

    async def update(self, lead_id: str, patch: Mapping[str, Any]) -> None:
        await self._api().update(lead_id, patch)

    async def delete(self, lead_id: str) -> None:
        await self._api().delete(lead_id)

    async def bulk_reassign(self, lead_ids: Iterable[str], new_owner_id: Optional[str]) -> None:
        await self._api().bulk_reassign(lead_ids, new_owner_id)
