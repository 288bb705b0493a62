"""
In-memory collaborators for testing and local development.

This module provides simple in-memory implementations of every protocol
in feed/base.py:
- InMemoryDatabase: shared lead/profile tables with row-level policies
- InMemoryLeadStore: a LeadStore bound to one signed-in user
- InMemoryChangeFeed: row change subscriptions fed by database writes
- InMemoryBroadcastHub: named channels shared by all sessions
- InMemoryAuditSink, InMemoryHostSignals

Invariants:
    - All data is lost on process exit
    - Every database write emits exactly one change event per row
    - UPDATE/DELETE events carry only the id in ``old`` (like a default
      replica identity), so consumers cannot rely on it
    - Broadcast delivery is asynchronous and includes the sender

How to change safely:
    - This is test-only code, changes don't affect production adapters
    - Keep interfaces compatible with the protocols in feed/base.py
    - Add failure injection and counters here rather than mocking in tests
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import uuid
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
)

from ..errors import StoreError, TransportError
from ..models import ChangeEvent, Role
from .base import MessageHandler, Row, SignalListener

logger = logging.getLogger(__name__)

EventPolicy = Callable[[ChangeEvent], bool]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryDatabase:
    """Shared in-memory tables for leads, profiles and listings.

    Sessions obtained with ``session(user_id)`` see rows through the same
    policies a hosted store would apply: restricted users read only the
    leads they own, privileged users read every lead of their company.

    Attributes:
        latency: Seconds each store call sleeps (0 still yields to the loop)
        call_counts: Number of calls per store operation

    Example:
        >>> db = InMemoryDatabase()
        >>> db.add_profile("u1", "Ana", role="corretor", company_id="c1")
        >>> store = db.session("u1")
        >>> feed = db.change_feed()
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.call_counts: Counter[str] = Counter()
        self._leads: Dict[str, Row] = {}
        self._order: Dict[str, int] = {}
        self._profiles: Dict[str, Row] = {}
        self._listings: Dict[str, str] = {}
        self._feeds: List[InMemoryChangeFeed] = []
        self._failures: Dict[str, Tuple[Exception, int]] = {}
        self._seq = itertools.count(1)

    # Setup helpers

    def add_profile(
        self,
        user_id: str,
        full_name: str,
        role: str = "corretor",
        company_id: Optional[str] = None,
    ) -> Row:
        profile = {"id": user_id, "full_name": full_name, "role": role, "company_id": company_id}
        self._profiles[user_id] = profile
        return dict(profile)

    def add_listing(self, listing_id: str, listing_type: str) -> None:
        self._listings[listing_id] = listing_type

    def add_lead(self, emit: bool = False, **row: Any) -> Row:
        """Seed a lead row; emits an INSERT only when ``emit`` is set."""
        return self._insert(row, emit=emit)

    def session(self, user_id: Optional[str]) -> InMemoryLeadStore:
        """Return a store bound to ``user_id`` (None means signed out)."""
        return InMemoryLeadStore(self, user_id)

    def change_feed(self, policy: Optional[EventPolicy] = None) -> InMemoryChangeFeed:
        """Create a change feed attached to this database.

        Args:
            policy: Optional predicate deciding which events the feed
                delivers, to simulate events suppressed by row policies
        """
        feed = InMemoryChangeFeed(policy=policy)
        self._feeds.append(feed)
        return feed

    # Out-of-session writes (another client writing to the store)

    def insert_lead(self, **row: Any) -> Row:
        return self._insert(row)

    def update_lead(self, lead_id: str, **patch: Any) -> None:
        self._update([lead_id], patch)

    def delete_lead(self, lead_id: str) -> None:
        self._delete(lead_id)

    # Testing helpers

    def get_lead(self, lead_id: str) -> Optional[Row]:
        row = self._leads.get(lead_id)
        return dict(row) if row else None

    def inject_failure(
        self,
        operation: str,
        error: Optional[Exception] = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._failures[operation] = (
            error or StoreError(f"Injected failure for {operation}", operation=operation),
            times,
        )

    # Internals shared with sessions

    def _check(self, operation: str) -> None:
        self.call_counts[operation] += 1
        failure = self._failures.get(operation)
        if failure is None:
            return
        error, remaining = failure
        if remaining <= 1:
            del self._failures[operation]
        else:
            self._failures[operation] = (error, remaining - 1)
        raise error

    def _profile(self, user_id: Optional[str]) -> Optional[Row]:
        return self._profiles.get(user_id) if user_id else None

    def _can_read(self, profile: Optional[Row], row: Row) -> bool:
        if profile is None:
            return False
        if row.get("company_id") != profile.get("company_id"):
            return False
        if Role.from_source(profile.get("role")) is Role.PRIVILEGED:
            return True
        return row.get("owner_id") == profile["id"]

    def _embed_owner(self, row: Row) -> Row:
        result = dict(row)
        owner = self._profiles.get(row.get("owner_id") or "")
        result["owner"] = (
            {"id": owner["id"], "full_name": owner["full_name"], "role": owner["role"]}
            if owner
            else None
        )
        return result

    def _emit(self, payload: Mapping[str, Any]) -> None:
        # Decoded from the transport shape, as a realtime client would receive it
        event = ChangeEvent.from_dict(payload)
        for feed in self._feeds:
            feed.publish(event)

    def _insert(self, row: Mapping[str, Any], emit: bool = True) -> Row:
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", _now_iso())
        stored.setdefault("updated_at", None)
        lead_id = str(stored["id"])
        self._leads[lead_id] = stored
        self._order[lead_id] = next(self._seq)
        if emit:
            self._emit({"eventType": "INSERT", "table": "leads", "new": copy.deepcopy(stored)})
        return dict(stored)

    def _update(self, lead_ids: Iterable[str], patch: Mapping[str, Any]) -> None:
        for lead_id in lead_ids:
            stored = self._leads.get(lead_id)
            if stored is None:
                continue
            stored.update(patch)
            stored["updated_at"] = _now_iso()
            self._emit(
                {
                    "eventType": "UPDATE",
                    "table": "leads",
                    "new": copy.deepcopy(stored),
                    "old": {"id": lead_id},
                }
            )

    def _delete(self, lead_id: str) -> None:
        if self._leads.pop(lead_id, None) is None:
            return
        self._order.pop(lead_id, None)
        self._emit({"eventType": "DELETE", "table": "leads", "old": {"id": lead_id}})


class InMemoryLeadStore:
    """LeadStore implementation bound to one user of an InMemoryDatabase."""

    def __init__(self, db: InMemoryDatabase, user_id: Optional[str]) -> None:
        self._db = db
        self.user_id = user_id

    async def _enter(self, operation: str) -> None:
        await asyncio.sleep(self._db.latency)
        self._db._check(operation)

    async def current_identity(self) -> Optional[Row]:
        await self._enter("current_identity")
        profile = self._db._profile(self.user_id)
        if profile is None:
            return None
        return {
            "user_id": profile["id"],
            "role": profile["role"],
            "company_id": profile["company_id"],
        }

    async def fetch_lead(self, lead_id: str) -> Optional[Row]:
        await self._enter("fetch_lead")
        row = self._db._leads.get(lead_id)
        if row is None or not self._db._can_read(self._db._profile(self.user_id), row):
            return None
        return self._db._embed_owner(row)

    async def fetch_leads(
        self,
        company_id: Optional[str],
        owner_id: Optional[str] = None,
    ) -> List[Row]:
        await self._enter("fetch_leads")
        profile = self._db._profile(self.user_id)
        rows = [
            row
            for row in self._db._leads.values()
            if row.get("company_id") == company_id
            and (owner_id is None or row.get("owner_id") == owner_id)
            and self._db._can_read(profile, row)
        ]
        rows.sort(key=lambda r: self._db._order[str(r["id"])], reverse=True)
        return [self._db._embed_owner(row) for row in rows]

    async def fetch_owner(self, owner_id: str) -> Optional[Row]:
        await self._enter("fetch_owner")
        profile = self._db._profile(owner_id)
        if profile is None:
            return None
        return {"id": profile["id"], "full_name": profile["full_name"], "role": profile["role"]}

    async def lookup_listing_types(self, listing_ids: Iterable[str]) -> Dict[str, str]:
        await self._enter("lookup_listing_types")
        return {
            listing_id: self._db._listings[listing_id]
            for listing_id in listing_ids
            if listing_id in self._db._listings
        }

    async def insert_lead(self, row: Row) -> Row:
        await self._enter("insert_lead")
        stored = self._db._insert(row)
        return self._db._embed_owner(stored)

    async def update_leads(self, lead_ids: List[str], patch: Row) -> None:
        await self._enter("update_leads")
        self._db._update(lead_ids, patch)

    async def delete_lead(self, lead_id: str) -> None:
        await self._enter("delete_lead")
        self._db._delete(lead_id)


class InMemoryChangeFeed:
    """ChangeFeed implementation backed by per-subscription queues.

    Attributes:
        policy: Optional predicate filtering delivered events
        fail_subscribe: When set, subscribing raises this error
    """

    def __init__(self, policy: Optional[EventPolicy] = None) -> None:
        self.policy = policy
        self.fail_subscribe: Optional[Exception] = None
        self._subscriptions: Dict[str, Tuple[str, asyncio.Queue]] = {}

    async def subscribe(self, table: str, subscription_id: str) -> AsyncIterator[ChangeEvent]:
        if self.fail_subscribe is not None:
            raise TransportError(str(self.fail_subscribe), channel=subscription_id)
        if subscription_id in self._subscriptions:
            raise TransportError("Subscription id already in use", channel=subscription_id)

        queue: asyncio.Queue = asyncio.Queue()
        self._subscriptions[subscription_id] = (table, queue)
        logger.debug("Change feed subscribed", extra={"subscription_id": subscription_id})

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            self._subscriptions.pop(subscription_id, None)

    async def unsubscribe(self, subscription_id: str) -> None:
        entry = self._subscriptions.pop(subscription_id, None)
        if entry is not None:
            entry[1].put_nowait(None)

    def publish(self, event: ChangeEvent) -> None:
        """Deliver an event to every matching subscription."""
        if self.policy is not None and not self.policy(event):
            return
        for table, queue in list(self._subscriptions.values()):
            if table == event.table:
                queue.put_nowait(event)

    @property
    def active_subscriptions(self) -> List[str]:
        return list(self._subscriptions)


class InMemoryBroadcastChannel:
    """One session's handle on a named channel of an InMemoryBroadcastHub."""

    def __init__(self, hub: InMemoryBroadcastHub, name: str) -> None:
        self.name = name
        self.closed = False
        self._hub = hub
        self._handlers: Dict[str, List[MessageHandler]] = defaultdict(list)

    async def publish(self, event: str, payload: Mapping[str, Any]) -> None:
        if self.closed:
            raise TransportError("Channel is closed", channel=self.name)
        await asyncio.sleep(0)
        if self._hub.fail_publish is not None:
            raise TransportError(str(self._hub.fail_publish), channel=self.name)
        self._hub._deliver(self, event, dict(payload))

    def subscribe(self, event: str, handler: MessageHandler) -> None:
        self._handlers[event].append(handler)

    async def close(self) -> None:
        self.closed = True
        self._handlers.clear()
        self._hub._detach(self)

    def _dispatch(self, event: str, payload: Mapping[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        for handler in list(self._handlers.get(event, ())):
            loop.call_soon(handler, dict(payload))


class InMemoryBroadcastHub:
    """BroadcastTransport shared by every session in a test.

    Attributes:
        published: (channel, event, payload) for every successful publish
        fail_open: When set, opening a channel raises this error
        fail_publish: When set, publishing raises this error
    """

    def __init__(self) -> None:
        self.published: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail_open: Optional[Exception] = None
        self.fail_publish: Optional[Exception] = None
        self._channels: Dict[str, List[InMemoryBroadcastChannel]] = defaultdict(list)

    def channel(self, name: str) -> InMemoryBroadcastChannel:
        if self.fail_open is not None:
            raise TransportError(str(self.fail_open), channel=name)
        ch = InMemoryBroadcastChannel(self, name)
        self._channels[name].append(ch)
        return ch

    def open_channels(self, name: str) -> int:
        return len(self._channels.get(name, ()))

    def _detach(self, ch: InMemoryBroadcastChannel) -> None:
        members = self._channels.get(ch.name, [])
        if ch in members:
            members.remove(ch)

    def _deliver(
        self,
        sender: InMemoryBroadcastChannel,
        event: str,
        payload: Dict[str, Any],
    ) -> None:
        self.published.append((sender.name, event, payload))
        for ch in list(self._channels.get(sender.name, ())):
            ch._dispatch(event, payload)


class InMemoryAuditSink:
    """AuditSink collecting records in a list.

    Attributes:
        records: Every recorded audit entry
        fail: When set, record() raises this error
    """

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []
        self.fail: Optional[Exception] = None

    async def record(
        self,
        action: str,
        resource: str,
        resource_id: Optional[str],
        meta: Optional[Mapping[str, Any]] = None,
    ) -> None:
        await asyncio.sleep(0)
        if self.fail is not None:
            raise self.fail
        self.records.append(
            {
                "action": action,
                "resource": resource,
                "resource_id": resource_id,
                "meta": dict(meta or {}),
            }
        )

    def actions(self) -> List[str]:
        return [r["action"] for r in self.records]


class InMemoryHostSignals:
    """HostSignals implementation that tests drive with emit()."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[SignalListener]] = defaultdict(list)

    def add_listener(self, event: str, listener: SignalListener) -> None:
        self._listeners[event].append(listener)

    def remove_listener(self, event: str, listener: SignalListener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            listener(*args)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))
