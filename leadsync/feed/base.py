"""
Protocols for the engine's external collaborators.

The engine never talks to a concrete database, realtime service or browser
host. It depends on these protocols instead:
- LeadStore: point/filtered reads, writes and identity lookup
- ChangeFeed: row-level INSERT/UPDATE/DELETE notifications for a table
- BroadcastTransport / BroadcastChannel: named-channel pub/sub
- AuditSink: fire-and-forget audit records
- HostSignals: focus / visibility notifications from the embedding UI

Invariants:
    - Store methods raise StoreError on failure, never return partial writes
    - ChangeFeed.subscribe yields events until unsubscribed or cancelled
    - Broadcast delivery is best-effort and may include the sender
    - Rows are plain mappings; conversion to Lead happens in the engine

How to change safely:
    - Protocol changes require updating feed/memory.py and any adapters
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

from ..models import ChangeEvent

Row = Dict[str, Any]
MessageHandler = Callable[[Mapping[str, Any]], None]
SignalListener = Callable[..., None]

FOCUS = "focus"
VISIBILITY_CHANGE = "visibilitychange"


@runtime_checkable
class LeadStore(Protocol):
    """Backing store bound to the current session.

    Reads are subject to the store's own row-level policies; the engine
    still filters everything it receives.
    """

    @abstractmethod
    async def current_identity(self) -> Optional[Row]:
        """Return ``{user_id, role, company_id}`` or None if signed out."""
        ...

    @abstractmethod
    async def fetch_lead(self, lead_id: str) -> Optional[Row]:
        """Point read by id, with the owner profile embedded as ``owner``."""
        ...

    @abstractmethod
    async def fetch_leads(
        self,
        company_id: Optional[str],
        owner_id: Optional[str] = None,
    ) -> List[Row]:
        """Filtered read, newest first, with owners embedded."""
        ...

    @abstractmethod
    async def fetch_owner(self, owner_id: str) -> Optional[Row]:
        """Point read of a profile: ``{id, full_name, role}``."""
        ...

    @abstractmethod
    async def lookup_listing_types(self, listing_ids: Iterable[str]) -> Dict[str, str]:
        """Batch lookup of catalog item types keyed by listing id."""
        ...

    @abstractmethod
    async def insert_lead(self, row: Row) -> Row:
        """Insert and return the stored row (id assigned, owner embedded)."""
        ...

    @abstractmethod
    async def update_leads(self, lead_ids: List[str], patch: Row) -> None:
        """Apply the same patch to every listed lead."""
        ...

    @abstractmethod
    async def delete_lead(self, lead_id: str) -> None:
        ...


@runtime_checkable
class ChangeFeed(Protocol):
    """Row change subscription for one table.

    Example:
        >>> async for event in feed.subscribe("leads", "leads_changes_1_ab"):
        ...     handle(event)
    """

    @abstractmethod
    def subscribe(self, table: str, subscription_id: str) -> AsyncIterator[ChangeEvent]:
        """Yield change events for ``table`` until unsubscribed.

        Raises:
            TransportError: If the subscription cannot be established
        """
        ...

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> None:
        """Release a subscription. Unknown ids are ignored."""
        ...


@runtime_checkable
class BroadcastChannel(Protocol):
    """A named pub/sub channel."""

    name: str

    @abstractmethod
    async def publish(self, event: str, payload: Mapping[str, Any]) -> None:
        """Send a message.

        Raises:
            TransportError: If the message could not be sent
        """
        ...

    @abstractmethod
    def subscribe(self, event: str, handler: MessageHandler) -> None:
        """Register a handler for messages with the given event name."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Unsubscribe all handlers and release the channel."""
        ...


@runtime_checkable
class BroadcastTransport(Protocol):
    @abstractmethod
    def channel(self, name: str) -> BroadcastChannel:
        """Open (or join) a named channel.

        Raises:
            TransportError: If the channel cannot be opened
        """
        ...


@runtime_checkable
class AuditSink(Protocol):
    @abstractmethod
    async def record(
        self,
        action: str,
        resource: str,
        resource_id: Optional[str],
        meta: Optional[Mapping[str, Any]] = None,
    ) -> None:
        ...


@runtime_checkable
class HostSignals(Protocol):
    """Focus and visibility notifications from the embedding UI.

    Listeners for ``focus`` are called with no arguments; listeners for
    ``visibilitychange`` receive the new state (``"visible"``/``"hidden"``).
    """

    @abstractmethod
    def add_listener(self, event: str, listener: SignalListener) -> None:
        ...

    @abstractmethod
    def remove_listener(self, event: str, listener: SignalListener) -> None:
        ...
