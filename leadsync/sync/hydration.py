"""
Single-flight cache of owner display attributes.

Change events carry only an owner id. The cache resolves ids to
OwnerDisplayInfo with one point lookup per owner, no matter how many
events (or concurrent callers) reference the same owner.

Invariants:
    - At most one lookup in flight per owner id
    - Entries never expire; the cache lives as long as its engine
    - Failed or empty lookups are not cached and are retried on the next ensure()
    - A pending owner id is removed when its lookup settles, success or not

How to change safely:
    - The patch callback runs on the event loop; it must not block
    - Seed with put() whenever a read already returned joined owner data
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from ..models import Lead, OwnerDisplayInfo
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

OwnerLookup = Callable[[str], Awaitable[Optional[OwnerDisplayInfo]]]
PatchCallback = Callable[[str, OwnerDisplayInfo], None]


class HydrationCache:
    """Memoized, single-flight owner-id -> OwnerDisplayInfo lookup.

    Attributes:
        lookups: Number of underlying lookups performed
        hits: ensure() calls answered from the cache
        coalesced: ensure() calls that joined an in-flight lookup

    Example:
        >>> cache = HydrationCache(lookup=fetch_owner, on_resolved=patch_lead)
        >>> await cache.ensure("u2", record_id="l1")
        >>> cache.get("u2").display_name
        'Bruno'
    """

    def __init__(
        self,
        lookup: OwnerLookup,
        on_resolved: Optional[PatchCallback] = None,
    ) -> None:
        self._lookup = lookup
        self._on_resolved = on_resolved
        self._cache: Dict[str, OwnerDisplayInfo] = {}
        # PendingFetchSet: owner id -> lead ids to patch once resolved
        self._pending: Dict[str, Set[str]] = {}
        self.lookups = 0
        self.hits = 0
        self.coalesced = 0

    def get(self, owner_id: Optional[str]) -> Optional[OwnerDisplayInfo]:
        """Cache-only read."""
        if not owner_id:
            return None
        return self._cache.get(owner_id)

    def put(self, info: OwnerDisplayInfo) -> None:
        """Seed an entry from data a read already returned."""
        self._cache[info.owner_id] = info

    def attach(self, lead: Lead, tasks: BackgroundTasks) -> Lead:
        """Return ``lead`` with owner info from the cache.

        Joined owner data already on the lead seeds the cache; on a miss a
        background ensure() is scheduled that patches the lead later.
        """
        if not lead.owner_id:
            return lead
        if lead.owner is not None and lead.owner.owner_id == lead.owner_id:
            self.put(lead.owner)
            return lead
        cached = self._cache.get(lead.owner_id)
        if cached is not None:
            logger.debug("hydrate-owner hit", extra={"owner_id": lead.owner_id})
            return lead.with_owner(cached)
        tasks.spawn(self.ensure(lead.owner_id, lead.id), name=f"hydrate:{lead.owner_id}")
        return lead

    def is_pending(self, owner_id: str) -> bool:
        return owner_id in self._pending

    def __len__(self) -> int:
        return len(self._cache)

    async def ensure(
        self,
        owner_id: Optional[str],
        record_id: Optional[str] = None,
    ) -> Optional[OwnerDisplayInfo]:
        """Make sure ``owner_id`` is cached, looking it up at most once.

        Args:
            owner_id: Owner to resolve (no-op when empty)
            record_id: Lead to patch with the resolved info

        Returns:
            The cached info, or None if still in flight elsewhere or the
            lookup failed
        """
        if not owner_id:
            return None

        cached = self._cache.get(owner_id)
        if cached is not None:
            self.hits += 1
            return cached

        waiting = self._pending.get(owner_id)
        if waiting is not None:
            self.coalesced += 1
            if record_id:
                waiting.add(record_id)
            return None

        targets: Set[str] = {record_id} if record_id else set()
        self._pending[owner_id] = targets
        self.lookups += 1
        logger.debug("hydrate-owner miss, fetching", extra={"owner_id": owner_id})

        try:
            info = await self._lookup(owner_id)
        except Exception as e:
            logger.warning(
                f"Owner hydration failed: {e}",
                extra={"owner_id": owner_id},
            )
            return None
        finally:
            self._pending.pop(owner_id, None)

        if info is None:
            logger.debug("hydrate-owner not found", extra={"owner_id": owner_id})
            return None

        self._cache[owner_id] = info
        if self._on_resolved is not None:
            for target in sorted(targets):
                self._on_resolved(target, info)
        return info
