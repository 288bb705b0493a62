"""
Local lead collection with whole-value snapshot replacement.

The collection is the engine's in-memory view of the leads a session may
see. Readers (rendering code) only ever observe complete snapshots: every
write builds a new tuple, filters it for the bound identity and swaps it
in with a single assignment.

Invariants:
    - The snapshot is a tuple and is never mutated in place
    - Every write passes through the visibility filter
    - Newest-known inserts come first
    - version increases by one for every write that changes the snapshot

How to change safely:
    - New write operations must go through _commit()
    - Listeners run synchronously; keep them cheap and non-raising
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..models import Identity, Lead, LeadStage
from .visibility import filter_visible

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[Tuple[Lead, ...]], None]


class LeadCollection:
    """Visibility-filtered, snapshot-replaced sequence of leads.

    Attributes:
        identity: Identity whose visibility rules filter every write
        version: Number of applied state changes

    Example:
        >>> leads = LeadCollection(identity)
        >>> leads.upsert(lead)
        >>> leads.snapshot
        (Lead(id='l1', ...),)
    """

    def __init__(self, identity: Identity) -> None:
        self.identity = identity
        self.version = 0
        self._snapshot: Tuple[Lead, ...] = ()
        self._listeners: List[SnapshotListener] = []

    @property
    def snapshot(self) -> Tuple[Lead, ...]:
        return self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, lead_id: object) -> bool:
        return any(lead.id == lead_id for lead in self._snapshot)

    def get(self, lead_id: str) -> Optional[Lead]:
        for lead in self._snapshot:
            if lead.id == lead_id:
                return lead
        return None

    def ids(self) -> List[str]:
        return [lead.id for lead in self._snapshot]

    # Listeners

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a snapshot listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # Writes

    def rebind(self, identity: Identity) -> None:
        """Switch to a new identity and re-filter the current snapshot."""
        self.identity = identity
        self._commit(self._snapshot)

    def replace_all(self, leads: Iterable[Lead]) -> None:
        """Replace the collection, dropping duplicate ids (first wins)."""
        seen = set()
        unique = []
        for lead in leads:
            if lead.id not in seen:
                seen.add(lead.id)
                unique.append(lead)
        self._commit(tuple(unique))

    def insert_head(self, lead: Lead) -> None:
        """Insert at the head unless the id is already known."""
        if lead.id in self:
            return
        self._commit((lead,) + self._snapshot)

    def upsert(self, lead: Lead) -> None:
        """Replace the lead in place, or insert it at the head if unknown."""
        if lead.id in self:
            self._commit(tuple(lead if l.id == lead.id else l for l in self._snapshot))
        else:
            self._commit((lead,) + self._snapshot)

    def remove(self, lead_id: str) -> bool:
        """Remove a lead; returns whether it was present."""
        if lead_id not in self:
            return False
        self._commit(tuple(l for l in self._snapshot if l.id != lead_id))
        return True

    def patch(self, lead_id: str, fn: Callable[[Lead], Lead]) -> bool:
        """Replace one lead with ``fn(lead)``; returns whether it was present."""
        if lead_id not in self:
            return False
        self._commit(tuple(fn(l) if l.id == lead_id else l for l in self._snapshot))
        return True

    def patch_many(self, lead_ids: Iterable[str], fn: Callable[[Lead], Lead]) -> int:
        targets = set(lead_ids)
        hits = sum(1 for l in self._snapshot if l.id in targets)
        if hits:
            self._commit(tuple(fn(l) if l.id in targets else l for l in self._snapshot))
        return hits

    def _commit(self, leads: Tuple[Lead, ...]) -> None:
        next_snapshot = filter_visible(leads, self.identity)
        dropped = len(leads) - len(next_snapshot)
        if dropped:
            logger.debug(
                "Visibility filter dropped leads",
                extra={"dropped": dropped, "user_id": self.identity.user_id},
            )
        if next_snapshot == self._snapshot:
            return
        self._snapshot = next_snapshot
        self.version += 1
        for listener in list(self._listeners):
            listener(next_snapshot)

    # Derived read-only views

    def by_stage(self, stage: LeadStage) -> Tuple[Lead, ...]:
        return tuple(lead for lead in self._snapshot if lead.stage is stage)

    @property
    def total_count(self) -> int:
        return len(self._snapshot)

    @property
    def total_value(self) -> float:
        return sum(lead.estimated_value or 0.0 for lead in self._snapshot)

    def stage_counts(self) -> Dict[LeadStage, int]:
        """Count leads per stage, in board order, omitting empty stages."""
        counts: Dict[LeadStage, int] = {}
        for stage in LeadStage:
            n = sum(1 for lead in self._snapshot if lead.stage is stage)
            if n:
                counts[stage] = n
        return counts
