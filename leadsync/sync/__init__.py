"""
Synchronization engine for scoped lead records.

Components:
- LeadCollection: visibility-filtered snapshot of the session's leads
- Coalescer: per-record debounce for UPDATE bursts
- HydrationCache: single-flight owner display lookups
- ChangeStreamConsumer: applies change-feed events
- BroadcastSideChannel: company-wide ownership transfer notices
- ReconciliationLoop: backstop refetch for restricted sessions
- MutationApi: optimistic writes with audit
- LeadSyncEngine: lifecycle wiring for one mounted session
"""

from .besteffort import BestEffortResult, best_effort
from .broadcast import BroadcastSideChannel
from .coalescer import Coalescer
from .collection import LeadCollection
from .consumer import ChangeStreamConsumer
from .engine import LeadSyncEngine, new_subscription_id
from .hydration import HydrationCache
from .mutations import MutationApi
from .reconcile import ReconciliationLoop
from .tasks import BackgroundTasks
from .transfer import ownership_changed, transfer_notice
from .visibility import filter_visible, is_visible

__all__ = [
    "LeadSyncEngine",
    "new_subscription_id",
    "LeadCollection",
    "Coalescer",
    "HydrationCache",
    "ChangeStreamConsumer",
    "BroadcastSideChannel",
    "ReconciliationLoop",
    "MutationApi",
    "BackgroundTasks",
    "BestEffortResult",
    "best_effort",
    "ownership_changed",
    "transfer_notice",
    "is_visible",
    "filter_visible",
]
