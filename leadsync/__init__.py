"""
LeadSync - real-time, visibility-scoped lead synchronization.

Keeps an in-memory view of a company's leads fresh for one session:
restricted users (brokers) see only the leads they own, privileged users
(managers, admins) see every lead of their company. Updates arrive through
a row change feed, ownership transfers through a per-company broadcast
channel, and restricted sessions periodically reconcile with a full fetch.

Example:
    >>> from leadsync import LeadSyncEngine, SyncConfig
    >>> async with LeadSyncEngine(store, feed, broadcast) as engine:
    ...     await engine.bulk_reassign(["l1"], "u2")
"""

from .config import SyncConfig, setup_logging
from .errors import (
    LeadSyncError,
    MutationError,
    NotAuthenticatedError,
    PayloadError,
    StoreError,
    TransportError,
)
from .models import (
    ChangeEvent,
    ChangeType,
    Identity,
    Lead,
    LeadStage,
    OwnerDisplayInfo,
    Role,
    TransferNotice,
)
from .sync import LeadSyncEngine

__version__ = "1.0.0"

__all__ = [
    "LeadSyncEngine",
    "SyncConfig",
    "setup_logging",
    # Models
    "Lead",
    "LeadStage",
    "Identity",
    "Role",
    "OwnerDisplayInfo",
    "ChangeEvent",
    "ChangeType",
    "TransferNotice",
    # Errors
    "LeadSyncError",
    "NotAuthenticatedError",
    "PayloadError",
    "StoreError",
    "TransportError",
    "MutationError",
]
