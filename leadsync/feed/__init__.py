"""
External collaborator interfaces for LeadSync.

This module provides the protocols the engine consumes:
- LeadStore (point/filtered reads, writes, identity lookup)
- ChangeFeed (row change subscriptions)
- BroadcastTransport / BroadcastChannel (named-channel pub/sub)
- AuditSink, HostSignals

and in-memory implementations of each for tests and local development.

Invariants:
    - The engine depends only on the protocols, never on an adapter
    - In-memory implementations honor the same delivery semantics

How to change safely:
    - New adapters must implement the protocols in base.py
    - Extend the in-memory implementations alongside protocol changes
"""

from .base import (
    FOCUS,
    VISIBILITY_CHANGE,
    AuditSink,
    BroadcastChannel,
    BroadcastTransport,
    ChangeFeed,
    HostSignals,
    LeadStore,
)
from .memory import (
    InMemoryAuditSink,
    InMemoryBroadcastHub,
    InMemoryChangeFeed,
    InMemoryDatabase,
    InMemoryHostSignals,
    InMemoryLeadStore,
)

__all__ = [
    # Protocols
    "LeadStore",
    "ChangeFeed",
    "BroadcastTransport",
    "BroadcastChannel",
    "AuditSink",
    "HostSignals",
    "FOCUS",
    "VISIBILITY_CHANGE",
    # In-memory implementations
    "InMemoryDatabase",
    "InMemoryLeadStore",
    "InMemoryChangeFeed",
    "InMemoryBroadcastHub",
    "InMemoryAuditSink",
    "InMemoryHostSignals",
]
