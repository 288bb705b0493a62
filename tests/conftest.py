"""
Shared fixtures for LeadSync tests.

The default company ``c1`` has one manager (privileged) and two brokers
(restricted); ``c2`` has a single admin.
"""

import logging

import pytest

from leadsync.config import SyncConfig
from leadsync.feed import (
    InMemoryAuditSink,
    InMemoryBroadcastHub,
    InMemoryDatabase,
    InMemoryHostSignals,
)


@pytest.fixture
def db():
    """Create an in-memory database with profiles for two companies."""
    database = InMemoryDatabase()
    database.add_profile("manager", "Marina Gestora", role="gestor", company_id="c1")
    database.add_profile("u1", "Ana Corretora", role="corretor", company_id="c1")
    database.add_profile("u2", "Bruno Corretor", role="corretor", company_id="c1")
    database.add_profile("other", "Olga Admin", role="admin", company_id="c2")
    return database


@pytest.fixture
def hub():
    return InMemoryBroadcastHub()


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest.fixture
def signals():
    return InMemoryHostSignals()


@pytest.fixture
def config():
    """Engine configuration with a short coalesce window."""
    return SyncConfig(coalesce_window_ms=10, reconcile_interval_seconds=60.0, log_format="text")


@pytest.fixture
def restore_logging():
    """Restore root logger state after a test reconfigures logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    sync_level = logging.getLogger("leadsync.sync").level
    yield
    root.handlers = handlers
    root.setLevel(level)
    logging.getLogger("leadsync.sync").setLevel(sync_level)
