"""
Multi-session integration tests for ownership transfers and convergence.

Each session runs its own LeadSyncEngine against a shared in-memory store
and broadcast hub, the way separate browser tabs of different users would.

Tests cover:
- Reassignment by a manager reaching old and new owners
- Convergence when the change feed withholds events
- Visibility invariant under random write sequences
- Reconciliation as the backstop for missed events
"""

import random

import pytest

from leadsync import LeadSyncEngine, SyncConfig
from leadsync.feed import FOCUS
from leadsync.models import ChangeType
from tests.helpers import wait_until


def ids(engine):
    return sorted(lead.id for lead in engine.leads)


def no_updates(event):
    """Feed policy that withholds every UPDATE event."""
    return event.event_type is not ChangeType.UPDATE


@pytest.fixture
async def sessions(db, hub, audit, signals, config):
    """Factory for one engine per user; all are stopped afterwards."""
    engines = []

    async def mount(user_id, policy=None, config_override=None, host=None):
        engine = LeadSyncEngine(
            db.session(user_id),
            db.change_feed(policy=policy),
            hub,
            audit=audit,
            signals=host or signals,
            config=config_override or config,
        )
        engines.append(engine)
        await engine.start()
        return engine

    yield mount

    for engine in engines:
        await engine.stop()


class TestManagerReassignment:
    """A privileged session reassigns a lead between brokers."""

    @pytest.mark.asyncio
    async def test_old_owner_loses_new_owner_gains(self, db, sessions):
        db.add_lead(id="1", owner_id="u1", company_id="c1", name="Carla")
        manager = await sessions("manager")
        u1 = await sessions("u1")
        u2 = await sessions("u2")
        assert ids(u1) == ["1"]
        assert ids(u2) == []

        await manager.bulk_reassign(["1"], "u2")

        await wait_until(lambda: ids(u1) == [], message="u1 still holds the lead")
        await wait_until(lambda: ids(u2) == ["1"], message="u2 never received the lead")
        await u2.settle()

        assert u2.leads[0].owner_id == "u2"
        assert u2.leads[0].owner.display_name == "Bruno Corretor"
        assert manager.leads[0].owner_id == "u2"

    @pytest.mark.asyncio
    async def test_broadcast_alone_converges(self, db, sessions):
        """Brokers whose feed withholds UPDATEs still converge via the side-channel."""
        db.add_lead(id="1", owner_id="u1", company_id="c1")
        manager = await sessions("manager")
        u1 = await sessions("u1", policy=no_updates)
        u2 = await sessions("u2", policy=no_updates)

        await manager.update("1", {"owner_id": "u2"})

        await wait_until(lambda: ids(u1) == [])
        await wait_until(lambda: ids(u2) == ["1"])
        assert u2.stats["broadcast_received"] >= 1

    @pytest.mark.asyncio
    async def test_manager_observing_remote_transfer_republishes(self, db, hub, sessions):
        """A transfer written by another client is republished by a manager session."""
        db.add_lead(id="1", owner_id="u1", company_id="c1")
        await sessions("manager")
        u2 = await sessions("u2", policy=no_updates)

        db.update_lead("1", owner_id="u2")

        await wait_until(lambda: ids(u2) == ["1"])
        assert [p["lead_id"] for _, _, p in hub.published] == ["1"]

    @pytest.mark.asyncio
    async def test_assigned_create_reaches_assignee(self, db, sessions):
        manager = await sessions("manager")
        u2 = await sessions("u2", policy=no_updates)

        lead = await manager.create({"name": "Gina", "stage": "Qualificado"}, owner_override="u2")

        await wait_until(lambda: ids(u2) == [lead.id])
        assert ids(manager) == [lead.id]

    @pytest.mark.asyncio
    async def test_notice_for_unseen_record_on_manager(self, db, sessions):
        """A manager that missed the INSERT still picks the record up from a notice."""
        manager = await sessions("manager", policy=lambda event: False)
        u1 = await sessions("u1")

        lead = await u1.create({"name": "Hugo"}, owner_override="u2")

        await wait_until(lambda: ids(manager) == [lead.id])
        assert ids(u1) == []


class TestBrokerReassignment:
    """A restricted session hands a lead to a colleague."""

    @pytest.mark.asyncio
    async def test_hand_off(self, db, sessions):
        db.add_lead(id="1", owner_id="u1", company_id="c1")
        u1 = await sessions("u1")
        u2 = await sessions("u2", policy=no_updates)

        await u1.update("1", {"owner_id": "u2"})

        assert ids(u1) == []
        await wait_until(lambda: ids(u2) == ["1"])


class TestConvergence:
    """Visibility and eventual consistency properties."""

    @pytest.mark.asyncio
    async def test_visibility_invariant_under_random_writes(self, db, sessions):
        rng = random.Random(20240917)
        owners = ["u1", "u2", None]
        for i in range(10):
            db.add_lead(id=f"l{i}", owner_id=rng.choice(owners), company_id="c1")
        u1 = await sessions("u1")

        for _ in range(60):
            lead_id = f"l{rng.randrange(12)}"
            action = rng.random()
            if action < 0.6 and db.get_lead(lead_id):
                db.update_lead(lead_id, owner_id=rng.choice(owners))
            elif action < 0.8 and db.get_lead(lead_id):
                db.delete_lead(lead_id)
            elif not db.get_lead(lead_id):
                db.insert_lead(id=lead_id, owner_id=rng.choice(owners), company_id="c1")
            assert all(lead.owner_id == "u1" for lead in u1.leads)

        expected = sorted(
            lead_id
            for lead_id in (f"l{i}" for i in range(12))
            if (db.get_lead(lead_id) or {}).get("owner_id") == "u1"
        )
        await wait_until(lambda: ids(u1) == expected, message="u1 did not converge")
        await u1.settle()

        assert all(lead.owner_id == "u1" for lead in u1.leads)
        assert len(u1.leads) == len({lead.id for lead in u1.leads})

    @pytest.mark.asyncio
    async def test_interval_reconciliation_recovers_missed_events(self, db, sessions):
        db.add_lead(id="1", owner_id="u1", company_id="c1")
        db.add_lead(id="2", owner_id="u2", company_id="c1")
        fast = SyncConfig(coalesce_window_ms=10, reconcile_interval_seconds=0.05, log_format="text")
        u1 = await sessions("u1", policy=lambda event: False, config_override=fast)

        db.update_lead("2", owner_id="u1")
        db.insert_lead(id="3", owner_id="u1", company_id="c1")
        db.delete_lead("1")

        await wait_until(lambda: ids(u1) == ["2", "3"], message="reconciliation did not catch up")
        assert u1.stats["reconcile_runs"] >= 1
        assert len(u1.leads) == len({lead.id for lead in u1.leads})

    @pytest.mark.asyncio
    async def test_focus_reconciles_restricted_only(self, db, sessions, signals):
        db.add_lead(id="1", owner_id="u1", company_id="c1")
        u1 = await sessions("u1", policy=lambda event: False)
        manager = await sessions("manager", policy=lambda event: False)

        db.insert_lead(id="2", owner_id="u1", company_id="c1")
        signals.emit(FOCUS)

        await wait_until(lambda: ids(u1) == ["1", "2"])
        await manager.settle()
        assert ids(manager) == ["1"]
        assert manager.stats["reconcile_runs"] == 0
