"""
Unit tests for the in-memory collaborators.

Tests cover:
- Row-level read policies
- Change events emitted by writes
- Failure injection and counters
- Broadcast hub delivery
"""

import asyncio

import pytest

from leadsync.errors import StoreError, TransportError
from leadsync.models import ChangeType


class TestInMemoryStore:
    """Tests for InMemoryDatabase / InMemoryLeadStore."""

    @pytest.fixture
    def seeded(self, db):
        db.add_lead(id="l1", owner_id="u1", company_id="c1")
        db.add_lead(id="l2", owner_id="u2", company_id="c1")
        db.add_lead(id="l3", owner_id="other", company_id="c2")
        return db

    @pytest.mark.asyncio
    async def test_identity(self, seeded):
        assert await seeded.session("u1").current_identity() == {
            "user_id": "u1",
            "role": "corretor",
            "company_id": "c1",
        }
        assert await seeded.session(None).current_identity() is None

    @pytest.mark.asyncio
    async def test_restricted_reads_own_rows(self, seeded):
        store = seeded.session("u1")

        rows = await store.fetch_leads("c1")

        assert [r["id"] for r in rows] == ["l1"]
        assert rows[0]["owner"]["full_name"] == "Ana Corretora"
        assert await store.fetch_lead("l2") is None

    @pytest.mark.asyncio
    async def test_privileged_reads_company_newest_first(self, seeded):
        rows = await seeded.session("manager").fetch_leads("c1")

        assert [r["id"] for r in rows] == ["l2", "l1"]

    @pytest.mark.asyncio
    async def test_owner_filter(self, seeded):
        rows = await seeded.session("manager").fetch_leads("c1", owner_id="u2")

        assert [r["id"] for r in rows] == ["l2"]

    @pytest.mark.asyncio
    async def test_listing_lookup(self, seeded):
        seeded.add_listing("apt-1", "Apartamento")

        found = await seeded.session("u1").lookup_listing_types(["apt-1", "missing"])

        assert found == {"apt-1": "Apartamento"}

    @pytest.mark.asyncio
    async def test_inject_failure(self, seeded):
        store = seeded.session("u1")
        seeded.inject_failure("fetch_leads", times=2)

        for _ in range(2):
            with pytest.raises(StoreError):
                await store.fetch_leads("c1")
        await store.fetch_leads("c1")

        assert seeded.call_counts["fetch_leads"] == 3


class TestInMemoryChangeFeed:
    """Tests for change events emitted by database writes."""

    @pytest.mark.asyncio
    async def test_writes_emit_events(self, db):
        feed = db.change_feed()
        received = []

        async def consume():
            async for event in feed.subscribe("leads", "sub-1"):
                received.append(event)

        task = asyncio.get_running_loop().create_task(consume())
        await asyncio.sleep(0)

        db.insert_lead(id="l1", owner_id="u1", company_id="c1")
        db.update_lead("l1", owner_id="u2")
        db.delete_lead("l1")
        await asyncio.sleep(0.01)
        await feed.unsubscribe("sub-1")
        await asyncio.wait_for(task, timeout=1.0)

        assert [e.event_type for e in received] == [
            ChangeType.INSERT,
            ChangeType.UPDATE,
            ChangeType.DELETE,
        ]
        assert received[1].old == {"id": "l1"}
        assert received[1].new["owner_id"] == "u2"

    @pytest.mark.asyncio
    async def test_policy_filters_events(self, db):
        feed = db.change_feed(policy=lambda event: event.event_type is not ChangeType.UPDATE)
        received = []

        async def consume():
            async for event in feed.subscribe("leads", "sub-1"):
                received.append(event.event_type)

        task = asyncio.get_running_loop().create_task(consume())
        await asyncio.sleep(0)

        db.insert_lead(id="l1", owner_id="u1", company_id="c1")
        db.update_lead("l1", stage="Contrato")
        await asyncio.sleep(0.01)
        await feed.unsubscribe("sub-1")
        await asyncio.wait_for(task, timeout=1.0)

        assert received == [ChangeType.INSERT]

    @pytest.mark.asyncio
    async def test_duplicate_subscription_id(self, db):
        feed = db.change_feed()
        async def first_event():
            async for event in feed.subscribe("leads", "sub-1"):
                return event
            return None

        task = asyncio.get_running_loop().create_task(first_event())
        await asyncio.sleep(0)

        with pytest.raises(TransportError):
            await feed.subscribe("leads", "sub-1").__anext__()

        await feed.unsubscribe("sub-1")
        assert await asyncio.wait_for(task, timeout=1.0) is None


class TestInMemoryBroadcast:
    """Tests for the broadcast hub and audit sink."""

    @pytest.mark.asyncio
    async def test_delivery_includes_sender(self, hub):
        got_a, got_b = [], []
        a = hub.channel("company_c1_leads")
        b = hub.channel("company_c1_leads")
        other = hub.channel("company_c2_leads")
        a.subscribe("lead_transfer", got_a.append)
        b.subscribe("lead_transfer", got_b.append)
        other.subscribe("lead_transfer", got_a.append)

        await a.publish("lead_transfer", {"lead_id": "l1"})
        await asyncio.sleep(0)

        assert got_a == [{"lead_id": "l1"}]
        assert got_b == [{"lead_id": "l1"}]

    @pytest.mark.asyncio
    async def test_closed_channel_rejects_publish(self, hub):
        channel = hub.channel("company_c1_leads")
        await channel.close()

        with pytest.raises(TransportError):
            await channel.publish("lead_transfer", {})

    @pytest.mark.asyncio
    async def test_audit_sink(self, audit):
        await audit.record("lead.deleted", "lead", "l1")

        assert audit.records == [
            {"action": "lead.deleted", "resource": "lead", "resource_id": "l1", "meta": {}}
        ]
