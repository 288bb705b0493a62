#!/usr/bin/env python3
"""
LeadSync Demo - Shows an ownership transfer reaching a broker's board.

A manager (privileged) and two brokers (restricted) each run their own
engine against the same in-memory store. The manager reassigns a lead
from one broker to the other; the old owner loses it and the new owner
gains it without a full refetch.
"""

import asyncio

from leadsync import LeadStage, LeadSyncEngine, SyncConfig, setup_logging
from leadsync.feed import (
    InMemoryAuditSink,
    InMemoryBroadcastHub,
    InMemoryDatabase,
    InMemoryHostSignals,
)


def show(title, engine):
    print(f"  {title}: {len(engine.leads)} lead(s)")
    for lead in engine.leads:
        owner = lead.owner.display_name if lead.owner else "-"
        print(f"    - {lead.name:<16} {lead.stage.value:<16} owner={owner}")


async def main():
    print("=" * 60)
    print("LeadSync Demo - Ownership transfer")
    print("=" * 60)

    config = SyncConfig(log_format="text", log_level="WARNING")
    setup_logging(config)

    # 1. Seed the shared store
    print("\n[Step 1] Seeding store...")
    db = InMemoryDatabase()
    db.add_profile("manager", "Marina Gestora", role="gestor", company_id="acme")
    db.add_profile("ana", "Ana Corretora", role="corretor", company_id="acme")
    db.add_profile("bruno", "Bruno Corretor", role="corretor", company_id="acme")
    db.add_listing("apt-1", "Apartamento")

    db.add_lead(id="l1", name="Carla Souza", owner_id="ana", company_id="acme",
                stage="Novo Lead", estimated_value=450000, listing_id="apt-1")
    db.add_lead(id="l2", name="Diego Lima", owner_id="ana", company_id="acme",
                stage="Qualificado", estimated_value=300000)
    db.add_lead(id="l3", name="Eva Martins", owner_id="bruno", company_id="acme",
                stage="Contrato", estimated_value=820000)
    print("  - 3 profiles, 3 leads")

    # 2. Mount one engine per session
    print("\n[Step 2] Mounting sessions...")
    hub = InMemoryBroadcastHub()
    audit = InMemoryAuditSink()
    engines = {}
    for user_id in ("manager", "ana", "bruno"):
        engines[user_id] = LeadSyncEngine(
            db.session(user_id),
            db.change_feed(),
            hub,
            audit=audit,
            signals=InMemoryHostSignals(),
            config=config,
        )
        await engines[user_id].start()

    for user_id, engine in engines.items():
        show(user_id, engine)

    # 3. Manager moves a lead forward and reassigns it
    print("\n[Step 3] Manager advances l1 and reassigns it to bruno...")
    manager = engines["manager"]
    await manager.set_stage("l1", LeadStage.VISIT_SCHEDULED)
    await manager.bulk_reassign(["l1"], "bruno")

    for _ in range(3):
        for engine in engines.values():
            await engine.settle()

    for user_id, engine in engines.items():
        show(user_id, engine)

    # 4. Board summary
    print("\n[Step 4] Manager board summary...")
    for stage, count in manager.stage_counts().items():
        print(f"  - {stage.value}: {count}")
    print(f"  - Total value: {manager.total_value:,.2f}")
    print(f"  - Audit trail: {', '.join(audit.actions())}")

    # 5. Unmount
    print("\n[Step 5] Stopping sessions...")
    for engine in engines.values():
        await engine.stop()
    print("  - Done")


if __name__ == "__main__":
    asyncio.run(main())
