"""
Shared builders and polling helpers for LeadSync tests.
"""

import asyncio
from typing import Any, Callable, Optional

from leadsync.models import ChangeEvent, ChangeType, Identity, Lead, LeadStage, Role

BROKER = Identity(user_id="u1", role=Role.RESTRICTED, company_id="c1")
OTHER_BROKER = Identity(user_id="u2", role=Role.RESTRICTED, company_id="c1")
MANAGER = Identity(user_id="manager", role=Role.PRIVILEGED, company_id="c1")


def make_lead(
    lead_id: str,
    owner_id: Optional[str] = "u1",
    company_id: Optional[str] = "c1",
    stage: LeadStage = LeadStage.NEW,
    **fields: Any,
) -> Lead:
    """Build a Lead with sensible defaults."""
    return Lead(id=lead_id, owner_id=owner_id, stage=stage, company_id=company_id, **fields)


def row(lead_id: str, owner_id: Optional[str] = "u1", company_id: str = "c1", **fields: Any) -> dict:
    data = {"id": lead_id, "owner_id": owner_id, "company_id": company_id, "stage": "Novo Lead"}
    data.update(fields)
    return data


def insert_event(lead_id: str, owner_id: Optional[str] = "u1", **fields: Any) -> ChangeEvent:
    return ChangeEvent(ChangeType.INSERT, "leads", new=row(lead_id, owner_id, **fields))


def update_event(lead_id: str, owner_id: Optional[str] = "u1", **fields: Any) -> ChangeEvent:
    return ChangeEvent(
        ChangeType.UPDATE,
        "leads",
        new=row(lead_id, owner_id, **fields),
        old={"id": lead_id},
    )


def delete_event(lead_id: str) -> ChangeEvent:
    return ChangeEvent(ChangeType.DELETE, "leads", old={"id": lead_id})


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 2.0,
    interval: float = 0.005,
    message: str = "condition not met",
) -> None:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"Timed out: {message}")
        await asyncio.sleep(interval)
