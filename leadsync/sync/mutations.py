"""
Mutation API: stage changes, create, update, delete and bulk reassignment.

Every operation persists to the store first, then applies an optimistic
patch to the local collection so the UI reflects the change without
waiting for the change-feed round trip, then records an audit entry.

Invariants:
    - Local state changes only after the store accepted the write
    - A rejected write raises MutationError and leaves local state as-is
    - Ownership changes publish a TransferNotice (same helper as the consumer)
    - A local write drops any pending coalesced UPDATE for the ids it touched
    - Audit failures are logged, never propagated

How to change safely:
    - Validate patches before touching the store
    - New operations must go through _persist() for uniform error mapping
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from ..errors import MutationError, NotAuthenticatedError, PayloadError
from ..feed.base import AuditSink, LeadStore
from ..models import Identity, Lead, LeadStage, TransferNotice, validate_patch
from .besteffort import best_effort
from .broadcast import BroadcastSideChannel
from .coalescer import Coalescer
from .collection import LeadCollection
from .hydration import HydrationCache
from .tasks import BackgroundTasks
from .transfer import ownership_changed, transfer_notice

logger = logging.getLogger(__name__)

# Audit action names
STAGE_CHANGED = "lead.stage_changed"
CREATED = "lead.created"
UPDATED = "lead.updated"
DELETED = "lead.deleted"
BULK_ASSIGN = "leads.bulk_assign"

CREATE_FIELDS = frozenset(
    {
        "name",
        "email",
        "phone",
        "source",
        "stage",
        "interest",
        "estimated_value",
        "notes",
        "listing_id",
    }
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MutationApi:
    """Optimistic write operations for one session.

    Example:
        >>> await api.set_stage("l1", LeadStage.QUALIFIED)
        >>> lead = await api.create({"name": "Carla"}, owner_override="u2")
        >>> await api.bulk_reassign(["l1", "l2"], "u3")
    """

    def __init__(
        self,
        store: LeadStore,
        collection: LeadCollection,
        hydration: HydrationCache,
        tasks: BackgroundTasks,
        side_channel: Optional[BroadcastSideChannel] = None,
        audit: Optional[AuditSink] = None,
        coalescer: Optional[Coalescer] = None,
    ) -> None:
        self._store = store
        self._collection = collection
        self._hydration = hydration
        self._tasks = tasks
        self._side_channel = side_channel
        self._audit = audit
        self._coalescer = coalescer

    def _identity(self) -> Identity:
        identity = self._collection.identity
        if identity is None:
            raise NotAuthenticatedError()
        return identity

    async def _persist(
        self,
        operation: str,
        record_ids: List[str],
        write: Callable[[], Awaitable[Any]],
    ) -> Any:
        try:
            return await write()
        except Exception as e:
            logger.error(
                f"Failed to persist {operation}: {e}",
                extra={"operation": operation, "record_ids": record_ids},
            )
            raise MutationError(operation, record_ids, cause=e) from e

    def _audit_later(
        self,
        action: str,
        resource: str,
        resource_id: Optional[str],
        meta: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self._audit is None:
            return
        audit = self._audit
        self._tasks.spawn(
            best_effort(
                "audit.record",
                lambda: audit.record(action, resource, resource_id, meta),
                action=action,
                resource_id=resource_id,
            ),
            name=f"audit:{action}",
        )

    def _supersede(self, lead_ids: Iterable[str]) -> None:
        # A pending feed state predates the write the store just accepted
        if self._coalescer is None:
            return
        for lead_id in lead_ids:
            if self._coalescer.cancel(lead_id):
                logger.debug(
                    "Dropped pending update superseded by local write",
                    extra={"lead_id": lead_id},
                )

    def _publish_later(self, notice: Optional[TransferNotice]) -> None:
        if notice is None or self._side_channel is None:
            return
        self._tasks.spawn(self._side_channel.publish(notice), name=f"publish:{notice.record_id}")

    async def set_stage(self, lead_id: str, stage: LeadStage) -> None:
        """Move a lead to another pipeline stage.

        Raises:
            PayloadError: If ``stage`` is not a known stage
            MutationError: If the store rejected the write
        """
        stage = LeadStage.parse(stage)
        await self._persist(
            "set_stage",
            [lead_id],
            lambda: self._store.update_leads(
                [lead_id], {"stage": stage.value, "updated_at": _now_iso()}
            ),
        )
        self._supersede([lead_id])
        self._collection.patch(lead_id, lambda lead: lead.apply_patch({"stage": stage}))
        self._audit_later(STAGE_CHANGED, "lead", lead_id, {"new_stage": stage.value})

    async def create(
        self,
        data: Mapping[str, Any],
        owner_override: Optional[str] = None,
    ) -> Lead:
        """Create a lead owned by the caller or by ``owner_override``.

        Args:
            data: Lead fields (name, email, phone, source, stage, ...)
            owner_override: Assign to another user instead of the creator

        Returns:
            The stored lead as returned by the store

        Raises:
            PayloadError: If ``data`` has unknown fields or an unknown stage
            MutationError: If the store rejected the insert
        """
        identity = self._identity()
        unknown = sorted(set(data) - CREATE_FIELDS)
        if unknown:
            raise PayloadError(
                f"Unknown lead fields in create: {', '.join(unknown)}",
                field_name=unknown[0],
                errors=[f"unknown field '{name}'" for name in unknown],
            )

        row: Dict[str, Any] = dict(data)
        row["stage"] = LeadStage.parse(row.get("stage")).value
        row["user_id"] = identity.user_id
        row["owner_id"] = owner_override or identity.user_id
        row["company_id"] = identity.company_id

        stored = await self._persist("create", [], lambda: self._store.insert_lead(row))
        lead = self._hydration.attach(Lead.from_row(stored), self._tasks)
        self._collection.insert_head(lead)

        self._audit_later(CREATED, "lead", lead.id, {"name": lead.name, "source": lead.source})
        if owner_override and owner_override != identity.user_id:
            self._publish_later(transfer_notice(lead.id, lead.owner_id, identity.company_id))
        return lead

    async def update(self, lead_id: str, patch: Mapping[str, Any]) -> None:
        """Apply a partial update.

        Raises:
            PayloadError: If the patch names unknown fields
            MutationError: If the store rejected the write
        """
        validate_patch(patch)
        identity = self._identity()
        prior = self._collection.get(lead_id)

        row: Dict[str, Any] = dict(patch)
        if "stage" in row:
            row["stage"] = LeadStage.parse(row["stage"]).value
        if "owner_id" in row:
            row["owner_id"] = row["owner_id"] or None
        row["updated_at"] = _now_iso()

        await self._persist("update", [lead_id], lambda: self._store.update_leads([lead_id], row))
        self._supersede([lead_id])
        self._collection.patch(
            lead_id,
            lambda lead: self._hydration.attach(lead.apply_patch(patch), self._tasks),
        )
        self._audit_later(UPDATED, "lead", lead_id, dict(patch))

        if "owner_id" in patch and ownership_changed(prior, row["owner_id"]):
            self._publish_later(transfer_notice(lead_id, row["owner_id"], identity.company_id))

    async def delete(self, lead_id: str) -> None:
        """Delete a lead.

        Raises:
            MutationError: If the store rejected the delete
        """
        await self._persist("delete", [lead_id], lambda: self._store.delete_lead(lead_id))
        self._supersede([lead_id])
        self._collection.remove(lead_id)
        self._audit_later(DELETED, "lead", lead_id)

    async def bulk_reassign(self, lead_ids: Iterable[str], new_owner_id: Optional[str]) -> None:
        """Assign (or unassign, with None) many leads at once.

        Raises:
            MutationError: If the store rejected the write
        """
        ids = list(dict.fromkeys(lead_ids))
        if not ids:
            return
        identity = self._identity()
        new_owner_id = new_owner_id or None
        priors = {lead_id: self._collection.get(lead_id) for lead_id in ids}

        await self._persist(
            "bulk_reassign",
            ids,
            lambda: self._store.update_leads(
                ids, {"owner_id": new_owner_id, "updated_at": _now_iso()}
            ),
        )
        self._supersede(ids)
        self._collection.patch_many(
            ids,
            lambda lead: self._hydration.attach(
                lead.apply_patch({"owner_id": new_owner_id}), self._tasks
            ),
        )
        self._audit_later(
            BULK_ASSIGN,
            "leads",
            ",".join(ids),
            {
                "owner_id": new_owner_id,
                "lead_count": len(ids),
                "action": "assign" if new_owner_id else "unassign",
            },
        )

        for lead_id in ids:
            if ownership_changed(priors[lead_id], new_owner_id):
                self._publish_later(transfer_notice(lead_id, new_owner_id, identity.company_id))
