"""
Core data model for LeadSync.

This module defines the types that flow through the engine:
- LeadStage: Ordered pipeline stages
- Role / Identity: Who the current session is and what it may see
- Lead: The unit of synchronization (immutable snapshot of one record)
- OwnerDisplayInfo: Denormalized owner attributes shown on a lead
- ChangeEvent: One INSERT/UPDATE/DELETE notification from the change feed
- TransferNotice: Wire payload announcing an ownership transfer

Invariants:
    - Lead instances are never mutated; every change produces a new Lead
    - A lead belongs to exactly one company and at most one owner
    - owner_id is the only visibility discriminant for restricted roles

How to change safely:
    - New row columns land in Lead.extra until promoted to a field
    - TransferNotice wire names are shared with other sessions; do not rename
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import PayloadError


class LeadStage(str, Enum):
    """Pipeline stages, in board order."""

    NEW = "Novo Lead"
    QUALIFIED = "Qualificado"
    VISIT_SCHEDULED = "Visita Agendada"
    NEGOTIATION = "Em Negociação"
    DOCUMENTATION = "Documentação"
    CONTRACT = "Contrato"
    CLOSING = "Fechamento"

    @classmethod
    def parse(cls, value: Any) -> LeadStage:
        """Parse a stored stage value.

        Missing or empty values default to NEW, matching rows created
        before the stage column was populated.

        Raises:
            PayloadError: If the value is not a known stage
        """
        if isinstance(value, cls):
            return value
        if not value:
            return cls.NEW
        try:
            return cls(value)
        except ValueError:
            raise PayloadError(f"Unknown lead stage: {value!r}", field_name="stage")


class Role(str, Enum):
    """Visibility roles understood by the engine."""

    RESTRICTED = "restricted"
    PRIVILEGED = "privileged"

    @classmethod
    def from_source(cls, source_role: Optional[str]) -> Role:
        """Map a stored profile role to a visibility role.

        ``corretor`` (and anything unrecognised) is restricted;
        ``gestor`` and ``admin`` are privileged.
        """
        if source_role and source_role.lower() in PRIVILEGED_SOURCE_ROLES:
            return cls.PRIVILEGED
        return cls.RESTRICTED


PRIVILEGED_SOURCE_ROLES = frozenset({"gestor", "admin"})


@dataclass(frozen=True)
class Identity:
    """The current session's identity.

    Attributes:
        user_id: Authenticated user id
        role: Visibility role
        company_id: Tenant the user belongs to (None if unassigned)
    """

    user_id: str
    role: Role
    company_id: Optional[str] = None

    @property
    def is_restricted(self) -> bool:
        return self.role is Role.RESTRICTED

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Identity:
        """Build from a store identity lookup ``{user_id, role, company_id}``."""
        if not data.get("user_id"):
            raise PayloadError("Identity lookup returned no user_id", field_name="user_id")
        return cls(
            user_id=str(data["user_id"]),
            role=Role.from_source(data.get("role")),
            company_id=data.get("company_id"),
        )


@dataclass(frozen=True)
class OwnerDisplayInfo:
    """Denormalized owner attributes, cached per owner id."""

    owner_id: str
    display_name: str
    role: str = "corretor"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> OwnerDisplayInfo:
        return cls(
            owner_id=str(row["id"]),
            display_name=row.get("full_name") or "",
            role=row.get("role") or "corretor",
        )


# Columns the engine knows about; anything else in a row is kept in Lead.extra.
LEAD_COLUMNS = (
    "id",
    "owner_id",
    "company_id",
    "stage",
    "name",
    "email",
    "phone",
    "source",
    "interest",
    "estimated_value",
    "notes",
    "listing_id",
    "created_at",
    "updated_at",
)

PATCHABLE_FIELDS = frozenset(
    {
        "owner_id",
        "stage",
        "name",
        "email",
        "phone",
        "source",
        "interest",
        "estimated_value",
        "notes",
        "listing_id",
    }
)


@dataclass(frozen=True)
class Lead:
    """Immutable snapshot of one lead record.

    Attributes:
        id: Stable record id
        owner_id: Responsible user (None when unassigned)
        stage: Pipeline stage
        company_id: Tenant partition
        name, email, phone, source, interest, notes: Opaque contact payload
        estimated_value: Deal value estimate
        listing_id: Reference to an external catalog item
        created_at, updated_at: Store timestamps (ISO strings)
        owner: Hydrated owner display info, if known
        listing_type: Catalog enrichment for listing_id, if resolved
        extra: Row columns the engine does not interpret
    """

    id: str
    owner_id: Optional[str]
    stage: LeadStage
    company_id: Optional[str]
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    source: Optional[str] = None
    interest: Optional[str] = None
    estimated_value: Optional[float] = None
    notes: Optional[str] = None
    listing_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    owner: Optional[OwnerDisplayInfo] = None
    listing_type: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Lead:
        """Create from a store row.

        An embedded ``owner`` object (joined profile) is turned into
        OwnerDisplayInfo when it carries a display name.

        Raises:
            PayloadError: If the row has no id or an unknown stage
        """
        if not row or not row.get("id"):
            raise PayloadError("Lead row is missing its id", field_name="id")

        owner = None
        embedded = row.get("owner")
        if isinstance(embedded, Mapping) and embedded.get("id") and embedded.get("full_name"):
            owner = OwnerDisplayInfo.from_row(embedded)

        value = row.get("estimated_value")
        extra = {
            k: v for k, v in row.items() if k not in LEAD_COLUMNS and k != "owner"
        }

        return cls(
            id=str(row["id"]),
            owner_id=row.get("owner_id") or None,
            stage=LeadStage.parse(row.get("stage")),
            company_id=row.get("company_id"),
            name=row.get("name") or "",
            email=row.get("email"),
            phone=row.get("phone"),
            source=row.get("source"),
            interest=row.get("interest"),
            estimated_value=float(value) if value is not None else None,
            notes=row.get("notes"),
            listing_id=row.get("listing_id"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            owner=owner,
            extra=extra,
        )

    def apply_patch(self, patch: Mapping[str, Any]) -> Lead:
        """Return a copy with ``patch`` applied.

        Changing owner_id drops the cached owner display info, since it
        described the previous owner.

        Raises:
            PayloadError: If the patch names unknown fields
        """
        validate_patch(patch)
        changes = dict(patch)
        if "stage" in changes:
            changes["stage"] = LeadStage.parse(changes["stage"])
        if "owner_id" in changes:
            changes["owner_id"] = changes["owner_id"] or None
            if changes["owner_id"] != self.owner_id:
                changes["owner"] = None
        return dataclasses.replace(self, **changes)

    def with_owner(self, info: Optional[OwnerDisplayInfo]) -> Lead:
        """Attach owner display info if it describes the current owner."""
        if info is None or info.owner_id != self.owner_id or info == self.owner:
            return self
        return dataclasses.replace(self, owner=info)


def validate_patch(patch: Mapping[str, Any]) -> None:
    """Reject patches that touch fields the engine does not manage."""
    unknown = sorted(set(patch) - PATCHABLE_FIELDS)
    if unknown:
        raise PayloadError(
            f"Unknown lead fields in patch: {', '.join(unknown)}",
            field_name=unknown[0],
            errors=[f"unknown field '{name}'" for name in unknown],
        )


class ChangeType(str, Enum):
    """Row change kinds delivered by the change feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """A row-level change notification.

    Attributes:
        event_type: INSERT, UPDATE or DELETE
        table: Table the row belongs to
        new: Row after the change (None for DELETE)
        old: Row before the change; may be absent or partial depending on
            the transport, so the engine never relies on it for ownership

    Example:
        {
            "eventType": "UPDATE",
            "table": "leads",
            "new": {"id": "l1", "owner_id": "u2", "stage": "Qualificado"},
            "old": {"id": "l1"}
        }
    """

    event_type: ChangeType
    table: str
    new: Optional[Mapping[str, Any]] = None
    old: Optional[Mapping[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChangeEvent:
        """Create from a transport payload.

        Raises:
            PayloadError: If the event type is missing or unknown
        """
        raw_type = data.get("eventType") or data.get("event_type")
        try:
            event_type = ChangeType(str(raw_type).upper())
        except ValueError:
            raise PayloadError(f"Unknown change event type: {raw_type!r}", field_name="eventType")
        return cls(
            event_type=event_type,
            table=data.get("table", ""),
            new=data.get("new") or None,
            old=data.get("old") or None,
        )

    @property
    def record_id(self) -> Optional[str]:
        for row in (self.new, self.old):
            if row and row.get("id"):
                return str(row["id"])
        return None


class TransferNotice(BaseModel):
    """Broadcast payload announcing that a lead changed owner.

    Exists only on the wire; sessions that receive it fetch the lead
    directly instead of trusting any row data in the notice.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    record_id: str = Field(alias="lead_id", min_length=1)
    new_owner_id: Optional[str] = None
    company_id: str = Field(min_length=1)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> TransferNotice:
        return cls.model_validate(dict(payload))
