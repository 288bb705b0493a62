"""
Visibility filtering for the local lead collection.

Restricted sessions see only the leads they own; privileged sessions see
every lead of their company. The filter is applied on every write to the
local collection, not only on initial load, because the change feed may
deliver rows outside the session's intended visibility.

Invariants:
    - Pure functions; no I/O and no dependence on engine state
    - A restricted session never sees a lead with owner_id != user_id
    - A privileged session never sees another company's leads
"""

from __future__ import annotations

from typing import Iterable, Tuple

from ..models import Identity, Lead


def is_visible(lead: Lead, identity: Identity) -> bool:
    """Check whether ``lead`` belongs in ``identity``'s local view."""
    if identity.is_restricted:
        return lead.owner_id is not None and lead.owner_id == identity.user_id
    return identity.company_id is not None and lead.company_id == identity.company_id


def filter_visible(leads: Iterable[Lead], identity: Identity) -> Tuple[Lead, ...]:
    """Keep only the leads visible to ``identity``, preserving order."""
    return tuple(lead for lead in leads if is_visible(lead, identity))
