"""
Ownership transfer detection.

Shared by the change-stream consumer (remote writes) and the Mutation API
(local writes) so both paths agree on what counts as a transfer.
"""

from __future__ import annotations

from typing import Optional

from ..models import Lead, TransferNotice


def ownership_changed(prior: Optional[Lead], new_owner_id: Optional[str]) -> bool:
    """Compare the last-applied local state against a new owner.

    A lead that was never applied locally counts as transferred when it now
    has an owner: whoever owns it may not have been told yet.
    """
    new_owner_id = new_owner_id or None
    if prior is None:
        return new_owner_id is not None
    return prior.owner_id != new_owner_id


def transfer_notice(
    record_id: str,
    new_owner_id: Optional[str],
    company_id: Optional[str],
) -> Optional[TransferNotice]:
    """Build the wire notice, or None when the tenant is unknown."""
    if not company_id:
        return None
    return TransferNotice(record_id=record_id, new_owner_id=new_owner_id or None, company_id=company_id)
