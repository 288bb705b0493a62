"""
Error types for LeadSync.

This module defines all exception types raised by the engine and its
collaborators:
- LeadSyncError: Base exception
- NotAuthenticatedError: No identity available for the session
- PayloadError: Record, patch or wire payload failed validation
- StoreError: Backing store rejected or failed an operation
- TransportError: Change feed or broadcast channel could not be opened
- MutationError: A Mutation API write failed to persist

Invariants:
    - All errors inherit from LeadSyncError
    - Errors include context for debugging
    - Only MutationError and NotAuthenticatedError reach Mutation API callers
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class LeadSyncError(Exception):
    """Base exception for all LeadSync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "LEADSYNC_ERROR"
        self.details = details or {}


class NotAuthenticatedError(LeadSyncError):
    """The store reported no authenticated identity for this session."""

    def __init__(self, message: str = "Session is not authenticated") -> None:
        super().__init__(message, code="NOT_AUTHENTICATED")


class PayloadError(LeadSyncError):
    """A record, patch or wire payload failed validation.

    Raised when:
    - A change event is missing its row or id
    - A stage value is not a known pipeline stage
    - A patch names fields the engine does not know
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="PAYLOAD_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class StoreError(LeadSyncError):
    """The backing store failed an operation."""

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="STORE_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class TransportError(LeadSyncError):
    """A change-feed subscription or broadcast channel failed.

    Raised when:
    - The feed refuses a subscription
    - A broadcast channel cannot be opened or written to
    """

    def __init__(self, message: str, channel: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"channel": channel},
        )
        self.channel = channel


class MutationError(LeadSyncError):
    """A Mutation API write was rejected by the store.

    The local optimistic state is left as-is; the next change event or
    reconciliation pass corrects any drift.
    """

    def __init__(
        self,
        operation: str,
        record_ids: Optional[List[str]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        ids = record_ids or []
        reason = f": {cause}" if cause is not None else ""
        super().__init__(
            f"{operation} failed for {', '.join(ids) or 'new lead'}{reason}",
            code="MUTATION_ERROR",
            details={"operation": operation, "record_ids": ids},
        )
        self.operation = operation
        self.record_ids = ids
        self.cause = cause
