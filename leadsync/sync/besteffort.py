"""
Best-effort operation wrapper.

Broadcast publishes and audit records must never fail the main control
flow. best_effort() runs such a call, logs any failure with structured
context, and returns a BestEffortResult the caller may inspect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BestEffortResult:
    """Outcome of a best-effort call.

    Attributes:
        operation: Name of the operation, for logs
        ok: Whether the call completed without raising
        error: The exception raised, if any
    """

    operation: str
    ok: bool
    error: Optional[BaseException] = None


async def best_effort(
    operation: str,
    call: Callable[[], Awaitable[Any]],
    **context: Any,
) -> BestEffortResult:
    """Await ``call()``, converting any failure into a logged result.

    Cancellation is not swallowed.
    """
    try:
        await call()
    except Exception as e:
        logger.warning(
            f"Best-effort {operation} failed: {e}",
            extra={"operation": operation, **context},
        )
        return BestEffortResult(operation=operation, ok=False, error=e)
    return BestEffortResult(operation=operation, ok=True)
