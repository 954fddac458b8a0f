"""
Common Result Schemas

Every operation on the execution core returns an OperationResult: either
{"ok": true, "data": ...} or {"ok": false, "error": {...}}. Expected failures
are carried in `error`, never raised.
"""
from datetime import datetime
from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from shopfloor.db.base import utcnow


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """
    Standardized error payload.

    Error Codes:
        - VALIDATION_ERROR: Malformed input (e.g. non-positive quantity)
        - NOT_FOUND: Missing order, part, location, unit or allocation
        - CONFLICT: Resource conflict
        - INVALID_STATE: Illegal status transition
        - SCHEDULE_CONFLICT: Proposed allocation overlaps or references are missing
        - IMMUTABLE_RECORD: Attempted edit of an append-only ledger entry
        - CONCURRENCY_ERROR: Lock wait timed out (retryable)
        - INSUFFICIENT_INVENTORY: Not enough on hand at the location
        - UNIT_UNAVAILABLE: Serialized unit not in stock at the location

    Example:
        {
            "error": "NOT_FOUND",
            "message": "Production order with ID 123 not found",
            "details": {"resource": "Production order", "resource_id": "123"},
            "timestamp": "2026-02-08T10:30:00"
        }
    """
    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        None,
        description="Additional error context for debugging"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the error occurred (UTC)"
    )


# ============================================================================
# Discriminated operation result
# ============================================================================

T = TypeVar('T')


class OperationResult(BaseModel, Generic[T]):
    """
    Result wrapper returned by shopfloor.services.operations.

    ok=True carries `data`; ok=False carries `error`.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ok: bool
    data: Optional[T] = None
    error: Optional[ErrorResponse] = None

    @classmethod
    def success(cls, data: Any = None) -> "OperationResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: Dict[str, Any]) -> "OperationResult":
        return cls(ok=False, error=ErrorResponse(**error))
