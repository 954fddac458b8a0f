"""
Shopfloor Execution Core - Custom Exception Hierarchy

Provides structured, typed exceptions with error codes for consistent
error handling across the production execution services.

Usage:
    from shopfloor.exceptions import NotFoundError, ValidationError

    # In a service
    raise NotFoundError("Production order", order_id)

    # With custom message
    raise ValidationError("Quantity must be positive", field="qty", value=qty)
"""
from typing import Any, Dict, List, Optional


class ShopfloorException(Exception):
    """
    Base exception for all shopfloor execution errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "NOT_FOUND", "VALIDATION_ERROR")
        details: Additional context for debugging
    """

    error_code: str = "SHOPFLOOR_ERROR"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for an operation result."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# ===================
# Malformed input
# ===================


class ValidationError(ShopfloorException):
    """Raised when input validation fails."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        field: Optional[str] = None,
        value: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details=details)


# ===================
# Missing references
# ===================


class NotFoundError(ShopfloorException):
    """Raised when an order, part, location, unit or allocation is not found."""

    error_code = "NOT_FOUND"

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Any = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["resource"] = resource
        if resource_id is not None:
            details["resource_id"] = str(resource_id)
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(message, details=details)


# ===================
# Conflicts
# ===================


class ConflictError(ShopfloorException):
    """Raised on an invalid state transition, scheduling overlap or delete-after-start."""

    error_code = "CONFLICT"

    def __init__(
        self,
        message: str = "Resource conflict",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)


class InvalidStateError(ConflictError):
    """Raised when an operation is invalid for the current state."""

    error_code = "INVALID_STATE"

    def __init__(
        self,
        message: str = "Operation not allowed in current state",
        *,
        current_state: Optional[str] = None,
        allowed_states: Optional[list] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if current_state:
            details["current_state"] = current_state
        if allowed_states is not None:
            details["allowed_states"] = sorted(allowed_states)
        super().__init__(message, details=details)


class ScheduleConflictError(ConflictError):
    """Raised when a proposed work center allocation has hard conflicts."""

    error_code = "SCHEDULE_CONFLICT"

    def __init__(
        self,
        conflicts: List[Dict[str, Any]],
        *,
        message: str = "Schedule has conflicts",
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["conflicts"] = conflicts
        self.conflicts = conflicts
        super().__init__(message, details=details)


class ImmutableRecordError(ConflictError):
    """Raised when code attempts to update or delete an append-only record."""

    error_code = "IMMUTABLE_RECORD"

    def __init__(
        self,
        entity_type: str,
        entity_id: Any = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["entity_type"] = entity_type
        if entity_id is not None:
            details["entity_id"] = str(entity_id)
        super().__init__(
            f"{entity_type} records are append-only; use a reversal instead",
            details=details,
        )


class ConcurrencyError(ConflictError):
    """Raised when a row lock could not be acquired or a concurrent write won.

    Retryable by the caller.
    """

    error_code = "CONCURRENCY_ERROR"

    def __init__(
        self,
        message: str = "Resource is locked or was modified by another operator",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details.setdefault("retryable", True)
        super().__init__(message, details=details)


# ===================
# Resource availability
# ===================


class InsufficientResourceError(ShopfloorException):
    """Raised when there's not enough inventory at a location."""

    error_code = "INSUFFICIENT_INVENTORY"

    def __init__(
        self,
        part: str,
        *,
        requested: Any,
        available: Any,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["part"] = part
        details["requested"] = str(requested)
        details["available"] = str(available)
        self.requested = requested
        self.available = available
        message = f"Insufficient inventory for {part}: requested {requested}, available {available}"
        super().__init__(message, details=details)


class UnitUnavailableError(InsufficientResourceError):
    """Raised when a serialized unit is not in stock at the requested location."""

    error_code = "UNIT_UNAVAILABLE"

    def __init__(
        self,
        serial_number: str,
        *,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["reason"] = reason
        super().__init__(serial_number, requested=1, available=0, details=details)
        self.message = f"Serialized unit {serial_number} not available: {reason}"
        self.args = (self.message,)


class MaterialConsumptionError(ShopfloorException):
    """Raised when order completion could not consume any of its BOM lines."""

    error_code = "CONSUMPTION_FAILED"

    def __init__(
        self,
        order_number: str,
        failures: List[Dict[str, Any]],
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["order_number"] = order_number
        details["failed"] = failures
        self.failures = failures
        super().__init__(
            f"No materials could be consumed for order {order_number}",
            details=details,
        )
