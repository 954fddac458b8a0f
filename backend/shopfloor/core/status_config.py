"""Status Configuration and Transition Rules

This module defines valid status values and allowed transitions for
Production Orders, Production Steps and Work Center Allocations. Every
status write goes through require_transition() so illegal changes are
rejected in one place.
"""
from enum import Enum
from typing import Dict, List, Set

from shopfloor.exceptions import InvalidStateError


# =============================================================================
# Production Order Status
# =============================================================================

class ProductionOrderStatus(str, Enum):
    """Valid status values for Production Orders"""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    HOLD = "hold"
    COMPLETE = "complete"


# Allowed transitions: current_status -> set of allowed next statuses
PRODUCTION_ORDER_TRANSITIONS: Dict[str, Set[str]] = {
    ProductionOrderStatus.QUEUED: {
        ProductionOrderStatus.IN_PROGRESS,
        ProductionOrderStatus.HOLD,
        ProductionOrderStatus.COMPLETE,
    },
    ProductionOrderStatus.IN_PROGRESS: {
        ProductionOrderStatus.HOLD,
        ProductionOrderStatus.COMPLETE,
    },
    ProductionOrderStatus.HOLD: {
        ProductionOrderStatus.IN_PROGRESS,  # resume only
        ProductionOrderStatus.COMPLETE,  # explicit completeOrder
    },
    ProductionOrderStatus.COMPLETE: set(),  # Terminal
}


# =============================================================================
# Production Step Status
# =============================================================================

class StepStatus(str, Enum):
    """Valid status values for Production Steps"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    SKIPPED = "skipped"


STEP_STATUS_TRANSITIONS: Dict[str, Set[str]] = {
    StepStatus.PENDING: {
        StepStatus.IN_PROGRESS,
        StepStatus.SKIPPED,
    },
    StepStatus.IN_PROGRESS: {
        StepStatus.COMPLETE,
        StepStatus.SKIPPED,
    },
    StepStatus.COMPLETE: set(),  # Terminal
    StepStatus.SKIPPED: set(),  # Terminal
}

STEP_DONE_STATUSES = {StepStatus.COMPLETE.value, StepStatus.SKIPPED.value}


# =============================================================================
# Work Center Allocation (operation run) Status
# =============================================================================

class AllocationStatus(str, Enum):
    """Valid status values for Work Center Allocations"""
    NOT_STARTED = "not_started"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


ALLOCATION_STATUS_TRANSITIONS: Dict[str, Set[str]] = {
    AllocationStatus.NOT_STARTED: {
        AllocationStatus.RUNNING,
    },
    AllocationStatus.RUNNING: {
        AllocationStatus.PAUSED,
        AllocationStatus.COMPLETED,
    },
    AllocationStatus.PAUSED: {
        AllocationStatus.RUNNING,
        AllocationStatus.COMPLETED,
    },
    AllocationStatus.COMPLETED: set(),  # Terminal
}


# =============================================================================
# Serialized Unit Status
# =============================================================================

class SerializedUnitStatus(str, Enum):
    """Valid status values for Serialized Units"""
    IN_STOCK = "in_stock"
    RESERVED = "reserved"
    CONSUMED = "consumed"
    SCRAPPED = "scrapped"


# =============================================================================
# Material consumption method
# =============================================================================

class ConsumptionMethod(str, Enum):
    SCAN = "scan"
    MANUAL = "manual"
    BACKFLUSH = "backflush"


# =============================================================================
# Helpers
# =============================================================================

def _value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


# Enum members hash by name, so key the lookup tables by plain string value
_TABLES: Dict[str, Dict[str, Set[str]]] = {
    entity: {_value(k): {_value(v) for v in targets} for k, targets in table.items()}
    for entity, table in (
        ("production_order", PRODUCTION_ORDER_TRANSITIONS),
        ("production_step", STEP_STATUS_TRANSITIONS),
        ("allocation", ALLOCATION_STATUS_TRANSITIONS),
    )
}


def get_allowed_transitions(entity: str, current_status: str) -> List[str]:
    """Get list of allowed next statuses for an entity in a given status"""
    return sorted(_TABLES[entity].get(_value(current_status), set()))


def is_valid_transition(entity: str, current_status: str, new_status: str) -> bool:
    """Check if a status transition is valid (no-op changes are not)"""
    allowed = _TABLES[entity].get(_value(current_status), set())
    return _value(new_status) in allowed


def require_transition(entity: str, current_status: str, new_status: str) -> None:
    """Raise InvalidStateError unless current -> new is in the transition table"""
    if not is_valid_transition(entity, current_status, new_status):
        current = _value(current_status)
        label = entity.replace("_", " ")
        raise InvalidStateError(
            f"Cannot change {label} from '{current}' to '{_value(new_status)}'",
            current_state=current,
            allowed_states=get_allowed_transitions(entity, current),
        )
