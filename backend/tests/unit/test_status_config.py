"""
Tests for the central status transition tables.
"""
import pytest

from shopfloor.core.status_config import (
    AllocationStatus,
    ProductionOrderStatus,
    StepStatus,
    get_allowed_transitions,
    is_valid_transition,
    require_transition,
)
from shopfloor.exceptions import InvalidStateError


@pytest.mark.parametrize("entity,current,new,expected", [
    ("production_order", "queued", "in_progress", True),
    ("production_order", "hold", "in_progress", True),
    ("production_order", "complete", "hold", False),
    ("production_step", "pending", "in_progress", True),
    ("production_step", "pending", "complete", False),
    ("production_step", "skipped", "pending", False),
    ("allocation", "not_started", "running", True),
    ("allocation", "running", "paused", True),
    ("allocation", "paused", "running", True),
    ("allocation", "not_started", "completed", False),
    ("allocation", "completed", "running", False),
])
def test_transition_table(entity, current, new, expected):
    assert is_valid_transition(entity, current, new) is expected


def test_enum_members_accepted():
    assert is_valid_transition("production_step", StepStatus.IN_PROGRESS, StepStatus.COMPLETE)
    assert get_allowed_transitions("allocation", AllocationStatus.RUNNING) == ["completed", "paused"]


def test_terminal_status_has_no_transitions():
    assert get_allowed_transitions("production_order", ProductionOrderStatus.COMPLETE) == []


def test_require_transition_raises_with_allowed_states():
    with pytest.raises(InvalidStateError) as exc_info:
        require_transition("production_order", "complete", "in_progress")

    assert exc_info.value.details == {"current_state": "complete", "allowed_states": []}
