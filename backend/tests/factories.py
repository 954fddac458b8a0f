"""
Test data factories for the shopfloor execution core.

Provides functions to create test entities with sensible defaults. Factories
flush but do not commit; tests commit when they need a clean transaction
boundary.

Usage:
    from tests.factories import create_test_part, create_test_order

    def test_something(db_session):
        part = create_test_part(db_session, part_number="P-1")
        order = create_test_order(db_session, title="Widget build")
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session


# =============================================================================
# SEQUENCE MANAGEMENT
# =============================================================================

_sequences: Dict[str, int] = {}


def reset_sequences():
    """Reset all sequences. Call between tests for predictable codes."""
    global _sequences
    _sequences = {}


def _next(name: str) -> int:
    """Get next sequence number for a given entity type."""
    _sequences[name] = _sequences.get(name, 0) + 1
    return _sequences[name]


def _code(prefix: str, name: str) -> str:
    """Generate a code like PO-2026-0001."""
    seq = _next(name)
    return f"{prefix}-{datetime.now().year}-{seq:04d}"


def _dec(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


# =============================================================================
# MASTER DATA
# =============================================================================

def create_test_part(
    db: Session,
    part_number: Optional[str] = None,
    name: Optional[str] = None,
    standard_cost=None,
    is_serialized: bool = False,
    **overrides
) -> "Part":
    from shopfloor.models.inventory import Part

    seq = _next("part")
    part = Part(
        part_number=part_number or f"PART-{seq:04d}",
        name=name or f"Test Part {seq}",
        unit_of_measure=overrides.pop("unit_of_measure", "EA"),
        standard_cost=_dec(standard_cost),
        is_serialized=is_serialized,
        is_active=overrides.pop("is_active", True),
        **overrides
    )
    db.add(part)
    db.flush()
    return part


def create_test_location(
    db: Session,
    code: Optional[str] = None,
    name: Optional[str] = None,
    **overrides
) -> "StockLocation":
    from shopfloor.models.inventory import StockLocation

    seq = _next("location")
    location = StockLocation(
        code=code or f"LOC-{seq:02d}",
        name=name or f"Location {seq}",
        location_type=overrides.pop("location_type", "warehouse"),
        is_active=overrides.pop("is_active", True),
        **overrides
    )
    db.add(location)
    db.flush()
    return location


def create_test_balance(
    db: Session,
    part: "Part",
    location: "StockLocation",
    quantity=0,
    unit_cost=None,
) -> "InventoryBalance":
    """
    Seed an on-hand balance directly.

    Test setup only; production code changes quantities through
    inventory_service.adjust_inventory.
    """
    from shopfloor.models.inventory import InventoryBalance

    balance = InventoryBalance(
        part_id=part.id,
        location_id=location.id,
        quantity=_dec(quantity),
        unit_cost=_dec(unit_cost),
    )
    db.add(balance)
    db.flush()
    return balance


def create_test_unit(
    db: Session,
    part: "Part",
    location: Optional["StockLocation"] = None,
    serial_number: Optional[str] = None,
    status: str = "in_stock",
    **overrides
) -> "SerializedUnit":
    from shopfloor.models.inventory import SerializedUnit

    seq = _next("serial")
    unit = SerializedUnit(
        part_id=part.id,
        serial_number=serial_number or f"SN-{seq:05d}",
        lot_number=overrides.pop("lot_number", None),
        status=status,
        current_location_id=location.id if location and status != "consumed" else None,
        **overrides
    )
    db.add(unit)
    db.flush()
    return unit


def create_test_work_center(
    db: Session,
    code: Optional[str] = None,
    name: Optional[str] = None,
    capacity_minutes_per_day: Optional[int] = None,
    is_active: bool = True,
    **overrides
) -> "WorkCenter":
    from shopfloor.models.work_center import WorkCenter

    seq = _next("work_center")
    work_center = WorkCenter(
        code=code or f"WC-{seq:02d}",
        name=name or f"Work Center {seq}",
        capacity_minutes_per_day=capacity_minutes_per_day,
        is_active=is_active,
        **overrides
    )
    db.add(work_center)
    db.flush()
    return work_center


# =============================================================================
# PRODUCTION
# =============================================================================

def create_test_order(
    db: Session,
    title: Optional[str] = None,
    quantity_ordered=10,
    status: str = "queued",
    **overrides
) -> "ProductionOrder":
    from shopfloor.models.production_order import ProductionOrder

    seq = _next("production_order")
    order = ProductionOrder(
        order_number=overrides.pop("order_number", None) or _code("PO", "order_number"),
        title=title or f"Test Order {seq}",
        quantity_ordered=_dec(quantity_ordered),
        status=status,
        priority=overrides.pop("priority", 3),
        **overrides
    )
    db.add(order)
    db.flush()
    return order


def create_test_step(
    db: Session,
    order: "ProductionOrder",
    step_number: Optional[int] = None,
    name: Optional[str] = None,
    status: str = "pending",
    **overrides
) -> "ProductionStep":
    from shopfloor.models.production_order import ProductionStep

    if step_number is None:
        step_number = len([s for s in order.steps]) + 1
    step = ProductionStep(
        production_order_id=order.id,
        step_number=step_number,
        name=name or f"Step {step_number}",
        status=status,
        **overrides
    )
    db.add(step)
    db.flush()
    db.expire(order, ["steps"])
    return step


def create_test_bom_line(
    db: Session,
    order: "ProductionOrder",
    part: "Part",
    quantity_required=1,
    location: Optional["StockLocation"] = None,
    quantity_consumed=0,
    **overrides
) -> "BOMLine":
    from shopfloor.models.production_order import BOMLine

    required = _dec(quantity_required)
    consumed = _dec(quantity_consumed)
    line = BOMLine(
        production_order_id=order.id,
        part_id=part.id,
        quantity_required=required,
        quantity_allocated=_dec(overrides.pop("quantity_allocated", 0)),
        quantity_consumed=consumed,
        is_allocated=overrides.pop("is_allocated", False),
        is_consumed=consumed >= required,
        source_location_id=location.id if location else None,
        unit_cost=_dec(overrides.pop("unit_cost", None)),
        **overrides
    )
    db.add(line)
    db.flush()
    return line


def create_test_allocation(
    db: Session,
    work_center: "WorkCenter",
    order: "ProductionOrder",
    start: datetime,
    end: Optional[datetime] = None,
    minutes: Optional[int] = None,
    sequence_number: Optional[int] = None,
    status: str = "not_started",
    **overrides
) -> "WorkCenterAllocation":
    from shopfloor.models.work_center import WorkCenterAllocation

    if end is None and minutes is not None:
        end = start + timedelta(minutes=minutes)
    allocation = WorkCenterAllocation(
        work_center_id=work_center.id,
        production_order_id=order.id,
        scheduled_start=start,
        scheduled_end=end,
        sequence_number=sequence_number or _next(f"allocation_seq_{work_center.id}"),
        status=status,
        **overrides
    )
    db.add(allocation)
    db.flush()
    return allocation
