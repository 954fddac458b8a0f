"""
BOM Allocation Aggregator

Keeps each BOM line's consumed quantity in step with the consumption ledger.
apply_consumption / apply_reversal are only called by the ledger, with the
line already locked.
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from shopfloor.core.status_config import ProductionOrderStatus
from shopfloor.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from shopfloor.logging_config import get_logger
from shopfloor.models.production_order import BOMLine, ProductionOrder
from shopfloor.services.inventory_service import get_location, get_part

logger = get_logger(__name__)

ZERO = Decimal("0")


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def get_bom_line(db: Session, line_id: int, *, lock: bool = False) -> BOMLine:
    query = db.query(BOMLine).filter(BOMLine.id == line_id)
    if lock:
        query = query.with_for_update()
    line = query.first()
    if not line:
        raise NotFoundError("BOM line", line_id)
    return line


def add_bom_line(
    db: Session,
    order_id: int,
    part_id: int,
    quantity_required: Decimal,
    source_location_id: Optional[int] = None,
    unit_cost: Optional[Decimal] = None,
    notes: Optional[str] = None,
) -> BOMLine:
    quantity_required = _to_decimal(quantity_required)
    if quantity_required <= 0:
        raise ValidationError(
            "Required quantity must be positive",
            field="quantity_required",
            value=quantity_required,
        )
    order = db.query(ProductionOrder).filter(ProductionOrder.id == order_id).first()
    if not order:
        raise NotFoundError("Production order", order_id)
    if order.status == ProductionOrderStatus.COMPLETE.value:
        raise InvalidStateError(
            f"Cannot add materials to completed order {order.order_number}",
            current_state=order.status,
        )
    get_part(db, part_id)
    if source_location_id is not None:
        get_location(db, source_location_id)

    line = BOMLine(
        production_order_id=order_id,
        part_id=part_id,
        quantity_required=quantity_required,
        quantity_allocated=ZERO,
        quantity_consumed=ZERO,
        is_allocated=False,
        is_consumed=False,
        source_location_id=source_location_id,
        unit_cost=unit_cost,
        notes=notes,
    )
    db.add(line)
    db.flush()
    return line


def remove_bom_line(db: Session, line_id: int) -> None:
    """Delete a BOM line that nothing has been consumed against."""
    line = get_bom_line(db, line_id, lock=True)
    if _to_decimal(line.quantity_consumed) > 0:
        raise ConflictError(
            f"BOM line {line_id} has consumption recorded; reverse it first",
            details={"bom_line_id": line_id, "quantity_consumed": str(line.quantity_consumed)},
        )
    db.delete(line)
    db.flush()


def allocate_bom_line(
    db: Session,
    line_id: int,
    location_id: int,
    quantity: Optional[Decimal] = None,
) -> BOMLine:
    """Set the pick location and allocated quantity (defaults to required)."""
    line = get_bom_line(db, line_id, lock=True)
    get_location(db, location_id)
    quantity = _to_decimal(quantity) if quantity is not None else _to_decimal(line.quantity_required)
    if quantity <= 0:
        raise ValidationError("Allocated quantity must be positive", field="quantity", value=quantity)

    line.source_location_id = location_id
    line.quantity_allocated = quantity
    line.is_allocated = True
    db.flush()
    return line


def apply_consumption(line: BOMLine, qty: Decimal) -> None:
    line.quantity_consumed = _to_decimal(line.quantity_consumed) + _to_decimal(qty)
    line.is_consumed = line.quantity_consumed >= _to_decimal(line.quantity_required)


def apply_reversal(line: BOMLine, qty: Decimal) -> None:
    line.quantity_consumed = max(_to_decimal(line.quantity_consumed) - _to_decimal(qty), ZERO)
    line.is_consumed = False


def get_outstanding_lines(db: Session, order_id: int) -> List[BOMLine]:
    """Unconsumed lines of an order, locked, in creation order."""
    return (
        db.query(BOMLine)
        .filter(
            BOMLine.production_order_id == order_id,
            BOMLine.is_consumed.is_(False),
        )
        .order_by(BOMLine.id)
        .with_for_update()
        .all()
    )
