"""
Canonical Inventory Balance Service

adjust_inventory() is the only code path that writes
InventoryBalance.quantity. Consumption, reversal, receipts and transfers all
funnel through it so the on-hand figure has a single source of truth.

Every adjustment locks the (part, location) row first. A delta that would
take the balance below zero is rejected before anything is written.
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from shopfloor.exceptions import InsufficientResourceError, NotFoundError, ValidationError
from shopfloor.logging_config import get_logger
from shopfloor.models.consumption import MaterialConsumption
from shopfloor.models.inventory import InventoryBalance, Part, StockLocation
from shopfloor.models.production_order import BOMLine
from shopfloor.schemas.inventory import AvailableInventory, InventoryAuditRow

logger = get_logger(__name__)

ZERO = Decimal("0")


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def get_part(db: Session, part_id: int) -> Part:
    part = db.query(Part).filter(Part.id == part_id).first()
    if not part:
        raise NotFoundError("Part", part_id)
    return part


def get_location(db: Session, location_id: int) -> StockLocation:
    location = db.query(StockLocation).filter(StockLocation.id == location_id).first()
    if not location:
        raise NotFoundError("Stock location", location_id)
    return location


def lock_balance(db: Session, part_id: int, location_id: int) -> Optional[InventoryBalance]:
    """SELECT ... FOR UPDATE on the balance row; None when no row exists yet."""
    return (
        db.query(InventoryBalance)
        .filter(
            InventoryBalance.part_id == part_id,
            InventoryBalance.location_id == location_id,
        )
        .with_for_update()
        .first()
    )


def get_balance(db: Session, part_id: int, location_id: int) -> Decimal:
    """Current on-hand quantity, 0 when the part was never stocked here."""
    quantity = (
        db.query(InventoryBalance.quantity)
        .filter(
            InventoryBalance.part_id == part_id,
            InventoryBalance.location_id == location_id,
        )
        .scalar()
    )
    return _to_decimal(quantity) if quantity is not None else ZERO


def adjust_inventory(
    db: Session,
    part_id: int,
    location_id: int,
    delta: Decimal,
    unit_cost: Optional[Decimal] = None,
) -> InventoryBalance:
    """
    Apply a signed quantity change to the canonical balance.

    Args:
        db: Database session
        part_id: Part being adjusted
        location_id: Stock location
        delta: Signed quantity (negative consumes, positive restores/receives)
        unit_cost: Optional new unit cost for the balance row

    Returns:
        The locked, updated InventoryBalance (flushed, not committed)

    Raises:
        InsufficientResourceError: If the result would be negative. Nothing
            is written in that case.
    """
    delta = _to_decimal(delta)
    balance = lock_balance(db, part_id, location_id)

    current = _to_decimal(balance.quantity) if balance else ZERO
    new_quantity = current + delta
    if new_quantity < 0:
        part = db.query(Part).filter(Part.id == part_id).first()
        raise InsufficientResourceError(
            part.part_number if part else f"part {part_id}",
            requested=-delta,
            available=current,
        )

    if balance is None:
        balance = InventoryBalance(
            part_id=part_id,
            location_id=location_id,
            quantity=new_quantity,
            unit_cost=unit_cost,
        )
        db.add(balance)
    else:
        balance.quantity = new_quantity
        if unit_cost is not None:
            balance.unit_cost = unit_cost

    db.flush()
    logger.debug(
        f"Inventory adjusted: part={part_id} location={location_id} "
        f"{current} {'+' if delta >= 0 else '-'} {abs(delta)} = {new_quantity}"
    )
    return balance


def receive_inventory(
    db: Session,
    part_id: int,
    location_id: int,
    quantity: Decimal,
    unit_cost: Optional[Decimal] = None,
) -> InventoryBalance:
    """Manual receipt (or return from the floor) into a location."""
    quantity = _to_decimal(quantity)
    if quantity <= 0:
        raise ValidationError("Quantity must be positive", field="quantity", value=quantity)
    get_part(db, part_id)
    get_location(db, location_id)

    balance = adjust_inventory(db, part_id, location_id, quantity, unit_cost=unit_cost)
    logger.info(f"Received {quantity} of part {part_id} into location {location_id}")
    return balance


def transfer_inventory(
    db: Session,
    part_id: int,
    from_location_id: int,
    to_location_id: int,
    quantity: Decimal,
) -> List[InventoryBalance]:
    """
    Move stock between two locations in one transaction.

    Both rows are locked in ascending location id order so two opposite
    transfers cannot deadlock each other.

    Returns:
        [source balance, destination balance]
    """
    quantity = _to_decimal(quantity)
    if quantity <= 0:
        raise ValidationError("Quantity must be positive", field="quantity", value=quantity)
    if from_location_id == to_location_id:
        raise ValidationError(
            "Source and destination locations must differ",
            field="to_location_id",
            value=to_location_id,
        )
    get_part(db, part_id)
    get_location(db, from_location_id)
    get_location(db, to_location_id)

    for location_id in sorted((from_location_id, to_location_id)):
        lock_balance(db, part_id, location_id)

    source = adjust_inventory(db, part_id, from_location_id, -quantity)
    destination = adjust_inventory(
        db, part_id, to_location_id, quantity, unit_cost=source.unit_cost
    )
    logger.info(
        f"Transferred {quantity} of part {part_id} from location "
        f"{from_location_id} to {to_location_id}"
    )
    return [source, destination]


def get_available_inventory(db: Session, part_id: int, location_id: int) -> AvailableInventory:
    """On hand minus the open (allocated, not yet consumed) BOM allocations."""
    on_hand = get_balance(db, part_id, location_id)

    open_lines = (
        db.query(BOMLine)
        .filter(
            BOMLine.part_id == part_id,
            BOMLine.source_location_id == location_id,
            BOMLine.is_allocated.is_(True),
            BOMLine.is_consumed.is_(False),
        )
        .all()
    )
    allocated = sum(
        (
            max(_to_decimal(line.quantity_allocated) - _to_decimal(line.quantity_consumed), ZERO)
            for line in open_lines
        ),
        ZERO,
    )

    return AvailableInventory(
        part_id=part_id,
        location_id=location_id,
        on_hand=on_hand,
        allocated=allocated,
        available=on_hand - allocated,
    )


def audit_inventory(db: Session) -> List[InventoryAuditRow]:
    """
    Read-only reconciliation view.

    One row per balance with the ledger's net consumption for the same
    (part, location) and a NEGATIVE_BALANCE flag.
    """
    net_by_key = {
        (part_id, location_id): _to_decimal(net)
        for part_id, location_id, net in (
            db.query(
                MaterialConsumption.part_id,
                MaterialConsumption.source_location_id,
                func.coalesce(func.sum(MaterialConsumption.qty), 0),
            )
            .group_by(MaterialConsumption.part_id, MaterialConsumption.source_location_id)
            .all()
        )
    }

    rows = (
        db.query(InventoryBalance, Part, StockLocation)
        .join(Part, Part.id == InventoryBalance.part_id)
        .join(StockLocation, StockLocation.id == InventoryBalance.location_id)
        .order_by(Part.part_number, StockLocation.code)
        .all()
    )

    result = []
    for balance, part, location in rows:
        quantity = _to_decimal(balance.quantity)
        result.append(
            InventoryAuditRow(
                part_id=part.id,
                part_number=part.part_number,
                location_id=location.id,
                location_code=location.code,
                quantity=quantity,
                net_consumed=net_by_key.get((part.id, location.id), ZERO),
                status="NEGATIVE_BALANCE" if quantity < 0 else "OK",
            )
        )
    return result
