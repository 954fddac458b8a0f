"""
Serialized Unit Tracker

Status and location of individually tracked units always change together:
a consumed unit has no location, an in-stock unit always has one.
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from shopfloor.core.status_config import SerializedUnitStatus
from shopfloor.exceptions import NotFoundError, UnitUnavailableError, ValidationError
from shopfloor.logging_config import get_logger
from shopfloor.models.inventory import SerializedUnit
from shopfloor.services.inventory_service import adjust_inventory, get_location, get_part

logger = get_logger(__name__)


def lock_unit(db: Session, unit_id: int) -> SerializedUnit:
    unit = (
        db.query(SerializedUnit)
        .filter(SerializedUnit.id == unit_id)
        .with_for_update()
        .first()
    )
    if not unit:
        raise NotFoundError("Serialized unit", unit_id)
    return unit


def require_available(unit: SerializedUnit, location_id: int) -> None:
    """Raise UnitUnavailableError unless the unit is in stock at location_id."""
    if unit.status != SerializedUnitStatus.IN_STOCK.value:
        raise UnitUnavailableError(unit.serial_number, reason=f"status is {unit.status}")
    if unit.current_location_id != location_id:
        raise UnitUnavailableError(
            unit.serial_number,
            reason=f"located at {unit.current_location_id}, not {location_id}",
        )


def mark_consumed(unit: SerializedUnit) -> None:
    unit.status = SerializedUnitStatus.CONSUMED.value
    unit.current_location_id = None


def restore_unit(unit: SerializedUnit, location_id: int) -> None:
    unit.status = SerializedUnitStatus.IN_STOCK.value
    unit.current_location_id = location_id


def register_unit(
    db: Session,
    part_id: int,
    serial_number: str,
    location_id: int,
    lot_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> SerializedUnit:
    """
    Record a new in-stock serialized unit at a location.

    The unit is received into the canonical balance (+1) so that the
    balance and the in-stock unit count stay in step.
    """
    part = get_part(db, part_id)
    get_location(db, location_id)
    if not part.is_serialized:
        raise ValidationError(
            f"Part {part.part_number} is not serialized",
            field="part_id",
            value=part_id,
        )
    existing = (
        db.query(SerializedUnit)
        .filter(SerializedUnit.serial_number == serial_number)
        .first()
    )
    if existing:
        raise ValidationError(
            f"Serial number {serial_number} already exists",
            field="serial_number",
            value=serial_number,
        )

    unit = SerializedUnit(
        part_id=part_id,
        serial_number=serial_number,
        lot_number=lot_number,
        notes=notes,
    )
    restore_unit(unit, location_id)
    db.add(unit)
    db.flush()
    adjust_inventory(db, part_id, location_id, Decimal("1"))

    logger.info(f"Registered serialized unit {serial_number} for part {part.part_number}")
    return unit


def get_units_for_consumption(db: Session, part_id: int, location_id: int) -> List[SerializedUnit]:
    """In-stock units of a part at a location, ordered by serial number."""
    return (
        db.query(SerializedUnit)
        .filter(
            SerializedUnit.part_id == part_id,
            SerializedUnit.current_location_id == location_id,
            SerializedUnit.status == SerializedUnitStatus.IN_STOCK.value,
        )
        .order_by(SerializedUnit.serial_number)
        .all()
    )
