"""
Material Consumption Ledger Service

Records consumption of material against production orders as immutable
ledger entries and keeps the canonical balance, serialized units and BOM
lines consistent with them.

Guarantees:
- Idempotent: a consumption carrying an idempotency key is recorded at most
  once; replays return the original entry.
- Reversible: a reversal is a new entry with the negated quantity; each
  entry is reversed at most once.
- Atomic per call: the entry, balance, unit and BOM line change together
  or not at all. Callers own the transaction (see db.session.unit_of_work).
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shopfloor.core.status_config import ConsumptionMethod
from shopfloor.exceptions import (
    ConcurrencyError,
    InsufficientResourceError,
    InvalidStateError,
    NotFoundError,
    ShopfloorException,
    UnitUnavailableError,
    ValidationError,
)
from shopfloor.logging_config import get_logger
from shopfloor.models.consumption import LedgerEntry
from shopfloor.models.inventory import Part
from shopfloor.models.production_order import ProductionOrder
from shopfloor.schemas.consumption import (
    BOMConsumptionResult,
    ConsumedLine,
    ConsumeRequest,
    LineFailure,
    OrderReversalResult,
    PartConsumptionSummary,
)
from shopfloor.services import bom_service, inventory_service, serialized_unit_service

logger = get_logger(__name__)

ZERO = Decimal("0")


# ============================================================================
# Idempotency keys
# ============================================================================

def generate_bom_idempotency_key(order_id: int, bom_line_id: int) -> str:
    """Deterministic key for backflushing one BOM line of an order."""
    return f"BOM:{order_id}:{bom_line_id}"


def generate_serial_idempotency_key(unit_id: int, order_id: int) -> str:
    return f"SERIAL:{unit_id}:{order_id}"


def _reversal_key(original_key: Optional[str]) -> Optional[str]:
    return f"REVERSAL:{original_key}" if original_key else None


def _find_by_key(db: Session, idempotency_key: str) -> Optional[LedgerEntry]:
    return (
        db.query(LedgerEntry)
        .filter(
            LedgerEntry.idempotency_key == idempotency_key,
            LedgerEntry.is_reversal.is_(False),
        )
        .first()
    )


def _find_reversal_of(db: Session, entry_id: int) -> Optional[LedgerEntry]:
    return db.query(LedgerEntry).filter(LedgerEntry.reversal_of_id == entry_id).first()


def _get_order(db: Session, order_id: int) -> ProductionOrder:
    order = db.query(ProductionOrder).filter(ProductionOrder.id == order_id).first()
    if not order:
        raise NotFoundError("Production order", order_id)
    return order


# ============================================================================
# Consume
# ============================================================================

def consume(db: Session, request: ConsumeRequest) -> LedgerEntry:
    """
    Consume material from a location against a production order.

    Args:
        db: Database session
        request: What, how much, where from and (optionally) which unit,
            BOM line and idempotency key

    Returns:
        The new ledger entry, or the existing one on an idempotent replay

    Raises:
        ValidationError: Non-positive qty, or unit/BOM line not matching the part
        NotFoundError: Unknown order, part, location, unit or BOM line
        UnitUnavailableError: Serialized unit not in stock at the location
        InsufficientResourceError: Not enough on hand at the location
    """
    qty = Decimal(str(request.qty))
    if qty <= 0:
        raise ValidationError("Quantity must be positive", field="qty", value=qty)

    key = request.idempotency_key
    if key:
        existing = _find_by_key(db, key)
        if existing:
            logger.debug(f"Idempotent replay of consumption {key} -> entry {existing.id}")
            return existing

    _get_order(db, request.production_order_id)
    part = inventory_service.get_part(db, request.part_id)
    inventory_service.get_location(db, request.location_id)

    bom_line = None
    if request.bom_line_id is not None:
        bom_line = bom_service.get_bom_line(db, request.bom_line_id, lock=True)
        if bom_line.production_order_id != request.production_order_id:
            raise ValidationError(
                f"BOM line {bom_line.id} belongs to another order",
                field="bom_line_id",
                value=bom_line.id,
            )
        if bom_line.part_id != request.part_id:
            raise ValidationError(
                f"BOM line {bom_line.id} is for a different part",
                field="bom_line_id",
                value=bom_line.id,
            )

    unit = None
    if request.serialized_unit_id is not None:
        unit = serialized_unit_service.lock_unit(db, request.serialized_unit_id)
        if unit.part_id != request.part_id:
            raise ValidationError(
                f"Serialized unit {unit.serial_number} is not part {part.part_number}",
                field="serialized_unit_id",
                value=unit.id,
            )
        serialized_unit_service.require_available(unit, request.location_id)
        qty = Decimal("1")
        balance = inventory_service.lock_balance(db, request.part_id, request.location_id)
    else:
        balance = inventory_service.lock_balance(db, request.part_id, request.location_id)
        available = Decimal(str(balance.quantity)) if balance else ZERO
        if available < qty:
            raise InsufficientResourceError(
                part.part_number, requested=qty, available=available
            )

    # A concurrent writer holding the same key may have committed while we
    # waited on the row lock.
    if key:
        existing = _find_by_key(db, key)
        if existing:
            logger.debug(f"Idempotent replay of consumption {key} -> entry {existing.id}")
            return existing

    unit_cost = request.unit_cost
    if unit_cost is None and balance is not None:
        unit_cost = balance.unit_cost

    inventory_service.adjust_inventory(db, request.part_id, request.location_id, -qty)

    entry = LedgerEntry(
        production_order_id=request.production_order_id,
        production_step_id=request.production_step_id,
        operation_run_id=request.operation_run_id,
        part_id=request.part_id,
        bom_line_id=request.bom_line_id,
        source_location_id=request.location_id,
        qty=qty,
        unit_cost=unit_cost,
        method=ConsumptionMethod(request.method).value,
        is_reversal=False,
        serialized_unit_id=request.serialized_unit_id,
        lot_number=request.lot_number or (unit.lot_number if unit else None),
        idempotency_key=key,
        consumed_by=request.consumed_by,
    )
    db.add(entry)
    db.flush()

    if unit is not None:
        serialized_unit_service.mark_consumed(unit)
    if bom_line is not None:
        bom_service.apply_consumption(bom_line, qty)
    db.flush()

    logger.info(
        f"Consumed {qty} of {part.part_number} for order {request.production_order_id} "
        f"from location {request.location_id} (entry {entry.id})"
    )
    return entry


def consume_serialized_unit(
    db: Session,
    unit_id: int,
    order_id: int,
    *,
    production_step_id: Optional[int] = None,
    bom_line_id: Optional[int] = None,
    method: ConsumptionMethod = ConsumptionMethod.SCAN,
    consumed_by: Optional[str] = None,
) -> LedgerEntry:
    """Consume one serialized unit from wherever it currently sits."""
    key = generate_serial_idempotency_key(unit_id, order_id)
    existing = _find_by_key(db, key)
    if existing:
        logger.debug(f"Idempotent replay of consumption {key} -> entry {existing.id}")
        return existing

    unit = serialized_unit_service.lock_unit(db, unit_id)
    if unit.current_location_id is None:
        raise UnitUnavailableError(unit.serial_number, reason=f"status is {unit.status}")

    return consume(
        db,
        ConsumeRequest(
            production_order_id=order_id,
            part_id=unit.part_id,
            location_id=unit.current_location_id,
            qty=Decimal("1"),
            production_step_id=production_step_id,
            bom_line_id=bom_line_id,
            serialized_unit_id=unit.id,
            lot_number=unit.lot_number,
            method=method,
            idempotency_key=key,
            consumed_by=consumed_by,
        ),
    )


# ============================================================================
# Reverse
# ============================================================================

def reverse(
    db: Session,
    ledger_entry_id: int,
    reason: str,
    actor: Optional[str] = None,
) -> LedgerEntry:
    """
    Reverse a consumption entry.

    A second call for the same entry returns the first reversal unchanged.

    Raises:
        ValidationError: Missing reason
        NotFoundError: Unknown entry
        InvalidStateError: The entry is itself a reversal
    """
    if not reason or not reason.strip():
        raise ValidationError("Reversal reason is required", field="reason")

    existing = _find_reversal_of(db, ledger_entry_id)
    if existing:
        logger.debug(f"Entry {ledger_entry_id} already reversed by {existing.id}")
        return existing

    original = (
        db.query(LedgerEntry)
        .filter(LedgerEntry.id == ledger_entry_id)
        .with_for_update()
        .first()
    )
    if not original:
        raise NotFoundError("Ledger entry", ledger_entry_id)
    if original.is_reversal:
        raise InvalidStateError(
            f"Ledger entry {ledger_entry_id} is itself a reversal",
            current_state="reversal",
        )

    existing = _find_reversal_of(db, ledger_entry_id)
    if existing:
        return existing

    qty = Decimal(str(original.qty))
    reversal = LedgerEntry(
        production_order_id=original.production_order_id,
        production_step_id=original.production_step_id,
        operation_run_id=original.operation_run_id,
        part_id=original.part_id,
        bom_line_id=original.bom_line_id,
        source_location_id=original.source_location_id,
        qty=-qty,
        unit_cost=original.unit_cost,
        method=original.method,
        is_reversal=True,
        reversal_of_id=original.id,
        reversal_reason=reason.strip(),
        serialized_unit_id=original.serialized_unit_id,
        lot_number=original.lot_number,
        idempotency_key=_reversal_key(original.idempotency_key),
        consumed_by=actor,
    )
    db.add(reversal)
    db.flush()

    # Same lock order as consume: BOM line, unit, balance
    line = None
    if original.bom_line_id is not None:
        line = bom_service.get_bom_line(db, original.bom_line_id, lock=True)
    unit = None
    if original.serialized_unit_id is not None:
        unit = serialized_unit_service.lock_unit(db, original.serialized_unit_id)

    inventory_service.adjust_inventory(db, original.part_id, original.source_location_id, qty)

    if unit is not None:
        serialized_unit_service.restore_unit(unit, original.source_location_id)
    if line is not None:
        bom_service.apply_reversal(line, qty)
    db.flush()

    logger.info(
        f"Reversed entry {original.id} ({qty} of part {original.part_id}) "
        f"as entry {reversal.id}: {reversal.reversal_reason}"
    )
    return reversal


def reverse_order_consumptions(
    db: Session,
    order_id: int,
    reason: str,
    actor: Optional[str] = None,
) -> OrderReversalResult:
    """Reverse every consumption recorded against an order."""
    _get_order(db, order_id)
    entries = (
        db.query(LedgerEntry)
        .filter(
            LedgerEntry.production_order_id == order_id,
            LedgerEntry.is_reversal.is_(False),
        )
        .order_by(LedgerEntry.id)
        .all()
    )

    reversed_count = 0
    errors: List[str] = []
    for entry in entries:
        if _find_reversal_of(db, entry.id):
            continue
        try:
            with db.begin_nested():
                reverse(db, entry.id, reason, actor)
            reversed_count += 1
        except ShopfloorException as e:
            errors.append(f"Entry {entry.id}: {e.message}")

    logger.info(f"Reversed {reversed_count} consumption(s) for order {order_id}")
    return OrderReversalResult(reversed=reversed_count, errors=errors)


# ============================================================================
# Backflush
# ============================================================================

def consume_all_outstanding(
    db: Session,
    order_id: int,
    consumed_by: Optional[str] = None,
) -> BOMConsumptionResult:
    """
    Backflush the outstanding quantity of every unconsumed BOM line.

    Each line runs in its own savepoint: a failing line is rolled back alone
    and reported in `failed`; the others still commit with the caller's
    transaction.
    """
    _get_order(db, order_id)
    result = BOMConsumptionResult()

    for line in bom_service.get_outstanding_lines(db, order_id):
        outstanding = Decimal(str(line.quantity_required)) - Decimal(str(line.quantity_consumed))
        if outstanding <= 0:
            result.failed.append(LineFailure(
                bom_line_id=line.id,
                part_id=line.part_id,
                error=ValidationError.error_code,
                message="Nothing outstanding to consume",
            ))
            continue
        if line.source_location_id is None:
            result.failed.append(LineFailure(
                bom_line_id=line.id,
                part_id=line.part_id,
                error=ValidationError.error_code,
                message="No source location set for BOM line",
            ))
            continue

        request = ConsumeRequest(
            production_order_id=order_id,
            part_id=line.part_id,
            location_id=line.source_location_id,
            qty=outstanding,
            bom_line_id=line.id,
            unit_cost=line.unit_cost,
            method=ConsumptionMethod.BACKFLUSH,
            idempotency_key=generate_bom_idempotency_key(order_id, line.id),
            consumed_by=consumed_by,
        )
        try:
            with db.begin_nested():
                entry = consume(db, request)
        except ShopfloorException as e:
            result.failed.append(LineFailure(
                bom_line_id=line.id,
                part_id=line.part_id,
                error=e.error_code,
                message=e.message,
            ))
            continue
        except IntegrityError as e:
            result.failed.append(LineFailure(
                bom_line_id=line.id,
                part_id=line.part_id,
                error=ConcurrencyError.error_code,
                message=str(e.orig),
            ))
            continue

        result.succeeded.append(ConsumedLine(
            bom_line_id=line.id,
            part_id=line.part_id,
            ledger_entry_id=entry.id,
            qty=Decimal(str(entry.qty)),
        ))

    if result.failed:
        logger.warning(
            f"Order {order_id}: {len(result.failed)} BOM line(s) failed to consume, "
            f"{len(result.succeeded)} succeeded"
        )
    return result


# ============================================================================
# Reporting
# ============================================================================

def get_consumption_log(db: Session, order_id: int) -> List[LedgerEntry]:
    """All ledger entries for an order, newest first."""
    return (
        db.query(LedgerEntry)
        .filter(LedgerEntry.production_order_id == order_id)
        .order_by(LedgerEntry.consumed_at.desc(), LedgerEntry.id.desc())
        .all()
    )


def get_net_consumed(db: Session, order_id: int, part_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(LedgerEntry.qty), 0))
        .filter(
            LedgerEntry.production_order_id == order_id,
            LedgerEntry.part_id == part_id,
        )
        .scalar()
    )
    return Decimal(str(total))


def get_consumption_summary(db: Session, order_id: int) -> List[PartConsumptionSummary]:
    """Per-part totals of consumption and reversal for one order."""
    rows = (
        db.query(LedgerEntry, Part)
        .join(Part, Part.id == LedgerEntry.part_id)
        .filter(LedgerEntry.production_order_id == order_id)
        .order_by(Part.part_number, LedgerEntry.id)
        .all()
    )

    summaries = {}
    for entry, part in rows:
        summary = summaries.get(part.id)
        if summary is None:
            summary = PartConsumptionSummary(
                part_id=part.id,
                part_number=part.part_number,
                part_name=part.name,
                total_consumed=ZERO,
                total_reversed=ZERO,
                net_consumed=ZERO,
                total_cost=ZERO,
                consumption_count=0,
                reversal_count=0,
            )
            summaries[part.id] = summary

        qty = Decimal(str(entry.qty))
        if entry.is_reversal:
            summary.total_reversed += -qty
            summary.reversal_count += 1
        else:
            summary.total_consumed += qty
            summary.consumption_count += 1
            if summary.last_consumed_at is None or entry.consumed_at > summary.last_consumed_at:
                summary.last_consumed_at = entry.consumed_at
        summary.net_consumed += qty
        if entry.unit_cost is not None:
            summary.total_cost += qty * Decimal(str(entry.unit_cost))

    return list(summaries.values())
