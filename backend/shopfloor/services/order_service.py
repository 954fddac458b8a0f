"""
Order Lifecycle Service

Production orders move queued -> in_progress -> complete, driven by their
steps. Hold is an explicit operator pause: while an order is on hold, step
changes never move it, until resume().

Every step write and the order recompute that follows it run in the same
transaction, with the order row locked first.
"""
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from shopfloor.core.settings import settings
from shopfloor.core.status_config import (
    STEP_DONE_STATUSES,
    ProductionOrderStatus,
    StepStatus,
    require_transition,
)
from shopfloor.db.base import utcnow
from shopfloor.exceptions import (
    InvalidStateError,
    MaterialConsumptionError,
    NotFoundError,
    ValidationError,
)
from shopfloor.logging_config import get_logger
from shopfloor.models.production_order import ProductionOrder, ProductionStep
from shopfloor.models.work_center import WorkCenter
from shopfloor.schemas.production_order import (
    OrderCompletionResult,
    ProductionOrderCreate,
    ProductionStepCreate,
)
from shopfloor.services import consumption_service

logger = get_logger(__name__)

OrderNumberGenerator = Callable[[Session], str]


# ============================================================================
# Lookup helpers
# ============================================================================

def get_order(db: Session, order_id: int, *, lock: bool = False) -> ProductionOrder:
    query = db.query(ProductionOrder).filter(ProductionOrder.id == order_id)
    if lock:
        query = query.with_for_update()
    order = query.first()
    if not order:
        raise NotFoundError("Production order", order_id)
    return order


def get_step(db: Session, step_id: int) -> ProductionStep:
    step = db.query(ProductionStep).filter(ProductionStep.id == step_id).first()
    if not step:
        raise NotFoundError("Production step", step_id)
    return step


def _lock_step(db: Session, step_id: int) -> ProductionStep:
    return (
        db.query(ProductionStep)
        .filter(ProductionStep.id == step_id)
        .with_for_update()
        .first()
    )


def _steps_of(db: Session, order_id: int):
    return (
        db.query(ProductionStep)
        .filter(ProductionStep.production_order_id == order_id)
        .order_by(ProductionStep.step_number)
        .all()
    )


# ============================================================================
# Creation
# ============================================================================

def next_order_number(db: Session) -> str:
    """
    Generate the next PO-<year>-<seq> number.

    Locks the latest order of the year so concurrent creators queue behind
    each other; the unique constraint on order_number backs this up.
    """
    prefix = settings.ORDER_NUMBER_PREFIX
    year = utcnow().year
    last_order = (
        db.query(ProductionOrder)
        .filter(ProductionOrder.order_number.like(f"{prefix}-{year}-%"))
        .order_by(desc(ProductionOrder.order_number))
        .with_for_update()
        .first()
    )
    if last_order:
        next_num = int(last_order.order_number.split("-")[2]) + 1
    else:
        next_num = 1
    return f"{prefix}-{year}-{next_num:04d}"


def create_order(
    db: Session,
    data: ProductionOrderCreate,
    order_number_generator: Optional[OrderNumberGenerator] = None,
) -> ProductionOrder:
    """
    Create a queued production order.

    Args:
        db: Database session
        data: Order fields
        order_number_generator: Called once with the session to obtain the
            human-readable order number. Defaults to next_order_number.
    """
    generator = order_number_generator or next_order_number
    order_number = generator(db)

    order = ProductionOrder(
        order_number=order_number,
        title=data.title,
        description=data.description,
        quantity_ordered=data.quantity_ordered,
        priority=data.priority,
        created_by=data.created_by,
        status=ProductionOrderStatus.QUEUED.value,
    )
    db.add(order)
    db.flush()

    logger.info(f"Created production order {order.order_number}")
    return order


# ============================================================================
# Steps
# ============================================================================

def add_step(db: Session, order_id: int, data: ProductionStepCreate) -> ProductionStep:
    """Append a step at the end of the order (step_number = max + 1)."""
    order = get_order(db, order_id, lock=True)
    if order.status == ProductionOrderStatus.COMPLETE.value:
        raise InvalidStateError(
            f"Cannot add steps to completed order {order.order_number}",
            current_state=order.status,
        )
    if data.work_center_id is not None:
        if not db.query(WorkCenter).filter(WorkCenter.id == data.work_center_id).first():
            raise NotFoundError("Work center", data.work_center_id)

    last_number = (
        db.query(func.max(ProductionStep.step_number))
        .filter(ProductionStep.production_order_id == order_id)
        .scalar()
    )
    step = ProductionStep(
        production_order_id=order_id,
        step_number=(last_number or 0) + 1,
        name=data.name,
        instructions=data.instructions,
        work_center_id=data.work_center_id,
        estimated_minutes=data.estimated_minutes,
        status=StepStatus.PENDING.value,
    )
    db.add(step)
    db.flush()

    recompute_order_status(db, order)
    return step


def remove_step(db: Session, step_id: int) -> None:
    """Remove a pending step and renumber the remaining steps 1..N."""
    step = get_step(db, step_id)
    order = get_order(db, step.production_order_id, lock=True)
    step = _lock_step(db, step_id)
    if step.status != StepStatus.PENDING.value:
        raise InvalidStateError(
            f"Only pending steps can be removed (step {step.step_number} is {step.status})",
            current_state=step.status,
            allowed_states=[StepStatus.PENDING.value],
        )

    db.delete(step)
    db.flush()

    for number, remaining in enumerate(_steps_of(db, order.id), start=1):
        if remaining.step_number != number:
            remaining.step_number = number
            # One row at a time keeps (order, step_number) unique
            db.flush()

    db.expire(order, ["steps"])
    recompute_order_status(db, order)


def transition_step(
    db: Session,
    step_id: int,
    new_status: str,
    actor: Optional[str] = None,
) -> ProductionStep:
    """
    Move a step through pending -> in_progress -> complete/skipped.

    Raises:
        NotFoundError: Unknown step
        InvalidStateError: Transition not in the step transition table
    """
    step = get_step(db, step_id)
    order = get_order(db, step.production_order_id, lock=True)
    step = _lock_step(db, step_id)

    try:
        new_status = StepStatus(new_status).value
    except ValueError:
        raise ValidationError(f"Unknown step status: {new_status}", field="new_status", value=new_status)
    require_transition("production_step", step.status, new_status)

    now = utcnow()
    if new_status == StepStatus.IN_PROGRESS.value:
        step.started_at = now
    else:
        step.completed_at = now
        step.completed_by = actor
        if step.started_at is not None:
            step.actual_minutes = round((now - step.started_at).total_seconds() / 60)
    step.status = new_status
    db.flush()

    recompute_order_status(db, order)
    logger.info(
        f"Order {order.order_number} step {step.step_number} -> {new_status} "
        f"(order {order.status})"
    )
    return step


def recompute_order_status(db: Session, order: ProductionOrder) -> ProductionOrder:
    """
    Derive the order status from its steps.

    Hold and complete are left alone. All steps complete/skipped completes
    the order; any started or finished step moves a queued order to
    in_progress.
    """
    if order.status in (ProductionOrderStatus.HOLD.value, ProductionOrderStatus.COMPLETE.value):
        return order

    steps = _steps_of(db, order.id)
    if not steps:
        return order

    now = utcnow()
    if all(step.status in STEP_DONE_STATUSES for step in steps):
        order.status = ProductionOrderStatus.COMPLETE.value
        order.actual_end = now
        order.quantity_completed = order.quantity_ordered
        if order.actual_start is None:
            order.actual_start = now
        logger.info(f"Order {order.order_number} complete: all steps done")
    elif order.status == ProductionOrderStatus.QUEUED.value and any(
        step.status in (StepStatus.IN_PROGRESS.value, StepStatus.COMPLETE.value)
        for step in steps
    ):
        order.status = ProductionOrderStatus.IN_PROGRESS.value
        if order.actual_start is None:
            order.actual_start = now

    db.flush()
    return order


# ============================================================================
# Hold / resume
# ============================================================================

def put_on_hold(db: Session, order_id: int, reason: str) -> ProductionOrder:
    if not reason or not reason.strip():
        raise ValidationError("Hold reason is required", field="reason")

    order = get_order(db, order_id, lock=True)
    require_transition("production_order", order.status, ProductionOrderStatus.HOLD)

    order.status = ProductionOrderStatus.HOLD.value
    order.hold_reason = reason.strip()
    db.flush()

    logger.info(f"Order {order.order_number} on hold: {order.hold_reason}")
    return order


def resume(db: Session, order_id: int) -> ProductionOrder:
    order = get_order(db, order_id, lock=True)
    if order.status != ProductionOrderStatus.HOLD.value:
        raise InvalidStateError(
            f"Order {order.order_number} is not on hold",
            current_state=order.status,
            allowed_states=[ProductionOrderStatus.HOLD.value],
        )

    order.status = ProductionOrderStatus.IN_PROGRESS.value
    order.hold_reason = None
    if order.actual_start is None:
        order.actual_start = utcnow()
    db.flush()

    logger.info(f"Order {order.order_number} resumed")
    return order


# ============================================================================
# Completion
# ============================================================================

def complete_order(
    db: Session,
    order_id: int,
    quantity: Optional[Decimal] = None,
    actor: Optional[str] = None,
) -> OrderCompletionResult:
    """
    Consume all outstanding BOM material and mark the order complete.

    Lines that fail are reported in the result; the order still completes
    unless every line failed. Completing an already-complete order consumes
    nothing new because BOM idempotency keys are derived from the order and
    line ids.

    Raises:
        MaterialConsumptionError: Every outstanding BOM line failed
    """
    if quantity is not None and Decimal(str(quantity)) < 0:
        raise ValidationError("Completed quantity cannot be negative", field="quantity", value=quantity)

    order = get_order(db, order_id, lock=True)
    consumption = consumption_service.consume_all_outstanding(db, order_id, consumed_by=actor)

    if consumption.all_failed:
        logger.warning(f"Order {order.order_number} not completed: every BOM line failed")
        raise MaterialConsumptionError(
            order.order_number,
            [failure.model_dump() for failure in consumption.failed],
        )

    if order.status != ProductionOrderStatus.COMPLETE.value:
        require_transition("production_order", order.status, ProductionOrderStatus.COMPLETE)
        now = utcnow()
        order.status = ProductionOrderStatus.COMPLETE.value
        order.hold_reason = None
        order.actual_end = now
        if order.actual_start is None:
            order.actual_start = now
        order.quantity_completed = quantity if quantity is not None else order.quantity_ordered
    elif quantity is not None:
        order.quantity_completed = quantity
    db.flush()

    if consumption.failed:
        logger.warning(
            f"Order {order.order_number} completed with {len(consumption.failed)} "
            f"unconsumed BOM line(s)"
        )
    else:
        logger.info(f"Order {order.order_number} completed")

    return OrderCompletionResult(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status,
        quantity_completed=order.quantity_completed,
        actual_end=order.actual_end,
        consumption=consumption,
    )
