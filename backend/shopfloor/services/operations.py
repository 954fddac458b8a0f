"""
Operation surface of the execution core.

Each function runs one unit of work (commit on success, rollback on any
error) and returns an OperationResult instead of raising:

    result = operations.consume(db, {"production_order_id": 1, ...})
    if not result.ok:
        print(result.error.error, result.error.message)

Inputs may be given as the pydantic schema or as a plain dict.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

import pydantic
from sqlalchemy.orm import Session

from shopfloor.db.base import to_naive_utc
from shopfloor.db.session import unit_of_work
from shopfloor.exceptions import ShopfloorException, ValidationError
from shopfloor.logging_config import get_logger
from shopfloor.schemas.common import OperationResult
from shopfloor.schemas.consumption import ConsumeRequest, LedgerEntryResponse
from shopfloor.schemas.production_order import (
    BOMLineCreate,
    BOMLineResponse,
    ProductionOrderCreate,
    ProductionOrderResponse,
    ProductionStepCreate,
    ProductionStepResponse,
)
from shopfloor.schemas.scheduling import AllocationInput, AllocationResponse
from shopfloor.services import (
    bom_service,
    consumption_service,
    order_service,
    scheduling_service,
)

logger = get_logger(__name__)

M = TypeVar("M", bound=pydantic.BaseModel)


def _parse(model: Type[M], data: Union[M, Dict[str, Any]]) -> M:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(
            f"Invalid {model.__name__}: {first.get('msg')}",
            field=field or None,
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def _run(db: Session, name: str, fn: Callable[[], Any]) -> OperationResult:
    try:
        with unit_of_work(db):
            data = fn()
    except ShopfloorException as e:
        logger.info(f"{name} failed: {e.error_code} {e.message}")
        return OperationResult.failure(e.to_dict())
    return OperationResult.success(data)


def _order(order) -> ProductionOrderResponse:
    return ProductionOrderResponse.model_validate(order)


# ============================================================================
# Orders
# ============================================================================

def create_order(
    db: Session,
    data: Union[ProductionOrderCreate, Dict[str, Any]],
    order_number_generator: Optional[order_service.OrderNumberGenerator] = None,
) -> OperationResult:
    return _run(db, "create_order", lambda: _order(
        order_service.create_order(db, _parse(ProductionOrderCreate, data), order_number_generator)
    ))


def get_order(db: Session, order_id: int) -> OperationResult:
    return _run(db, "get_order", lambda: _order(order_service.get_order(db, order_id)))


def add_step(
    db: Session,
    order_id: int,
    data: Union[ProductionStepCreate, Dict[str, Any]],
) -> OperationResult:
    return _run(db, "add_step", lambda: ProductionStepResponse.model_validate(
        order_service.add_step(db, order_id, _parse(ProductionStepCreate, data))
    ))


def add_bom_line(
    db: Session,
    order_id: int,
    data: Union[BOMLineCreate, Dict[str, Any]],
) -> OperationResult:
    def _add():
        line = _parse(BOMLineCreate, data)
        return BOMLineResponse.model_validate(bom_service.add_bom_line(
            db, order_id, line.part_id, line.quantity_required,
            source_location_id=line.source_location_id,
            unit_cost=line.unit_cost,
            notes=line.notes,
        ))
    return _run(db, "add_bom_line", _add)


def remove_step(db: Session, step_id: int) -> OperationResult:
    return _run(db, "remove_step", lambda: order_service.remove_step(db, step_id))


def transition_step(
    db: Session,
    step_id: int,
    new_status: str,
    actor: Optional[str] = None,
) -> OperationResult:
    return _run(db, "transition_step", lambda: ProductionStepResponse.model_validate(
        order_service.transition_step(db, step_id, new_status, actor)
    ))


def put_on_hold(db: Session, order_id: int, reason: str) -> OperationResult:
    return _run(db, "put_on_hold", lambda: _order(order_service.put_on_hold(db, order_id, reason)))


def resume(db: Session, order_id: int) -> OperationResult:
    return _run(db, "resume", lambda: _order(order_service.resume(db, order_id)))


def complete_order(
    db: Session,
    order_id: int,
    quantity: Optional[Decimal] = None,
    actor: Optional[str] = None,
) -> OperationResult:
    return _run(
        db, "complete_order",
        lambda: order_service.complete_order(db, order_id, quantity, actor),
    )


# ============================================================================
# Ledger
# ============================================================================

def consume(db: Session, request: Union[ConsumeRequest, Dict[str, Any]]) -> OperationResult:
    return _run(db, "consume", lambda: LedgerEntryResponse.model_validate(
        consumption_service.consume(db, _parse(ConsumeRequest, request))
    ))


def reverse(
    db: Session,
    ledger_entry_id: int,
    reason: str,
    actor: Optional[str] = None,
) -> OperationResult:
    return _run(db, "reverse", lambda: LedgerEntryResponse.model_validate(
        consumption_service.reverse(db, ledger_entry_id, reason, actor)
    ))


def consume_all_outstanding(db: Session, order_id: int, actor: Optional[str] = None) -> OperationResult:
    return _run(
        db, "consume_all_outstanding",
        lambda: consumption_service.consume_all_outstanding(db, order_id, consumed_by=actor),
    )


# ============================================================================
# Scheduling
# ============================================================================

def _allocation(allocation) -> AllocationResponse:
    return AllocationResponse.model_validate(allocation)


def validate(db: Session, candidate: Union[AllocationInput, Dict[str, Any]]) -> OperationResult:
    return _run(
        db, "validate",
        lambda: scheduling_service.validate(db, _parse(AllocationInput, candidate)),
    )


def schedule(
    db: Session,
    candidate: Union[AllocationInput, Dict[str, Any]],
    actor: Optional[str] = None,
) -> OperationResult:
    return _run(db, "schedule", lambda: _allocation(
        scheduling_service.schedule(db, _parse(AllocationInput, candidate), actor)
    ))


def reorder(db: Session, work_center_id: int, ordered_ids: List[int]) -> OperationResult:
    return _run(db, "reorder", lambda: [
        _allocation(a) for a in scheduling_service.reorder(db, work_center_id, ordered_ids)
    ])


def start_run(db: Session, allocation_id: int, actor: Optional[str] = None) -> OperationResult:
    return _run(db, "start_run", lambda: _allocation(
        scheduling_service.start_run(db, allocation_id, actor)
    ))


def pause_run(db: Session, allocation_id: int, actor: Optional[str] = None) -> OperationResult:
    return _run(db, "pause_run", lambda: _allocation(
        scheduling_service.pause_run(db, allocation_id, actor)
    ))


def complete_run(db: Session, allocation_id: int, actor: Optional[str] = None) -> OperationResult:
    return _run(db, "complete_run", lambda: _allocation(
        scheduling_service.complete_run(db, allocation_id, actor)
    ))


def delete_allocation(db: Session, allocation_id: int) -> OperationResult:
    return _run(
        db, "delete_allocation",
        lambda: scheduling_service.delete_allocation(db, allocation_id),
    )


def capacity(
    db: Session,
    work_center_ids: List[int],
    from_date: Union[date, datetime],
    to_date: Union[date, datetime],
) -> OperationResult:
    if isinstance(from_date, datetime):
        from_date = to_naive_utc(from_date).date()
    if isinstance(to_date, datetime):
        to_date = to_naive_utc(to_date).date()
    return _run(
        db, "capacity",
        lambda: scheduling_service.capacity(db, work_center_ids, from_date, to_date),
    )
