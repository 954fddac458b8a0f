"""
Work Center Scheduling Service

Validates and persists time allocations (operation runs) at work centers.
This is conflict detection only: nothing is moved or optimised.

An allocation without an end is treated as lasting
settings.DEFAULT_ALLOCATION_MINUTES. Two windows overlap when
start < other_end and end > other_start, so back-to-back windows do not
conflict.
"""
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from shopfloor.core.settings import settings
from shopfloor.core.status_config import (
    AllocationStatus,
    ProductionOrderStatus,
    require_transition,
)
from shopfloor.db.base import to_naive_utc, utcnow
from shopfloor.exceptions import (
    InvalidStateError,
    NotFoundError,
    ScheduleConflictError,
    ValidationError,
)
from shopfloor.logging_config import get_logger
from shopfloor.models.production_order import ProductionOrder
from shopfloor.models.work_center import WorkCenter, WorkCenterAllocation
from shopfloor.schemas.scheduling import (
    AllocationFilters,
    AllocationInput,
    AllocationUpdate,
    ScheduleConflict,
    ScheduleValidationResult,
    WorkCenterCapacity,
)

logger = get_logger(__name__)

# Allocations that may still be edited or rescheduled
EDITABLE_STATUSES = {AllocationStatus.NOT_STARTED.value, AllocationStatus.PAUSED.value}


def _default_end(start: datetime) -> datetime:
    return start + timedelta(minutes=settings.DEFAULT_ALLOCATION_MINUTES)


def get_allocation(db: Session, allocation_id: int, *, lock: bool = False) -> WorkCenterAllocation:
    query = db.query(WorkCenterAllocation).filter(WorkCenterAllocation.id == allocation_id)
    if lock:
        query = query.with_for_update()
    allocation = query.first()
    if not allocation:
        raise NotFoundError("Work center allocation", allocation_id)
    return allocation


# ============================================================================
# Conflict detection
# ============================================================================

def detect_conflicts(
    db: Session,
    work_center_id: int,
    start: datetime,
    end: Optional[datetime] = None,
    exclude_id: Optional[int] = None,
) -> List[ScheduleConflict]:
    """
    Every non-completed allocation at the work center that overlaps
    [start, end). All overlaps are returned, not just the first.
    """
    start, end = to_naive_utc(start), to_naive_utc(end)
    if end is None:
        end = _default_end(start)

    query = db.query(WorkCenterAllocation).filter(
        WorkCenterAllocation.work_center_id == work_center_id,
        WorkCenterAllocation.status != AllocationStatus.COMPLETED.value,
        WorkCenterAllocation.scheduled_start < end,
    )
    if exclude_id is not None:
        query = query.filter(WorkCenterAllocation.id != exclude_id)

    conflicts = []
    for existing in query.order_by(WorkCenterAllocation.scheduled_start).all():
        existing_end = existing.effective_end(settings.DEFAULT_ALLOCATION_MINUTES)
        if start < existing_end and end > existing.scheduled_start:
            conflicts.append(ScheduleConflict(
                conflict_type="overlap",
                message=(
                    f"Overlaps allocation {existing.id} "
                    f"({existing.scheduled_start:%Y-%m-%d %H:%M} - {existing_end:%H:%M})"
                ),
                allocation_id=existing.id,
                production_order_id=existing.production_order_id,
                scheduled_start=existing.scheduled_start,
                scheduled_end=existing_end,
            ))
    return conflicts


def validate(
    db: Session,
    candidate: AllocationInput,
    exclude_id: Optional[int] = None,
) -> ScheduleValidationResult:
    """
    Check a proposed allocation without writing anything.

    Overlaps and unknown order/work center references are hard conflicts.
    An inactive work center, or an order that is complete or on hold, only
    produces a warning.
    """
    end = candidate.scheduled_end or _default_end(candidate.scheduled_start)
    if end <= candidate.scheduled_start:
        raise ValidationError(
            "Scheduled end must be after scheduled start",
            field="scheduled_end",
            value=candidate.scheduled_end,
        )

    conflicts = detect_conflicts(
        db, candidate.work_center_id, candidate.scheduled_start, end, exclude_id=exclude_id
    )
    warnings = []

    order = (
        db.query(ProductionOrder)
        .filter(ProductionOrder.id == candidate.production_order_id)
        .first()
    )
    if not order:
        conflicts.append(ScheduleConflict(
            conflict_type="missing_order",
            message="Production order not found",
            production_order_id=candidate.production_order_id,
            scheduled_start=candidate.scheduled_start,
            scheduled_end=end,
        ))
    elif order.status == ProductionOrderStatus.COMPLETE.value:
        warnings.append(f"Production order {order.order_number} is already complete")
    elif order.status == ProductionOrderStatus.HOLD.value:
        warnings.append(f"Production order {order.order_number} is on hold")

    work_center = db.query(WorkCenter).filter(WorkCenter.id == candidate.work_center_id).first()
    if not work_center:
        conflicts.append(ScheduleConflict(
            conflict_type="missing_work_center",
            message="Work center not found",
            scheduled_start=candidate.scheduled_start,
            scheduled_end=end,
        ))
    elif not work_center.is_active:
        warnings.append(f'Work center "{work_center.name}" is inactive')

    return ScheduleValidationResult(valid=not conflicts, conflicts=conflicts, warnings=warnings)


# ============================================================================
# Writes
# ============================================================================

def schedule(
    db: Session,
    candidate: AllocationInput,
    actor: Optional[str] = None,
) -> WorkCenterAllocation:
    """
    Validate and persist a not_started allocation.

    The work center row is locked while the next sequence number
    (max + 1, unless supplied) is taken.

    Raises:
        ScheduleConflictError: Any hard conflict; carries the conflict list
    """
    result = validate(db, candidate)
    if not result.valid:
        raise ScheduleConflictError([c.model_dump(mode="json") for c in result.conflicts])
    for warning in result.warnings:
        logger.warning(f"Scheduling order {candidate.production_order_id}: {warning}")

    db.query(WorkCenter).filter(WorkCenter.id == candidate.work_center_id).with_for_update().first()

    sequence_number = candidate.sequence_number
    if sequence_number is None:
        last = (
            db.query(func.max(WorkCenterAllocation.sequence_number))
            .filter(WorkCenterAllocation.work_center_id == candidate.work_center_id)
            .scalar()
        )
        sequence_number = (last or 0) + 1

    allocation = WorkCenterAllocation(
        work_center_id=candidate.work_center_id,
        production_order_id=candidate.production_order_id,
        production_step_id=candidate.production_step_id,
        scheduled_start=candidate.scheduled_start,
        scheduled_end=candidate.scheduled_end,
        sequence_number=sequence_number,
        status=AllocationStatus.NOT_STARTED.value,
        scheduled_by=actor,
    )
    db.add(allocation)
    db.flush()

    logger.info(
        f"Scheduled order {candidate.production_order_id} at work center "
        f"{candidate.work_center_id} #{sequence_number} from {candidate.scheduled_start}"
    )
    return allocation


def update_allocation(
    db: Session,
    allocation_id: int,
    changes: AllocationUpdate,
) -> WorkCenterAllocation:
    """Move or resize an allocation that has not finished; re-checks overlaps."""
    allocation = get_allocation(db, allocation_id, lock=True)
    if allocation.status not in EDITABLE_STATUSES:
        raise InvalidStateError(
            f"Cannot reschedule a {allocation.status} allocation",
            current_state=allocation.status,
            allowed_states=sorted(EDITABLE_STATUSES),
        )

    fields = changes.model_dump(exclude_unset=True)
    moved = {"work_center_id", "scheduled_start", "scheduled_end"} & fields.keys()
    if moved:
        candidate = AllocationInput(
            work_center_id=fields.get("work_center_id", allocation.work_center_id),
            production_order_id=allocation.production_order_id,
            production_step_id=allocation.production_step_id,
            scheduled_start=fields.get("scheduled_start", allocation.scheduled_start),
            scheduled_end=fields.get("scheduled_end", allocation.scheduled_end),
        )
        result = validate(db, candidate, exclude_id=allocation.id)
        if not result.valid:
            raise ScheduleConflictError([c.model_dump(mode="json") for c in result.conflicts])

    for field, value in fields.items():
        setattr(allocation, field, value)
    db.flush()
    return allocation


def reorder(db: Session, work_center_id: int, ordered_ids: List[int]) -> List[WorkCenterAllocation]:
    """
    Renumber allocations 1..N in the given order.

    Ids that are not at this work center are ignored. Overlaps are not
    re-checked: sequence is display ordering only.
    """
    if not db.query(WorkCenter).filter(WorkCenter.id == work_center_id).first():
        raise NotFoundError("Work center", work_center_id)

    allocations = {
        a.id: a
        for a in db.query(WorkCenterAllocation)
        .filter(
            WorkCenterAllocation.work_center_id == work_center_id,
            WorkCenterAllocation.id.in_(ordered_ids),
        )
        .with_for_update()
        .all()
    }

    reordered = []
    for allocation_id in ordered_ids:
        allocation = allocations.get(allocation_id)
        if allocation is None or allocation in reordered:
            continue
        reordered.append(allocation)
        allocation.sequence_number = len(reordered)
    db.flush()
    return reordered


# ============================================================================
# Run lifecycle
# ============================================================================

def _transition(db: Session, allocation_id: int, new_status: AllocationStatus) -> WorkCenterAllocation:
    allocation = get_allocation(db, allocation_id, lock=True)
    require_transition("allocation", allocation.status, new_status)
    allocation.status = new_status.value
    return allocation


def start_run(db: Session, allocation_id: int, actor: Optional[str] = None) -> WorkCenterAllocation:
    """Start (or resume) an operation run."""
    allocation = _transition(db, allocation_id, AllocationStatus.RUNNING)
    if allocation.actual_start is None:
        allocation.actual_start = utcnow()
        allocation.started_by = actor
    allocation.paused_at = None
    db.flush()
    logger.info(f"Run {allocation.id} started at work center {allocation.work_center_id}")
    return allocation


def pause_run(db: Session, allocation_id: int, actor: Optional[str] = None) -> WorkCenterAllocation:
    allocation = _transition(db, allocation_id, AllocationStatus.PAUSED)
    allocation.paused_at = utcnow()
    allocation.paused_by = actor
    db.flush()
    logger.info(f"Run {allocation.id} paused")
    return allocation


def complete_run(db: Session, allocation_id: int, actor: Optional[str] = None) -> WorkCenterAllocation:
    allocation = _transition(db, allocation_id, AllocationStatus.COMPLETED)
    allocation.actual_end = utcnow()
    allocation.completed_by = actor
    db.flush()
    logger.info(f"Run {allocation.id} completed")
    return allocation


def delete_allocation(db: Session, allocation_id: int) -> None:
    """Delete an allocation that has not started."""
    allocation = get_allocation(db, allocation_id, lock=True)
    if allocation.status != AllocationStatus.NOT_STARTED.value:
        raise InvalidStateError(
            f"Cannot delete a {allocation.status} allocation",
            current_state=allocation.status,
            allowed_states=[AllocationStatus.NOT_STARTED.value],
        )
    db.delete(allocation)
    db.flush()


# ============================================================================
# Queries
# ============================================================================

def list_allocations(db: Session, filters: Optional[AllocationFilters] = None) -> List[WorkCenterAllocation]:
    filters = filters or AllocationFilters()
    query = db.query(WorkCenterAllocation)
    if filters.work_center_id is not None:
        query = query.filter(WorkCenterAllocation.work_center_id == filters.work_center_id)
    if filters.production_order_id is not None:
        query = query.filter(WorkCenterAllocation.production_order_id == filters.production_order_id)
    if filters.status:
        query = query.filter(WorkCenterAllocation.status == filters.status)
    if filters.start_from is not None:
        query = query.filter(WorkCenterAllocation.scheduled_start >= filters.start_from)
    if filters.start_to is not None:
        query = query.filter(WorkCenterAllocation.scheduled_start <= filters.start_to)
    return query.order_by(
        WorkCenterAllocation.work_center_id,
        WorkCenterAllocation.sequence_number,
        WorkCenterAllocation.scheduled_start,
    ).all()


def get_work_center_timeline(
    db: Session,
    work_center_id: int,
    from_ts: datetime,
    to_ts: datetime,
) -> List[WorkCenterAllocation]:
    """Allocations starting within [from_ts, to_ts] at one work center, by start time."""
    from_ts, to_ts = to_naive_utc(from_ts), to_naive_utc(to_ts)
    return (
        db.query(WorkCenterAllocation)
        .filter(
            WorkCenterAllocation.work_center_id == work_center_id,
            WorkCenterAllocation.scheduled_start >= from_ts,
            WorkCenterAllocation.scheduled_start <= to_ts,
        )
        .order_by(WorkCenterAllocation.scheduled_start)
        .all()
    )


def capacity(
    db: Session,
    work_center_ids: List[int],
    from_date: date,
    to_date: date,
) -> List[WorkCenterCapacity]:
    """
    Daily utilisation per work center over an inclusive date range.

    Scheduled minutes are the non-completed allocation time falling inside
    each calendar day.
    """
    if to_date < from_date:
        raise ValidationError("to_date must not be before from_date", field="to_date", value=to_date)

    work_centers = (
        db.query(WorkCenter)
        .filter(WorkCenter.id.in_(work_center_ids))
        .order_by(WorkCenter.code)
        .all()
    )
    range_start = datetime.combine(from_date, time.min)
    range_end = datetime.combine(to_date + timedelta(days=1), time.min)
    default_minutes = settings.DEFAULT_ALLOCATION_MINUTES

    allocations = (
        db.query(WorkCenterAllocation)
        .filter(
            WorkCenterAllocation.work_center_id.in_(work_center_ids),
            WorkCenterAllocation.status != AllocationStatus.COMPLETED.value,
            WorkCenterAllocation.scheduled_start < range_end,
        )
        .all()
    )

    result = []
    for wc in work_centers:
        capacity_minutes = wc.capacity_minutes_per_day or settings.DEFAULT_DAILY_CAPACITY_MINUTES
        windows = [
            (a.scheduled_start, a.effective_end(default_minutes))
            for a in allocations
            if a.work_center_id == wc.id
        ]

        day = from_date
        while day <= to_date:
            day_start = datetime.combine(day, time.min)
            day_end = day_start + timedelta(days=1)
            seconds = 0.0
            for start, end in windows:
                overlap_start = max(start, day_start)
                overlap_end = min(end, day_end)
                if overlap_end > overlap_start:
                    seconds += (overlap_end - overlap_start).total_seconds()
            scheduled_minutes = round(seconds / 60)

            result.append(WorkCenterCapacity(
                work_center_id=wc.id,
                work_center_code=wc.code,
                day=day,
                scheduled_minutes=scheduled_minutes,
                capacity_minutes=capacity_minutes,
                available_minutes=capacity_minutes - scheduled_minutes,
                utilization_percent=round(scheduled_minutes / capacity_minutes * 100, 1),
            ))
            day += timedelta(days=1)

    return result
