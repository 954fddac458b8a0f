"""
Work center scheduling schemas.
"""
from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from typing import Annotated, Optional, List
from datetime import date, datetime

from shopfloor.db.base import to_naive_utc

# Stored timestamps are naive UTC; offsets on input are converted on the way in
UTCDateTime = Annotated[datetime, AfterValidator(to_naive_utc)]


class AllocationInput(BaseModel):
    """A proposed allocation (operation run) at a work center."""
    work_center_id: int
    production_order_id: int
    production_step_id: Optional[int] = None
    scheduled_start: UTCDateTime
    scheduled_end: Optional[UTCDateTime] = None
    sequence_number: Optional[int] = Field(None, ge=1)


class AllocationUpdate(BaseModel):
    work_center_id: Optional[int] = None
    scheduled_start: Optional[UTCDateTime] = None
    scheduled_end: Optional[UTCDateTime] = None
    sequence_number: Optional[int] = Field(None, ge=1)


class AllocationFilters(BaseModel):
    work_center_id: Optional[int] = None
    production_order_id: Optional[int] = None
    status: Optional[str] = None
    start_from: Optional[UTCDateTime] = None
    start_to: Optional[UTCDateTime] = None


class ScheduleConflict(BaseModel):
    """
    One problem with a proposed allocation.

    conflict_type is "overlap" for a clash with an existing allocation, or
    "missing_order" / "missing_work_center" for unknown references.
    """
    conflict_type: str
    message: str
    allocation_id: Optional[int] = None
    production_order_id: Optional[int] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None


class ScheduleValidationResult(BaseModel):
    valid: bool
    conflicts: List[ScheduleConflict] = []
    warnings: List[str] = []


class AllocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    work_center_id: int
    production_order_id: int
    production_step_id: Optional[int] = None
    scheduled_start: datetime
    scheduled_end: Optional[datetime] = None
    sequence_number: int
    status: str
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    started_by: Optional[str] = None
    paused_by: Optional[str] = None
    completed_by: Optional[str] = None


class WorkCenterCapacity(BaseModel):
    """Utilisation of one work center on one calendar day."""
    work_center_id: int
    work_center_code: str
    day: date
    scheduled_minutes: int
    capacity_minutes: int
    available_minutes: int
    utilization_percent: float
