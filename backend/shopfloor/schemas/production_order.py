"""
Production Order Pydantic Schemas

Work orders, their steps and BOM lines.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal

from shopfloor.schemas.consumption import BOMConsumptionResult


# ============================================================================
# Production Order Schemas
# ============================================================================

class ProductionOrderCreate(BaseModel):
    """Create a new production order (starts queued)"""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    quantity_ordered: Decimal = Field(..., gt=0)
    priority: int = Field(3, ge=1, le=5)
    created_by: Optional[str] = Field(None, max_length=100)


class ProductionStepCreate(BaseModel):
    """Append a step to an order"""
    name: str = Field(..., min_length=1, max_length=200)
    instructions: Optional[str] = None
    work_center_id: Optional[int] = None
    estimated_minutes: Optional[int] = Field(None, ge=0)


class BOMLineCreate(BaseModel):
    """Attach a required part to an order"""
    part_id: int
    quantity_required: Decimal
    source_location_id: Optional[int] = None
    unit_cost: Optional[Decimal] = None
    notes: Optional[str] = None


# ============================================================================
# Read models
# ============================================================================

class ProductionStepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    production_order_id: int
    step_number: int
    name: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    actual_minutes: Optional[int] = None


class BOMLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    production_order_id: int
    part_id: int
    quantity_required: Decimal
    quantity_allocated: Decimal
    quantity_consumed: Decimal
    is_allocated: bool
    is_consumed: bool
    source_location_id: Optional[int] = None


class ProductionOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    title: str
    status: str
    quantity_ordered: Decimal
    quantity_completed: Optional[Decimal] = None
    hold_reason: Optional[str] = None
    priority: int
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    steps: List[ProductionStepResponse] = []
    bom_lines: List[BOMLineResponse] = []


class OrderCompletionResult(BaseModel):
    """
    Outcome of complete_order.

    A non-empty consumption.failed means partial consumption: the order is
    complete and the failed lines are reported for follow-up.
    """
    order_id: int
    order_number: str
    status: str
    quantity_completed: Optional[Decimal] = None
    actual_end: Optional[datetime] = None
    consumption: BOMConsumptionResult

    @property
    def partial(self) -> bool:
        return bool(self.consumption.failed)
