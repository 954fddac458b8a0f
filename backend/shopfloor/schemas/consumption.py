"""
Material Consumption Pydantic Schemas

Requests and results for the consumption ledger.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal

from shopfloor.core.status_config import ConsumptionMethod


# ============================================================================
# Requests
# ============================================================================

class ConsumeRequest(BaseModel):
    """
    Record consumption of material against a production order.

    qty is checked by the ledger itself so a non-positive value surfaces as
    a VALIDATION_ERROR result rather than a schema error.
    """
    production_order_id: int
    part_id: int
    location_id: int
    qty: Decimal
    production_step_id: Optional[int] = None
    operation_run_id: Optional[int] = None
    bom_line_id: Optional[int] = None
    serialized_unit_id: Optional[int] = None
    lot_number: Optional[str] = Field(None, max_length=100)
    method: ConsumptionMethod = ConsumptionMethod.MANUAL
    unit_cost: Optional[Decimal] = None
    idempotency_key: Optional[str] = Field(None, max_length=255)
    consumed_by: Optional[str] = Field(None, max_length=100)


# ============================================================================
# Ledger entry read model
# ============================================================================

class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    production_order_id: int
    production_step_id: Optional[int] = None
    operation_run_id: Optional[int] = None
    part_id: int
    bom_line_id: Optional[int] = None
    source_location_id: int
    qty: Decimal
    unit_cost: Optional[Decimal] = None
    method: str
    is_reversal: bool
    reversal_of_id: Optional[int] = None
    reversal_reason: Optional[str] = None
    serialized_unit_id: Optional[int] = None
    lot_number: Optional[str] = None
    idempotency_key: Optional[str] = None
    consumed_by: Optional[str] = None
    consumed_at: datetime


# ============================================================================
# Batch (BOM) consumption
# ============================================================================

class ConsumedLine(BaseModel):
    bom_line_id: int
    part_id: int
    ledger_entry_id: int
    qty: Decimal


class LineFailure(BaseModel):
    bom_line_id: int
    part_id: int
    error: str
    message: str


class BOMConsumptionResult(BaseModel):
    """Per-line outcome of consume_all_outstanding; never all-or-nothing."""
    succeeded: List[ConsumedLine] = []
    failed: List[LineFailure] = []

    @property
    def all_failed(self) -> bool:
        return not self.succeeded and bool(self.failed)


class OrderReversalResult(BaseModel):
    reversed: int
    errors: List[str] = []


# ============================================================================
# Reporting
# ============================================================================

class PartConsumptionSummary(BaseModel):
    """Net consumption of one part on one order."""
    part_id: int
    part_number: str
    part_name: str
    total_consumed: Decimal
    total_reversed: Decimal
    net_consumed: Decimal
    total_cost: Decimal
    consumption_count: int
    reversal_count: int
    last_consumed_at: Optional[datetime] = None
