"""
Inventory Pydantic Schemas
"""
from pydantic import BaseModel, Field
from decimal import Decimal


class InventoryAuditRow(BaseModel):
    """Authoritative balance next to the ledger's net consumption."""
    part_id: int
    part_number: str
    location_id: int
    location_code: str
    quantity: Decimal
    net_consumed: Decimal
    status: str = Field(..., description="OK or NEGATIVE_BALANCE")


class AvailableInventory(BaseModel):
    part_id: int
    location_id: int
    on_hand: Decimal
    allocated: Decimal
    available: Decimal

