"""Database models"""
from shopfloor.models.inventory import Part, StockLocation, InventoryBalance, SerializedUnit
from shopfloor.models.production_order import ProductionOrder, ProductionStep, BOMLine
from shopfloor.models.consumption import MaterialConsumption, LedgerEntry
from shopfloor.models.work_center import WorkCenter, WorkCenterAllocation

__all__ = [
    # Master data / inventory
    "Part",
    "StockLocation",
    "InventoryBalance",
    "SerializedUnit",
    # Production
    "ProductionOrder",
    "ProductionStep",
    "BOMLine",
    # Ledger
    "MaterialConsumption",
    "LedgerEntry",
    # Scheduling
    "WorkCenter",
    "WorkCenterAllocation",
]
