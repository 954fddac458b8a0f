"""
Inventory models

Part and StockLocation are master data owned by external systems; they are
mapped here so balances and units can reference them.

InventoryBalance is the canonical on-hand quantity per (part, location).
Only shopfloor.services.inventory_service.adjust_inventory writes its
quantity.
"""
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from shopfloor.db.base import Base, utcnow


class Part(Base):
    """Part master data - matches parts table"""
    __tablename__ = "parts"

    id = Column(Integer, primary_key=True, index=True)
    part_number = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    unit_of_measure = Column(String(20), default="EA", nullable=False)
    standard_cost = Column(Numeric(18, 4), nullable=True)
    is_serialized = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    balances = relationship("InventoryBalance", back_populates="part")

    def __repr__(self):
        return f"<Part {self.part_number}: {self.name}>"


class StockLocation(Base):
    """Stock Location model - matches stock_locations table"""
    __tablename__ = "stock_locations"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    location_type = Column(String(50), nullable=True)  # warehouse, line_side, bin
    is_active = Column(Boolean, default=True, nullable=False)

    balances = relationship("InventoryBalance", back_populates="location")

    def __repr__(self):
        return f"<StockLocation {self.code}: {self.name}>"


class InventoryBalance(Base):
    """Canonical on-hand balance - matches part_inventory table"""
    __tablename__ = "part_inventory"
    __table_args__ = (
        UniqueConstraint("part_id", "location_id", name="uq_part_inventory_part_location"),
        CheckConstraint("quantity >= 0", name="ck_part_inventory_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # References
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False, index=True)
    location_id = Column(Integer, ForeignKey("stock_locations.id"), nullable=False, index=True)

    # Quantities
    quantity = Column(Numeric(18, 4), default=0, nullable=False)

    # Costs
    unit_cost = Column(Numeric(18, 4), nullable=True)

    # Metadata
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    part = relationship("Part", back_populates="balances")
    location = relationship("StockLocation", back_populates="balances")

    def __repr__(self):
        return f"<InventoryBalance part={self.part_id} loc={self.location_id}: {self.quantity}>"


class SerializedUnit(Base):
    """
    Individually tracked part instance - matches serialized_units table.

    status = consumed <=> current_location_id is NULL. Both fields are always
    written together by serialized_unit_service.
    """
    __tablename__ = "serialized_units"

    id = Column(Integer, primary_key=True, index=True)
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False, index=True)
    serial_number = Column(String(100), unique=True, nullable=False, index=True)
    lot_number = Column(String(100), nullable=True)

    # Status: in_stock, reserved, consumed, scrapped
    status = Column(String(50), default="in_stock", nullable=False, index=True)
    current_location_id = Column(Integer, ForeignKey("stock_locations.id"), nullable=True)

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    part = relationship("Part")
    current_location = relationship("StockLocation")

    def __repr__(self):
        return f"<SerializedUnit {self.serial_number} ({self.status})>"
