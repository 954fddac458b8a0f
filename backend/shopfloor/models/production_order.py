"""
Production Order model

Production Orders track a work order from creation to completion.
Integrates with:
- Production steps (process steps an operator moves through)
- BOM lines (materials to consume, aggregated by the consumption ledger)
- Work center allocations (scheduled time, see models/work_center.py)
"""
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from shopfloor.db.base import Base, utcnow


class ProductionOrder(Base):
    """
    Production Order (work order).

    Lifecycle: queued → in_progress → complete, with hold as an explicit,
    sticky pause (see core/status_config.py).
    """
    __tablename__ = "production_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Quantities
    quantity_ordered = Column(Numeric(18, 4), nullable=False)
    quantity_completed = Column(Numeric(18, 4), nullable=True)

    # Status: queued, in_progress, hold, complete
    status = Column(String(50), default="queued", nullable=False, index=True)
    hold_reason = Column(Text, nullable=True)  # Set only while status == hold

    # Priority: 1 (highest) to 5 (lowest)
    priority = Column(Integer, default=3, nullable=False)

    # Execution timestamps
    actual_start = Column(DateTime, nullable=True)
    actual_end = Column(DateTime, nullable=True)

    # Metadata
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    steps = relationship(
        "ProductionStep",
        back_populates="production_order",
        order_by="ProductionStep.step_number",
    )
    bom_lines = relationship(
        "BOMLine",
        back_populates="production_order",
        order_by="BOMLine.id",
    )
    allocations = relationship("WorkCenterAllocation", back_populates="production_order")

    def __repr__(self):
        return f"<ProductionOrder {self.order_number} ({self.status})>"

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"


class ProductionStep(Base):
    """
    A step (operation) within a production order.

    step_number is unique per order and kept contiguous (1..N) when pending
    steps are removed.
    """
    __tablename__ = "production_steps"
    __table_args__ = (
        UniqueConstraint("production_order_id", "step_number", name="uq_production_step_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    production_order_id = Column(
        Integer, ForeignKey("production_orders.id"), nullable=False, index=True
    )
    step_number = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)
    instructions = Column(Text, nullable=True)
    work_center_id = Column(Integer, ForeignKey("work_centers.id"), nullable=True)
    estimated_minutes = Column(Integer, nullable=True)

    # Status: pending, in_progress, complete, skipped
    status = Column(String(50), default="pending", nullable=False)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(100), nullable=True)
    actual_minutes = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    production_order = relationship("ProductionOrder", back_populates="steps")

    def __repr__(self):
        return f"<ProductionStep {self.production_order_id}#{self.step_number} ({self.status})>"


class BOMLine(Base):
    """
    Required quantity of a part for one production order.

    quantity_consumed only moves through the consumption ledger; is_consumed
    mirrors quantity_consumed >= quantity_required.
    """
    __tablename__ = "bill_of_materials"

    id = Column(Integer, primary_key=True, index=True)
    production_order_id = Column(
        Integer, ForeignKey("production_orders.id"), nullable=False, index=True
    )
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False, index=True)

    quantity_required = Column(Numeric(18, 4), nullable=False)
    quantity_allocated = Column(Numeric(18, 4), default=0, nullable=False)
    quantity_consumed = Column(Numeric(18, 4), default=0, nullable=False)
    is_allocated = Column(Boolean, default=False, nullable=False)
    is_consumed = Column(Boolean, default=False, nullable=False, index=True)

    source_location_id = Column(Integer, ForeignKey("stock_locations.id"), nullable=True)
    unit_cost = Column(Numeric(18, 4), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    production_order = relationship("ProductionOrder", back_populates="bom_lines")
    part = relationship("Part")
    source_location = relationship("StockLocation")

    def __repr__(self):
        return f"<BOMLine order={self.production_order_id} part={self.part_id}: {self.quantity_consumed}/{self.quantity_required}>"
