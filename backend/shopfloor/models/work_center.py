"""
Work Center and Work Center Allocation models for production scheduling.

Work Centers are schedulable production resources (e.g., "CNC Cell 1",
"Assembly Station"). Allocations (operation runs) reserve a time window at a
work center for an order or one of its steps.
"""
from datetime import timedelta

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from shopfloor.db.base import Base, utcnow


class WorkCenter(Base):
    """
    Work Centers are logical production areas/stations.

    Examples:
    - "CNC-01" - CNC machining cell
    - "ASM-01" - Manual assembly bench
    """
    __tablename__ = "work_centers"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    # Capacity Planning (falls back to settings.DEFAULT_DAILY_CAPACITY_MINUTES)
    capacity_minutes_per_day = Column(Integer, nullable=True)

    # Status
    is_active = Column(Boolean, default=True, nullable=False)

    # Metadata
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    allocations = relationship("WorkCenterAllocation", back_populates="work_center")

    def __repr__(self):
        return f"<WorkCenter {self.code}: {self.name}>"


class WorkCenterAllocation(Base):
    """
    Scheduled time window at a work center - matches production_operation_runs.

    Lifecycle: not_started → running ⇄ paused → completed.
    Only not_started allocations may be deleted.
    """
    __tablename__ = "production_operation_runs"

    id = Column(Integer, primary_key=True, index=True)
    work_center_id = Column(Integer, ForeignKey("work_centers.id"), nullable=False, index=True)
    production_order_id = Column(
        Integer, ForeignKey("production_orders.id"), nullable=False, index=True
    )
    production_step_id = Column(Integer, ForeignKey("production_steps.id"), nullable=True)

    # Scheduling
    scheduled_start = Column(DateTime, nullable=False, index=True)
    scheduled_end = Column(DateTime, nullable=True)  # None: start + default duration
    sequence_number = Column(Integer, nullable=False)

    # Status: not_started, running, paused, completed
    status = Column(String(50), default="not_started", nullable=False, index=True)

    # Execution tracking
    actual_start = Column(DateTime, nullable=True)
    actual_end = Column(DateTime, nullable=True)
    started_by = Column(String(100), nullable=True)
    paused_at = Column(DateTime, nullable=True)
    paused_by = Column(String(100), nullable=True)
    completed_by = Column(String(100), nullable=True)
    scheduled_by = Column(String(100), nullable=True)

    # Metadata
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    work_center = relationship("WorkCenter", back_populates="allocations")
    production_order = relationship("ProductionOrder", back_populates="allocations")

    def __repr__(self):
        return f"<WorkCenterAllocation wc={self.work_center_id} #{self.sequence_number} ({self.status})>"

    def effective_end(self, default_minutes: int):
        """scheduled_end, or scheduled_start + default_minutes when unset"""
        if self.scheduled_end is not None:
            return self.scheduled_end
        return self.scheduled_start + timedelta(minutes=default_minutes)
