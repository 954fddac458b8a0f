"""
Material consumption ledger model

Each row is an immutable consumption (+qty) or reversal (-qty) event.
Net consumption for an (order, part) is the sum of its rows' qty.
Corrections are new reversal rows referencing the original; rows are never
updated or deleted (enforced below at the ORM level).
"""
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String,
    Text, event, text,
)
from sqlalchemy.orm import relationship

from shopfloor.db.base import Base, utcnow
from shopfloor.exceptions import ImmutableRecordError


class MaterialConsumption(Base):
    """Ledger entry - matches material_consumption_log table"""
    __tablename__ = "material_consumption_log"
    __table_args__ = (
        # At most one non-reversal entry per idempotency key
        Index(
            "uq_material_consumption_idempotency",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL AND is_reversal = false"),
            sqlite_where=text("idempotency_key IS NOT NULL AND is_reversal = 0"),
        ),
        Index("ix_material_consumption_order_part", "production_order_id", "part_id"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # References
    production_order_id = Column(
        Integer, ForeignKey("production_orders.id"), nullable=False, index=True
    )
    production_step_id = Column(Integer, ForeignKey("production_steps.id"), nullable=True)
    operation_run_id = Column(Integer, ForeignKey("production_operation_runs.id"), nullable=True)
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False, index=True)
    bom_line_id = Column(Integer, ForeignKey("bill_of_materials.id"), nullable=True)
    source_location_id = Column(Integer, ForeignKey("stock_locations.id"), nullable=False)

    # Signed quantity: positive = consumption, negative = reversal
    qty = Column(Numeric(18, 4), nullable=False)
    unit_cost = Column(Numeric(18, 4), nullable=True)

    # scan, manual, backflush
    method = Column(String(20), default="manual", nullable=False)

    # Reversal linkage
    is_reversal = Column(Boolean, default=False, nullable=False)
    reversal_of_id = Column(
        Integer, ForeignKey("material_consumption_log.id"), nullable=True, unique=True
    )
    reversal_reason = Column(Text, nullable=True)

    # Tracking
    serialized_unit_id = Column(Integer, ForeignKey("serialized_units.id"), nullable=True)
    lot_number = Column(String(100), nullable=True)
    idempotency_key = Column(String(255), nullable=True)

    # Metadata
    consumed_by = Column(String(100), nullable=True)
    consumed_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    part = relationship("Part")
    source_location = relationship("StockLocation")
    serialized_unit = relationship("SerializedUnit")
    reversal_of = relationship("MaterialConsumption", remote_side=[id])

    def __repr__(self):
        kind = "reversal" if self.is_reversal else "consumption"
        return f"<MaterialConsumption {kind} #{self.id}: part={self.part_id} qty={self.qty}>"

    @property
    def total_cost(self):
        if self.unit_cost is None:
            return None
        return self.qty * self.unit_cost


# Alias used by the ledger services
LedgerEntry = MaterialConsumption


@event.listens_for(MaterialConsumption, "before_update")
def prevent_ledger_update(mapper, connection, target):
    """Ledger entries are append-only."""
    raise ImmutableRecordError("MaterialConsumption", target.id)


@event.listens_for(MaterialConsumption, "before_delete")
def prevent_ledger_delete(mapper, connection, target):
    """Ledger entries are never deleted; reverse them instead."""
    raise ImmutableRecordError("MaterialConsumption", target.id)
