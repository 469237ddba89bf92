"""
Inventory models

One InventoryRecord per product. `available` is always derived, never stored.
The CHECK constraints back up the ledger's own pre-flush validation of
0 <= reserved <= on_hand.
"""
from datetime import datetime, timezone
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String

from stockflow.core.database import Base


class InventoryRecord(Base):
    __tablename__ = "inventory_records"
    __table_args__ = (
        CheckConstraint("on_hand >= 0", name="ck_inventory_on_hand_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("reserved <= on_hand", name="ck_inventory_reserved_within_on_hand"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(String(64), unique=True, nullable=False, index=True)

    on_hand = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    warehouse_location = Column(String(255), nullable=False, index=True)

    # Advisory only - nothing in the ledger acts on these
    reorder_threshold = Column(Integer, nullable=False, default=0)
    reorder_quantity = Column(Integer, nullable=False, default=0)

    # Deactivated products keep their row but refuse new reservations
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    @property
    def available(self) -> int:
        """Units that may still be promised to new orders."""
        return self.on_hand - self.reserved

    def __repr__(self) -> str:
        return (
            f"<InventoryRecord product_id={self.product_id!r} on_hand={self.on_hand} "
            f"reserved={self.reserved}>"
        )
