"""
Reservation log model

Dedupe table keyed by order_id. Written in the same transaction as the
counter updates it describes, so a replayed reserve/release/confirm for an
order can be recognised and answered without touching the counters again.
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, DateTime, Integer, JSON, String

from stockflow.core.database import Base


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    RELEASED = "released"
    CONFIRMED = "confirmed"


class ReservationLog(Base):
    __tablename__ = "reservation_log"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), unique=True, nullable=False, index=True)

    # Canonical merged items: [{"product_id": ..., "quantity": ...}] sorted by product_id
    items = Column(JSON, nullable=False)
    fingerprint = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=ReservationStatus.RESERVED.value, index=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def quantities(self) -> dict:
        return {item["product_id"]: item["quantity"] for item in self.items}
