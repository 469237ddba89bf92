"""
Order saga state

Durable record of one order's progress through reserve -> pay -> confirm, or
through compensation. Status changes go through transition_to(), which
enforces the state machine below; terminal states are immutable.
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text

from stockflow.core.database import Base
from stockflow.core.exceptions import InvalidStateTransition


class SagaStatus(str, Enum):
    PENDING = "pending"
    STOCK_RESERVED = "stock_reserved"
    PAYMENT_REQUESTED = "payment_requested"
    CONFIRMED = "confirmed"
    COMPENSATING = "compensating"
    CANCELLED = "cancelled"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    SagaStatus.PENDING: {SagaStatus.STOCK_RESERVED, SagaStatus.FAILED},
    SagaStatus.STOCK_RESERVED: {SagaStatus.PAYMENT_REQUESTED, SagaStatus.COMPENSATING},
    SagaStatus.PAYMENT_REQUESTED: {SagaStatus.CONFIRMED, SagaStatus.COMPENSATING},
    # Customer cancellation only
    SagaStatus.CONFIRMED: {SagaStatus.COMPENSATING},
    SagaStatus.COMPENSATING: {SagaStatus.CANCELLED},
    SagaStatus.CANCELLED: set(),
    SagaStatus.FAILED: set(),
}

TERMINAL_STATUSES = {SagaStatus.CANCELLED, SagaStatus.FAILED}


class OrderSagaState(Base):
    __tablename__ = "order_sagas"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), unique=True, nullable=False, index=True)

    # [{"product_id": ..., "quantity": ..., "unit_price": "12.50"}] in submission order
    items = Column(JSON, nullable=False)
    status = Column(String(32), nullable=False, default=SagaStatus.PENDING.value, index=True)

    # Fixed at creation
    total_amount = Column(Numeric(12, 2), nullable=False)

    shipping_address = Column(JSON, nullable=False)
    payment_method = Column(String(50), nullable=False, default="credit_card")
    payment_transaction_id = Column(String(255))

    failure_reason = Column(Text)
    requires_reconciliation = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    @property
    def saga_status(self) -> SagaStatus:
        return SagaStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.saga_status in TERMINAL_STATUSES

    def can_transition_to(self, target: SagaStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.saga_status]

    def transition_to(self, target: SagaStatus) -> None:
        if not self.can_transition_to(target):
            raise InvalidStateTransition(self.order_id, self.status, target.value)
        self.status = target.value

    def reservation_items(self) -> list:
        """Items in the shape the inventory ledger takes."""
        return [
            {"product_id": item["product_id"], "quantity": item["quantity"]}
            for item in self.items
        ]

    def __repr__(self) -> str:
        return f"<OrderSagaState order_id={self.order_id!r} status={self.status!r}>"
