from stockflow.models.inventory import InventoryRecord
from stockflow.models.reservation import ReservationLog, ReservationStatus
from stockflow.models.order_saga import OrderSagaState, SagaStatus, ALLOWED_TRANSITIONS, TERMINAL_STATUSES

__all__ = [
    "InventoryRecord",
    "ReservationLog",
    "ReservationStatus",
    "OrderSagaState",
    "SagaStatus",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
]
