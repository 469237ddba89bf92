from stockflow.schemas.inventory import ReservationItem, AvailabilityResult, ReservationOutcome
from stockflow.schemas.order import ShippingAddress, OrderItemIn, OrderSubmission
from stockflow.schemas.events import EventType, NotificationEvent
