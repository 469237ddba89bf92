"""
StockFlow Exception Hierarchy

All exceptions include code, message, and details for audit trail and
debugging. Deterministic outcomes (validation, not found, conflict,
insufficient stock) surface to callers unchanged; ServiceUnavailableError is
the only kind a caller may retry.

Exception Hierarchy:
    StockflowError
    ├── ValidationError
    ├── NotFoundError
    ├── ConflictError
    ├── InsufficientStockError
    ├── InvalidStateTransition
    └── ServiceUnavailableError
        └── CircuitOpenError
    PaymentGatewayError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class StockflowError(Exception):
    """
    Base exception for all StockFlow domain errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "STOCKFLOW_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(StockflowError):
    """Malformed or negative input, rejected before any side effect."""
    default_code = "VALIDATION_ERROR"
    default_severity = "P3"


class NotFoundError(StockflowError):
    """Unknown product or order."""
    default_code = "NOT_FOUND"
    default_severity = "P3"

    def __init__(self, resource: str, identifier: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"resource": resource, "identifier": identifier})
        message = kwargs.pop("message", None) or (
            f"{resource} {identifier} not found" if identifier else f"{resource} not found"
        )
        super().__init__(message, details=details, **kwargs)


class ConflictError(StockflowError):
    """Duplicate creation or a request that contradicts recorded state."""
    default_code = "CONFLICT"
    default_severity = "P3"


class InsufficientStockError(StockflowError):
    """Business-rule failure: not enough available units for a product."""
    default_code = "INSUFFICIENT_STOCK"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        product_id: Optional[str] = None,
        requested_qty: Optional[int] = None,
        available_qty: Optional[int] = None,
        **kwargs
    ):
        self.product_id = product_id
        details = kwargs.pop("details", {})
        details.update({
            "product_id": product_id,
            "requested_qty": requested_qty,
            "available_qty": available_qty,
        })
        super().__init__(message, details=details, **kwargs)


class InvalidStateTransition(StockflowError):
    """Saga status change not permitted by the state machine."""
    default_code = "INVALID_STATE_TRANSITION"
    default_severity = "P1"

    def __init__(self, order_id: str, current: str, target: str, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"order_id": order_id, "current": current, "target": target})
        super().__init__(
            f"Order {order_id} cannot move from {current} to {target}",
            details=details,
            **kwargs
        )


class ServiceUnavailableError(StockflowError):
    """Collaborator unreachable: breaker open, timeout, or exhausted retries."""
    default_code = "SERVICE_UNAVAILABLE"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
        **kwargs
    ):
        self.service = service
        self.retry_after_seconds = retry_after_seconds
        details = kwargs.pop("details", {})
        details.update({
            "service": service,
            "retry_after_seconds": retry_after_seconds,
        })
        super().__init__(message, details=details, **kwargs)


class CircuitOpenError(ServiceUnavailableError):
    """Raised when a circuit breaker is OPEN and blocking requests."""
    default_code = "CIRCUIT_OPEN"

    def __init__(self, circuit_name: str, retry_after_seconds: float):
        self.circuit_name = circuit_name
        super().__init__(
            f"Circuit '{circuit_name}' is OPEN. Retry after {retry_after_seconds:.0f} seconds.",
            service=circuit_name,
            retry_after_seconds=retry_after_seconds,
        )


class PaymentGatewayError(Exception):
    """Transport-level payment collaborator fault (5xx, connection, malformed reply)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def is_business_error(error: BaseException) -> bool:
    """True for deterministic outcomes that must not be retried or counted against a breaker."""
    return isinstance(error, StockflowError) and not isinstance(error, ServiceUnavailableError)
