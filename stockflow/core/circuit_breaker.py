"""
Circuit Breaker Pattern Implementation

States:
- CLOSED: Normal operation, outcomes recorded in a rolling time window
- OPEN: Failure ratio exceeded threshold, requests blocked for a fixed cool-down
- HALF_OPEN: One trial call admitted; success closes, failure re-opens

The breaker opens only once the window holds a minimum number of calls, so a
single cold-start failure cannot trip it. Each call runs under an explicit
timeout and a timeout counts as a failure. Business errors (insufficient
stock, not found, ...) are outcomes, not faults, and count as successes.
"""
import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

from stockflow.core.exceptions import CircuitOpenError, is_business_error
from stockflow.core.monitoring import metrics

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitBreaker:
    """
    Circuit breaker for collaborator calls.

    Attributes:
        name: Identifier for this circuit breaker (one per collaborator)
        failure_rate_threshold: Failure ratio (0.0-1.0) in the window that opens the circuit
        minimum_calls: Calls the window must hold before the ratio is considered
        window_seconds: Length of the rolling outcome window
        recovery_timeout: Seconds the circuit stays OPEN before a trial call
        call_timeout: Per-call timeout in seconds (None disables it)
    """

    FAILURE_RATE_THRESHOLD = 0.5
    MINIMUM_CALLS = 5
    WINDOW_SECONDS = 10.0
    RECOVERY_TIMEOUT = 30.0

    def __init__(
        self,
        name: str,
        failure_rate_threshold: Optional[float] = None,
        minimum_calls: Optional[int] = None,
        window_seconds: Optional[float] = None,
        recovery_timeout: Optional[float] = None,
        call_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_rate_threshold = (
            failure_rate_threshold if failure_rate_threshold is not None else self.FAILURE_RATE_THRESHOLD
        )
        self.minimum_calls = minimum_calls if minimum_calls is not None else self.MINIMUM_CALLS
        self.window_seconds = window_seconds if window_seconds is not None else self.WINDOW_SECONDS
        self.recovery_timeout = recovery_timeout if recovery_timeout is not None else self.RECOVERY_TIMEOUT
        self.call_timeout = call_timeout
        self._clock = clock

        # State
        self._state = CircuitState.CLOSED
        self._outcomes: Deque[Tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_timeouts = 0
        self.total_blocked = 0
        self.last_state_change: Optional[datetime] = None

        metrics.gauge("circuit_state", _STATE_GAUGE[self._state], labels={"circuit": self.name})
        logger.info(f"[CircuitBreaker:{self.name}] Initialized with "
                    f"failure_rate_threshold={self.failure_rate_threshold}, "
                    f"minimum_calls={self.minimum_calls}, "
                    f"recovery_timeout={self.recovery_timeout}s")

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    @state.setter
    def state(self, new_state: CircuitState):
        """Set circuit state with logging."""
        if new_state != self._state:
            old_state = self._state
            self._state = new_state
            self.last_state_change = datetime.now(timezone.utc)
            metrics.gauge("circuit_state", _STATE_GAUGE[new_state], labels={"circuit": self.name})
            metrics.increment(
                "circuit_transitions_total",
                labels={"circuit": self.name, "to": new_state.value},
            )
            logger.info(
                f"[CircuitBreaker:{self.name}] State changed: {old_state.value} -> {new_state.value}"
            )

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()

    def failure_rate(self) -> float:
        """Failure ratio over the current window."""
        self._prune(self._clock())
        if not self._outcomes:
            return 0.0
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return failures / len(self._outcomes)

    def get_retry_after_seconds(self) -> float:
        """Calculate seconds until circuit will attempt reset."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self.recovery_timeout - elapsed)

    def _acquire_permission(self) -> bool:
        """Check and claim permission for one call."""
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self.get_retry_after_seconds() > 0:
                return False
            self.state = CircuitState.HALF_OPEN

        # HALF_OPEN: a single trial call at a time
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    async def execute(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        **kwargs
    ) -> Any:
        """
        Execute an async callable with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is blocking requests
            asyncio.TimeoutError: If the call exceeded call_timeout
            Exception: Re-raises any exception from func
        """
        self.total_calls += 1

        if not self._acquire_permission():
            self.total_blocked += 1
            metrics.increment("circuit_blocked_total", labels={"circuit": self.name})
            retry_after = self.get_retry_after_seconds()
            logger.warning(
                f"[CircuitBreaker:{self.name}] Call blocked - circuit {self._state.value}. "
                f"Retry after {retry_after:.0f}s"
            )
            raise CircuitOpenError(self.name, retry_after)

        is_trial = self._state == CircuitState.HALF_OPEN
        started = time.perf_counter()
        try:
            if self.call_timeout is not None:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.call_timeout)
            else:
                result = await func(*args, **kwargs)
        except asyncio.TimeoutError as e:
            self.total_timeouts += 1
            self._on_failure(e, is_trial)
            raise
        except Exception as e:
            if is_business_error(e):
                self._on_success(is_trial)
            else:
                self._on_failure(e, is_trial)
            raise
        else:
            self._on_success(is_trial)
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False
            metrics.observe(
                "collaborator_call_duration_seconds",
                time.perf_counter() - started,
                labels={"circuit": self.name},
            )

    def _record(self, ok: bool) -> None:
        now = self._clock()
        self._outcomes.append((now, ok))
        self._prune(now)

    def _on_success(self, is_trial: bool = False):
        """Handle successful call."""
        if is_trial:
            self.state = CircuitState.CLOSED
            self._outcomes.clear()
            self._opened_at = None
            logger.info(f"[CircuitBreaker:{self.name}] CLOSED - service recovered")
            return
        self._record(True)

    def _on_failure(self, error: BaseException, is_trial: bool = False):
        """Handle failed call."""
        self.total_failures += 1
        metrics.increment("circuit_failures_total", labels={"circuit": self.name})

        if is_trial:
            self._open()
            logger.warning(
                f"[CircuitBreaker:{self.name}] OPENED (half-open trial failed) - "
                f"error={type(error).__name__}"
            )
            return

        self._record(False)
        volume = len(self._outcomes)
        rate = self.failure_rate()
        if (
            self._state == CircuitState.CLOSED
            and volume >= self.minimum_calls
            and rate > self.failure_rate_threshold
        ):
            self._open()
            logger.warning(
                f"[CircuitBreaker:{self.name}] OPENED - "
                f"calls={volume}, error_rate={rate:.1%}, error={type(error).__name__}"
            )

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self._opened_at = self._clock()

    def reset(self):
        """Manually reset the circuit breaker to CLOSED state."""
        self.state = CircuitState.CLOSED
        self._outcomes.clear()
        self._opened_at = None
        self._trial_in_flight = False
        logger.info(f"[CircuitBreaker:{self.name}] Manually reset to CLOSED")

    def force_open(self):
        """Open the circuit immediately (operational kill switch)."""
        self._open()
        logger.warning(f"[CircuitBreaker:{self.name}] Forced OPEN")

    def get_metrics(self) -> dict:
        """Get circuit breaker metrics for observability."""
        return {
            "name": self.name,
            "state": self._state.value,
            "window_calls": len(self._outcomes),
            "failure_rate": self.failure_rate(),
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_timeouts": self.total_timeouts,
            "total_blocked": self.total_blocked,
            "retry_after_seconds": self.get_retry_after_seconds(),
            "last_state_change": self.last_state_change.isoformat() if self.last_state_change else None,
        }


# Registry of circuit breakers for global access
_circuit_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """
    Get or create a circuit breaker by name.

    Args:
        name: Unique identifier for the circuit breaker
        **kwargs: Arguments passed to CircuitBreaker constructor if creating
    """
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
    return _circuit_breakers[name]


def get_all_circuit_breakers() -> dict[str, CircuitBreaker]:
    """Get all registered circuit breakers."""
    return _circuit_breakers.copy()


def clear_circuit_breakers() -> None:
    """Forget every registered breaker."""
    _circuit_breakers.clear()
