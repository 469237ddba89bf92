"""
Collaborator guards

A ServiceGuard wraps every call to one named collaborator (inventory,
payment) in its own circuit breaker, an explicit per-call timeout, and a
bounded retry with exponential backoff and jitter. Business errors pass
through on the first attempt; everything else is retried and finally surfaced
as ServiceUnavailableError so callers only ever see deterministic outcomes or
a retryable-unavailable signal.

Compensating actions use retry_forever(): an abandoned compensation is a
silent stock leak, so they back off but never give up.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from stockflow.core.circuit_breaker import CircuitBreaker, get_circuit_breaker
from stockflow.core.config import settings
from stockflow.core.exceptions import CircuitOpenError, ServiceUnavailableError, is_business_error
from stockflow.core.monitoring import metrics

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 0.2           # Base delay in seconds
    max_delay: float = 5.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.5        # Random jitter (0-1)

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )

    @classmethod
    def for_compensation(cls) -> "RetryConfig":
        return cls(
            max_attempts=0,  # unbounded
            base_delay=settings.COMPENSATION_BASE_DELAY_SECONDS,
            max_delay=settings.COMPENSATION_MAX_DELAY_SECONDS,
        )


def calculate_backoff(cfg: RetryConfig, attempt: int) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Formula: min(base * (exp_base ^ attempt) + jitter, max_delay)
    """
    delay = cfg.base_delay * (cfg.exponential_base ** attempt)
    jitter = delay * cfg.jitter_factor * (2 * random.random() - 1)
    delay += jitter
    return max(0.0, min(delay, cfg.max_delay))


class ServiceGuard:
    """
    Breaker + timeout + bounded retry for one collaborator.

    Usage:
        guard = ServiceGuard.for_collaborator("payment", timeout=5.0)
        result = await guard.call(client.charge, order_id, amount, method)
    """

    def __init__(
        self,
        name: str,
        breaker: CircuitBreaker,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.breaker = breaker
        self.retry_config = retry_config or RetryConfig.from_settings()
        self._sleep = sleep

    @classmethod
    def for_collaborator(
        cls,
        name: str,
        timeout: float,
        retry_config: Optional[RetryConfig] = None,
    ) -> "ServiceGuard":
        """Build a guard around the shared registry breaker for this collaborator."""
        breaker = get_circuit_breaker(
            name,
            failure_rate_threshold=settings.CIRCUIT_FAILURE_RATE_THRESHOLD,
            minimum_calls=settings.CIRCUIT_MINIMUM_CALLS,
            window_seconds=settings.CIRCUIT_WINDOW_SECONDS,
            recovery_timeout=settings.CIRCUIT_RECOVERY_TIMEOUT_SECONDS,
            call_timeout=timeout,
        )
        return cls(name, breaker, retry_config)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Invoke func through the breaker with bounded retries.

        Raises:
            StockflowError: business errors, untouched and never retried
            ServiceUnavailableError: breaker open, or every attempt failed
        """
        cfg = self.retry_config
        last_error: Optional[BaseException] = None

        for attempt in range(cfg.max_attempts):
            try:
                return await self.breaker.execute(func, *args, **kwargs)
            except CircuitOpenError:
                # No point hammering an open circuit
                metrics.increment("guard_unavailable_total", labels={"service": self.name})
                raise
            except Exception as e:
                if is_business_error(e):
                    raise
                last_error = e
                logger.warning(
                    f"[ServiceGuard:{self.name}] Attempt {attempt + 1}/{cfg.max_attempts} failed: "
                    f"{type(e).__name__}: {e}"
                )

            if attempt < cfg.max_attempts - 1:
                await self._sleep(calculate_backoff(cfg, attempt))

        metrics.increment("guard_unavailable_total", labels={"service": self.name})
        raise ServiceUnavailableError(
            f"{self.name} unavailable after {cfg.max_attempts} attempts: "
            f"{type(last_error).__name__ if last_error else 'unknown error'}",
            service=self.name,
        ) from last_error


async def retry_forever(
    label: str,
    func: Callable[..., Awaitable[Any]],
    *args,
    retry_config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_on_business_error: Callable[[BaseException], bool] = lambda e: False,
    **kwargs
) -> Any:
    """
    Retry func until it succeeds.

    Business errors are raised immediately unless retry_on_business_error
    says otherwise; every other failure (including ServiceUnavailableError
    from a guard) backs off and tries again.
    """
    cfg = retry_config or RetryConfig.for_compensation()
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if is_business_error(e) and not retry_on_business_error(e):
                raise
            delay = calculate_backoff(cfg, min(attempt, 16))
            metrics.increment("compensation_retries_total", labels={"action": label})
            logger.warning(
                f"[Compensation:{label}] Attempt {attempt + 1} failed "
                f"({type(e).__name__}: {e}); retrying in {delay:.2f}s"
            )
            attempt += 1
            await sleep(delay)
