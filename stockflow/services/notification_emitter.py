"""
Notification Emitter

Publishes inventory and order events to the Redis notification channel.
Delivery is best effort: every publish is bounded by
NOTIFICATION_TIMEOUT_SECONDS, and timeouts, connection errors and a missing
Redis configuration are logged and counted but never raised. No ledger or
saga invariant depends on a notification arriving.

dispatch() hands events to a background task so callers running under a
collaborator timeout never wait on the channel. Tasks are tracked until they
finish; drain() waits for them and close() also shuts the Redis client.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from stockflow.core.config import settings
from stockflow.core.monitoring import metrics
from stockflow.core.redis_client import close_redis, get_redis
from stockflow.schemas.events import EventMetadata, NotificationEvent

logger = logging.getLogger(__name__)


class NotificationEmitter:
    """Fire-and-forget publisher for domain events."""

    def __init__(
        self,
        redis_getter: Callable[[], Awaitable[Any]] = get_redis,
        channel: Optional[str] = None,
        timeout: Optional[float] = None,
        service_name: Optional[str] = None,
    ):
        self._get_redis = redis_getter
        self.channel = channel or settings.NOTIFICATION_CHANNEL
        self.timeout = timeout if timeout is not None else settings.NOTIFICATION_TIMEOUT_SECONDS
        self.service_name = service_name or settings.SERVICE_NAME
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def dispatch(self, events: List[Tuple[str, Dict[str, Any]]], correlation_id: Optional[str] = None) -> None:
        """
        Publish events in order on a background task and return immediately.

        Must be called from a running event loop.
        """
        if not events:
            return
        task = asyncio.create_task(self._publish_sequence(list(events), correlation_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish_sequence(self, events: List[Tuple[str, Dict[str, Any]]], correlation_id: Optional[str]) -> None:
        for event_type, payload in events:
            await self.publish(event_type, payload, correlation_id=correlation_id)

    async def drain(self) -> None:
        """Wait for every dispatched event to be published or given up on."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._get_redis is get_redis:
            await close_redis()
        logger.info("[NotificationEmitter] Closed")

    def build_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> NotificationEvent:
        return NotificationEvent(
            type=event_type,
            payload=payload,
            metadata=EventMetadata(correlation_id=correlation_id, service=self.service_name),
        )

    async def publish(
        self,
        event_type: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> bool:
        """
        Publish one event. Returns True when the channel accepted it.

        Never raises.
        """
        try:
            event = self.build_event(event_type, payload, correlation_id)
            return await asyncio.wait_for(self._deliver(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            metrics.increment("notifications_failed_total", labels={"type": event_type, "reason": "timeout"})
            logger.warning(
                f"[NotificationEmitter] Timed out after {self.timeout}s publishing {event_type} "
                f"(correlation_id={correlation_id})"
            )
        except Exception as e:
            metrics.increment("notifications_failed_total", labels={"type": event_type, "reason": "error"})
            logger.warning(
                f"[NotificationEmitter] Failed to publish {event_type} "
                f"(correlation_id={correlation_id}): {type(e).__name__}: {e}"
            )
        return False

    async def _deliver(self, event: NotificationEvent) -> bool:
        client = await self._get_redis()
        if client is None:
            metrics.increment("notifications_dropped_total", labels={"type": event.type})
            logger.debug(f"[NotificationEmitter] No notification channel configured, dropped {event.type}")
            return False

        await client.publish(self.channel, event.model_dump_json())
        metrics.increment("notifications_published_total", labels={"type": event.type})
        logger.debug(f"[NotificationEmitter] Published {event.type} id={event.id}")
        return True
