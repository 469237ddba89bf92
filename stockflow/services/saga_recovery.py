"""
Saga Recovery Sweep

Background pass that finishes sagas a crashed or timed-out process left in an
intermediate state. Should be run every few minutes via scheduler
(APScheduler, cron, etc.).

- pending: release any reservation that did commit, then FAILED
- stock_reserved / compensating: compensate -> CANCELLED
- payment_requested: the charge outcome is unknown, so the saga is flagged
  for reconciliation and then compensated -> CANCELLED
- failed: release a reservation that committed after the saga gave up
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from stockflow.core.config import settings
from stockflow.models import OrderSagaState, ReservationStatus, SagaStatus
from stockflow.services.order_saga import OrderSaga

logger = logging.getLogger(__name__)

RECOVERABLE_STATUSES = [
    SagaStatus.PENDING.value,
    SagaStatus.STOCK_RESERVED.value,
    SagaStatus.PAYMENT_REQUESTED.value,
    SagaStatus.COMPENSATING.value,
    SagaStatus.FAILED.value,
]


class SagaRecovery:
    def __init__(self, saga: OrderSaga, batch_size: int = 500):
        self.saga = saga
        self.batch_size = batch_size

    async def resume_incomplete(self, older_than_seconds: Optional[int] = None) -> dict:
        """
        Resume every saga untouched for older_than_seconds.

        Returns:
            dict with counts of resumed, cancelled, failed and released sagas
            and of errors
        """
        stats = {
            "resumed": 0,
            "cancelled": 0,
            "failed": 0,
            "released": 0,
            "errors": 0,
        }

        age = older_than_seconds if older_than_seconds is not None else settings.SAGA_RECOVERY_AGE_SECONDS
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=age)

        candidates = await self.saga.find_stale(RECOVERABLE_STATUSES, cutoff, limit=self.batch_size)

        for saga in candidates:
            try:
                await self._resume(saga, stats)
            except Exception as e:
                logger.error(
                    f"[SagaRecovery] Failed to resume order {saga.order_id} ({saga.status}): {e}",
                    exc_info=True,
                )
                stats["errors"] += 1

        if any(stats.values()):
            logger.info(
                f"[SagaRecovery] Sweep complete: resumed={stats['resumed']} cancelled={stats['cancelled']} "
                f"failed={stats['failed']} released={stats['released']} errors={stats['errors']}"
            )
        else:
            logger.debug("[SagaRecovery] No incomplete sagas")
        return stats

    async def _resume(self, saga: OrderSagaState, stats: dict) -> None:
        status = saga.saga_status
        order_id = saga.order_id

        if status == SagaStatus.PENDING:
            if await self._release_live_reservation(saga):
                stats["released"] += 1
            await self.saga.fail(order_id, "Abandoned before stock reservation completed")
            stats["resumed"] += 1
            stats["failed"] += 1

        elif status == SagaStatus.FAILED:
            if await self._release_live_reservation(saga):
                stats["released"] += 1

        elif status == SagaStatus.PAYMENT_REQUESTED:
            await self.saga.flag_reconciliation(order_id, "Charge outcome unknown after interruption")
            await self.saga.compensate(order_id, "Recovered: charge outcome unknown", persistent=False)
            stats["resumed"] += 1
            stats["cancelled"] += 1

        elif status == SagaStatus.STOCK_RESERVED:
            await self.saga.compensate(order_id, "Recovered: payment never requested", persistent=False)
            stats["resumed"] += 1
            stats["cancelled"] += 1

        elif status == SagaStatus.COMPENSATING:
            await self.saga.compensate(order_id, "Recovered: compensation interrupted", persistent=False)
            stats["resumed"] += 1
            stats["cancelled"] += 1

    async def _release_live_reservation(self, saga: OrderSagaState) -> bool:
        reservation = await self.saga.ledger.get_reservation(saga.order_id)
        if reservation is None or reservation.status != ReservationStatus.RESERVED.value:
            return False

        logger.warning(f"[SagaRecovery] Releasing orphaned reservation for order {saga.order_id} ({saga.status})")
        await self.saga.inventory_guard.call(self.saga.ledger.release, saga.order_id)
        return True
