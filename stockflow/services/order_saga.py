"""
Order Fulfillment Saga

Order Flow:
1. Validate submission, persist saga as PENDING (idempotent per order_id)
2. Reserve stock through the inventory guard
   - business rejection or inventory unavailable -> FAILED
3. STOCK_RESERVED -> PAYMENT_REQUESTED, charge through the payment guard
4. Charge succeeded -> CONFIRMED, notify
5. Charge failed or payment unavailable -> COMPENSATING, release stock
   (retried until it succeeds) -> CANCELLED, notify. A charge that was sent
   but never answered is flagged for reconciliation first.

Reservation comes before payment: a release is cheap and safe to repeat,
while a charge without stock is the failure mode to avoid.

Customer cancellation of a CONFIRMED order takes the same compensating path
(release + refund) and ends CANCELLED; it never re-enters STOCK_RESERVED.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockflow.core.config import settings
from stockflow.core.database import AsyncSessionLocal
from stockflow.core.exceptions import (
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    ServiceUnavailableError,
    StockflowError,
    ValidationError,
)
from stockflow.core.monitoring import metrics
from stockflow.core.resilience import RetryConfig, ServiceGuard, retry_forever
from stockflow.models import OrderSagaState, SagaStatus
from stockflow.schemas.events import EventType
from stockflow.schemas.order import OrderSubmission
from stockflow.services.inventory_ledger import InventoryLedger
from stockflow.services.notification_emitter import NotificationEmitter
from stockflow.services.payment_client import PaymentClient

logger = logging.getLogger(__name__)


class OrderSaga:
    """
    Orchestrates reserve -> pay -> confirm with compensating rollback.

    Collaborators are injected so tests can swap the session factory,
    payment client, guards and sleep function.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        ledger: Optional[InventoryLedger] = None,
        payment_client: Optional[PaymentClient] = None,
        emitter: Optional[NotificationEmitter] = None,
        inventory_guard: Optional[ServiceGuard] = None,
        payment_guard: Optional[ServiceGuard] = None,
        compensation_retry: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self.emitter = emitter or NotificationEmitter()
        self.ledger = ledger or InventoryLedger(session_factory, self.emitter)
        self.payments = payment_client or PaymentClient()
        self.inventory_guard = inventory_guard or ServiceGuard.for_collaborator(
            "inventory", settings.INVENTORY_TIMEOUT_SECONDS
        )
        self.payment_guard = payment_guard or ServiceGuard.for_collaborator(
            "payment", settings.PAYMENT_TIMEOUT_SECONDS
        )
        self.compensation_retry = compensation_retry or RetryConfig.for_compensation()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit(
        self,
        order_id: str,
        items: Iterable[Any],
        shipping_address: Dict[str, Any],
        payment_method: str = "credit_card",
    ) -> OrderSagaState:
        """
        Run the saga for a new order.

        Returns the saga in CONFIRMED or CANCELLED state. Resubmitting an
        existing order_id returns its stored state without side effects.

        Raises:
            ValidationError: malformed submission
            InsufficientStockError, NotFoundError, ConflictError: stock
                rejected; saga is FAILED
            ServiceUnavailableError: inventory unreachable; saga is FAILED
        """
        submission = OrderSubmission.parse(
            order_id=order_id,
            items=list(items or []),
            shipping_address=shipping_address,
            payment_method=payment_method,
        )
        started = time.perf_counter()

        saga, created = await self._create(submission)
        if not created:
            logger.info(f"[OrderSaga] Order {order_id} already submitted ({saga.status}), returning stored state")
            return saga

        metrics.increment("sagas_started_total")
        logger.info(f"[OrderSaga] Started order {order_id}: total={saga.total_amount}")

        try:
            try:
                await self.inventory_guard.call(self.ledger.reserve, order_id, saga.reservation_items())
            except ServiceUnavailableError as e:
                await self.fail(order_id, f"Inventory unavailable: {e.message}")
                raise
            except StockflowError as e:
                await self.fail(order_id, e.message)
                raise

            await self._advance(order_id, SagaStatus.STOCK_RESERVED)
            saga = await self._advance(order_id, SagaStatus.PAYMENT_REQUESTED)

            charge_attempted = False

            async def charge():
                nonlocal charge_attempted
                charge_attempted = True
                return await self.payments.charge(order_id, saga.total_amount, saga.payment_method)

            try:
                result = await self.payment_guard.call(charge)
            except ServiceUnavailableError as e:
                logger.warning(f"[OrderSaga] Payment unavailable for order {order_id}: {e.message}")
                if charge_attempted:
                    # A timed-out or dropped charge may still have been captured
                    await self.flag_reconciliation(order_id, f"Charge outcome unknown: {e.message}")
                return await self.compensate(order_id, f"Payment unavailable: {e.message}")

            if not result.succeeded:
                logger.info(f"[OrderSaga] Payment declined for order {order_id}: {result.error}")
                return await self.compensate(order_id, f"Payment failed: {result.error or 'declined'}")

            saga = await self._advance(
                order_id,
                SagaStatus.CONFIRMED,
                payment_transaction_id=result.transaction_id,
            )
            metrics.increment("sagas_completed_total", labels={"outcome": "confirmed"})
            logger.info(f"[OrderSaga] Order {order_id} confirmed (transaction {result.transaction_id})")
            await self.emitter.publish(
                EventType.ORDER_CONFIRMED,
                {
                    "order_id": order_id,
                    "items": saga.items,
                    "total_amount": str(saga.total_amount),
                    "payment_transaction_id": saga.payment_transaction_id,
                },
                correlation_id=order_id,
            )
            return saga
        finally:
            metrics.observe("saga_duration_seconds", time.perf_counter() - started)

    async def cancel(self, order_id: str, reason: str = "customer_request") -> OrderSagaState:
        """
        Customer cancellation of a confirmed order: release stock, refund,
        end CANCELLED. Cancelling a cancelled order is a no-op.
        """
        saga = await self.get_order_state(order_id)
        if saga.saga_status == SagaStatus.CANCELLED:
            logger.info(f"[OrderSaga] Order {order_id} already cancelled")
            return saga
        if saga.saga_status != SagaStatus.CONFIRMED:
            raise InvalidStateTransition(order_id, saga.status, SagaStatus.COMPENSATING.value)

        logger.info(f"[OrderSaga] Cancelling confirmed order {order_id}: {reason}")
        return await self.compensate(order_id, f"Cancelled: {reason}")

    async def get_order_state(self, order_id: str) -> OrderSagaState:
        async with self._session_factory() as db:
            saga = (await db.execute(
                select(OrderSagaState).where(OrderSagaState.order_id == order_id)
            )).scalar_one_or_none()
        if saga is None:
            raise NotFoundError("Order", order_id)
        return saga

    async def list_orders(
        self,
        status: Optional[str] = None,
        requires_reconciliation: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[OrderSagaState], int]:
        """
        List sagas newest first.

        status accepts a SagaStatus or its string value. Returns (page, total matching).
        """
        filters = []
        if status is not None:
            try:
                status = SagaStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown order status: {status}", details={"status": status})
            filters.append(OrderSagaState.status == status.value)
        if requires_reconciliation is not None:
            filters.append(OrderSagaState.requires_reconciliation == requires_reconciliation)

        async with self._session_factory() as db:
            total = (
                await db.execute(select(func.count(OrderSagaState.id)).where(*filters))
            ).scalar_one()
            result = await db.execute(
                select(OrderSagaState)
                .where(*filters)
                .order_by(OrderSagaState.created_at.desc(), OrderSagaState.id.desc())
                .limit(limit)
                .offset(offset)
            )
            sagas = list(result.scalars().all())

        return sagas, total

    async def record_late_payment(self, order_id: str, transaction_id: str) -> OrderSagaState:
        """
        Handle a payment success reported outside the saga's own charge call.

        A success for a saga that is still waiting on its charge, or a
        duplicate report of the recorded transaction, is ignored. Anything
        else (typically a success arriving after compensation started) is
        flagged for manual reconciliation; status never moves backwards.
        """
        async with self._session_factory() as db:
            async with db.begin():
                saga = await self._lock_saga(db, order_id)
                status = saga.saga_status

                if status == SagaStatus.PAYMENT_REQUESTED:
                    logger.info(f"[OrderSaga] Payment report for {order_id} while charge in flight; ignored")
                    return saga
                if status == SagaStatus.CONFIRMED and saga.payment_transaction_id == transaction_id:
                    logger.info(f"[OrderSaga] Duplicate payment report for {order_id}; ignored")
                    return saga

                saga.requires_reconciliation = True
                if not saga.payment_transaction_id:
                    saga.payment_transaction_id = transaction_id

        metrics.increment("sagas_reconciliation_required_total")
        logger.error(
            f"[OrderSaga] Late payment {transaction_id} for order {order_id} in status {saga.status}; "
            f"manual reconciliation required"
        )
        await self.emitter.publish(
            EventType.ORDER_RECONCILIATION_REQUIRED,
            {
                "order_id": order_id,
                "status": saga.status,
                "transaction_id": transaction_id,
                "total_amount": str(saga.total_amount),
            },
            correlation_id=order_id,
        )
        return saga

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    async def compensate(self, order_id: str, reason: str, persistent: bool = True) -> OrderSagaState:
        """
        Undo a saga's effects and end it CANCELLED.

        Resumes a saga already in COMPENSATING without overwriting its
        original failure reason.

        persistent=True retries release/refund without limit. The recovery
        sweep passes False so one stuck saga cannot stall the sweep; a saga
        left COMPENSATING is picked up again on the next run.
        """
        saga = await self.get_order_state(order_id)
        if saga.saga_status != SagaStatus.COMPENSATING:
            saga = await self._advance(order_id, SagaStatus.COMPENSATING, failure_reason=reason)
            metrics.increment("compensations_total")
        return await self._finish_compensation(saga, persistent=persistent)

    async def _finish_compensation(self, saga: OrderSagaState, persistent: bool) -> OrderSagaState:
        order_id = saga.order_id
        refunded = None

        try:
            await self._call_compensation(
                persistent, "release", self.inventory_guard,
                self.ledger.release, order_id, saga.reservation_items(),
            )
        except ConflictError:
            # Shipped orders have consumed their stock; there is nothing to hold back
            logger.warning(f"[OrderSaga] Stock for order {order_id} already consumed, skipping release")

        if saga.payment_transaction_id:
            result = await self._call_compensation(
                persistent, "refund", self.payment_guard,
                self.payments.refund, order_id, saga.payment_transaction_id, saga.total_amount,
            )
            refunded = result.succeeded
            if not refunded:
                await self.flag_reconciliation(order_id, f"Refund rejected: {result.error}")

        saga = await self._advance(order_id, SagaStatus.CANCELLED)
        metrics.increment("sagas_completed_total", labels={"outcome": "cancelled"})
        logger.info(f"[OrderSaga] Order {order_id} cancelled: {saga.failure_reason}")
        await self.emitter.publish(
            EventType.ORDER_CANCELLED,
            {
                "order_id": order_id,
                "reason": saga.failure_reason,
                "items": saga.reservation_items(),
                "refunded": refunded,
            },
            correlation_id=order_id,
        )
        return saga

    async def _call_compensation(
        self,
        persistent: bool,
        label: str,
        guard: ServiceGuard,
        func: Callable[..., Awaitable[Any]],
        *args,
    ) -> Any:
        if persistent:
            return await retry_forever(
                label,
                guard.call,
                func,
                *args,
                retry_config=self.compensation_retry,
                sleep=self._sleep,
            )
        return await guard.call(func, *args)

    async def flag_reconciliation(self, order_id: str, reason: str) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                saga = await self._lock_saga(db, order_id)
                saga.requires_reconciliation = True

        metrics.increment("sagas_reconciliation_required_total")
        logger.error(f"[OrderSaga] Order {order_id} requires manual reconciliation: {reason}")
        await self.emitter.publish(
            EventType.ORDER_RECONCILIATION_REQUIRED,
            {"order_id": order_id, "reason": reason},
            correlation_id=order_id,
        )

    async def fail(self, order_id: str, reason: str) -> OrderSagaState:
        saga = await self._advance(order_id, SagaStatus.FAILED, failure_reason=reason)
        metrics.increment("sagas_completed_total", labels={"outcome": "failed"})
        logger.info(f"[OrderSaga] Order {order_id} failed: {reason}")
        await self.emitter.publish(
            EventType.ORDER_FAILED,
            {"order_id": order_id, "reason": reason},
            correlation_id=order_id,
        )
        return saga

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _create(self, submission: OrderSubmission) -> Tuple[OrderSagaState, bool]:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    existing = (await db.execute(
                        select(OrderSagaState).where(OrderSagaState.order_id == submission.order_id)
                    )).scalar_one_or_none()
                    if existing is not None:
                        return existing, False

                    saga = OrderSagaState(
                        order_id=submission.order_id,
                        items=submission.stored_items(),
                        status=SagaStatus.PENDING.value,
                        total_amount=submission.total_amount,
                        shipping_address=submission.shipping_address.model_dump(),
                        payment_method=submission.payment_method,
                        requires_reconciliation=False,
                    )
                    db.add(saga)
        except IntegrityError:
            # Concurrent submission of the same order won the insert
            return await self.get_order_state(submission.order_id), False
        return saga, True

    async def _advance(self, order_id: str, target: SagaStatus, **fields) -> OrderSagaState:
        async with self._session_factory() as db:
            async with db.begin():
                saga = await self._lock_saga(db, order_id)
                previous = saga.status
                saga.transition_to(target)
                for name, value in fields.items():
                    setattr(saga, name, value)

        logger.debug(f"[OrderSaga] {order_id}: {previous} -> {target.value}")
        return saga

    async def find_stale(self, statuses: List[str], updated_before: datetime, limit: int = 500) -> List[OrderSagaState]:
        """Sagas in one of statuses whose last update is older than updated_before, oldest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderSagaState)
                .where(
                    OrderSagaState.status.in_(statuses),
                    OrderSagaState.updated_at < updated_before,
                )
                .order_by(OrderSagaState.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    @staticmethod
    async def _lock_saga(db: AsyncSession, order_id: str) -> OrderSagaState:
        saga = (await db.execute(
            select(OrderSagaState).where(OrderSagaState.order_id == order_id).with_for_update()
        )).scalar_one_or_none()
        if saga is None:
            raise NotFoundError("Order", order_id)
        return saga
