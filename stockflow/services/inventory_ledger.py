"""
Inventory Ledger

Owns per-product stock counters (on_hand, reserved) and the reservation log.

Concurrency model:
- Every mutation runs in one transaction that row-locks the affected
  inventory records (SELECT ... FOR UPDATE), always in sorted product_id
  order so two multi-item requests cannot deadlock each other.
- Availability is re-checked on the locked rows inside that transaction;
  nothing is cached in memory between requests.
- reserve/release/confirm are keyed by order_id through the reservation log,
  which makes replays safe: a repeated reserve returns the recorded outcome,
  a repeated release or confirm is a no-op.

Notifications are dispatched in the background after commit and never affect
the outcome or the latency of a ledger call.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockflow.core.config import settings
from stockflow.core.database import AsyncSessionLocal
from stockflow.core.exceptions import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from stockflow.core.monitoring import metrics
from stockflow.models import InventoryRecord, ReservationLog, ReservationStatus
from stockflow.schemas.events import EventType
from stockflow.schemas.inventory import (
    AvailabilityResult,
    ReservationItem,
    ReservationOutcome,
    canonical_items,
    items_fingerprint,
    normalize_items,
)
from stockflow.services.notification_emitter import NotificationEmitter

logger = logging.getLogger(__name__)

# (event_type, payload) pairs collected inside a transaction, published after commit
PendingEvents = List[Tuple[str, Dict[str, Any]]]


def _not_in_inventory(product_id: str) -> NotFoundError:
    return NotFoundError(
        "Product",
        product_id,
        message=f"Product {product_id} not found in inventory",
    )


def _insufficient(product_id: str, available: int, requested: int) -> InsufficientStockError:
    return InsufficientStockError(
        f"Insufficient stock for product {product_id}. Available: {available}, Requested: {requested}",
        product_id=product_id,
        requested_qty=requested,
        available_qty=available,
    )


def _inactive_reason(product_id: str) -> str:
    return f"Product {product_id} is not accepting reservations"


class InventoryLedger:
    """
    Transactional stock ledger.

    Usage:
        ledger = InventoryLedger()
        await ledger.reserve("order-1", [{"product_id": "sku-1", "quantity": 2}])
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        emitter: Optional[NotificationEmitter] = None,
        low_stock_threshold: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.emitter = emitter or NotificationEmitter()
        self.low_stock_threshold = (
            low_stock_threshold if low_stock_threshold is not None else settings.LOW_STOCK_THRESHOLD
        )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def create_record(
        self,
        product_id: str,
        on_hand: int,
        warehouse_location: str,
        reorder_threshold: int = 0,
        reorder_quantity: int = 0,
    ) -> InventoryRecord:
        if not product_id:
            raise ValidationError("product_id is required")
        if on_hand < 0:
            raise ValidationError(
                f"on_hand must be >= 0 for product {product_id}",
                details={"product_id": product_id, "on_hand": on_hand},
            )
        if not warehouse_location or not warehouse_location.strip():
            raise ValidationError("warehouse_location is required", details={"product_id": product_id})
        if reorder_threshold < 0 or reorder_quantity < 0:
            raise ValidationError("Reorder settings must be >= 0", details={"product_id": product_id})

        try:
            async with self._session_factory() as db:
                async with db.begin():
                    existing = await db.execute(
                        select(InventoryRecord.id).where(InventoryRecord.product_id == product_id)
                    )
                    if existing.scalar_one_or_none() is not None:
                        raise ConflictError(
                            f"Inventory record already exists for product {product_id}",
                            details={"product_id": product_id},
                        )

                    record = InventoryRecord(
                        product_id=product_id,
                        on_hand=on_hand,
                        reserved=0,
                        warehouse_location=warehouse_location.strip(),
                        reorder_threshold=reorder_threshold,
                        reorder_quantity=reorder_quantity,
                        is_active=True,
                    )
                    db.add(record)
        except IntegrityError as e:
            # Lost a race with a concurrent create for the same product
            raise ConflictError(
                f"Inventory record already exists for product {product_id}",
                details={"product_id": product_id},
            ) from e

        logger.info(f"[InventoryLedger] Created record for {product_id}: on_hand={on_hand} at {record.warehouse_location}")
        self._publish_all(
            [(EventType.INVENTORY_CREATED, {
                "product_id": product_id,
                "on_hand": on_hand,
                "warehouse_location": record.warehouse_location,
            })],
            product_id,
        )
        return record

    async def get_record(self, product_id: str) -> InventoryRecord:
        async with self._session_factory() as db:
            result = await db.execute(
                select(InventoryRecord).where(InventoryRecord.product_id == product_id)
            )
            record = result.scalar_one_or_none()
        if record is None:
            raise _not_in_inventory(product_id)
        return record

    async def list_records(
        self,
        warehouse_location: Optional[str] = None,
        low_stock: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[InventoryRecord], int]:
        """
        List records ordered by product_id.

        low_stock selects records whose available quantity is at or below the
        low-stock threshold. Returns (page, total matching).
        """
        filters = []
        if warehouse_location:
            filters.append(InventoryRecord.warehouse_location == warehouse_location)
        if low_stock:
            filters.append(
                (InventoryRecord.on_hand - InventoryRecord.reserved) <= self.low_stock_threshold
            )

        async with self._session_factory() as db:
            total = (
                await db.execute(select(func.count(InventoryRecord.id)).where(*filters))
            ).scalar_one()
            result = await db.execute(
                select(InventoryRecord)
                .where(*filters)
                .order_by(InventoryRecord.product_id)
                .limit(limit)
                .offset(offset)
            )
            records = list(result.scalars().all())

        return records, int(total or 0)

    async def deactivate_record(self, product_id: str) -> InventoryRecord:
        return await self._set_active(product_id, False)

    async def activate_record(self, product_id: str) -> InventoryRecord:
        return await self._set_active(product_id, True)

    async def _set_active(self, product_id: str, active: bool) -> InventoryRecord:
        async with self._session_factory() as db:
            async with db.begin():
                records = await self._lock_records(db, [product_id])
                record = records.get(product_id)
                if record is None:
                    raise _not_in_inventory(product_id)
                record.is_active = active

        logger.info(f"[InventoryLedger] {'Activated' if active else 'Deactivated'} {product_id}")
        self._publish_all(
            [(EventType.INVENTORY_UPDATED, {"product_id": product_id, "is_active": active})],
            product_id,
        )
        return record

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def verify_availability(self, items: Iterable[Any]) -> AvailabilityResult:
        """
        Pure read. Reports the first item, in request order, that cannot be
        satisfied.
        """
        lines = normalize_items(items)
        async with self._session_factory() as db:
            result = await db.execute(
                select(InventoryRecord).where(
                    InventoryRecord.product_id.in_([line.product_id for line in lines])
                )
            )
            records = {r.product_id: r for r in result.scalars().all()}

        for line in lines:
            record = records.get(line.product_id)
            if record is None:
                return AvailabilityResult(available=False, reason=_not_in_inventory(line.product_id).message)
            if not record.is_active:
                return AvailabilityResult(available=False, reason=_inactive_reason(line.product_id))
            if record.available < line.quantity:
                return AvailabilityResult(
                    available=False,
                    reason=_insufficient(line.product_id, record.available, line.quantity).message,
                )

        return AvailabilityResult(available=True)

    # ------------------------------------------------------------------
    # Reserve / release / confirm
    # ------------------------------------------------------------------

    async def reserve(self, order_id: str, items: Iterable[Any]) -> ReservationOutcome:
        """
        Reserve every item for order_id, all or nothing.

        Raises:
            ValidationError: empty request or non-positive quantity
            NotFoundError: unknown product
            InsufficientStockError: some item's available quantity is too low
            ConflictError: order_id already used for different items, or
                its reservation was released
        """
        order_id = self._require_order_id(order_id)
        lines = normalize_items(items)
        fingerprint = items_fingerprint(lines)

        try:
            outcome, events = await self._reserve_once(order_id, lines, fingerprint)
        except IntegrityError:
            # A concurrent reserve for the same order wrote its log row first;
            # the second pass sees it and replays.
            logger.info(f"[InventoryLedger] Concurrent reserve for order {order_id}, replaying")
            outcome, events = await self._reserve_once(order_id, lines, fingerprint)

        if outcome.replayed:
            metrics.increment("reservations_replayed_total")
            logger.info(f"[InventoryLedger] Replayed reservation for order {order_id} ({outcome.status})")
        else:
            metrics.increment("reservations_total")
            logger.info(
                f"[InventoryLedger] Reserved for order {order_id}: "
                + ", ".join(f"{i.product_id}x{i.quantity}" for i in outcome.items)
            )

        self._publish_all(events, order_id)
        return outcome

    async def _reserve_once(
        self,
        order_id: str,
        lines: List[ReservationItem],
        fingerprint: str,
    ) -> Tuple[ReservationOutcome, PendingEvents]:
        events: PendingEvents = []

        async with self._session_factory() as db:
            async with db.begin():
                log = await self._get_log(db, order_id, lock=True)
                if log is not None:
                    return self._replay(log, fingerprint), events

                records = await self._lock_records(db, [line.product_id for line in lines])

                # Re-verify on the locked rows; nothing is written unless every line fits
                for line in lines:
                    record = records.get(line.product_id)
                    if record is None:
                        raise _not_in_inventory(line.product_id)
                    if not record.is_active:
                        raise ConflictError(
                            _inactive_reason(line.product_id),
                            details={"product_id": line.product_id},
                        )
                    if record.available < line.quantity:
                        metrics.increment("reservations_rejected_total", labels={"reason": "insufficient_stock"})
                        raise _insufficient(line.product_id, record.available, line.quantity)

                for line in lines:
                    record = records[line.product_id]
                    record.reserved += line.quantity
                    self._check_counters(record)
                    events.extend(self._stock_level_events(record))

                stored = canonical_items(lines)
                db.add(ReservationLog(
                    order_id=order_id,
                    items=stored,
                    fingerprint=fingerprint,
                    status=ReservationStatus.RESERVED.value,
                ))

        events.insert(0, (EventType.INVENTORY_RESERVED, {"order_id": order_id, "items": stored}))
        outcome = ReservationOutcome(
            order_id=order_id,
            items=[ReservationItem(**item) for item in stored],
            status=ReservationStatus.RESERVED.value,
        )
        return outcome, events

    def _replay(self, log: ReservationLog, fingerprint: str) -> ReservationOutcome:
        if log.fingerprint != fingerprint:
            raise ConflictError(
                f"Order {log.order_id} already holds a reservation for different items",
                details={"order_id": log.order_id},
            )
        if log.status == ReservationStatus.RELEASED.value:
            raise ConflictError(
                f"Reservation for order {log.order_id} was already released",
                details={"order_id": log.order_id, "status": log.status},
            )
        return ReservationOutcome(
            order_id=log.order_id,
            items=[ReservationItem(**item) for item in log.items],
            status=log.status,
            replayed=True,
        )

    async def release(self, order_id: str, items: Optional[Iterable[Any]] = None) -> None:
        """
        Give back reserved units for order_id. Safe to call repeatedly.

        With a reservation log row the logged quantities are released and
        items is ignored. Without one (administrative path) the given items
        are released, each clamped so reserved never goes below zero.

        Raises:
            NotFoundError: unknown product
            ConflictError: the reservation was already confirmed
        """
        order_id = self._require_order_id(order_id)
        lines = normalize_items(items) if items else None
        events: PendingEvents = []

        async with self._session_factory() as db:
            async with db.begin():
                log = await self._get_log(db, order_id, lock=True)

                if log is not None:
                    if log.status == ReservationStatus.RELEASED.value:
                        logger.info(f"[InventoryLedger] Release for order {order_id} already applied")
                        return
                    if log.status == ReservationStatus.CONFIRMED.value:
                        raise ConflictError(
                            f"Reservation for order {order_id} is confirmed; consumed stock cannot be released",
                            details={"order_id": order_id},
                        )
                    quantities = log.quantities()
                else:
                    if lines is None:
                        raise ValidationError(
                            f"No reservation recorded for order {order_id}; items are required",
                            details={"order_id": order_id},
                        )
                    quantities = {line.product_id: line.quantity for line in lines}

                records = await self._lock_records(db, list(quantities))
                released = []
                for product_id in sorted(quantities):
                    record = records.get(product_id)
                    if record is None:
                        raise _not_in_inventory(product_id)
                    qty = min(quantities[product_id], record.reserved)
                    if qty < quantities[product_id]:
                        logger.warning(
                            f"[InventoryLedger] Release for order {order_id} clamped on {product_id}: "
                            f"requested {quantities[product_id]}, reserved {record.reserved}"
                        )
                    record.reserved -= qty
                    self._check_counters(record)
                    released.append({"product_id": product_id, "quantity": qty})

                if log is not None:
                    log.status = ReservationStatus.RELEASED.value

        metrics.increment("releases_total")
        logger.info(f"[InventoryLedger] Released reservation for order {order_id}")
        events.append((EventType.INVENTORY_RELEASED, {"order_id": order_id, "items": released}))
        self._publish_all(events, order_id)

    async def confirm(self, order_id: str, items: Optional[Iterable[Any]] = None) -> None:
        """
        Consume reserved stock: on_hand and reserved drop by the same amount.

        Raises:
            NotFoundError: unknown product
            ConflictError: the reservation was released
            InsufficientStockError: (no-log path) on_hand cannot cover the
                quantity plus the remaining reservations
        """
        order_id = self._require_order_id(order_id)
        lines = normalize_items(items) if items else None
        events: PendingEvents = []

        async with self._session_factory() as db:
            async with db.begin():
                log = await self._get_log(db, order_id, lock=True)

                if log is not None:
                    if log.status == ReservationStatus.CONFIRMED.value:
                        logger.info(f"[InventoryLedger] Confirm for order {order_id} already applied")
                        return
                    if log.status == ReservationStatus.RELEASED.value:
                        raise ConflictError(
                            f"Reservation for order {order_id} was released and cannot be confirmed",
                            details={"order_id": order_id},
                        )
                    quantities = log.quantities()
                else:
                    if lines is None:
                        raise ValidationError(
                            f"No reservation recorded for order {order_id}; items are required",
                            details={"order_id": order_id},
                        )
                    quantities = {line.product_id: line.quantity for line in lines}

                records = await self._lock_records(db, list(quantities))
                for product_id in sorted(quantities):
                    record = records.get(product_id)
                    if record is None:
                        raise _not_in_inventory(product_id)
                    qty = quantities[product_id]
                    new_reserved = max(0, record.reserved - qty)
                    new_on_hand = record.on_hand - qty
                    if new_on_hand < new_reserved:
                        raise _insufficient(product_id, record.on_hand - new_reserved, qty)
                    record.on_hand = new_on_hand
                    record.reserved = new_reserved
                    self._check_counters(record)
                    if record.on_hand == 0:
                        events.append((
                            EventType.INVENTORY_OUT_OF_STOCK,
                            {"product_id": product_id, "warehouse_location": record.warehouse_location},
                        ))

                if log is not None:
                    log.status = ReservationStatus.CONFIRMED.value

        metrics.increment("confirmations_total")
        logger.info(f"[InventoryLedger] Confirmed stock for order {order_id}")
        self._publish_all(events, order_id)

    async def adjust_stock(self, product_id: str, new_on_hand: int) -> InventoryRecord:
        """Set the physical count for a product (cycle count, receiving)."""
        if new_on_hand < 0:
            raise ValidationError(
                f"on_hand must be >= 0 for product {product_id}",
                details={"product_id": product_id, "on_hand": new_on_hand},
            )

        async with self._session_factory() as db:
            async with db.begin():
                records = await self._lock_records(db, [product_id])
                record = records.get(product_id)
                if record is None:
                    raise _not_in_inventory(product_id)
                if new_on_hand < record.reserved:
                    raise ValidationError(
                        f"on_hand {new_on_hand} for product {product_id} is below reserved {record.reserved}",
                        details={"product_id": product_id, "on_hand": new_on_hand, "reserved": record.reserved},
                    )
                previous = record.on_hand
                record.on_hand = new_on_hand
                self._check_counters(record)

        logger.info(f"[InventoryLedger] Adjusted {product_id}: on_hand {previous} -> {new_on_hand}")
        events: PendingEvents = [(
            EventType.INVENTORY_UPDATED,
            {
                "product_id": product_id,
                "previous_on_hand": previous,
                "on_hand": record.on_hand,
                "reserved": record.reserved,
                "available": record.available,
            },
        )]
        events.extend(self._stock_level_events(record))
        self._publish_all(events, product_id)
        return record

    async def get_reservation(self, order_id: str) -> Optional[ReservationLog]:
        async with self._session_factory() as db:
            return await self._get_log(db, order_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_order_id(order_id: str) -> str:
        if not order_id or not str(order_id).strip():
            raise ValidationError("order_id is required")
        return str(order_id)

    @staticmethod
    async def _get_log(db: AsyncSession, order_id: str, lock: bool = False) -> Optional[ReservationLog]:
        stmt = select(ReservationLog).where(ReservationLog.order_id == order_id)
        if lock:
            stmt = stmt.with_for_update()
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _lock_records(db: AsyncSession, product_ids: List[str]) -> Dict[str, InventoryRecord]:
        result = await db.execute(
            select(InventoryRecord)
            .where(InventoryRecord.product_id.in_(sorted(set(product_ids))))
            .order_by(InventoryRecord.product_id)
            .with_for_update()  # Pessimistic lock
        )
        return {r.product_id: r for r in result.scalars().all()}

    @staticmethod
    def _check_counters(record: InventoryRecord) -> None:
        if not 0 <= record.reserved <= record.on_hand:
            # Unreachable through the public operations; aborts the transaction
            logger.error(
                f"[InventoryLedger] Counter invariant violated for {record.product_id}: "
                f"on_hand={record.on_hand} reserved={record.reserved}"
            )
            raise ValidationError(
                f"Stock counters for product {record.product_id} would become inconsistent",
                details={"product_id": record.product_id, "on_hand": record.on_hand, "reserved": record.reserved},
            )

    def _stock_level_events(self, record: InventoryRecord) -> PendingEvents:
        available = record.available
        if available == 0:
            return [(
                EventType.INVENTORY_OUT_OF_STOCK,
                {"product_id": record.product_id, "warehouse_location": record.warehouse_location},
            )]
        if available <= self.low_stock_threshold:
            return [(
                EventType.INVENTORY_LOW_STOCK,
                {
                    "product_id": record.product_id,
                    "available": available,
                    "threshold": self.low_stock_threshold,
                    "warehouse_location": record.warehouse_location,
                },
            )]
        return []

    def _publish_all(self, events: PendingEvents, correlation_id: str) -> None:
        # Ledger calls run under the inventory guard's timeout; never wait on the channel
        self.emitter.dispatch(events, correlation_id)
