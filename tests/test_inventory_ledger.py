import asyncio

import pytest

from stockflow.core.circuit_breaker import CircuitState
from stockflow.core.exceptions import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from stockflow.core.monitoring import metrics
from stockflow.models import ReservationStatus
from stockflow.services.inventory_ledger import InventoryLedger
from stockflow.services.notification_emitter import NotificationEmitter


def line(product_id, quantity):
    return {"product_id": product_id, "quantity": quantity}


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_record_starts_with_nothing_reserved(ledger, fake_redis):
    record = await ledger.create_record("sku-1", 10, "WH-EAST")

    assert record.on_hand == 10
    assert record.reserved == 0
    assert record.available == 10
    assert record.is_active is True
    await ledger.emitter.drain()
    assert fake_redis.event_types() == ["inventory.created"]


@pytest.mark.asyncio
async def test_create_record_twice_conflicts(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")

    with pytest.raises(ConflictError):
        await ledger.create_record("sku-1", 5, "WH-WEST")

    record = await ledger.get_record("sku-1")
    assert record.on_hand == 10


@pytest.mark.asyncio
async def test_create_record_rejects_bad_input(ledger):
    with pytest.raises(ValidationError):
        await ledger.create_record("sku-1", -1, "WH-EAST")
    with pytest.raises(ValidationError):
        await ledger.create_record("sku-1", 5, "   ")


@pytest.mark.asyncio
async def test_get_record_unknown_product(ledger):
    with pytest.raises(NotFoundError) as exc_info:
        await ledger.get_record("missing")
    assert exc_info.value.message == "Product missing not found in inventory"


@pytest.mark.asyncio
async def test_list_records_filters_by_location_and_low_stock(ledger):
    await ledger.create_record("sku-a", 50, "WH-EAST")
    await ledger.create_record("sku-b", 5, "WH-EAST")
    await ledger.create_record("sku-c", 3, "WH-WEST")

    records, total = await ledger.list_records(warehouse_location="WH-EAST")
    assert total == 2
    assert [r.product_id for r in records] == ["sku-a", "sku-b"]

    records, total = await ledger.list_records(low_stock=True)
    assert total == 2
    assert [r.product_id for r in records] == ["sku-b", "sku-c"]

    records, total = await ledger.list_records(limit=1, offset=1)
    assert total == 3
    assert [r.product_id for r in records] == ["sku-b"]


# ----------------------------------------------------------------------
# Availability
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_verify_availability_reports_first_insufficient_item(ledger):
    await ledger.create_record("sku-1", 5, "WH-EAST")
    await ledger.create_record("sku-2", 1, "WH-EAST")

    result = await ledger.verify_availability([line("sku-1", 2), line("sku-2", 3), line("ghost", 1)])

    assert result.available is False
    assert result.reason == "Insufficient stock for product sku-2. Available: 1, Requested: 3"


@pytest.mark.asyncio
async def test_verify_availability_unknown_and_inactive_products(ledger):
    await ledger.create_record("sku-1", 5, "WH-EAST")

    result = await ledger.verify_availability([line("ghost", 1)])
    assert result.reason == "Product ghost not found in inventory"

    await ledger.deactivate_record("sku-1")
    result = await ledger.verify_availability([line("sku-1", 1)])
    assert result.available is False
    assert result.reason == "Product sku-1 is not accepting reservations"


@pytest.mark.asyncio
async def test_verify_availability_does_not_reserve(ledger):
    await ledger.create_record("sku-1", 5, "WH-EAST")

    result = await ledger.verify_availability([line("sku-1", 5)])

    assert result.available is True
    assert result.reason is None
    assert (await ledger.get_record("sku-1")).reserved == 0


# ----------------------------------------------------------------------
# Reserve / release scenarios
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reserve_release_scenarios(ledger):
    await ledger.create_record("p", 10, "WH-EAST")

    # Reserve 8 of 10
    outcome = await ledger.reserve("order-1", [line("p", 8)])
    record = await ledger.get_record("p")
    assert outcome.status == ReservationStatus.RESERVED.value
    assert outcome.replayed is False
    assert record.reserved == 8
    assert record.available == 2

    # Only 2 left
    with pytest.raises(InsufficientStockError) as exc_info:
        await ledger.reserve("order-2", [line("p", 5)])
    assert exc_info.value.product_id == "p"
    assert exc_info.value.details["available_qty"] == 2
    assert exc_info.value.details["requested_qty"] == 5
    assert (await ledger.get_record("p")).reserved == 8

    # Release the first order
    await ledger.release("order-1", [line("p", 8)])
    record = await ledger.get_record("p")
    assert record.reserved == 0
    assert record.available == 10


@pytest.mark.asyncio
async def test_reserve_is_all_or_nothing(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.create_record("sku-2", 1, "WH-EAST")

    with pytest.raises(InsufficientStockError):
        await ledger.reserve("order-1", [line("sku-1", 5), line("sku-2", 2)])

    assert (await ledger.get_record("sku-1")).reserved == 0
    assert (await ledger.get_record("sku-2")).reserved == 0
    assert await ledger.get_reservation("order-1") is None


@pytest.mark.asyncio
async def test_reserve_unknown_product(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")

    with pytest.raises(NotFoundError):
        await ledger.reserve("order-1", [line("sku-1", 1), line("ghost", 1)])

    assert (await ledger.get_record("sku-1")).reserved == 0


@pytest.mark.asyncio
async def test_reserve_rejects_invalid_items(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")

    with pytest.raises(ValidationError):
        await ledger.reserve("order-1", [])
    with pytest.raises(ValidationError):
        await ledger.reserve("order-1", [line("sku-1", 0)])
    with pytest.raises(ValidationError):
        await ledger.reserve("order-1", [line("sku-1", -2)])
    with pytest.raises(ValidationError):
        await ledger.reserve("", [line("sku-1", 1)])


@pytest.mark.asyncio
async def test_reserve_merges_duplicate_lines(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")

    outcome = await ledger.reserve("order-1", [line("sku-1", 2), line("sku-1", 3)])

    assert [(i.product_id, i.quantity) for i in outcome.items] == [("sku-1", 5)]
    assert (await ledger.get_record("sku-1")).reserved == 5


@pytest.mark.asyncio
async def test_reserve_replay_returns_recorded_outcome(ledger, fake_redis):
    await ledger.create_record("sku-1", 10, "WH-EAST")

    first = await ledger.reserve("order-1", [line("sku-1", 3)])
    await ledger.emitter.drain()
    events_after_first = len(fake_redis.messages)
    second = await ledger.reserve("order-1", [line("sku-1", 3)])
    await ledger.emitter.drain()

    assert first.replayed is False
    assert second.replayed is True
    assert second.items == first.items
    assert (await ledger.get_record("sku-1")).reserved == 3
    assert len(fake_redis.messages) == events_after_first
    assert metrics.get_counter("reservations_replayed_total") == 1


@pytest.mark.asyncio
async def test_reserve_same_order_with_different_items_conflicts(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 3)])

    with pytest.raises(ConflictError):
        await ledger.reserve("order-1", [line("sku-1", 4)])

    assert (await ledger.get_record("sku-1")).reserved == 3


@pytest.mark.asyncio
async def test_reserve_after_release_conflicts(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 3)])
    await ledger.release("order-1")

    with pytest.raises(ConflictError):
        await ledger.reserve("order-1", [line("sku-1", 3)])

    assert (await ledger.get_record("sku-1")).reserved == 0


@pytest.mark.asyncio
async def test_deactivated_record_refuses_reservations(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.deactivate_record("sku-1")

    with pytest.raises(ConflictError):
        await ledger.reserve("order-1", [line("sku-1", 1)])

    await ledger.activate_record("sku-1")
    outcome = await ledger.reserve("order-1", [line("sku-1", 1)])
    assert outcome.status == "reserved"


@pytest.mark.asyncio
async def test_reserve_emits_reserved_and_low_stock(ledger, fake_redis):
    await ledger.create_record("sku-1", 12, "WH-EAST")
    await ledger.emitter.drain()
    fake_redis.messages.clear()

    await ledger.reserve("order-1", [line("sku-1", 5)])
    await ledger.emitter.drain()

    assert fake_redis.event_types() == ["inventory.reserved", "inventory.low_stock"]
    reserved_event = fake_redis.events_of("inventory.reserved")[0]
    assert reserved_event["payload"]["items"] == [line("sku-1", 5)]
    assert reserved_event["metadata"]["correlation_id"] == "order-1"
    low_stock = fake_redis.events_of("inventory.low_stock")[0]["payload"]
    assert low_stock["available"] == 7
    assert low_stock["threshold"] == 10


@pytest.mark.asyncio
async def test_reserve_last_units_emits_out_of_stock(ledger, fake_redis):
    await ledger.create_record("sku-1", 4, "WH-EAST")
    await ledger.emitter.drain()
    fake_redis.messages.clear()

    await ledger.reserve("order-1", [line("sku-1", 4)])
    await ledger.emitter.drain()

    assert fake_redis.event_types() == ["inventory.reserved", "inventory.out_of_stock"]


@pytest.mark.asyncio
async def test_concurrent_reservations_never_oversell(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")

    results = await asyncio.gather(
        *(ledger.reserve(f"order-{n}", [line("sku-1", 3)]) for n in range(8)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientStockError)]
    assert len(succeeded) == 3
    assert len(rejected) == 5

    record = await ledger.get_record("sku-1")
    assert record.reserved == 9
    assert record.available == 1


@pytest.mark.asyncio
async def test_notification_failure_does_not_affect_reserve(session_factory):
    async def broken_redis():
        raise ConnectionError("redis down")

    ledger = InventoryLedger(session_factory, NotificationEmitter(redis_getter=broken_redis, timeout=0.5))
    await ledger.create_record("sku-1", 10, "WH-EAST")

    outcome = await ledger.reserve("order-1", [line("sku-1", 2)])
    await ledger.emitter.drain()

    assert outcome.status == "reserved"
    assert (await ledger.get_record("sku-1")).reserved == 2
    assert metrics.get_counter(
        "notifications_failed_total", labels={"type": "inventory.reserved", "reason": "error"}
    ) == 1


@pytest.mark.asyncio
async def test_hung_notification_channel_does_not_trip_inventory_breaker(session_factory, guard_factory):
    class HungRedis:
        async def publish(self, channel, message):
            await asyncio.sleep(60)

    hung = HungRedis()

    async def redis_getter():
        return hung

    emitter = NotificationEmitter(redis_getter=redis_getter, timeout=0.3)
    ledger = InventoryLedger(session_factory, emitter, low_stock_threshold=10)
    guard = guard_factory("inventory", call_timeout=0.5, minimum_calls=4)
    await ledger.create_record("sku-1", 10, "WH-EAST")

    for n in range(4):
        outcome = await guard.call(ledger.reserve, f"order-{n}", [line("sku-1", 1)])
        assert outcome.status == "reserved"

    assert guard.breaker.state == CircuitState.CLOSED
    assert guard.breaker.total_failures == 0
    assert guard.breaker.total_timeouts == 0
    assert (await ledger.get_record("sku-1")).reserved == 4

    await emitter.drain()
    assert emitter.pending_count == 0
    assert metrics.get_counter(
        "notifications_failed_total", labels={"type": "inventory.reserved", "reason": "timeout"}
    ) == 4


# ----------------------------------------------------------------------
# Release
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_release_is_idempotent(ledger, fake_redis):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 4)])
    await ledger.emitter.drain()
    fake_redis.messages.clear()

    await ledger.release("order-1", [line("sku-1", 4)])
    await ledger.release("order-1", [line("sku-1", 4)])
    await ledger.emitter.drain()

    assert (await ledger.get_record("sku-1")).reserved == 0
    assert (await ledger.get_reservation("order-1")).status == ReservationStatus.RELEASED.value
    assert fake_redis.event_types() == ["inventory.released"]


@pytest.mark.asyncio
async def test_release_uses_logged_quantities(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 4)])
    await ledger.reserve("order-2", [line("sku-1", 3)])

    # Items passed by the caller are ignored once the order has a log row
    await ledger.release("order-1", [line("sku-1", 7)])

    assert (await ledger.get_record("sku-1")).reserved == 3


@pytest.mark.asyncio
async def test_release_without_log_is_clamped_at_zero(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 2)])

    await ledger.release("admin-adjustment", [line("sku-1", 5)])
    await ledger.release("admin-adjustment", [line("sku-1", 5)])

    record = await ledger.get_record("sku-1")
    assert record.reserved == 0
    assert record.on_hand == 10


@pytest.mark.asyncio
async def test_release_unknown_product(ledger):
    with pytest.raises(NotFoundError):
        await ledger.release("order-1", [line("ghost", 1)])


@pytest.mark.asyncio
async def test_release_without_log_or_items_is_rejected(ledger):
    with pytest.raises(ValidationError):
        await ledger.release("order-1")


@pytest.mark.asyncio
async def test_release_of_confirmed_reservation_conflicts(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 2)])
    await ledger.confirm("order-1")

    with pytest.raises(ConflictError):
        await ledger.release("order-1")


# ----------------------------------------------------------------------
# Confirm / adjust
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_confirm_after_reserve_round_trip(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 4)])
    before = await ledger.get_record("sku-1")

    await ledger.confirm("order-1", [line("sku-1", 4)])
    after = await ledger.get_record("sku-1")

    assert after.on_hand == before.on_hand - 4
    assert after.reserved == before.reserved - 4
    assert after.available == before.available
    assert (await ledger.get_reservation("order-1")).status == ReservationStatus.CONFIRMED.value


@pytest.mark.asyncio
async def test_confirm_twice_is_a_no_op(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 4)])

    await ledger.confirm("order-1")
    await ledger.confirm("order-1")

    record = await ledger.get_record("sku-1")
    assert record.on_hand == 6
    assert record.reserved == 0


@pytest.mark.asyncio
async def test_confirm_of_released_reservation_conflicts(ledger):
    await ledger.create_record("sku-1", 10, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 4)])
    await ledger.release("order-1")

    with pytest.raises(ConflictError):
        await ledger.confirm("order-1")


@pytest.mark.asyncio
async def test_confirm_emits_out_of_stock_when_on_hand_reaches_zero(ledger, fake_redis):
    await ledger.create_record("sku-1", 3, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 3)])
    await ledger.emitter.drain()
    fake_redis.messages.clear()

    await ledger.confirm("order-1")
    await ledger.emitter.drain()

    record = await ledger.get_record("sku-1")
    assert record.on_hand == 0
    assert record.reserved == 0
    assert fake_redis.event_types() == ["inventory.out_of_stock"]


@pytest.mark.asyncio
async def test_confirm_without_log_cannot_overdraw(ledger):
    await ledger.create_record("sku-1", 5, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 4)])

    with pytest.raises(InsufficientStockError):
        await ledger.confirm("walk-in", [line("sku-1", 6)])

    record = await ledger.get_record("sku-1")
    assert record.on_hand == 5
    assert record.reserved == 4


@pytest.mark.asyncio
async def test_adjust_stock(ledger, fake_redis):
    await ledger.create_record("sku-1", 20, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 4)])
    await ledger.emitter.drain()
    fake_redis.messages.clear()

    record = await ledger.adjust_stock("sku-1", 12)
    await ledger.emitter.drain()

    assert record.on_hand == 12
    assert record.available == 8
    assert fake_redis.event_types() == ["inventory.updated", "inventory.low_stock"]
    assert fake_redis.events_of("inventory.updated")[0]["payload"]["previous_on_hand"] == 20


@pytest.mark.asyncio
async def test_adjust_stock_below_reserved_is_rejected(ledger):
    await ledger.create_record("sku-1", 20, "WH-EAST")
    await ledger.reserve("order-1", [line("sku-1", 4)])

    with pytest.raises(ValidationError):
        await ledger.adjust_stock("sku-1", 3)
    with pytest.raises(ValidationError):
        await ledger.adjust_stock("sku-1", -1)

    assert (await ledger.get_record("sku-1")).on_hand == 20


@pytest.mark.asyncio
async def test_adjust_stock_unknown_product(ledger):
    with pytest.raises(NotFoundError):
        await ledger.adjust_stock("ghost", 3)
