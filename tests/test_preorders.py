from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from database import DuplicateKeyError
from errors import Failure
from memory import MemoryStore
from preorders import DEFAULT_LEAD_TIME, PreorderService
from schemas import LineItemIn, OrderStatus, Payment, PaymentStatus, PreorderStatus, Role

from factories import CUSTOMER_ID, OTHER_CUSTOMER_ID, SOLD_OUT_FRAME_ID, catalog_docs, full_item


async def _create(store, items=None, expected_date=None):
    service = PreorderService(store)
    return await service.create_preorder(CUSTOMER_ID, expected_date, items or [LineItemIn(**full_item())])


async def _add_payment(store, preorder_id, status="completed", lock=True):
    doc = {
        "id": f"pay-{status}", "user_id": CUSTOMER_ID, "amount": 250.0, "payment_method": "vnpay",
        "payment_status": status, "order_id": None, "preorder_id": preorder_id,
    }
    if lock:
        doc["target_lock"] = f"preorder:{preorder_id}"
    await store.insert("payment", doc)
    return doc["id"]


@pytest.mark.asyncio
async def test_expected_date_defaults_to_two_weeks(store):
    preorder = await _create(store)
    assert preorder.status == PreorderStatus.PENDING
    assert preorder.expected_date - preorder.created_at == DEFAULT_LEAD_TIME

    chosen = datetime(2030, 1, 1, tzinfo=timezone.utc)
    explicit = await _create(store, expected_date=chosen)
    assert explicit.expected_date == chosen


@pytest.mark.asyncio
async def test_preorders_accept_unavailable_frames(store):
    service = PreorderService(store)
    items = [LineItemIn(frame_id=SOLD_OUT_FRAME_ID, quantity=1)]
    assert (await service.validate_items(items, CUSTOMER_ID)).ok

    preorder = await service.create_preorder(CUSTOMER_ID, None, items)
    assert preorder.items[0].price == 90.0


@pytest.mark.asyncio
async def test_owner_can_cancel(store):
    preorder = await _create(store)
    service = PreorderService(store)

    result = await service.cancel(preorder.id, CUSTOMER_ID)
    assert result.status == PreorderStatus.CANCELLED

    again = await service.cancel(preorder.id, CUSTOMER_ID)
    assert isinstance(again, Failure)
    assert again.code == "CANCEL_FAILED"


@pytest.mark.asyncio
async def test_cancel_guards(store):
    preorder = await _create(store)
    service = PreorderService(store)

    missing = await service.cancel("missing", CUSTOMER_ID)
    assert missing.status == 404

    stranger = await service.cancel(preorder.id, OTHER_CUSTOMER_ID)
    assert stranger.status == 403

    await _add_payment(store, preorder.id)
    paid = await service.cancel(preorder.id, CUSTOMER_ID)
    assert isinstance(paid, Failure)
    assert paid.message == "Cannot cancel preorder. It may have already been paid."
    assert (await service.get_preorder(preorder.id)).status == PreorderStatus.PENDING


@pytest.mark.asyncio
async def test_status_update_is_role_gated_without_table(store):
    preorder = await _create(store)
    service = PreorderService(store)

    assert isinstance(await service.update_status(preorder.id, PreorderStatus.CONFIRMED, Role.CUSTOMER), Failure)

    # any status may be set directly, including backwards
    confirmed = await service.update_status(preorder.id, PreorderStatus.CONFIRMED, Role.STAFF)
    assert confirmed.status == PreorderStatus.CONFIRMED
    back = await service.update_status(preorder.id, PreorderStatus.PENDING, Role.MANAGER)
    assert back.status == PreorderStatus.PENDING


@pytest.mark.asyncio
async def test_converted_is_only_reachable_by_conversion(store):
    preorder = await _create(store)
    service = PreorderService(store)

    direct = await service.update_status(preorder.id, PreorderStatus.CONVERTED, Role.ADMIN)
    assert isinstance(direct, Failure)
    assert direct.code == "UPDATE_FAILED"

    await service.update_status(preorder.id, PreorderStatus.CONFIRMED, Role.STAFF)
    await service.convert_to_order(preorder.id, "1 Side St")
    after = await service.update_status(preorder.id, PreorderStatus.PENDING, Role.ADMIN)
    assert isinstance(after, Failure)


@pytest.mark.asyncio
async def test_convert_paid_preorder(store):
    service = PreorderService(store)
    preorder = await _create(store, items=[LineItemIn(**full_item())])
    await service.update_status(preorder.id, PreorderStatus.PAID, Role.STAFF)
    payment_id = await _add_payment(store, preorder.id)

    order = await service.convert_to_order(preorder.id, "123 Main St")

    assert order.status == OrderStatus.CONFIRMED
    assert order.shipping_address == "123 Main St"
    assert order.total_amount == 250.0
    assert len(order.items) == 1
    assert order.items[0].price == 125.0
    assert order.items[0].quantity == 2
    assert order.items[0].id != preorder.items[0].id

    assert (await service.get_preorder(preorder.id)).status == PreorderStatus.CONVERTED
    payment = await store.find_one("payment", {"id": payment_id})
    assert payment["order_id"] == order.id
    assert payment["preorder_id"] is None
    assert payment["target_lock"] == f"order:{order.id}"
    Payment(**payment)


@pytest.mark.asyncio
async def test_conversion_keeps_snapshot_prices(store):
    service = PreorderService(store)
    preorder = await _create(store)
    await service.update_status(preorder.id, PreorderStatus.CONFIRMED, Role.STAFF)
    await store.update("lenstype", "lens-single-vision", {"extra_price": 500.0})

    order = await service.convert_to_order(preorder.id, "123 Main St")
    assert order.items[0].price == 125.0


@pytest.mark.asyncio
async def test_convert_requires_paid_or_confirmed(store):
    service = PreorderService(store)
    preorder = await _create(store)

    result = await service.convert_to_order(preorder.id, "123 Main St")
    assert isinstance(result, Failure)
    assert result.code == "CONVERSION_FAILED"
    assert await store.find("order", {}) == []

    missing = await service.convert_to_order("missing", "123 Main St")
    assert missing.code == "PREORDER_NOT_FOUND"
    assert not await service.can_convert("missing")


@pytest.mark.asyncio
async def test_failed_conversion_rolls_back(store):
    service = PreorderService(store)
    preorder = await _create(store)
    await service.update_status(preorder.id, PreorderStatus.PAID, Role.STAFF)
    await _add_payment(store, preorder.id)

    # a payment for the new order appears mid-conversion, so moving the lock collides
    async def failing_insert(collection, doc, _insert=store.insert):
        saved = await _insert(collection, doc)
        await _insert("payment", {
            "id": "squatter", "user_id": CUSTOMER_ID, "amount": 1.0, "payment_method": "cash",
            "payment_status": "pending", "order_id": doc["id"], "preorder_id": None,
            "target_lock": f"order:{doc['id']}",
        })
        return saved

    store.insert = failing_insert
    with pytest.raises(DuplicateKeyError):
        await service.convert_to_order(preorder.id, "123 Main St")
    del store.insert

    assert (await service.get_preorder(preorder.id)).status == PreorderStatus.PAID
    assert await store.find("order", {}) == []
    assert await store.find_one("payment", {"id": "squatter"}) is None


@pytest.mark.asyncio
async def test_mark_paid_never_reverts_conversion(store):
    service = PreorderService(store)
    preorder = await _create(store)

    assert (await service.mark_paid(preorder.id)).status == PreorderStatus.PAID
    await service.convert_to_order(preorder.id, "123 Main St")
    assert (await service.mark_paid(preorder.id)).status == PreorderStatus.CONVERTED


def test_payment_references_exactly_one_target():
    with pytest.raises(ValidationError):
        Payment(user_id=CUSTOMER_ID, amount=1.0, payment_method="cash")
    with pytest.raises(ValidationError):
        Payment(user_id=CUSTOMER_ID, amount=1.0, payment_method="cash", order_id="o", preorder_id="p")
    payment = Payment(user_id=CUSTOMER_ID, amount=1.0, payment_method=" VNPay ", preorder_id="p")
    assert payment.payment_status == PaymentStatus.PENDING
    assert payment.payment_method.value == "vnpay"


@pytest.mark.asyncio
async def test_listing_by_owner():
    store = MemoryStore(initial=catalog_docs())
    service = PreorderService(store)
    await _create(store)
    await service.create_preorder(OTHER_CUSTOMER_ID, None, [LineItemIn(**full_item(1))])

    mine = await service.list_for_user(CUSTOMER_ID)
    assert mine.total_items == 1
    assert (await service.list_all()).total_items == 2
    assert mine.items[0].expected_date > datetime.now(timezone.utc) + timedelta(days=13)
