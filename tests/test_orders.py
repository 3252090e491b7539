import itertools

import pytest

from errors import Failure
from orders import ORDER_PERMISSIONS, ORDER_TRANSITIONS, OrderService, allowed_targets
from schemas import LineItemIn, Order, OrderStatus, Role

from factories import CUSTOMER_ID, FRAME_ID, full_item


async def _create(store, quantity=2):
    service = OrderService(store)
    return await service.create_order(CUSTOMER_ID, "123 Main St", [LineItemIn(**full_item(quantity))])


@pytest.mark.asyncio
async def test_create_order_prices_items_and_totals(store):
    order = await _create(store)

    assert order.status == OrderStatus.PENDING
    assert order.total_amount == 250.0
    assert len(order.items) == 1
    assert order.items[0].price == 125.0
    assert order.arrival_date is None

    stored = await OrderService(store).get_order(order.id)
    assert stored.total_amount == 250.0
    assert stored.items[0].id == order.items[0].id


@pytest.mark.asyncio
async def test_item_prices_do_not_follow_catalog_changes(store):
    order = await _create(store)
    await store.update("frame", FRAME_ID, {"base_price": 999.0})

    stored = await OrderService(store).get_order(order.id)
    assert stored.items[0].price == 125.0
    assert stored.total_amount == 250.0


def test_permission_table_covers_every_status_and_role():
    assert set(ORDER_PERMISSIONS) == {(s, r) for s in OrderStatus for r in Role}
    for (current, role), targets in ORDER_PERMISSIONS.items():
        assert targets <= ORDER_TRANSITIONS[current]
        if role == Role.CUSTOMER:
            assert targets == frozenset()


def test_staff_targets():
    assert allowed_targets(OrderStatus.CONFIRMED, Role.STAFF) == {OrderStatus.PROCESSING}
    assert allowed_targets(OrderStatus.PENDING, Role.STAFF) == frozenset()
    assert allowed_targets(OrderStatus.SHIPPED, Role.STAFF) == {OrderStatus.DELIVERED}
    assert allowed_targets(OrderStatus.PENDING, Role.MANAGER) == {OrderStatus.CONFIRMED, OrderStatus.CANCELLED}
    assert allowed_targets(OrderStatus.DELIVERED, Role.ADMIN) == frozenset()


@pytest.mark.asyncio
async def test_transitions_are_checked_against_table_and_role(store):
    order = await _create(store)
    service = OrderService(store)

    skipped = await service.update_status(order.id, OrderStatus.DELIVERED, Role.STAFF)
    assert isinstance(skipped, Failure)
    assert skipped.status == 404
    assert skipped.code == "UPDATE_FAILED"

    by_staff = await service.update_status(order.id, OrderStatus.CONFIRMED, Role.STAFF)
    assert isinstance(by_staff, Failure)
    assert (await service.get_order(order.id)).status == OrderStatus.PENDING

    by_manager = await service.update_status(order.id, OrderStatus.CONFIRMED, Role.MANAGER)
    assert by_manager.status == OrderStatus.CONFIRMED
    assert (await service.get_order(order.id)).status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_customer_cannot_change_status(store):
    order = await _create(store)
    result = await OrderService(store).update_status(order.id, OrderStatus.CANCELLED, Role.CUSTOMER)
    assert isinstance(result, Failure)


@pytest.mark.asyncio
async def test_delivery_stamps_arrival_date(store):
    order = await _create(store)
    service = OrderService(store)
    await service.update_status(order.id, OrderStatus.CONFIRMED, Role.MANAGER)
    await service.update_status(order.id, OrderStatus.PROCESSING, Role.STAFF)
    await service.update_status(order.id, OrderStatus.SHIPPED, Role.STAFF)
    delivered = await service.update_status(order.id, OrderStatus.DELIVERED, Role.STAFF)

    assert delivered.status == OrderStatus.DELIVERED
    assert delivered.arrival_date is not None
    stored = await service.get_order(order.id)
    assert stored.arrival_date is not None

    # delivered and cancelled are final
    assert isinstance(await service.update_status(order.id, OrderStatus.CANCELLED, Role.ADMIN), Failure)


@pytest.mark.asyncio
async def test_unknown_order_update_fails(store):
    result = await OrderService(store).update_status("missing", OrderStatus.CONFIRMED, Role.ADMIN)
    assert isinstance(result, Failure)
    assert result.code == "UPDATE_FAILED"


@pytest.mark.asyncio
async def test_confirm_paid_only_moves_pending_orders(store):
    order = await _create(store)
    service = OrderService(store)

    confirmed = await service.confirm_paid(order.id)
    assert confirmed.status == OrderStatus.CONFIRMED

    await service.update_status(order.id, OrderStatus.PROCESSING, Role.STAFF)
    again = await service.confirm_paid(order.id)
    assert again.status == OrderStatus.PROCESSING
    assert await service.confirm_paid("missing") is None


@pytest.mark.asyncio
async def test_listing_is_newest_first_and_paged(store):
    service = OrderService(store)
    ids = [(await _create(store, quantity=1)).id for _ in range(3)]

    page = await service.list_for_user(CUSTOMER_ID, page=1, page_size=2)
    assert page.total_items == 3
    assert page.total_pages == 2
    assert [o.id for o in page.items] == [ids[2], ids[1]]

    second = await service.list_all(page=2, page_size=2)
    assert [o.id for o in second.items] == [ids[0]]

    assert (await service.list_for_user("someone-else")).total_items == 0


@pytest.mark.asyncio
async def test_details_include_payments(store):
    order = await _create(store)
    service = OrderService(store)
    assert (await service.get_order_details(order.id)).payments == []

    await store.insert("payment", {
        "id": "pay-1", "user_id": CUSTOMER_ID, "amount": 250.0, "payment_method": "cash",
        "payment_status": "completed", "order_id": order.id, "preorder_id": None,
    })
    details = await service.get_order_details(order.id)
    assert [p.id for p in details.payments] == ["pay-1"]


P, CF, PR, SH, DL, CA = "pending", "confirmed", "processing", "shipped", "delivered", "cancelled"

# (current status, role) -> statuses the role may move an order to
EXPECTED_MOVES = {
    (P, "customer"): set(), (P, "staff"): set(),
    (P, "manager"): {CF, CA}, (P, "admin"): {CF, CA},
    (CF, "customer"): set(), (CF, "staff"): {PR},
    (CF, "manager"): {PR, CA}, (CF, "admin"): {PR, CA},
    (PR, "customer"): set(), (PR, "staff"): {SH},
    (PR, "manager"): {SH, CA}, (PR, "admin"): {SH, CA},
    (SH, "customer"): set(), (SH, "staff"): {DL},
    (SH, "manager"): {DL}, (SH, "admin"): {DL},
    (DL, "customer"): set(), (DL, "staff"): set(),
    (DL, "manager"): set(), (DL, "admin"): set(),
    (CA, "customer"): set(), (CA, "staff"): set(),
    (CA, "manager"): set(), (CA, "admin"): set(),
}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "current,role,requested",
    list(itertools.product([P, CF, PR, SH, DL, CA], ["customer", "staff", "manager", "admin"],
                           [P, CF, PR, SH, DL, CA])),
)
async def test_update_status_grid(store, current, role, requested):
    order = Order(user_id=CUSTOMER_ID, shipping_address="123 Main St", total_amount=0.0, status=current)
    await store.insert("order", order.model_dump())
    service = OrderService(store)

    result = await service.update_status(order.id, OrderStatus(requested), Role(role))
    stored = await service.get_order(order.id)

    if requested in EXPECTED_MOVES[(current, role)]:
        assert not isinstance(result, Failure)
        assert result.status.value == requested
        assert stored.status.value == requested
    else:
        assert isinstance(result, Failure)
        assert result.code == "UPDATE_FAILED"
        assert stored.status.value == current
        assert stored.arrival_date is None
