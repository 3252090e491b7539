from __future__ import annotations
import logging
from typing import Optional, Union

from catalog import Catalog
from database import Store
from errors import Failure, not_found
from pricing import ValidationResult, items_total, price_line_item, validate_items
from schemas import (
    LineItemIn,
    Order,
    OrderDetail,
    OrderStatus,
    Page,
    Payment,
    Role,
    page_of,
    utcnow,
)

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# target statuses each role may request, independent of the current status
ROLE_TARGETS: dict[Role, frozenset[OrderStatus]] = {
    Role.CUSTOMER: frozenset(),
    Role.STAFF: frozenset({OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED}),
    Role.MANAGER: frozenset(OrderStatus),
    Role.ADMIN: frozenset(OrderStatus),
}


def _build_permissions() -> dict[tuple[OrderStatus, Role], frozenset[OrderStatus]]:
    missing = (set(OrderStatus) - ORDER_TRANSITIONS.keys()) | (set(Role) - ROLE_TARGETS.keys())
    if missing:
        raise RuntimeError(f"Order permission table is incomplete: {sorted(m.value for m in missing)}")
    return {
        (current, role): ORDER_TRANSITIONS[current] & ROLE_TARGETS[role]
        for current in OrderStatus
        for role in Role
    }


# (current status, caller role) -> statuses the caller may move the order to
ORDER_PERMISSIONS = _build_permissions()


def allowed_targets(current: OrderStatus, role: Role) -> frozenset[OrderStatus]:
    return ORDER_PERMISSIONS[(current, role)]


class OrderService:
    def __init__(self, store: Store):
        self.store = store
        self.catalog = Catalog(store)

    # Create
    async def validate_items(self, items: list[LineItemIn], user_id: str) -> ValidationResult:
        return await validate_items(self.catalog, items, user_id, require_available=True, noun="order")

    async def create_order(self, user_id: str, shipping_address: str, items: list[LineItemIn]) -> Order:
        """Price and store a new pending order. Items must already have passed validate_items."""
        line_items = [await price_line_item(self.catalog, item) for item in items]
        order = Order(
            user_id=user_id,
            shipping_address=shipping_address,
            items=line_items,
            total_amount=items_total(line_items),
        )
        # items are embedded, so the order and its items land in one write
        await self.store.insert("order", order.model_dump())
        logger.info(f"Created order {order.id} for user {user_id}: {len(line_items)} item(s), total {order.total_amount}")
        return order

    # Read
    async def get_order(self, order_id: str) -> Optional[Order]:
        doc = await self.store.find_one("order", {"id": order_id})
        return Order(**doc) if doc else None

    async def get_order_details(self, order_id: str) -> Optional[OrderDetail]:
        doc = await self.store.find_one("order", {"id": order_id})
        if not doc:
            return None
        payments = await self.store.find("payment", {"order_id": order_id}, sort=("created_at", True))
        return OrderDetail(**doc, payments=[Payment(**p) for p in payments])

    async def list_for_user(self, user_id: str, page: int = 1, page_size: int = 10) -> Page:
        result = await self.store.page("order", {"user_id": user_id}, page, page_size, "created_at", False)
        return page_of(Order, result)

    async def list_all(self, page: int = 1, page_size: int = 10) -> Page:
        result = await self.store.page("order", {}, page, page_size, "created_at", False)
        return page_of(Order, result)

    # Status
    async def update_status(self, order_id: str, requested: OrderStatus, role: Role) -> Union[Order, Failure]:
        order = await self.get_order(order_id)
        if order is None or requested not in allowed_targets(order.status, role):
            if order is not None:
                logger.info(f"Rejected order {order_id} transition {order.status.value} -> {requested.value} for {role.value}")
            return not_found("UPDATE_FAILED", "Order not found or status transition not allowed for your role")

        changes = {"status": requested}
        if requested == OrderStatus.DELIVERED:
            changes["arrival_date"] = utcnow()
        await self.store.update("order", order_id, changes)
        logger.info(f"Order {order_id}: {order.status.value} -> {requested.value} by {role.value}")
        return order.model_copy(update=changes)

    async def confirm_paid(self, order_id: str) -> Optional[Order]:
        """Privileged transition run by payment completion: pending -> confirmed, bypassing role checks."""
        order = await self.get_order(order_id)
        if order is None:
            return None
        if order.status == OrderStatus.PENDING:
            await self.store.update("order", order_id, {"status": OrderStatus.CONFIRMED})
            logger.info(f"Order {order_id} confirmed by payment")
            return order.model_copy(update={"status": OrderStatus.CONFIRMED})
        return order
