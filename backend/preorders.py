"""
Preorder lifecycle: reservations that may later become binding orders.

Unlike orders, staff may set any preorder status directly; there is no
transition table. ``converted`` is the exception: it is only reachable
through convert_to_order, which is what produces the order.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from catalog import Catalog
from database import Store
from errors import Failure, forbidden, not_found, rejected
from pricing import ValidationResult, items_total, price_line_item, validate_items
from schemas import (
    LineItem,
    LineItemIn,
    Order,
    OrderStatus,
    Page,
    Payment,
    PaymentStatus,
    Preorder,
    PreorderDetail,
    PreorderStatus,
    Role,
    page_of,
    target_lock,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_LEAD_TIME = timedelta(days=14)

STATUS_ROLES = frozenset({Role.STAFF, Role.MANAGER, Role.ADMIN})
CONVERTIBLE = frozenset({PreorderStatus.PAID, PreorderStatus.CONFIRMED})
TERMINAL = frozenset({PreorderStatus.CONVERTED, PreorderStatus.CANCELLED})


class PreorderService:
    def __init__(self, store: Store):
        self.store = store
        self.catalog = Catalog(store)

    # Create
    async def validate_items(self, items: list[LineItemIn], user_id: str) -> ValidationResult:
        # preordered frames do not need to be in stock yet
        return await validate_items(self.catalog, items, user_id, require_available=False, noun="preorder")

    async def create_preorder(self, user_id: str, expected_date: Optional[datetime],
                              items: list[LineItemIn]) -> Preorder:
        now = utcnow()
        line_items = [await price_line_item(self.catalog, item) for item in items]
        preorder = Preorder(
            user_id=user_id,
            expected_date=expected_date or now + DEFAULT_LEAD_TIME,
            created_at=now,
            items=line_items,
        )
        await self.store.insert("preorder", preorder.model_dump())
        logger.info(f"Created preorder {preorder.id} for user {user_id}: {len(line_items)} item(s)")
        return preorder

    # Read
    async def get_preorder(self, preorder_id: str) -> Optional[Preorder]:
        doc = await self.store.find_one("preorder", {"id": preorder_id})
        return Preorder(**doc) if doc else None

    async def get_preorder_details(self, preorder_id: str) -> Optional[PreorderDetail]:
        doc = await self.store.find_one("preorder", {"id": preorder_id})
        if not doc:
            return None
        payments = await self.store.find("payment", {"preorder_id": preorder_id}, sort=("created_at", True))
        return PreorderDetail(**doc, payments=[Payment(**p) for p in payments])

    async def list_for_user(self, user_id: str, page: int = 1, page_size: int = 10) -> Page:
        result = await self.store.page("preorder", {"user_id": user_id}, page, page_size, "created_at", False)
        return page_of(Preorder, result)

    async def list_all(self, page: int = 1, page_size: int = 10) -> Page:
        result = await self.store.page("preorder", {}, page, page_size, "created_at", False)
        return page_of(Preorder, result)

    async def has_completed_payment(self, preorder_id: str) -> bool:
        paid = await self.store.find_one(
            "payment", {"preorder_id": preorder_id, "payment_status": PaymentStatus.COMPLETED}
        )
        return paid is not None

    # Status
    async def update_status(self, preorder_id: str, requested: PreorderStatus,
                            role: Role) -> Union[Preorder, Failure]:
        preorder = await self.get_preorder(preorder_id)
        if (
            preorder is None
            or role not in STATUS_ROLES
            or requested == PreorderStatus.CONVERTED
            or preorder.status == PreorderStatus.CONVERTED
        ):
            return not_found("UPDATE_FAILED", "Preorder not found or status update not allowed")

        await self.store.update("preorder", preorder_id, {"status": requested})
        logger.info(f"Preorder {preorder_id}: {preorder.status.value} -> {requested.value} by {role.value}")
        return preorder.model_copy(update={"status": requested})

    async def cancel(self, preorder_id: str, caller_user_id: str) -> Union[Preorder, Failure]:
        preorder = await self.get_preorder(preorder_id)
        if preorder is None:
            return not_found("PREORDER_NOT_FOUND", "Preorder not found")
        if preorder.user_id != caller_user_id:
            return forbidden("You can only cancel your own preorders")
        if preorder.status in TERMINAL:
            return rejected("CANCEL_FAILED", f"Cannot cancel a preorder that is already {preorder.status.value}")
        # money already captured: cancelling here would skip the refund
        if await self.has_completed_payment(preorder_id):
            return rejected("CANCEL_FAILED", "Cannot cancel preorder. It may have already been paid.")

        await self.store.update("preorder", preorder_id, {"status": PreorderStatus.CANCELLED})
        logger.info(f"Preorder {preorder_id} cancelled by owner")
        return preorder.model_copy(update={"status": PreorderStatus.CANCELLED})

    async def mark_paid(self, preorder_id: str) -> Optional[Preorder]:
        """Privileged transition run by payment completion; no role or table check."""
        preorder = await self.get_preorder(preorder_id)
        if preorder is None or preorder.status == PreorderStatus.CONVERTED:
            return preorder
        await self.store.update("preorder", preorder_id, {"status": PreorderStatus.PAID})
        logger.info(f"Preorder {preorder_id} marked paid by payment")
        return preorder.model_copy(update={"status": PreorderStatus.PAID})

    # Conversion
    async def can_convert(self, preorder_id: str) -> bool:
        preorder = await self.get_preorder(preorder_id)
        return preorder is not None and preorder.status in CONVERTIBLE

    async def convert_to_order(self, preorder_id: str, shipping_address: str) -> Union[Order, Failure]:
        """Turn a paid or confirmed preorder into a confirmed order.

        The order insert, the preorder status change and the re-pointing of
        the preorder's payments run in one transaction. Item prices are the
        preorder snapshots, never recomputed.
        """
        async with self.store.transaction() as tx:
            doc = await tx.find_one("preorder", {"id": preorder_id})
            if not doc:
                return not_found("PREORDER_NOT_FOUND", "Preorder not found")
            preorder = Preorder(**doc)
            if preorder.status not in CONVERTIBLE:
                return rejected(
                    "CONVERSION_FAILED",
                    "Preorder cannot be converted. It must be in 'paid' or 'confirmed' status.",
                )

            items = [
                LineItem(
                    frame_id=item.frame_id,
                    lens_type_id=item.lens_type_id,
                    feature_id=item.feature_id,
                    prescription_id=item.prescription_id,
                    quantity=item.quantity,
                    selected_color=item.selected_color,
                    price=item.price,
                )
                for item in preorder.items
            ]
            order = Order(
                user_id=preorder.user_id,
                shipping_address=shipping_address,
                status=OrderStatus.CONFIRMED,
                items=items,
                total_amount=items_total(items),
            )
            await tx.insert("order", order.model_dump())
            await tx.update("preorder", preorder_id, {"status": PreorderStatus.CONVERTED})

            payments = await tx.find("payment", {"preorder_id": preorder_id})
            for payment in payments:
                changes = {"order_id": order.id, "preorder_id": None}
                if payment.get("target_lock"):
                    changes["target_lock"] = target_lock(order_id=order.id)
                await tx.update("payment", payment["id"], changes)

        logger.info(f"Converted preorder {preorder_id} into order {order.id}; moved {len(payments)} payment(s)")
        return order
