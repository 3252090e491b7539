from __future__ import annotations
import logging
from typing import Mapping, Optional, Union

from config import Settings
from database import DuplicateKeyError, Store
from errors import Failure, forbidden, not_found, rejected
from orders import OrderService
from preorders import TERMINAL as PREORDER_TERMINAL, PreorderService
from pricing import items_total
from schemas import (
    Order,
    OrderStatus,
    Page,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Preorder,
    page_of,
    target_lock,
    utcnow,
)
import vnpay

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# statuses that give the target back so a new payment can be started
RELEASES_TARGET = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED})


class PaymentService:
    def __init__(self, store: Store):
        self.store = store

    # Create
    async def create_for_order(self, order_id: str, method: PaymentMethod,
                               user_id: Optional[str] = None) -> Union[Payment, Failure]:
        doc = await self.store.find_one("order", {"id": order_id})
        if not doc:
            return not_found("ORDER_NOT_FOUND", "Order not found")
        order = Order(**doc)
        if user_id is not None and order.user_id != user_id:
            return forbidden("You can only pay for your own orders")
        if order.status == OrderStatus.CANCELLED:
            return rejected("PAYMENT_CREATION_FAILED", "Order has been cancelled")
        if await self.has_completed_payment(order_id=order_id):
            return rejected("PAYMENT_CREATION_FAILED", "Order has already been paid")
        if await self.store.find_one("payment", {"order_id": order_id, "payment_status": PaymentStatus.PENDING}):
            return rejected("PAYMENT_CREATION_FAILED", "A pending payment already exists for this order")

        payment = Payment(user_id=order.user_id, amount=order.total_amount, payment_method=method, order_id=order_id)
        return await self._insert(payment, "order")

    async def create_for_preorder(self, preorder_id: str, method: PaymentMethod,
                                  user_id: Optional[str] = None) -> Union[Payment, Failure]:
        doc = await self.store.find_one("preorder", {"id": preorder_id})
        if not doc:
            return not_found("PREORDER_NOT_FOUND", "Preorder not found")
        preorder = Preorder(**doc)
        if user_id is not None and preorder.user_id != user_id:
            return forbidden("You can only pay for your own preorders")
        if preorder.status in PREORDER_TERMINAL:
            return rejected("PAYMENT_CREATION_FAILED", f"Preorder is {preorder.status.value} and cannot be paid")
        if await self.has_completed_payment(preorder_id=preorder_id):
            return rejected("PAYMENT_CREATION_FAILED", "Preorder has already been paid")
        if await self.store.find_one("payment", {"preorder_id": preorder_id, "payment_status": PaymentStatus.PENDING}):
            return rejected("PAYMENT_CREATION_FAILED", "A pending payment already exists for this preorder")

        # preorders have no stored total; sum the current item snapshots
        payment = Payment(
            user_id=preorder.user_id,
            amount=items_total(preorder.items),
            payment_method=method,
            preorder_id=preorder_id,
        )
        return await self._insert(payment, "preorder")

    async def _insert(self, payment: Payment, noun: str) -> Union[Payment, Failure]:
        doc = payment.model_dump()
        doc["target_lock"] = target_lock(payment.order_id, payment.preorder_id)
        try:
            await self.store.insert("payment", doc)
        except DuplicateKeyError:
            # a concurrent request got there first
            logger.warning(f"Duplicate payment rejected for {doc['target_lock']}")
            return rejected("PAYMENT_CREATION_FAILED", f"A payment is already in progress for this {noun}")
        logger.info(f"Created {payment.payment_method.value} payment {payment.id} for {doc['target_lock']}: {payment.amount}")
        return payment

    # Read
    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        doc = await self.store.find_one("payment", {"id": payment_id})
        return Payment(**doc) if doc else None

    async def list_for_order(self, order_id: str) -> list[Payment]:
        docs = await self.store.find("payment", {"order_id": order_id}, sort=("created_at", True))
        return [Payment(**d) for d in docs]

    async def list_for_preorder(self, preorder_id: str) -> list[Payment]:
        docs = await self.store.find("payment", {"preorder_id": preorder_id}, sort=("created_at", True))
        return [Payment(**d) for d in docs]

    async def list_for_user(self, user_id: str, page: int = 1, page_size: int = 10) -> Page:
        result = await self.store.page("payment", {"user_id": user_id}, page, page_size, "paid_at", False)
        return page_of(Payment, result)

    async def has_completed_payment(self, order_id: Optional[str] = None,
                                    preorder_id: Optional[str] = None) -> bool:
        if order_id is not None:
            query = {"order_id": order_id}
        elif preorder_id is not None:
            query = {"preorder_id": preorder_id}
        else:
            return False
        query["payment_status"] = PaymentStatus.COMPLETED
        return await self.store.find_one("payment", query) is not None

    # Status
    async def complete_payment(self, payment_id: str, transaction_id: Optional[str] = None) -> Union[Payment, Failure]:
        """Mark a payment completed and advance its order or preorder.

        Completing an already completed payment returns it unchanged, so
        repeated gateway callbacks have no further effect.
        """
        async with self.store.transaction() as tx:
            doc = await tx.find_one("payment", {"id": payment_id})
            if not doc:
                return not_found("PAYMENT_NOT_FOUND", "Payment not found")
            payment = Payment(**doc)
            if payment.payment_status == PaymentStatus.COMPLETED:
                return payment
            if PaymentStatus.COMPLETED not in PAYMENT_TRANSITIONS[payment.payment_status]:
                return rejected(
                    "PAYMENT_COMPLETION_FAILED",
                    f"Payment is {payment.payment_status.value} and cannot be completed",
                )

            changes = {"payment_status": PaymentStatus.COMPLETED, "paid_at": utcnow()}
            if transaction_id:
                changes["transaction_id"] = transaction_id
            await tx.update("payment", payment_id, changes)

            if payment.order_id is not None:
                await OrderService(tx).confirm_paid(payment.order_id)
            else:
                await PreorderService(tx).mark_paid(payment.preorder_id)

        logger.info(f"Payment {payment_id} completed (transaction {transaction_id or '-'})")
        return payment.model_copy(update=changes)

    async def fail_payment(self, payment_id: str) -> Union[Payment, Failure]:
        return await self.update_status(payment_id, PaymentStatus.FAILED)

    async def update_status(self, payment_id: str, requested: PaymentStatus) -> Union[Payment, Failure]:
        payment = await self.get_payment(payment_id)
        if payment is None or requested not in PAYMENT_TRANSITIONS[payment.payment_status]:
            return not_found("UPDATE_FAILED", "Payment not found or status update not allowed")
        if requested == PaymentStatus.COMPLETED:
            return await self.complete_payment(payment_id)

        unset = ("target_lock",) if requested in RELEASES_TARGET else ()
        await self.store.update("payment", payment_id, {"payment_status": requested}, unset=unset)
        logger.info(f"Payment {payment_id}: {payment.payment_status.value} -> {requested.value}")
        return payment.model_copy(update={"payment_status": requested})

    # Gateway notifications
    async def handle_notification(self, settings: Settings, params: Mapping[str, str]) -> dict[str, str]:
        """Process a VNPay instant payment notification and return the protocol reply."""
        result = vnpay.verify_callback(settings, params)
        if not result.verified:
            return vnpay.IPN_INVALID_SIGNATURE

        payment = await self.get_payment(result.payment_id)
        if payment is None:
            logger.warning(f"IPN for unknown payment {result.payment_id}")
            return vnpay.IPN_NOT_FOUND
        if payment.payment_status == PaymentStatus.COMPLETED:
            logger.info(f"IPN for payment {payment.id} ignored, already completed")
            return vnpay.IPN_ALREADY_CONFIRMED
        if payment.payment_status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            # failed, cancelled or refunded: a late notification never reopens it
            logger.warning(f"IPN for payment {payment.id} rejected, payment is {payment.payment_status.value}")
            return vnpay.IPN_ALREADY_CONFIRMED

        if result.success:
            outcome = await self.complete_payment(payment.id, result.transaction_id)
        else:
            outcome = await self.fail_payment(payment.id)
            logger.info(f"Payment {payment.id} failed at gateway with code {result.response_code}")
        if isinstance(outcome, Failure):
            # lost a race with another callback for the same payment
            return vnpay.IPN_ALREADY_CONFIRMED
        return vnpay.IPN_CONFIRMED
