"""
VNPay gateway protocol: signed redirect URLs and callback verification.

Both directions sign the same canonical string: parameters sorted by key,
joined as ``key=value`` with ``&``, HMAC-SHA512 with the merchant secret.
"""
from __future__ import annotations
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional
from urllib.parse import quote_plus

from config import Settings

logger = logging.getLogger(__name__)

# VNPay timestamps are local Vietnam time (GMT+7)
VNPAY_TZ = timezone(timedelta(hours=7))
DATE_FORMAT = "%Y%m%d%H%M%S"
PAYMENT_WINDOW = timedelta(minutes=15)

SECURE_HASH = "vnp_SecureHash"
SECURE_HASH_TYPE = "vnp_SecureHashType"
SUCCESS_CODE = "00"
NIL_PAYMENT_ID = str(uuid.UUID(int=0))

# instant payment notification replies, part of the gateway protocol
IPN_CONFIRMED = {"RspCode": "00", "Message": "Confirm Success"}
IPN_NOT_FOUND = {"RspCode": "01", "Message": "Order not found"}
IPN_ALREADY_CONFIRMED = {"RspCode": "02", "Message": "Order already confirmed"}
IPN_INVALID_SIGNATURE = {"RspCode": "97", "Message": "Invalid signature"}


@dataclass
class GatewayRedirect:
    success: bool
    payment_url: str = ""
    message: str = ""


@dataclass
class CallbackResult:
    verified: bool
    success: bool = False
    payment_id: str = NIL_PAYMENT_ID
    transaction_id: str = ""
    response_code: str = ""
    message: str = ""


def hmac_sha512(key: str, data: str) -> str:
    return hmac.new(key.encode("utf-8"), data.encode("utf-8"), hashlib.sha512).hexdigest()


def sign_data(params: Mapping[str, str]) -> str:
    return "&".join(f"{key}={params[key]}" for key in sorted(params))


def sign(secret: str, params: Mapping[str, str]) -> str:
    return hmac_sha512(secret, sign_data(params))


def build_payment_url(settings: Settings, payment_id: str, amount: float, order_info: str,
                      client_ip: str, return_url: str, now: Optional[datetime] = None) -> GatewayRedirect:
    try:
        if not settings.VNPAY_HASH_SECRET:
            raise ValueError("VNPay hash secret is not configured")
        if not settings.VNPAY_TMN_CODE:
            raise ValueError("VNPay merchant code is not configured")
        created = (now or datetime.now(timezone.utc)).astimezone(VNPAY_TZ)
        params = {
            "vnp_Version": settings.VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": settings.VNPAY_TMN_CODE,
            # gateway amounts are in minor units, truncated
            "vnp_Amount": str(int(Decimal(str(amount)) * 100)),
            "vnp_CreateDate": created.strftime(DATE_FORMAT),
            "vnp_CurrCode": "VND",
            "vnp_IpAddr": client_ip,
            "vnp_Locale": "vn",
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": "other",
            "vnp_ReturnUrl": return_url,
            "vnp_TxnRef": str(payment_id),
            "vnp_ExpireDate": (created + PAYMENT_WINDOW).strftime(DATE_FORMAT),
        }
        secure_hash = sign(settings.VNPAY_HASH_SECRET, params)
        query = "&".join(f"{quote_plus(key)}={quote_plus(params[key])}" for key in sorted(params))
    except (ValueError, TypeError, InvalidOperation) as exc:
        logger.error(f"Could not build VNPay URL for payment {payment_id}: {exc}")
        return GatewayRedirect(success=False, message=f"Error generating payment URL: {exc}")

    return GatewayRedirect(
        success=True,
        payment_url=f"{settings.VNPAY_PAYMENT_URL}?{query}&{SECURE_HASH}={secure_hash}",
        message="Payment URL generated successfully",
    )


def parse_payment_id(value: Optional[str]) -> str:
    try:
        return str(uuid.UUID(value))
    except (TypeError, ValueError, AttributeError):
        return NIL_PAYMENT_ID


def verify_callback(settings: Settings, params: Mapping[str, str]) -> CallbackResult:
    received = params.get(SECURE_HASH)
    if not received:
        return CallbackResult(verified=False, message="Missing secure hash")
    if not settings.VNPAY_HASH_SECRET:
        logger.error("VNPay callback received but no hash secret is configured")
        return CallbackResult(verified=False, message="Invalid signature")

    signed = {k: v for k, v in params.items() if k not in (SECURE_HASH, SECURE_HASH_TYPE)}
    expected = sign(settings.VNPAY_HASH_SECRET, signed)
    if not hmac.compare_digest(expected.lower().encode("utf-8"), received.lower().encode("utf-8")):
        logger.warning(f"Rejected VNPay callback with invalid signature for ref {params.get('vnp_TxnRef')}")
        return CallbackResult(verified=False, message="Invalid signature")

    response_code = params.get("vnp_ResponseCode") or ""
    success = response_code == SUCCESS_CODE
    return CallbackResult(
        verified=True,
        success=success,
        payment_id=parse_payment_id(params.get("vnp_TxnRef")),
        transaction_id=params.get("vnp_TransactionNo") or "",
        response_code=response_code,
        message="Payment successful" if success else f"Payment failed with code: {response_code}",
    )
