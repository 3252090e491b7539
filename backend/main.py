from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from auth import Caller, back_office, customer_only, ensure_owner, get_caller, managers
from catalog import Catalog
from config import Settings, get_settings
from database import Store, get_store
from errors import ApiError, Failure, invalid, not_found, rejected
from orders import OrderService
from payments import PaymentService
from preorders import PreorderService
from pricing import quote
from schemas import (
    ConvertPreorderRequest,
    CreateOrderRequest,
    CreatePaymentRequest,
    CreatePreorderRequest,
    ErrorResponse,
    FrameStatus,
    Order,
    OrderDetail,
    OrderStatus,
    OrderSummary,
    Page,
    Payment,
    PaymentMethod,
    PaymentResponse,
    PaymentStatus,
    Preorder,
    PreorderDetail,
    PreorderStatus,
    PriceQuote,
    PriceQuoteRequest,
    UpdateStatusRequest,
    new_id,
    parse_enum,
)
import vnpay

settings = get_settings()
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    resolve = app.dependency_overrides.get(get_store, get_store)
    store = await resolve()
    await store.ensure_indexes()
    yield


app = FastAPI(title="Spectra Glasses API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

MAX_PAGE_SIZE = 50


# Error handling
def error_response(failure: Failure) -> JSONResponse:
    body = ErrorResponse(code=failure.code, message=failure.message)
    return JSONResponse(status_code=failure.status, content=body.model_dump())


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return error_response(exc.failure)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = [f"{'.'.join(str(p) for p in err['loc'][1:])}: {err['msg']}" for err in exc.errors()]
    return error_response(invalid("; ".join(messages) or "Invalid request"))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return error_response(Failure(500, "INTERNAL_ERROR", "An unexpected error occurred"))


# Helpers
def unwrap(result):
    if isinstance(result, Failure):
        raise ApiError(result)
    return result


def clamp_page(page: int, page_size: int) -> tuple[int, int]:
    if page < 1:
        page = 1
    if page_size < 1:
        page_size = 10
    if page_size > MAX_PAGE_SIZE:
        page_size = MAX_PAGE_SIZE
    return page, page_size


def parse_status(enum_cls, raw: Optional[str]):
    if not raw or not raw.strip():
        raise ApiError(invalid("Status is required"))
    status = parse_enum(enum_cls, raw)
    if status is None:
        allowed = ", ".join(s.value for s in enum_cls)
        raise ApiError(invalid(f"Invalid status. Allowed values: {allowed}"))
    return status


def client_ip(request: Request) -> str:
    host = request.client.host if request.client else ""
    if not host or host == "::1":
        return "127.0.0.1"
    return host


def payment_response(payment: Payment, payment_url: Optional[str] = None) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        order_id=payment.order_id,
        preorder_id=payment.preorder_id,
        amount=payment.amount,
        payment_method=payment.payment_method,
        payment_status=payment.payment_status,
        paid_at=payment.paid_at,
        payment_url=payment_url,
    )


# Basic routes
@app.get("/")
def read_root():
    return {"message": "Spectra Glasses backend is running"}


@app.get("/test")
async def test_database(store: Store = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "store": store.name,
        "database_name": settings.DATABASE_NAME if store.name == "mongo" else None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = (await store.collections())[:10]
        response["connection_status"] = "Connected"
    except Exception as e:
        response["connection_status"] = f"⚠️  Error: {str(e)[:50]}"
    return response


@app.get("/schema")
def get_schema():
    return {
        "order": Order.model_json_schema(),
        "preorder": Preorder.model_json_schema(),
        "payment": Payment.model_json_schema(),
    }


# Demo catalog for local development
SEED_FRAMES: list[dict] = [
    {"frame_name": "Aviator Classic", "brand": "Spectra", "color": "Gold", "material": "Metal", "shape": "Aviator", "base_price": 120.0},
    {"frame_name": "Round Acetate", "brand": "Spectra", "color": None, "material": "Acetate", "shape": "Round", "base_price": 95.0},
    {"frame_name": "Wayfarer Bold", "brand": "Spectra", "color": "Black", "material": "Acetate", "shape": "Square", "base_price": 110.0,
     "status": FrameStatus.OUT_OF_STOCK},
]
SEED_LENS_TYPES: list[dict] = [
    {"lens_specification": "Single vision", "requires_prescription": True, "extra_price": 40.0},
    {"lens_specification": "Plano (no correction)", "requires_prescription": False, "extra_price": 0.0},
]
SEED_FEATURES: list[dict] = [
    {"feature_specification": "Blue light filter", "lens_index": 1.56, "extra_price": 25.0},
    {"feature_specification": "High index thin", "lens_index": 1.67, "extra_price": 60.0},
]


class SeedResponse(BaseModel):
    inserted: int


@app.post("/api/seed", response_model=SeedResponse, status_code=201)
async def seed_catalog(caller: Caller = Depends(managers), store: Store = Depends(get_store)):
    # Insert only if the catalog is empty
    if await store.find("frame", {}):
        return SeedResponse(inserted=0)
    inserted = 0
    for collection, docs in (("frame", SEED_FRAMES), ("lenstype", SEED_LENS_TYPES), ("lensfeature", SEED_FEATURES)):
        for doc in docs:
            await store.insert(collection, {"id": new_id(), **doc})
            inserted += 1
    logger.info(f"Seeded {inserted} catalog documents")
    return SeedResponse(inserted=inserted)


# Pricing
@app.post("/api/pricing/quote", response_model=PriceQuote)
async def price_quote(payload: PriceQuoteRequest, store: Store = Depends(get_store)):
    if payload.base_price < 0:
        raise ApiError(invalid("Base price cannot be negative"))
    return await quote(Catalog(store), payload.base_price, payload.lens_type_id, payload.feature_id)


# Order endpoints
@app.post("/api/orders", status_code=201, response_model=OrderSummary)
async def create_order(payload: CreateOrderRequest, caller: Caller = Depends(customer_only),
                       store: Store = Depends(get_store)):
    if not (payload.shipping_address or "").strip():
        raise ApiError(invalid("Shipping address is required"))
    service = OrderService(store)
    validation = await service.validate_items(payload.items, caller.user_id)
    if not validation.ok:
        raise ApiError(invalid("; ".join(validation.errors)))

    order = await service.create_order(caller.user_id, payload.shipping_address.strip(), payload.items)
    return OrderSummary(
        id=order.id,
        user_id=order.user_id,
        total_amount=order.total_amount,
        shipping_address=order.shipping_address,
        status=order.status,
        created_at=order.created_at,
        item_count=len(order.items),
    )


@app.get("/api/orders/my", response_model=Page[Order])
async def list_my_orders(page: int = 1, page_size: int = 10, caller: Caller = Depends(customer_only),
                         store: Store = Depends(get_store)):
    page, page_size = clamp_page(page, page_size)
    return await OrderService(store).list_for_user(caller.user_id, page, page_size)


@app.get("/api/orders", response_model=Page[Order])
async def list_orders(page: int = 1, page_size: int = 10, caller: Caller = Depends(back_office),
                      store: Store = Depends(get_store)):
    page, page_size = clamp_page(page, page_size)
    return await OrderService(store).list_all(page, page_size)


@app.get("/api/orders/{order_id}", response_model=OrderDetail)
async def get_order(order_id: str, caller: Caller = Depends(get_caller), store: Store = Depends(get_store)):
    order = await OrderService(store).get_order_details(order_id)
    if order is None:
        raise ApiError(not_found("ORDER_NOT_FOUND", "Order not found"))
    ensure_owner(caller, order.user_id)
    return order


@app.put("/api/orders/{order_id}/status", response_model=Order)
async def update_order_status(order_id: str, payload: UpdateStatusRequest, caller: Caller = Depends(back_office),
                              store: Store = Depends(get_store)):
    status = parse_status(OrderStatus, payload.status)
    return unwrap(await OrderService(store).update_status(order_id, status, caller.role))


@app.delete("/api/orders/{order_id}", response_model=Order)
async def cancel_order(order_id: str, caller: Caller = Depends(managers), store: Store = Depends(get_store)):
    result = await OrderService(store).update_status(order_id, OrderStatus.CANCELLED, caller.role)
    if isinstance(result, Failure):
        raise ApiError(not_found("CANCEL_FAILED", "Order not found or cannot be cancelled"))
    return result


# Preorder endpoints
@app.post("/api/preorders", status_code=201, response_model=Preorder)
async def create_preorder(payload: CreatePreorderRequest, caller: Caller = Depends(customer_only),
                          store: Store = Depends(get_store)):
    service = PreorderService(store)
    validation = await service.validate_items(payload.items, caller.user_id)
    if not validation.ok:
        raise ApiError(invalid("; ".join(validation.errors)))
    return await service.create_preorder(caller.user_id, payload.expected_date, payload.items)


@app.get("/api/preorders/my", response_model=Page[Preorder])
async def list_my_preorders(page: int = 1, page_size: int = 10, caller: Caller = Depends(customer_only),
                            store: Store = Depends(get_store)):
    page, page_size = clamp_page(page, page_size)
    return await PreorderService(store).list_for_user(caller.user_id, page, page_size)


@app.get("/api/preorders", response_model=Page[Preorder])
async def list_preorders(page: int = 1, page_size: int = 10, caller: Caller = Depends(back_office),
                         store: Store = Depends(get_store)):
    page, page_size = clamp_page(page, page_size)
    return await PreorderService(store).list_all(page, page_size)


@app.get("/api/preorders/{preorder_id}", response_model=PreorderDetail)
async def get_preorder(preorder_id: str, caller: Caller = Depends(get_caller), store: Store = Depends(get_store)):
    preorder = await PreorderService(store).get_preorder_details(preorder_id)
    if preorder is None:
        raise ApiError(not_found("PREORDER_NOT_FOUND", "Preorder not found"))
    ensure_owner(caller, preorder.user_id)
    return preorder


@app.delete("/api/preorders/{preorder_id}", status_code=204)
async def cancel_preorder(preorder_id: str, caller: Caller = Depends(customer_only),
                          store: Store = Depends(get_store)):
    unwrap(await PreorderService(store).cancel(preorder_id, caller.user_id))
    return Response(status_code=204)


@app.put("/api/preorders/{preorder_id}/status", response_model=Preorder)
async def update_preorder_status(preorder_id: str, payload: UpdateStatusRequest,
                                 caller: Caller = Depends(back_office), store: Store = Depends(get_store)):
    status = parse_status(PreorderStatus, payload.status)
    return unwrap(await PreorderService(store).update_status(preorder_id, status, caller.role))


@app.post("/api/preorders/{preorder_id}/convert", response_model=Order)
async def convert_preorder(preorder_id: str, payload: ConvertPreorderRequest,
                           caller: Caller = Depends(back_office), store: Store = Depends(get_store)):
    if not (payload.shipping_address or "").strip():
        raise ApiError(invalid("Shipping address is required"))
    return unwrap(await PreorderService(store).convert_to_order(preorder_id, payload.shipping_address.strip()))


# Payment endpoints
@app.post("/api/payments", status_code=201, response_model=PaymentResponse)
async def create_payment(payload: CreatePaymentRequest, request: Request, caller: Caller = Depends(customer_only),
                         store: Store = Depends(get_store), settings: Settings = Depends(get_settings)):
    if payload.order_id and payload.preorder_id:
        raise ApiError(invalid("Payment must be linked to either an order OR a preorder, not both"))
    if not payload.order_id and not payload.preorder_id:
        raise ApiError(invalid("Payment must be linked to an order or a preorder"))
    method = parse_enum(PaymentMethod, payload.payment_method)
    if method is None:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ApiError(invalid(f"Invalid payment method. Allowed values: {allowed}"))

    service = PaymentService(store)
    if payload.order_id:
        payment = unwrap(await service.create_for_order(payload.order_id, method, user_id=caller.user_id))
        order_info = f"Payment for Order {payload.order_id}"
    else:
        payment = unwrap(await service.create_for_preorder(payload.preorder_id, method, user_id=caller.user_id))
        order_info = f"Payment for Preorder {payload.preorder_id}"

    if method != PaymentMethod.VNPAY:
        return payment_response(payment)

    return_url = settings.VNPAY_RETURN_URL or f"{str(request.base_url).rstrip('/')}/api/payments/vnpay-return"
    redirect = vnpay.build_payment_url(settings, payment.id, payment.amount, order_info, client_ip(request), return_url)
    if not redirect.success:
        # give the target back so the customer can retry
        await service.update_status(payment.id, PaymentStatus.CANCELLED)
        raise ApiError(rejected("VNPAY_ERROR", redirect.message))
    return payment_response(payment, redirect.payment_url)


@app.get("/api/payments/my", response_model=Page[Payment])
async def list_my_payments(page: int = 1, page_size: int = 10, caller: Caller = Depends(customer_only),
                           store: Store = Depends(get_store)):
    page, page_size = clamp_page(page, page_size)
    return await PaymentService(store).list_for_user(caller.user_id, page, page_size)


@app.get("/api/payments/vnpay-return")
async def vnpay_return(request: Request, store: Store = Depends(get_store),
                       settings: Settings = Depends(get_settings)):
    result = vnpay.verify_callback(settings, dict(request.query_params))
    if not result.verified or not result.success:
        raise ApiError(rejected("PAYMENT_FAILED", result.message))

    outcome = await PaymentService(store).complete_payment(result.payment_id, result.transaction_id)
    if isinstance(outcome, Failure):
        raise ApiError(rejected("PAYMENT_COMPLETION_FAILED", "Failed to complete payment"))
    return {
        "success": True,
        "message": "Payment completed successfully",
        "payment_id": outcome.id,
        "transaction_id": result.transaction_id,
        "amount": outcome.amount,
        "paid_at": outcome.paid_at,
    }


@app.api_route("/api/payments/vnpay-ipn", methods=["GET", "POST"])
async def vnpay_ipn(request: Request, store: Store = Depends(get_store),
                    settings: Settings = Depends(get_settings)):
    return await PaymentService(store).handle_notification(settings, dict(request.query_params))


@app.get("/api/payments/order/{order_id}", response_model=list[Payment])
async def list_order_payments(order_id: str, caller: Caller = Depends(back_office),
                              store: Store = Depends(get_store)):
    return await PaymentService(store).list_for_order(order_id)


@app.get("/api/payments/preorder/{preorder_id}", response_model=list[Payment])
async def list_preorder_payments(preorder_id: str, caller: Caller = Depends(back_office),
                                 store: Store = Depends(get_store)):
    return await PaymentService(store).list_for_preorder(preorder_id)


@app.get("/api/payments/{payment_id}", response_model=Payment)
async def get_payment(payment_id: str, caller: Caller = Depends(get_caller), store: Store = Depends(get_store)):
    payment = await PaymentService(store).get_payment(payment_id)
    if payment is None:
        raise ApiError(not_found("PAYMENT_NOT_FOUND", "Payment not found"))
    ensure_owner(caller, payment.user_id)
    return payment


@app.put("/api/payments/{payment_id}/status", response_model=Payment)
async def update_payment_status(payment_id: str, payload: UpdateStatusRequest,
                                caller: Caller = Depends(back_office), store: Store = Depends(get_store)):
    status = parse_status(PaymentStatus, payload.status)
    return unwrap(await PaymentService(store).update_status(payment_id, status))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
