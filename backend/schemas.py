from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Generic, Optional, TypeVar

from pydantic import BaseModel, BeforeValidator, Field, model_validator

# Each persisted class => one collection, lowercased name
# (Frame -> "frame", LensType -> "lenstype", Order -> "order", ...)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _normalize(value):
    if isinstance(value, str):
        return value.strip().lower()
    return value


# Enumerations
class Role(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    MANAGER = "manager"
    ADMIN = "admin"


class FrameStatus(str, Enum):
    AVAILABLE = "available"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PreorderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    CONVERTED = "converted"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    VNPAY = "vnpay"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"


def parse_enum(enum_cls, value):
    """Parse a free-form string into ``enum_cls``; returns None when it is not a member."""
    try:
        return enum_cls(_normalize(value))
    except ValueError:
        return None


# statuses and methods are lower-cased once, here, on the way in
FrameStatusField = Annotated[FrameStatus, BeforeValidator(_normalize)]
OrderStatusField = Annotated[OrderStatus, BeforeValidator(_normalize)]
PreorderStatusField = Annotated[PreorderStatus, BeforeValidator(_normalize)]
PaymentStatusField = Annotated[PaymentStatus, BeforeValidator(_normalize)]
PaymentMethodField = Annotated[PaymentMethod, BeforeValidator(_normalize)]


# Catalog (read-only here)
class Frame(BaseModel):
    id: str
    frame_name: str
    brand: Optional[str] = None
    color: Optional[str] = None
    material: Optional[str] = None
    shape: Optional[str] = None
    size: Optional[str] = None
    base_price: Optional[float] = None
    status: FrameStatusField = FrameStatus.AVAILABLE


class LensType(BaseModel):
    id: str
    lens_specification: str
    requires_prescription: Optional[bool] = None
    extra_price: Optional[float] = None


class LensFeature(BaseModel):
    id: str
    feature_specification: str
    lens_index: Optional[float] = None
    extra_price: Optional[float] = None


class Prescription(BaseModel):
    id: str
    user_id: str
    expiration_date: Optional[datetime] = None


# Line items
class LineItemIn(BaseModel):
    """A line item as submitted by the customer. Business rules are checked by pricing.validate_items."""
    frame_id: Optional[str] = None
    lens_type_id: Optional[str] = None
    feature_id: Optional[str] = None
    prescription_id: Optional[str] = None
    quantity: Optional[int] = None
    selected_color: Optional[str] = None


class LineItem(BaseModel):
    id: str = Field(default_factory=new_id)
    frame_id: str
    lens_type_id: Optional[str] = None
    feature_id: Optional[str] = None
    prescription_id: Optional[str] = None
    quantity: int = Field(ge=1)
    selected_color: Optional[str] = None
    # unit price snapshot taken when the item was priced
    price: float = Field(ge=0)


# Orders / Preorders / Payments
class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    shipping_address: str
    total_amount: float = Field(ge=0)
    status: OrderStatusField = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    arrival_date: Optional[datetime] = None
    items: list[LineItem] = Field(default_factory=list)


class Preorder(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    expected_date: datetime
    status: PreorderStatusField = PreorderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    items: list[LineItem] = Field(default_factory=list)


class Payment(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    amount: float = Field(ge=0)
    payment_method: PaymentMethodField
    payment_status: PaymentStatusField = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    order_id: Optional[str] = None
    preorder_id: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_target(self):
        if (self.order_id is None) == (self.preorder_id is None):
            raise ValueError("Payment must reference exactly one of order_id or preorder_id")
        return self


def target_lock(order_id: Optional[str] = None, preorder_id: Optional[str] = None) -> str:
    if order_id is not None:
        return f"order:{order_id}"
    return f"preorder:{preorder_id}"


class OrderDetail(Order):
    payments: list[Payment] = Field(default_factory=list)


class PreorderDetail(Preorder):
    payments: list[Payment] = Field(default_factory=list)


# Requests / responses
class CreateOrderRequest(BaseModel):
    shipping_address: Optional[str] = None
    items: list[LineItemIn] = Field(default_factory=list)


class CreatePreorderRequest(BaseModel):
    expected_date: Optional[datetime] = None
    items: list[LineItemIn] = Field(default_factory=list)


class UpdateStatusRequest(BaseModel):
    status: Optional[str] = None


class ConvertPreorderRequest(BaseModel):
    shipping_address: Optional[str] = None


class CreatePaymentRequest(BaseModel):
    order_id: Optional[str] = None
    preorder_id: Optional[str] = None
    payment_method: str


class OrderSummary(BaseModel):
    id: str
    user_id: str
    total_amount: float
    shipping_address: str
    status: OrderStatus
    created_at: datetime
    item_count: int


class PaymentResponse(BaseModel):
    id: str
    order_id: Optional[str] = None
    preorder_id: Optional[str] = None
    amount: float
    payment_method: PaymentMethodField
    payment_status: PaymentStatus
    paid_at: Optional[datetime] = None
    payment_url: Optional[str] = None


class PriceQuoteRequest(BaseModel):
    base_price: float
    lens_type_id: Optional[str] = None
    feature_id: Optional[str] = None


class PriceQuote(BaseModel):
    base_price: float
    lens_type_extra_price: float
    feature_extra_price: float
    total_price: float


class ErrorResponse(BaseModel):
    code: str
    message: str


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: list[T]
    total_items: int
    total_pages: int
    current_page: int
    page_size: int


def page_of(model, result) -> Page:
    """Wrap a store PageResult into a typed Page of ``model``."""
    return Page[model](
        items=[model(**doc) for doc in result.items],
        total_items=result.total_items,
        total_pages=result.total_pages,
        current_page=result.current_page,
        page_size=result.page_size,
    )
