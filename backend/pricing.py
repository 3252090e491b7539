"""
Pricing engine: the price of one configured pair of glasses and the
item-level business rules checked before an order or preorder is stored.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from catalog import Catalog
from schemas import FrameStatus, Frame, LensFeature, LensType, LineItem, LineItemIn, PriceQuote, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    ok: bool = True
    errors: list[str] = field(default_factory=list)

    def add(self, message: str) -> None:
        self.ok = False
        self.errors.append(message)


def price_item(frame: Optional[Frame], lens_type: Optional[LensType], lens_feature: Optional[LensFeature]) -> float:
    base = (frame.base_price if frame else None) or 0.0
    lens_extra = (lens_type.extra_price if lens_type else None) or 0.0
    feature_extra = (lens_feature.extra_price if lens_feature else None) or 0.0
    return base + lens_extra + feature_extra


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


async def validate_item(catalog: Catalog, item: LineItemIn, user_id: str, result: ValidationResult,
                        require_available: bool = True, noun: str = "order") -> None:
    """Append every rule the item breaks to ``result``.

    Checks run in a fixed order: frame, availability (orders only), color,
    lens type, prescription requirement, prescription, lens feature, quantity.
    A missing frame or lens type only skips the checks that depend on it.
    """
    if not item.frame_id:
        result.add(f"Each {noun} item must have a frame")
    else:
        frame = await catalog.find_frame(item.frame_id)
        if frame is None:
            result.add(f"Frame with ID {item.frame_id} not found")
        else:
            if require_available and frame.status != FrameStatus.AVAILABLE:
                result.add(f"Frame '{frame.frame_name}' is not available")
            if not frame.color and not item.selected_color:
                result.add(f"Frame '{frame.frame_name}' requires a color selection")

    if item.lens_type_id:
        lens_type = await catalog.find_lens_type(item.lens_type_id)
        if lens_type is None:
            result.add(f"Lens type with ID {item.lens_type_id} not found")
        elif lens_type.requires_prescription and not item.prescription_id:
            result.add(f"Lens type '{lens_type.lens_specification}' requires a prescription")

    if item.prescription_id:
        prescription = await catalog.find_prescription(item.prescription_id)
        if prescription is None:
            result.add(f"Prescription with ID {item.prescription_id} not found")
        elif prescription.user_id != user_id:
            result.add("Prescription does not belong to the current user")
        elif prescription.expiration_date and _as_utc(prescription.expiration_date) < utcnow():
            result.add("Prescription has expired")

    if item.feature_id:
        feature = await catalog.find_lens_feature(item.feature_id)
        if feature is None:
            result.add(f"Lens feature with ID {item.feature_id} not found")

    if item.quantity is None or item.quantity <= 0:
        result.add(f"Each {noun} item must have a quantity greater than 0")


async def validate_items(catalog: Catalog, items: list[LineItemIn], user_id: str,
                         require_available: bool = True, noun: str = "order") -> ValidationResult:
    result = ValidationResult()
    if not items:
        result.add(f"{noun.capitalize()} must contain at least one item")
        return result
    for item in items:
        await validate_item(catalog, item, user_id, result, require_available=require_available, noun=noun)
    if not result.ok:
        logger.info(f"Rejected {noun} items for user {user_id}: {result.errors}")
    return result


async def price_line_item(catalog: Catalog, item: LineItemIn) -> LineItem:
    """Price a validated item and freeze the result as a line item snapshot."""
    frame = await catalog.find_frame(item.frame_id)
    lens_type = await catalog.find_lens_type(item.lens_type_id)
    feature = await catalog.find_lens_feature(item.feature_id)
    return LineItem(
        frame_id=item.frame_id,
        lens_type_id=item.lens_type_id,
        feature_id=item.feature_id,
        prescription_id=item.prescription_id,
        quantity=item.quantity,
        selected_color=item.selected_color,
        price=price_item(frame, lens_type, feature),
    )


def items_total(items: list[LineItem]) -> float:
    return sum(item.price * item.quantity for item in items)


async def quote(catalog: Catalog, base_price: float, lens_type_id: Optional[str] = None,
                feature_id: Optional[str] = None) -> PriceQuote:
    lens_type = await catalog.find_lens_type(lens_type_id)
    feature = await catalog.find_lens_feature(feature_id)
    lens_extra = (lens_type.extra_price if lens_type else None) or 0.0
    feature_extra = (feature.extra_price if feature else None) or 0.0
    return PriceQuote(
        base_price=base_price,
        lens_type_extra_price=lens_extra,
        feature_extra_price=feature_extra,
        total_price=base_price + lens_extra + feature_extra,
    )
