from __future__ import annotations
from typing import Optional

from database import Store
from schemas import Frame, LensFeature, LensType, Prescription


class Catalog:
    """Read-only lookups into the catalog collections managed elsewhere."""

    def __init__(self, store: Store):
        self.store = store

    async def find_frame(self, frame_id: Optional[str]) -> Optional[Frame]:
        if not frame_id:
            return None
        doc = await self.store.find_one("frame", {"id": frame_id})
        return Frame(**doc) if doc else None

    async def find_lens_type(self, lens_type_id: Optional[str]) -> Optional[LensType]:
        if not lens_type_id:
            return None
        doc = await self.store.find_one("lenstype", {"id": lens_type_id})
        return LensType(**doc) if doc else None

    async def find_lens_feature(self, feature_id: Optional[str]) -> Optional[LensFeature]:
        if not feature_id:
            return None
        doc = await self.store.find_one("lensfeature", {"id": feature_id})
        return LensFeature(**doc) if doc else None

    async def find_prescription(self, prescription_id: Optional[str]) -> Optional[Prescription]:
        if not prescription_id:
            return None
        doc = await self.store.find_one("prescription", {"id": prescription_id})
        return Prescription(**doc) if doc else None
