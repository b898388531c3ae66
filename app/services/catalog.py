"""
Read-only view of the pricing catalog, bulk-loaded once per run.
"""
import uuid
from typing import Dict, Optional
from sqlalchemy.orm import Session
from app.models.catalog import CatalogEntry, PriceRecord


class PricingCatalog:
    def __init__(self, entries: Dict[uuid.UUID, CatalogEntry], prices: Dict[uuid.UUID, int]):
        self._entries = entries
        self._prices = prices

    @classmethod
    def load(cls, db: Session) -> "PricingCatalog":
        """Active entries and their active prices, two queries regardless of catalog size."""
        entries = {
            e.id: e for e in db.query(CatalogEntry).filter(CatalogEntry.is_active.is_(True)).all()
        }
        prices = {}
        for record in db.query(PriceRecord).filter(PriceRecord.is_active.is_(True)).all():
            if record.target_id in entries:
                prices[record.target_id] = record.price_minor
        return cls(entries, prices)

    def entry(self, target_id: uuid.UUID) -> Optional[CatalogEntry]:
        return self._entries.get(target_id)

    def price_of(self, target_id: uuid.UUID) -> Optional[int]:
        """Current list price in minor units, or None if the entry is inactive or unpriced."""
        return self._prices.get(target_id)

    def __len__(self):
        return len(self._entries)


def get_active_price(db: Session, target_id: uuid.UUID) -> Optional[PriceRecord]:
    return db.query(PriceRecord).filter(
        PriceRecord.target_id == target_id,
        PriceRecord.is_active.is_(True),
    ).first()
