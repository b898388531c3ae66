from sqlalchemy import Column, String, DateTime, Boolean, Integer, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship
import uuid
import enum
from app.db.session import Base
from app.core.timeutil import utcnow
from app.db.types import enum_type


class CatalogCategory(str, enum.Enum):
    TEAM = "team"
    ONE_TO_ONE = "one_to_one"
    ADDON = "addon"


class DeliveryMode(str, enum.Enum):
    """How a 1:1 service is delivered; drives the reporting buckets on statements."""
    ONLINE = "online"
    IN_PERSON = "in_person"
    HYBRID = "hybrid"


class CatalogEntry(Base):
    """A sellable service or add-on. Identity is immutable; prices live in PriceRecord."""
    __tablename__ = "catalog_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    category = Column(enum_type(CatalogCategory, "catalogcategory"), nullable=False, index=True)
    delivery_mode = Column(enum_type(DeliveryMode, "deliverymode"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    prices = relationship("PriceRecord", back_populates="entry", order_by="PriceRecord.effective_at")


class PriceRecord(Base):
    """
    Versioned list price for a catalog entry, in minor currency units.
    At most one active record per entry; an edit supersedes the active record
    instead of updating it in place.
    """
    __tablename__ = "price_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    target_id = Column(Uuid(as_uuid=True), ForeignKey("catalog_entries.id"), nullable=False, index=True)
    price_minor = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    effective_at = Column(DateTime, default=utcnow, nullable=False)
    superseded_at = Column(DateTime, nullable=True)
    updated_by = Column(String, nullable=True)  # actor id from the identity provider

    entry = relationship("CatalogEntry", back_populates="prices")

    __table_args__ = (
        Index("ix_price_records_target_active", "target_id", "is_active"),
    )
