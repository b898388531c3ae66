from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from uuid import UUID
from app.db.session import get_db
from app.api.deps import require_admin
from app.core.audit import Actor
from app.core.money import to_minor
from app.models.catalog import CatalogCategory
from app.models.payout_rule import PayoutRecipientRole
from app.schemas.pricing import (
    CatalogEntryCreate,
    CatalogEntry as CatalogEntrySchema,
    PriceUpdate,
    Price,
    PayoutRuleUpdate,
    PayoutRule as PayoutRuleSchema,
    ResolvedRule as ResolvedRuleSchema,
)
from app.services import pricing_admin
from app.services.payout_rules import resolve_rule

router = APIRouter()

_FIXED = "fixed"


def _rule_value(kind: str, value, field: str):
    """Fixed amounts arrive in major units; percentages pass through."""
    if str(kind).lower() == _FIXED:
        return to_minor(value, field)
    return value


@router.post("/catalog", response_model=CatalogEntrySchema, status_code=201)
def create_catalog_entry(
    body: CatalogEntryCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    price_minor = to_minor(body.price, "price") if body.price is not None else None
    return pricing_admin.create_catalog_entry(
        db,
        code=body.code,
        name=body.name,
        category=body.category,
        actor=actor,
        delivery_mode=body.delivery_mode,
        price_minor=price_minor,
    )


@router.put("/prices/{target_id}", response_model=Price)
def set_price(
    target_id: UUID,
    body: PriceUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    record = pricing_admin.set_price(db, target_id, to_minor(body.price, "price"), actor=actor)
    return Price.from_model(record)


@router.put("/payout-rules/{target_id}", response_model=PayoutRuleSchema)
def set_payout_rule(
    target_id: UUID,
    body: PayoutRuleUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    rule = pricing_admin.set_payout_rule(
        db,
        target_id,
        payout_kind=body.payout_kind,
        payout_value=_rule_value(body.payout_kind, body.payout_value, "payout_value"),
        actor=actor,
        platform_fee_kind=body.platform_fee_kind,
        platform_fee_value=_rule_value(body.platform_fee_kind, body.platform_fee_value, "platform_fee_value"),
        recipient_role=body.recipient_role,
    )
    return PayoutRuleSchema.from_model(rule)


@router.get("/payout-rules/{target_id}/resolved", response_model=ResolvedRuleSchema)
def get_resolved_rule(
    target_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """The rule the aggregator would use for this target, including the default fallback."""
    entry = pricing_admin.get_catalog_entry(db, target_id)
    recipient = PayoutRecipientRole.PRIMARY_COACH
    if entry.category == CatalogCategory.ADDON:
        recipient = PayoutRecipientRole.ADDON_STAFF
    return ResolvedRuleSchema(**resolve_rule(db, target_id, recipient).describe())
