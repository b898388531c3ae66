"""
Editors for the read-mostly pricing configuration: catalog entries, list
prices and payout rules. Values are validated here, at the configuration
boundary, so the aggregator only ever sees well-formed rules.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from app.core.audit import Actor, record_audit
from app.core.errors import InvalidInputError, NotFoundError, DataIntegrityError
from app.core.money import require_non_negative
from app.core.timeutil import utcnow
from app.models.audit_log import AuditAction
from app.models.catalog import CatalogEntry, CatalogCategory, DeliveryMode, PriceRecord
from app.models.payout_rule import PayoutRule, PayoutKind, PlatformFeeKind, PayoutRecipientRole
from app.services.payout_rules import (
    validate_rule_values, rule_from_row, PercentPayout, PercentFee, FixedFee,
)

logger = logging.getLogger(__name__)


def _rule_state(rule: Optional[PayoutRule]) -> Optional[dict]:
    if rule is None:
        return None
    return {
        "payout_kind": rule.payout_kind,
        "payout_value": Decimal(rule.payout_value),
        "platform_fee_kind": rule.platform_fee_kind,
        "platform_fee_value": Decimal(rule.platform_fee_value),
        "recipient_role": rule.recipient_role,
    }


def get_catalog_entry(db: Session, target_id: uuid.UUID) -> CatalogEntry:
    entry = db.query(CatalogEntry).filter(CatalogEntry.id == target_id).first()
    if entry is None:
        raise NotFoundError("Catalog entry not found", {"target_id": target_id})
    return entry


def create_catalog_entry(
    db: Session,
    code: str,
    name: str,
    category: CatalogCategory,
    actor: Actor,
    delivery_mode: Optional[DeliveryMode] = None,
    price_minor: Optional[int] = None,
) -> CatalogEntry:
    """Add a service or add-on, optionally with its first list price."""
    if not code or not code.strip():
        raise InvalidInputError("code", "is required")
    if delivery_mode is not None and category != CatalogCategory.ONE_TO_ONE:
        raise InvalidInputError("delivery_mode", "only applies to one-to-one services", {"code": code})
    if price_minor is not None:
        require_non_negative(price_minor, "price", {"code": code})
    if category == CatalogCategory.ONE_TO_ONE and delivery_mode is None:
        delivery_mode = DeliveryMode.ONLINE

    try:
        entry = CatalogEntry(code=code.strip(), name=name, category=category, delivery_mode=delivery_mode)
        db.add(entry)
        db.flush()
        after = {"code": entry.code, "name": name, "category": category, "delivery_mode": delivery_mode}
        if price_minor is not None:
            db.add(PriceRecord(target_id=entry.id, price_minor=price_minor, updated_by=actor.id))
            after["price_minor"] = price_minor
        record_audit(db, actor, AuditAction.CATALOG_ENTRY_CREATED, "catalog_entry", entry.id, after=after)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DataIntegrityError("A catalog entry with this code already exists", {"code": code}) from e
    except Exception:
        db.rollback()
        raise
    db.refresh(entry)
    logger.info(f"[PRICING] Catalog entry {entry.code} ({category.value}) created by {actor.id}")
    return entry


def set_price(
    db: Session,
    target_id: uuid.UUID,
    price_minor: int,
    actor: Actor,
    now: Optional[datetime] = None,
) -> PriceRecord:
    """
    Set the list price of a catalog entry. The active record is superseded,
    never updated, so past prices stay queryable.
    """
    require_non_negative(price_minor, "price", {"target_id": target_id})
    now = now or utcnow()
    try:
        get_catalog_entry(db, target_id)
        current = (
            db.query(PriceRecord)
            .filter(PriceRecord.target_id == target_id, PriceRecord.is_active.is_(True))
            .with_for_update()
            .first()
        )
        if current is not None and current.price_minor == price_minor:
            db.rollback()
            return current

        before = None
        if current is not None:
            before = {"price_minor": current.price_minor, "price_record_id": current.id}
            current.is_active = False
            current.superseded_at = now
            db.flush()

        record = PriceRecord(target_id=target_id, price_minor=price_minor, effective_at=now, updated_by=actor.id)
        db.add(record)
        db.flush()
        record_audit(db, actor, AuditAction.PRICE_CHANGED, "catalog_entry", target_id,
                     before=before, after={"price_minor": price_minor, "price_record_id": record.id})
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"[PRICING] Price of {target_id} set to {price_minor} by {actor.id}")
    return record


def set_payout_rule(
    db: Session,
    target_id: uuid.UUID,
    payout_kind,
    payout_value,
    actor: Actor,
    platform_fee_kind=PlatformFeeKind.NONE,
    platform_fee_value=0,
    recipient_role=PayoutRecipientRole.PRIMARY_COACH,
    now: Optional[datetime] = None,
) -> PayoutRule:
    """
    Create or replace the payout rule of a service or add-on.

    Raises:
        InvalidInputError: naming the field that failed validation
        NotFoundError: unknown catalog entry
    """
    context = {"target_id": target_id}
    payout, fee = validate_rule_values(payout_kind, payout_value, platform_fee_kind, platform_fee_value, context)
    if isinstance(payout, PercentPayout):
        payout_kind, payout_value = PayoutKind.PERCENT, payout.percent
    else:
        payout_kind, payout_value = PayoutKind.FIXED, Decimal(payout.amount_minor)
    if isinstance(fee, PercentFee):
        platform_fee_kind, platform_fee_value = PlatformFeeKind.PERCENT, fee.percent
    elif isinstance(fee, FixedFee):
        platform_fee_kind, platform_fee_value = PlatformFeeKind.FIXED, Decimal(fee.amount_minor)
    else:
        platform_fee_kind, platform_fee_value = PlatformFeeKind.NONE, Decimal(0)
    try:
        recipient_role = PayoutRecipientRole(recipient_role)
    except ValueError:
        raise InvalidInputError("recipient_role", f"unknown recipient {recipient_role!r}", context)
    now = now or utcnow()

    try:
        get_catalog_entry(db, target_id)
        rule = (
            db.query(PayoutRule)
            .filter(PayoutRule.target_id == target_id)
            .with_for_update()
            .first()
        )
        before = _rule_state(rule)
        if rule is None:
            rule = PayoutRule(target_id=target_id)
            db.add(rule)
        rule.payout_kind = payout_kind
        rule.payout_value = payout_value
        rule.platform_fee_kind = platform_fee_kind
        rule.platform_fee_value = platform_fee_value
        rule.recipient_role = recipient_role
        rule.updated_by = actor.id
        rule.updated_at = now
        db.flush()
        db.refresh(rule)
        record_audit(db, actor, AuditAction.PAYOUT_RULE_CHANGED, "payout_rule", target_id,
                     before=before, after=_rule_state(rule))
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"[PRICING] Payout rule for {target_id} set to {rule_from_row(rule).describe()} by {actor.id}")
    return rule
