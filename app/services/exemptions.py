"""
Payment exemption lookups. An exempt subscriber's subscriptions do not decay
through the billing lifecycle and contribute no revenue.
"""
import uuid
from typing import Set
from sqlalchemy.orm import Session
from app.models.payment_exemption import PaymentExemption


def load_exempt_subscribers(db: Session) -> Set[uuid.UUID]:
    rows = db.query(PaymentExemption.subscriber_id).filter(PaymentExemption.is_exempt.is_(True)).all()
    return {row[0] for row in rows}


def is_payment_exempt(db: Session, subscriber_id: uuid.UUID) -> bool:
    row = db.query(PaymentExemption).filter(PaymentExemption.subscriber_id == subscriber_id).first()
    return bool(row and row.is_exempt)
