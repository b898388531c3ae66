from app.schemas.billing import Subscription, SubscriptionCreate, PaymentCreate, PaymentResponse
from app.schemas.payouts import Statement, CalculationResponse
from app.schemas.pricing import CatalogEntry, CatalogEntryCreate, PayoutRule, PayoutRuleUpdate
from app.schemas.audit import AuditEntry

__all__ = [
    "Subscription", "SubscriptionCreate", "PaymentCreate", "PaymentResponse",
    "Statement", "CalculationResponse",
    "CatalogEntry", "CatalogEntryCreate", "PayoutRule", "PayoutRuleUpdate",
    "AuditEntry",
]
