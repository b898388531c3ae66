from app.models.catalog import CatalogEntry, CatalogCategory, DeliveryMode, PriceRecord
from app.models.payout_rule import PayoutRule, PayoutKind, PlatformFeeKind, PayoutRecipientRole
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_payment import SubscriptionPayment, PaymentSource
from app.models.payment_exemption import PaymentExemption
from app.models.discount_redemption import DiscountRedemption
from app.models.addon_purchase import AddonPurchase, AddonBillingType, AddonPurchaseStatus
from app.models.payout_statement import MonthlyPayoutStatement
from app.models.billing_reminder import BillingReminder, ReminderKind, ReminderStatus
from app.models.job_run_lock import JobRunLock
from app.models.audit_log import AuditLog, AuditAction

__all__ = [
    "CatalogEntry", "CatalogCategory", "DeliveryMode", "PriceRecord",
    "PayoutRule", "PayoutKind", "PlatformFeeKind", "PayoutRecipientRole",
    "Subscription", "SubscriptionStatus", "SubscriptionPayment", "PaymentSource",
    "PaymentExemption", "DiscountRedemption",
    "AddonPurchase", "AddonBillingType", "AddonPurchaseStatus",
    "MonthlyPayoutStatement", "BillingReminder", "ReminderKind", "ReminderStatus",
    "JobRunLock", "AuditLog", "AuditAction",
]
