from pydantic_settings import BaseSettings
from typing import Optional, List


def _parse_csv(v: str) -> List[str]:
    """Parse comma-separated string; strip whitespace; keep non-empty."""
    if not v or not v.strip():
        return []
    return [o.strip() for o in v.split(",") if o.strip()]


_DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:3001",
]


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "postgresql://postgres:postgres@db:5432/coach_billing"

    # CORS: comma-separated extra origins for the admin dashboard
    ALLOWED_ORIGINS_EXTRA: str = ""

    def get_allowed_origins(self) -> List[str]:
        """Return CORS allowed origins: default localhost + ALLOWED_ORIGINS_EXTRA."""
        return _DEFAULT_CORS_ORIGINS + _parse_csv(self.ALLOWED_ORIGINS_EXTRA)

    # Logging
    LOG_LEVEL: str = "INFO"

    # Currency (single currency throughout)
    CURRENCY_CODE: str = "KWD"
    CURRENCY_MINOR_UNITS: int = 3  # KWD has 1000 fils per dinar

    # Billing lifecycle
    BILLING_CYCLE_DAYS: int = 30
    DEFAULT_GRACE_PERIOD_DAYS: int = 7
    UPCOMING_REMINDER_DAYS: str = "7,3,1"  # days before next_billing_date
    PAST_DUE_REMINDER_DAYS: str = "3"  # days after past_due_since (final warning is always grace - 1)

    def get_upcoming_reminder_days(self) -> List[int]:
        return sorted({int(d) for d in _parse_csv(self.UPCOMING_REMINDER_DAYS)}, reverse=True)

    def get_past_due_reminder_days(self) -> List[int]:
        return sorted({int(d) for d in _parse_csv(self.PAST_DUE_REMINDER_DAYS)})

    # Payouts
    DEFAULT_PAYOUT_PERCENT: float = 70.0  # used when a service or add-on has no payout rule
    CREDIT_EXEMPT_CLIENT_PAYOUT: bool = False  # pay staff for payment-exempt clients from list price

    # Batch jobs
    JOB_LOCK_TTL_MINUTES: int = 120  # a lock older than this is considered abandoned

    # Notifications (delivery is handled by an external service)
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_WEBHOOK_TOKEN: Optional[str] = None

    # Identity is provided upstream; this is the role name allowed to run admin actions
    ADMIN_ROLE_NAME: str = "admin"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()
