from sqlalchemy import Column, String, DateTime, Integer, Boolean, JSON, UniqueConstraint, Uuid
import uuid
from app.db.session import Base
from app.core.timeutil import utcnow

CLIENT_BUCKETS = ("team", "onetoone_inperson", "onetoone_hybrid", "onetoone_online")


class MonthlyPayoutStatement(Base):
    """
    Payout owed to one staff member for one period (YYYY-MM).

    Unpaid statements are overwritten by a recomputation; once is_paid is set
    the row is immutable and a recomputation reports a conflict instead.
    """
    __tablename__ = "monthly_payout_statements"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    staff_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    period = Column(String(7), nullable=False, index=True)

    client_breakdown = Column(JSON, nullable=False, default=dict)  # bucket -> client count
    total_clients = Column(Integer, default=0, nullable=False)
    exempt_clients = Column(Integer, default=0, nullable=False)

    gross_revenue_minor = Column(Integer, default=0, nullable=False)
    discounts_applied_minor = Column(Integer, default=0, nullable=False)
    net_collected_minor = Column(Integer, default=0, nullable=False)
    base_payout_minor = Column(Integer, default=0, nullable=False)
    addon_revenue_minor = Column(Integer, default=0, nullable=False)
    addon_payout_minor = Column(Integer, default=0, nullable=False)
    platform_fee_minor = Column(Integer, default=0, nullable=False)
    total_payout_minor = Column(Integer, default=0, nullable=False)

    used_fallback_rule = Column(Boolean, default=False, nullable=False)
    fallback_rule_targets = Column(JSON, nullable=False, default=list)  # catalog ids priced with the default rule

    is_paid = Column(Boolean, default=False, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)
    paid_by = Column(String, nullable=True)

    computed_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("staff_id", "period", name="uq_monthly_payout_statements_staff_period"),
    )

    def computed_fields(self) -> dict:
        """Everything a recomputation may change; used for audit and change detection."""
        return {
            "client_breakdown": dict(self.client_breakdown or {}),
            "total_clients": self.total_clients,
            "exempt_clients": self.exempt_clients,
            "gross_revenue_minor": self.gross_revenue_minor,
            "discounts_applied_minor": self.discounts_applied_minor,
            "net_collected_minor": self.net_collected_minor,
            "base_payout_minor": self.base_payout_minor,
            "addon_revenue_minor": self.addon_revenue_minor,
            "addon_payout_minor": self.addon_payout_minor,
            "platform_fee_minor": self.platform_fee_minor,
            "total_payout_minor": self.total_payout_minor,
            "used_fallback_rule": self.used_fallback_rule,
            "fallback_rule_targets": list(self.fallback_rule_targets or []),
        }
