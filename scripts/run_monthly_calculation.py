#!/usr/bin/env python3
"""
Cron entry point: compute payout statements for a period.

Usage: python scripts/run_monthly_calculation.py [YYYY-MM]
Defaults to the current month. Safe to re-run; paid statements are reported,
never overwritten.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.core.errors import InvalidInputError, JobAlreadyRunningError
from app.core.log_config import configure_logging
from app.db.session import SessionLocal


def run_calculation(period: str = None) -> int:
    from app.services.payout_aggregator import run_monthly_calculation

    db = SessionLocal()
    try:
        print(f"🔄 Calculating payouts for {period or 'the current month'}...")
        summary = run_monthly_calculation(db, period=period).as_dict()
        print(
            f"✅ {summary['period']}: {summary['coaches_processed']} staff, "
            f"gross {summary['gross_revenue']} {summary['currency']}, "
            f"discounts {summary['discounts_applied_kwd']}, net {summary['net_collected']}, "
            f"payout {summary['total_coach_payout']}, platform {summary['platform_retained']}"
        )
        for conflict in summary["conflicts"]:
            print(f"🔒 {conflict['detail']} {conflict['context']}")
        for error in summary["errors"]:
            print(f"⚠️  {error['entity']} {error['entity_id']}: {error['detail']}")
        if summary["fallback_rule_targets"]:
            print(f"⚠️  Default payout rule used for: {', '.join(summary['fallback_rule_targets'])}")
        return 1 if summary["errors"] else 0
    except InvalidInputError as e:
        print(f"❌ {e.message}")
        print("Usage: python scripts/run_monthly_calculation.py [YYYY-MM]")
        return 2
    except JobAlreadyRunningError as e:
        print(f"⏳ {e.message}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    configure_logging()
    sys.exit(run_calculation(sys.argv[1] if len(sys.argv) > 1 else None))
