#!/usr/bin/env python3
"""
Cron entry point: apply due lifecycle transitions (active -> past_due ->
inactive), queue billing reminders, then hand pending reminders to the
notification service.

Usage: python scripts/run_lifecycle_sweep.py [--no-dispatch]
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.core.errors import JobAlreadyRunningError
from app.core.log_config import configure_logging
from app.db.session import SessionLocal


def run_sweep(dispatch: bool = True) -> int:
    from app.services.billing_lifecycle import run_lifecycle_sweep
    from app.services.reminder_dispatch import dispatch_pending_reminders

    db = SessionLocal()
    try:
        print("🔄 Running lifecycle sweep...")
        result = run_lifecycle_sweep(db)
        print(
            f"✅ Evaluated {result.evaluated}: {result.marked_past_due} past due, "
            f"{result.marked_inactive} inactive, {result.skipped_exempt} exempt skipped, "
            f"{result.reminders_queued} reminders queued"
        )
        for error in result.errors:
            print(f"⚠️  {error['error']}: {error['detail']} {error['context']}")

        if dispatch:
            sent = dispatch_pending_reminders(db)
            print(f"📨 Reminders: {sent.as_dict()}")
        return 1 if result.errors else 0
    except JobAlreadyRunningError as e:
        print(f"⏳ {e.message}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    configure_logging()
    sys.exit(run_sweep(dispatch="--no-dispatch" not in sys.argv[1:]))
