"""
Run-locks for batch jobs keyed by (job name, period).

A job may not be re-entered for the same key while a run holds the lock;
different jobs (or periods) run independently. A lock older than
JOB_LOCK_TTL_MINUTES belongs to a crashed run and is taken over.
"""
import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from app.core.config import settings
from app.core.errors import JobAlreadyRunningError
from app.core.timeutil import utcnow
from app.models.job_run_lock import JobRunLock

logger = logging.getLogger(__name__)

LIFECYCLE_SWEEP_JOB = "lifecycle_sweep"
MONTHLY_PAYOUT_JOB = "monthly_payout_calculation"


def acquire_job_lock(db: Session, job_name: str, period_key: str, now: Optional[datetime] = None) -> str:
    """Take the lock and commit it. Returns the owner token needed to release it."""
    now = now or utcnow()
    existing = db.query(JobRunLock).filter(
        JobRunLock.job_name == job_name,
        JobRunLock.period_key == period_key,
    ).first()
    if existing is not None:
        if existing.acquired_at > now - timedelta(minutes=settings.JOB_LOCK_TTL_MINUTES):
            raise JobAlreadyRunningError(
                f"{job_name} is already running for {period_key}",
                {"job": job_name, "period": period_key, "since": existing.acquired_at},
            )
        logger.warning(
            f"[JOB_LOCK] Taking over stale lock {job_name}/{period_key} held since {existing.acquired_at}"
        )
        db.delete(existing)
        db.flush()

    owner = secrets.token_hex(8)
    db.add(JobRunLock(job_name=job_name, period_key=period_key, owner=owner, acquired_at=now))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise JobAlreadyRunningError(
            f"{job_name} is already running for {period_key}",
            {"job": job_name, "period": period_key},
        )
    logger.info(f"[JOB_LOCK] Acquired {job_name}/{period_key}")
    return owner


def release_job_lock(db: Session, job_name: str, period_key: str, owner: str) -> None:
    db.query(JobRunLock).filter(
        JobRunLock.job_name == job_name,
        JobRunLock.period_key == period_key,
        JobRunLock.owner == owner,
    ).delete(synchronize_session=False)
    db.commit()
    logger.info(f"[JOB_LOCK] Released {job_name}/{period_key}")


@contextmanager
def job_lock(db: Session, job_name: str, period_key: str, now: Optional[datetime] = None):
    """
    Hold the run-lock for the duration of the block. Uncommitted work from a
    failed or cancelled block is rolled back before the lock is released.
    """
    owner = acquire_job_lock(db, job_name, period_key, now)
    try:
        yield owner
    except BaseException:
        db.rollback()
        raise
    finally:
        release_job_lock(db, job_name, period_key, owner)
