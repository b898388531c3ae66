from sqlalchemy import Column, String, DateTime, UniqueConstraint, Uuid
import uuid
from app.db.session import Base
from app.core.timeutil import utcnow


class JobRunLock(Base):
    """Held while a batch job runs for a period; the unique key blocks re-entry."""
    __tablename__ = "job_run_locks"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_name = Column(String, nullable=False)
    period_key = Column(String, nullable=False)
    owner = Column(String, nullable=False)  # random token of the run holding the lock
    acquired_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("job_name", "period_key", name="uq_job_run_locks_job_period"),
    )
