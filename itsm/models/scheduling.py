"""
ITSM Change Lifecycle Engine
Scheduled job model.

One row per registered job. The process never runs jobs on its own; the
row records how often the external trigger is expected to call, whether the
job is paused, and how the most recent run went.
"""

from datetime import datetime, timezone

from itsm.models import db
from itsm.utils.helpers import isoformat_utc


class ScheduledJob(db.Model):
    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_seconds = db.Column(db.Integer, nullable=False, default=60,
                                 comment="Expected trigger cadence")
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True)
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    run_count = db.Column(db.Integer, nullable=False, default=0)
    failure_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> str:
        return "active" if self.is_enabled else "paused"

    def record_run(self, *, status, duration_ms, result=None, error=None, finished_at=None):
        """Fold one execution into the row's counters."""
        self.last_run_at = finished_at or datetime.now(timezone.utc)
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.failure_count = (self.failure_count or 0) + 1
            self.last_error = error
        else:
            self.last_error = None

    def to_dict(self):
        return {
            "job_name": self.job_name,
            "description": self.description,
            "interval_seconds": self.interval_seconds,
            "is_enabled": self.is_enabled,
            "status": self.status,
            "last_run_at": isoformat_utc(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
