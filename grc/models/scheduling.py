"""
GRC Core Platform
Scheduled job bookkeeping.

One row per registered job: how often it should run, whether it is
enabled, and the outcome of its most recent run.
"""

from datetime import datetime, timedelta, timezone

from grc.models import db

RUN_STATUSES = ("success", "failed", "skipped")


class ScheduledJob(db.Model):
    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_minutes = db.Column(db.Integer, nullable=False)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_status = db.Column(db.String(20), nullable=True, comment="success, failed, skipped")
    last_duration_ms = db.Column(db.Integer, nullable=True)
    last_result = db.Column(db.JSON, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    run_count = db.Column(db.Integer, nullable=False, default=0)
    failure_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def next_run_at(self):
        if self.last_run_at is None:
            return None
        last = self.last_run_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return last + timedelta(minutes=self.interval_minutes)

    def is_due(self, now: datetime) -> bool:
        """Enabled and never run, or its interval has elapsed since the last run."""
        if not self.is_enabled:
            return False
        next_run = self.next_run_at
        return next_run is None or now >= next_run

    def record_run(self, *, started_at, status, duration_ms, result=None, error=None):
        self.last_run_at = started_at
        self.last_status = status
        self.last_duration_ms = duration_ms
        self.last_result = result
        self.last_error = error
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.failure_count = (self.failure_count or 0) + 1

    def to_dict(self):
        next_run = self.next_run_at
        return {
            "jobName": self.job_name,
            "description": self.description,
            "intervalMinutes": self.interval_minutes,
            "isEnabled": self.is_enabled,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastStatus": self.last_status,
            "lastDurationMs": self.last_duration_ms,
            "lastResult": self.last_result,
            "lastError": self.last_error,
            "runCount": self.run_count,
            "failureCount": self.failure_count,
            "nextRunAt": next_run.isoformat() if next_run else None,
        }

    def __repr__(self):
        state = "on" if self.is_enabled else "off"
        return f"<ScheduledJob {self.job_name} every {self.interval_minutes}m [{state}]>"
