"""
Tax Practice Operations
Scheduling models.

Models:
    - ScheduledJob: one row per registered job; schedule config plus the
      outcome of its most recent run
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

JOB_STATUSES = {"active", "paused", "completed", "failed"}
RUN_STATUSES = {"success", "failed", "skipped"}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class ScheduledJob(db.Model):
    """
    Schedule registry and last-run ledger.

    The external trigger decides *when* a job runs; this row only says
    whether it may run (``is_enabled``) and what happened last time.
    ``last_run_result`` holds the job's own summary, e.g. the generated /
    skipped / errors counts of the operation cycle batch.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="Registry key, e.g. auto_generate_operation_cycles")
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="cron", comment="cron, interval, once")
    schedule_config = db.Column(db.JSON, default=dict,
                                comment="{hour, minute, timezone, description}")
    status = db.Column(db.String(20), default="active", comment="active, paused, completed, failed")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success, failed, skipped")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Fold one execution into the counters; ``last_error`` survives later successes."""
        if status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {status}")
        self.last_run_at = _utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    @property
    def schedule_description(self):
        return (self.schedule_config or {}).get("description")

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_type": self.schedule_type,
            "schedule_config": self.schedule_config,
            "schedule_description": self.schedule_description,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": _iso(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
