"""
Tax Practice Operations
Scheduler Service.

Job registry and runner.  The process keeps no timer of its own: cron, a
platform scheduler, the ``generate-operation-cycles`` CLI command or the
``/api/v1/scheduler/jobs/<name>/trigger`` endpoint calls ``run_job`` once
per tick, and each run is recorded on its ``ScheduledJob`` row.

Each job body runs inside a fresh app context, so it gets its own
database session and commits independently of the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

UNKNOWN_JOB = "Unknown job: {name}"
NOT_INITIALIZED = "Scheduler not initialized"


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Register ``fn(app, **params)`` under ``name``.

    Usage:
        @register_job("auto_generate_operation_cycles")
        def auto_generate_cycles(app, run_date=None, generated_by_id=None):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def default_schedule(job_name: str, config: dict | None = None) -> dict:
    """Cron-style schedule stored on a new job row.

    The batch runs once a day at ``OPERATIONS_AUTO_GENERATE_HOUR`` in the
    application time zone; other jobs default to midnight.
    """
    config = config or {}
    if job_name == "auto_generate_operation_cycles":
        hour = int(config.get("OPERATIONS_AUTO_GENERATE_HOUR", 1))
        return {
            "hour": str(hour),
            "minute": "0",
            "timezone": config.get("APP_TIMEZONE", "UTC"),
            "description": f"Daily at {hour:02d}:00",
        }
    return {"hour": "0", "minute": "0", "description": "Daily at midnight"}


@dataclass
class JobRun:
    """Outcome of one ``run_job`` call, as returned to API and CLI callers."""

    job_name: str
    status: str  # success | failed | skipped
    duration_ms: int = 0
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _job_row(job_name: str) -> ScheduledJob | None:
    return ScheduledJob.query.filter_by(job_name=job_name).first()


class SchedulerService:
    """Class-level facade; ``init_app`` binds it to one Flask app."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ``ScheduledJob`` row for every registered job lacking one."""
        if cls._app is None:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                if _job_row(name) is not None:
                    continue
                summary = (fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0]
                job = ScheduledJob(
                    job_name=name,
                    description=summary,
                    schedule_type="cron",
                    schedule_config=default_schedule(name, cls._app.config),
                    status="active",
                    is_enabled=True,
                    run_count=0,
                    error_count=0,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str, **params) -> dict:
        """Run one job now; ``params`` are passed through to the job function.

        A job whose row is disabled is not run and reports ``skipped``.
        Unknown names and an uninitialised scheduler report ``error``
        without touching the database.
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"status": "error", "error": UNKNOWN_JOB.format(name=job_name)}
        if cls._app is None:
            return {"status": "error", "error": NOT_INITIALIZED}

        with cls._app.app_context():
            row = _job_row(job_name)
            if row is not None and not row.is_enabled:
                logger.info("Job %s is disabled, skipping", job_name, extra={"job_name": job_name})
                return JobRun(job_name, "skipped", error="Job is disabled").to_dict()

        run = cls._execute(job_name, fn, params)
        cls._record(run)
        return run.to_dict()

    @classmethod
    def _execute(cls, job_name: str, fn: Callable, params: dict) -> JobRun:
        started = time.monotonic()
        try:
            with cls._app.app_context():
                result = fn(cls._app, **params)
        except Exception as exc:
            logger.exception("Job %s failed", job_name, extra={"job_name": job_name})
            return JobRun(job_name, "failed", _elapsed_ms(started), error=str(exc))
        return JobRun(job_name, "success", _elapsed_ms(started), result=result)

    @classmethod
    def _record(cls, run: JobRun) -> None:
        """Persist run bookkeeping; a failure here never masks the job outcome."""
        try:
            with cls._app.app_context():
                row = _job_row(run.job_name)
                if row is None:
                    return
                row.record_run(
                    status=run.status,
                    duration_ms=run.duration_ms,
                    result=run.result if isinstance(run.result, dict) else {"output": str(run.result)},
                    error=run.error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", run.job_name)

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name in _job_registry:
            row = _job_row(name)
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": row.to_dict() if row else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        row = _job_row(job_name)
        return row.to_dict() if row else None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or pause a job; returns None for an unknown name."""
        row = _job_row(job_name)
        if row is None:
            return None
        row.is_enabled = enabled
        row.status = "active" if enabled else "paused"
        db.session.commit()
        return row.to_dict()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
