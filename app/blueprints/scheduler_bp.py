"""
Tax Practice Operations
Scheduler Blueprint — scheduled job management.

Endpoints:
    GET   /api/v1/scheduler/jobs                      — registered jobs with DB status
    GET   /api/v1/scheduler/jobs/<job_name>           — single job status
    POST  /api/v1/scheduler/jobs/<job_name>/trigger   — run a job now
    PATCH /api/v1/scheduler/jobs/<job_name>/toggle    — enable / disable
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.services.scheduler_service import SchedulerService
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

scheduler_bp = Blueprint("scheduler", __name__, url_prefix="/api/v1")

# Body keys forwarded to job functions on manual trigger.
_TRIGGER_PARAMS = ("run_date", "generated_by_id")


@scheduler_bp.route("/scheduler/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List all registered jobs with their DB status."""
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@scheduler_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    job = SchedulerService.get_job_status(job_name)
    if not job:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(job)


@scheduler_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    """Manually trigger a scheduled job.

    Body (JSON, optional):
        run_date (YYYY-MM-DD), generated_by_id (int)
    """
    data = request.get_json(silent=True) or {}
    params = {k: data[k] for k in _TRIGGER_PARAMS if data.get(k) is not None}

    result = SchedulerService.run_job(job_name, **params)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return jsonify(result), 404
    return jsonify(result)


@scheduler_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")

    return jsonify(result)
