"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database round-trip plus scheduler state
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Scheduled jobs (informational) ───────────────────────────────
    if overall:
        jobs = ScheduledJob.query.order_by(ScheduledJob.job_name).all()
        checks["scheduler"] = {
            job.job_name: {
                "enabled": job.is_enabled,
                "last_run_at": job.last_run_at.isoformat() if job.last_run_at else None,
                "last_run_status": job.last_run_status,
            }
            for job in jobs
        }

    checks["app"] = {
        "name": "Tax Practice Operations",
        "timezone": current_app.config.get("APP_TIMEZONE", "UTC"),
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
