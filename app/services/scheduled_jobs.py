"""
Tax Practice Operations
Scheduled Jobs.

Concrete job implementations invoked once per schedule tick by an external
trigger (cron / platform scheduler / manual API call).

Jobs:
    - auto_generate_operation_cycles: materialize the current recurring
      operation cycle for every eligible client assignment
"""

from __future__ import annotations

import logging
from typing import Any

from app.models import db
from app.models.auth import User
from app.services.operation_autogen_service import auto_generate_operation_cycles
from app.services.scheduler_service import register_job
from app.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Auto-generate operation cycles
# ═══════════════════════════════════════════════════════════════════════════

@register_job("auto_generate_operation_cycles")
def auto_generate_cycles(app, run_date=None, generated_by_id=None) -> dict[str, Any]:
    """Generate recurring operation cycles for all eligible assignments."""
    generated_by = db.session.get(User, generated_by_id) if generated_by_id else None
    result = auto_generate_operation_cycles(
        run_date=parse_date_input(run_date),
        generated_by=generated_by,
    )

    logger.info(
        "AutoGenerateOperationCycles completed: generated=%d, skipped=%d, errors=%d",
        result.generated_count, result.skipped_count, result.error_count,
    )
    return result.to_dict()
