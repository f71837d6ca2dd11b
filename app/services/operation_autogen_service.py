"""
Tax Practice Operations
Auto-generation of recurring operation cycles.

Business context:
    Invoked once a day by the scheduler (job ``auto_generate_operation_cycles``)
    or on demand by an admin.  For every eligible client assignment it
    resolves the period containing the run date and asks the cycle service
    to materialize it.  Re-running for the same day is a no-op: existing
    periods come back as duplicates and are counted as skipped.

Outcome mapping:
    created   → generated_count += 1
    duplicate → skipped_count += 1
    skipped   → skipped_count += 1   (period not resolvable, silent)
    rejected  → errors += "Assignment <id>: <message>"

One assignment's failure never aborts the batch.  Only a failure to
enumerate eligible assignments propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date

from app.services.operation_cycle_service import (
    CycleGenerationOutcome,
    GenerationStatus,
    generate_operation_cycle,
)
from app.services.operation_periods import Period, resolve_period
from app.services.operation_repository import OperationRepository
from app.utils.helpers import local_today

logger = logging.getLogger(__name__)


@dataclass
class AutoGenerateResult:
    """Aggregate of one batch run."""

    generated_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict:
        return {
            "generated_count": self.generated_count,
            "skipped_count": self.skipped_count,
            "errors": list(self.errors),
        }


def fold_outcome(result: AutoGenerateResult, assignment_id, outcome: CycleGenerationOutcome) -> AutoGenerateResult:
    """Combine one assignment's outcome into the running aggregate.

    Returns a new result; *result* is left untouched.
    """
    if outcome.status is GenerationStatus.CREATED:
        return replace(result, generated_count=result.generated_count + 1,
                       errors=list(result.errors))
    if outcome.status in (GenerationStatus.DUPLICATE, GenerationStatus.SKIPPED):
        return replace(result, skipped_count=result.skipped_count + 1,
                       errors=list(result.errors))
    return replace(result, errors=[*result.errors, f"Assignment {assignment_id}: {outcome.message}"])


def anchor_for(assignment) -> date | None:
    """Explicit phase anchor of an assignment, or None to use the rule default."""
    return assignment.anchor_date or assignment.starts_on


def period_for(assignment, run_date: date) -> Period | None:
    return resolve_period(assignment.template.recurrence_rule, anchor_for(assignment), run_date)


def auto_generate_operation_cycles(
    run_date: date | None = None,
    generated_by=None,
    repository: OperationRepository | None = None,
) -> AutoGenerateResult:
    """Generate the current cycle for every eligible assignment.

    Args:
        run_date: Date to resolve periods against.  Defaults to today in the
            application time zone (APP_TIMEZONE), not UTC.
        generated_by: Acting user, or None for unattended runs.
        repository: Storage seam; defaults to the SQLAlchemy repository.
    """
    run_date = run_date or local_today()
    repo = repository or OperationRepository()
    result = AutoGenerateResult()

    assignments = repo.find_eligible_assignments(run_date)
    logger.debug("Auto-generate %s: %d eligible assignments", run_date, len(assignments))

    # Ids are read before any commit expires the loaded instances.
    eligible = [(assignment.id, assignment) for assignment in assignments]

    for assignment_id, assignment in eligible:
        try:
            period = period_for(assignment, run_date)
            if period is None:
                outcome = CycleGenerationOutcome.skipped("Recurrence not resolvable for run date")
            else:
                outcome = generate_operation_cycle(
                    client=assignment.client,
                    template=assignment.template,
                    assignment=assignment,
                    period_start=period.start,
                    period_end=period.end,
                    generation_mode="auto",
                    generated_by=generated_by,
                    repository=repo,
                )
        except Exception as exc:
            repo.rollback()
            logger.exception("Auto-generate failed for assignment %s", assignment_id)
            outcome = CycleGenerationOutcome.rejected(str(exc) or exc.__class__.__name__)

        if outcome.is_rejected:
            logger.warning("Assignment %s rejected: %s", assignment_id, outcome.message)
        result = fold_outcome(result, assignment_id, outcome)

    logger.info(
        "Auto-generate operation cycles completed for %s: generated=%d, skipped=%d, errors=%d",
        run_date, result.generated_count, result.skipped_count, result.error_count,
    )
    return result
