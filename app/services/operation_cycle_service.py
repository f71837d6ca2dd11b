"""
Tax Practice Operations
Operation Cycle Service — materializes one cycle and its task checklist.

Validation order (first failure wins):
    1. period_start and period_end present      → rejected
    2. period_end on or after period_start      → rejected
    3. template is active                       → rejected
    4. no cycle yet for (client, template, period) → duplicate

Creation is a single transaction (see OperationRepository).  A unique-index
violation raised at commit time means a concurrent generator won the race;
it is reported as ``duplicate``, never as a failure.

Usage:
    from app.services.operation_cycle_service import generate_operation_cycle

    outcome = generate_operation_cycle(
        client=client, template=template,
        period_start=date(2026, 1, 1), period_end=date(2026, 1, 31),
        generation_mode="manual", generated_by=user,
    )
    if outcome.is_created:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum

from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ValidationError
from app.models.operations import GENERATION_MODES
from app.services.operation_repository import CycleKey, OperationRepository
from app.utils.helpers import app_timezone, utcnow

logger = logging.getLogger(__name__)

MSG_PERIOD_REQUIRED = "Period start and period end are required"
MSG_INVALID_RANGE = "Period end must be on or after period start"
MSG_TEMPLATE_INACTIVE = "Operation template is not active"
MSG_DUPLICATE = "Operation cycle already exists for this period"


class GenerationStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CycleGenerationOutcome:
    """Discriminated result of one materialization attempt."""

    status: GenerationStatus
    cycle: object | None = None
    message: str | None = None

    @classmethod
    def created(cls, cycle) -> "CycleGenerationOutcome":
        return cls(GenerationStatus.CREATED, cycle=cycle)

    @classmethod
    def duplicate(cls) -> "CycleGenerationOutcome":
        return cls(GenerationStatus.DUPLICATE, message=MSG_DUPLICATE)

    @classmethod
    def rejected(cls, message: str) -> "CycleGenerationOutcome":
        return cls(GenerationStatus.REJECTED, message=message)

    @classmethod
    def skipped(cls, message: str | None = None) -> "CycleGenerationOutcome":
        return cls(GenerationStatus.SKIPPED, message=message)

    @property
    def is_created(self) -> bool:
        return self.status is GenerationStatus.CREATED

    @property
    def is_duplicate(self) -> bool:
        return self.status is GenerationStatus.DUPLICATE

    @property
    def is_rejected(self) -> bool:
        return self.status is GenerationStatus.REJECTED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "cycle_id": getattr(self.cycle, "id", None),
            "message": self.message,
        }


# ── Pure helpers ─────────────────────────────────────────────────────────────

def cycle_label(template_name: str, period_start: date, period_end: date) -> str:
    return f"{template_name} ({period_start.isoformat()} - {period_end.isoformat()})"


def compute_due_at(template_task, period_start: date, period_end: date, tz=None) -> datetime | None:
    """Due timestamp for a generated task, as an aware UTC datetime.

    Base is period_end end-of-day when the offset counts from ``cycle_end``,
    otherwise period_start start-of-day, both in the application zone.
    No offset value → no due date.
    """
    value = template_task.due_offset_value
    if value is None:
        return None

    tz = tz or app_timezone()
    if template_task.due_offset_from == "cycle_end":
        base = datetime.combine(period_end, time.max, tzinfo=tz)
    else:
        base = datetime.combine(period_start, time.min, tzinfo=tz)

    if template_task.due_offset_unit == "hours":
        due = base + timedelta(hours=value)
    else:
        due = base + timedelta(days=value)
    return due.astimezone(timezone.utc)


def build_task_fields(template_tasks, *, client_id: int, period_start: date,
                      period_end: date, tz=None) -> list[dict]:
    """Column values for each generated task, in template order.

    Template position wins; tasks without one take their 1-based rank.
    """
    fields = []
    for rank, template_task in enumerate(template_tasks, start=1):
        if not (template_task.title or "").strip():
            raise ValidationError(
                f"Template task {template_task.id} has no title",
                details={"title": "required"},
            )
        fields.append({
            "operation_template_task_id": template_task.id,
            "client_id": client_id,
            "title": template_task.title,
            "description": template_task.description,
            "position": template_task.position if template_task.position is not None else rank,
            "status": "not_started",
            "assigned_to_id": template_task.default_assignee_id,
            "due_at": compute_due_at(template_task, period_start, period_end, tz),
            "evidence_required": bool(template_task.evidence_required),
        })
    return fields


# ── Service entry point ──────────────────────────────────────────────────────

def generate_operation_cycle(
    *,
    client,
    template,
    period_start: date | None,
    period_end: date | None,
    generation_mode: str = "manual",
    generated_by=None,
    assignment=None,
    repository: OperationRepository | None = None,
) -> CycleGenerationOutcome:
    """Create one cycle plus its checklist for the given period, exactly once."""
    repo = repository or OperationRepository()

    if period_start is None or period_end is None:
        return CycleGenerationOutcome.rejected(MSG_PERIOD_REQUIRED)
    if period_end < period_start:
        return CycleGenerationOutcome.rejected(MSG_INVALID_RANGE)
    if not template.is_active:
        return CycleGenerationOutcome.rejected(MSG_TEMPLATE_INACTIVE)
    if generation_mode not in GENERATION_MODES:
        return CycleGenerationOutcome.rejected(f"Invalid generation mode: {generation_mode}")

    key = CycleKey(client.id, template.id, period_start, period_end)
    if repo.cycle_exists(key):
        return CycleGenerationOutcome.duplicate()

    template_name = template.name
    try:
        task_fields = build_task_fields(
            repo.active_template_tasks(template),
            client_id=client.id,
            period_start=period_start,
            period_end=period_end,
        )
        cycle = repo.create_cycle_with_tasks(
            cycle_fields={
                "client_id": client.id,
                "operation_template_id": template.id,
                "client_operation_assignment_id": getattr(assignment, "id", None),
                "period_start": period_start,
                "period_end": period_end,
                "cycle_label": cycle_label(template_name, period_start, period_end),
                "generation_mode": generation_mode,
                "status": "active",
                "generated_at": utcnow(),
                "generated_by_id": getattr(generated_by, "id", None),
            },
            task_fields=task_fields,
            actor=generated_by,
            audit_message=(
                f"Generated {generation_mode} operation cycle for {template_name} "
                f"({period_start.isoformat()} to {period_end.isoformat()})"
            ),
        )
    except IntegrityError as exc:
        # Lost a race against a concurrent generator, or some other constraint.
        if repo.cycle_exists(key):
            logger.info("Operation cycle %s created concurrently; treating as duplicate", key)
            return CycleGenerationOutcome.duplicate()
        logger.warning("Operation cycle %s rejected by constraint: %s", key, exc.orig)
        return CycleGenerationOutcome.rejected(str(exc.orig))
    except ValidationError as exc:
        repo.rollback()
        return CycleGenerationOutcome.rejected(str(exc))
    except Exception as exc:
        repo.rollback()
        logger.exception("Operation cycle generation failed for %s", key)
        return CycleGenerationOutcome.rejected(str(exc) or exc.__class__.__name__)

    logger.info("Generated %s operation cycle %s (%s)", generation_mode, cycle.id, key)
    return CycleGenerationOutcome.created(cycle)
