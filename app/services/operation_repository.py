"""
Tax Practice Operations
Operation repository — storage seam for cycle generation.

Business context:
    The generator only needs three things from storage: the list of
    assignments eligible on a run date, an existence check for a
    (client, template, period) key, and an all-or-nothing write of one
    cycle with its tasks and audit entry.  Keeping them behind one class
    lets the generator be exercised against a stub in unit tests and lets
    the SQLAlchemy implementation own every commit/rollback.

Invariant:
    ``create_cycle_with_tasks`` either commits the cycle, every task and
    the audit row together, or rolls the session back and re-raises.
    The unique index ``uq_operation_cycles_period`` is the final guard
    against concurrent generators; its IntegrityError propagates to the
    caller untouched so it can be reported as a duplicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import or_, select

from app.models import db
from app.models.audit import write_audit
from app.models.operations import (
    ClientOperationAssignment,
    OperationCycle,
    OperationTask,
    OperationTemplate,
    OperationTemplateTask,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleKey:
    """Idempotency key of an operation cycle."""

    client_id: int
    template_id: int
    period_start: date
    period_end: date

    def __str__(self) -> str:
        return (f"client={self.client_id} template={self.template_id} "
                f"{self.period_start}..{self.period_end}")


class OperationRepository:
    """SQLAlchemy-backed storage for operation cycle generation."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    # ── Reads ────────────────────────────────────────────────────────────

    def find_eligible_assignments(self, run_date: date) -> list[ClientOperationAssignment]:
        """Active, auto-generating assignments whose template is active and
        auto-generating and whose [starts_on, ends_on] window covers *run_date*.
        Open-ended bounds are unbounded.
        """
        stmt = (
            select(ClientOperationAssignment)
            .join(OperationTemplate,
                  OperationTemplate.id == ClientOperationAssignment.operation_template_id)
            .where(
                ClientOperationAssignment.assignment_status == "active",
                ClientOperationAssignment.auto_generate.is_(True),
                OperationTemplate.is_active.is_(True),
                OperationTemplate.auto_generate.is_(True),
                or_(ClientOperationAssignment.starts_on.is_(None),
                    ClientOperationAssignment.starts_on <= run_date),
                or_(ClientOperationAssignment.ends_on.is_(None),
                    ClientOperationAssignment.ends_on >= run_date),
            )
            .order_by(ClientOperationAssignment.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def cycle_exists(self, key: CycleKey) -> bool:
        stmt = select(OperationCycle.id).where(
            OperationCycle.client_id == key.client_id,
            OperationCycle.operation_template_id == key.template_id,
            OperationCycle.period_start == key.period_start,
            OperationCycle.period_end == key.period_end,
        ).limit(1)
        return self.session.execute(stmt).first() is not None

    def active_template_tasks(self, template: OperationTemplate) -> list[OperationTemplateTask]:
        """Active template tasks by position (nulls last), creation order on ties."""
        stmt = (
            select(OperationTemplateTask)
            .where(
                OperationTemplateTask.operation_template_id == template.id,
                OperationTemplateTask.is_active.is_(True),
            )
            .order_by(
                OperationTemplateTask.position.asc().nullslast(),
                OperationTemplateTask.id.asc(),
            )
        )
        return list(self.session.execute(stmt).scalars().all())

    # ── Writes ───────────────────────────────────────────────────────────

    def create_cycle_with_tasks(
        self,
        *,
        cycle_fields: dict,
        task_fields: list[dict],
        actor=None,
        audit_message: str | None = None,
    ) -> OperationCycle:
        """Persist one cycle, its tasks and a ``created`` audit row atomically."""
        session = self.session
        try:
            cycle = OperationCycle(**cycle_fields)
            session.add(cycle)
            # Flush first so a unique-period conflict surfaces before task rows.
            session.flush()

            for fields in task_fields:
                session.add(OperationTask(operation_cycle_id=cycle.id, **fields))
            session.flush()

            write_audit(auditable=cycle, action="created", user=actor, message=audit_message)
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.debug("Persisted operation cycle %s with %d tasks", cycle.id, len(task_fields))
        return cycle

    def rollback(self) -> None:
        self.session.rollback()
