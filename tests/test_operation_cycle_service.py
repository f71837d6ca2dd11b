"""
Tax Practice Operations
Tests — cycle materializer (generate_operation_cycle).

Covers:
    1. Successful creation: tasks, order, positions, due dates, audit
    2. Validation: missing period, inverted range, inactive template
    3. Idempotency: pre-check duplicate and commit-time race → duplicate
    4. Pure helpers: cycle_label, compute_due_at
"""

from datetime import date, datetime, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from app.models import db
from app.models.audit import AuditLog, write_audit
from app.models.operations import OperationCycle, OperationTask
from app.services.operation_cycle_service import (
    MSG_DUPLICATE,
    MSG_INVALID_RANGE,
    MSG_PERIOD_REQUIRED,
    MSG_TEMPLATE_INACTIVE,
    GenerationStatus,
    compute_due_at,
    cycle_label,
    generate_operation_cycle,
)
from app.services.operation_repository import OperationRepository

JAN_START = date(2026, 1, 1)
JAN_END = date(2026, 1, 31)


def _naive(dt):
    """SQLite hands back naive datetimes; compare in naive UTC."""
    return dt.astimezone(timezone.utc).replace(tzinfo=None) if dt.tzinfo else dt


def _generate(client, template, start=JAN_START, end=JAN_END, **kw):
    kw.setdefault("generation_mode", "manual")
    return generate_operation_cycle(
        client=client, template=template, period_start=start, period_end=end, **kw,
    )


@pytest.fixture()
def template(make_template):
    return make_template()


# ═══════════════════════════════════════════════════════════════════════════
#  1. Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:
    def test_creates_cycle_with_one_task_per_active_template_task(
        self, tax_client, template, make_template_task, staff_user,
    ):
        make_template_task(template, "Reconcile bank", position=1)
        make_template_task(template, "Review payroll", position=2)
        make_template_task(template, "Retired step", position=3, is_active=False)

        outcome = _generate(tax_client, template, generated_by=staff_user)

        assert outcome.status is GenerationStatus.CREATED
        assert outcome.is_created
        cycle = db.session.get(OperationCycle, outcome.cycle.id)
        assert cycle.cycle_label == "Monthly Bookkeeping (2026-01-01 - 2026-01-31)"
        assert cycle.generation_mode == "manual"
        assert cycle.status == "active"
        assert cycle.generated_by_id == staff_user.id
        assert cycle.generated_at is not None
        assert [t.title for t in cycle.ordered_tasks()] == ["Reconcile bank", "Review payroll"]
        assert all(t.status == "not_started" for t in cycle.ordered_tasks())
        assert all(t.client_id == tax_client.id for t in cycle.ordered_tasks())

    def test_tasks_follow_template_position_not_creation_order(
        self, tax_client, template, make_template_task,
    ):
        make_template_task(template, "Second", position=5)
        make_template_task(template, "First", position=1)

        outcome = _generate(tax_client, template)

        tasks = outcome.cycle.ordered_tasks()
        assert [t.title for t in tasks] == ["First", "Second"]
        assert [t.position for t in tasks] == [1, 5]

    def test_missing_position_sorts_last_and_takes_rank(
        self, tax_client, template, make_template_task,
    ):
        make_template_task(template, "Unpositioned", position=None)
        make_template_task(template, "Positioned", position=1)

        outcome = _generate(tax_client, template)

        tasks = outcome.cycle.ordered_tasks()
        assert [(t.title, t.position) for t in tasks] == [("Positioned", 1), ("Unpositioned", 2)]

    def test_task_copies_assignee_evidence_and_due_date(
        self, tax_client, template, make_template_task, staff_user,
    ):
        make_template_task(
            template, "File return", position=1,
            default_assignee_id=staff_user.id, evidence_required=True,
            due_offset_value=5, due_offset_unit="days", due_offset_from="cycle_start",
        )
        make_template_task(template, "No due date", position=2)

        outcome = _generate(tax_client, template)

        first, second = outcome.cycle.ordered_tasks()
        assert first.assigned_to_id == staff_user.id
        assert first.evidence_required is True
        assert _naive(first.due_at) == datetime(2026, 1, 6, 0, 0)
        assert second.due_at is None

    def test_writes_created_audit_record(self, tax_client, template, make_template_task, staff_user):
        make_template_task(template, "Reconcile bank", position=1)

        outcome = _generate(tax_client, template, generated_by=staff_user)

        log = AuditLog.query.filter_by(auditable_type="OperationCycle",
                                       auditable_id=str(outcome.cycle.id)).one()
        assert log.action == "created"
        assert log.user_id == staff_user.id
        assert log.message == (
            "Generated manual operation cycle for Monthly Bookkeeping (2026-01-01 to 2026-01-31)"
        )

    def test_template_without_tasks_creates_empty_cycle(self, tax_client, template):
        outcome = _generate(tax_client, template, generation_mode="auto")
        assert outcome.is_created
        assert outcome.cycle.ordered_tasks() == []
        assert outcome.cycle.generation_mode == "auto"

    def test_links_assignment(self, tax_client, template, make_assignment):
        assignment = make_assignment(tax_client, template)
        outcome = _generate(tax_client, template, assignment=assignment)
        assert outcome.cycle.client_operation_assignment_id == assignment.id


# ═══════════════════════════════════════════════════════════════════════════
#  2. Validation
# ═══════════════════════════════════════════════════════════════════════════

class TestRejections:
    def test_inverted_range_rejected_without_rows(self, tax_client, template, make_template_task):
        make_template_task(template, "Reconcile bank", position=1)

        outcome = _generate(tax_client, template, start=date(2026, 2, 1), end=date(2026, 1, 1))

        assert outcome.status is GenerationStatus.REJECTED
        assert outcome.message == MSG_INVALID_RANGE
        assert OperationCycle.query.count() == 0
        assert OperationTask.query.count() == 0

    @pytest.mark.parametrize("start,end", [(None, JAN_END), (JAN_START, None), (None, None)])
    def test_missing_period_rejected(self, tax_client, template, start, end):
        outcome = _generate(tax_client, template, start=start, end=end)
        assert outcome.is_rejected
        assert outcome.message == MSG_PERIOD_REQUIRED
        assert OperationCycle.query.count() == 0

    def test_inactive_template_rejected_without_rows(self, tax_client, make_template, make_template_task):
        template = make_template(name="Retired", is_active=False)
        make_template_task(template, "Step", position=1)

        outcome = _generate(tax_client, template)

        assert outcome.is_rejected
        assert outcome.message == MSG_TEMPLATE_INACTIVE
        assert OperationCycle.query.count() == 0
        assert OperationTask.query.count() == 0

    def test_range_checked_before_template_state(self, tax_client, make_template):
        template = make_template(name="Retired", is_active=False)
        outcome = _generate(tax_client, template, start=date(2026, 2, 1), end=date(2026, 1, 1))
        assert outcome.message == MSG_INVALID_RANGE

    def test_single_day_period_is_valid(self, tax_client, template):
        outcome = _generate(tax_client, template, start=JAN_START, end=JAN_START)
        assert outcome.is_created

    def test_failure_after_cycle_insert_leaves_no_rows(
        self, tax_client, template, make_template_task, monkeypatch,
    ):
        make_template_task(template, "Reconcile bank", position=1)
        make_template_task(template, "Review payroll", position=2)

        def _audit_down(**kw):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr("app.services.operation_repository.write_audit", _audit_down)

        outcome = _generate(tax_client, template)

        assert outcome.is_rejected
        assert "audit store unavailable" in outcome.message
        assert OperationCycle.query.count() == 0
        assert OperationTask.query.count() == 0
        assert AuditLog.query.count() == 0

    def test_unknown_generation_mode_rejected(self, tax_client, template):
        outcome = _generate(tax_client, template, generation_mode="scheduled")
        assert outcome.is_rejected
        assert OperationCycle.query.count() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  3. Idempotency
# ═══════════════════════════════════════════════════════════════════════════

class _StaleExistenceRepository(OperationRepository):
    """Simulates a concurrent generator: the first existence check misses."""

    def __init__(self):
        super().__init__()
        self.checks = 0

    def cycle_exists(self, key):
        self.checks += 1
        if self.checks == 1:
            return False
        return super().cycle_exists(key)


class TestIdempotency:
    def test_second_call_is_duplicate(self, tax_client, template, make_template_task):
        make_template_task(template, "Reconcile bank", position=1)

        first = _generate(tax_client, template)
        second = _generate(tax_client, template)

        assert first.is_created
        assert second.status is GenerationStatus.DUPLICATE
        assert second.message == MSG_DUPLICATE
        assert OperationCycle.query.count() == 1
        assert OperationTask.query.count() == 1

    def test_overlapping_but_different_period_is_not_duplicate(self, tax_client, template):
        assert _generate(tax_client, template).is_created
        assert _generate(tax_client, template, start=date(2026, 1, 15), end=JAN_END).is_created

    def test_same_period_other_client_is_not_duplicate(self, tax_client, make_client, template):
        other = make_client()
        assert _generate(tax_client, template).is_created
        assert _generate(other, template).is_created

    def test_commit_time_conflict_reported_as_duplicate(self, tax_client, template, make_template_task):
        make_template_task(template, "Reconcile bank", position=1)
        assert _generate(tax_client, template).is_created

        repo = _StaleExistenceRepository()
        outcome = _generate(tax_client, template, repository=repo)

        assert outcome.status is GenerationStatus.DUPLICATE
        assert repo.checks == 2
        assert OperationCycle.query.count() == 1
        assert OperationTask.query.count() == 1
        assert AuditLog.query.filter_by(auditable_type="OperationCycle").count() == 1


# ═══════════════════════════════════════════════════════════════════════════
#  4. Pure helpers
# ═══════════════════════════════════════════════════════════════════════════

def _offset(value, unit="days", origin="cycle_start"):
    return SimpleNamespace(due_offset_value=value, due_offset_unit=unit, due_offset_from=origin)


class TestHelpers:
    def test_cycle_label(self):
        assert cycle_label("Payroll", date(2026, 3, 1), date(2026, 3, 14)) == \
            "Payroll (2026-03-01 - 2026-03-14)"

    def test_due_at_from_cycle_start_in_days(self):
        due = compute_due_at(_offset(3), JAN_START, JAN_END, tz=ZoneInfo("UTC"))
        assert due == datetime(2026, 1, 4, tzinfo=timezone.utc)

    def test_due_at_from_cycle_end_in_hours(self):
        due = compute_due_at(_offset(2, "hours", "cycle_end"), JAN_START, JAN_END, tz=ZoneInfo("UTC"))
        assert due.date() == date(2026, 2, 1)
        assert due.hour == 1

    def test_due_at_uses_application_zone(self):
        due = compute_due_at(_offset(0), JAN_START, JAN_END, tz=ZoneInfo("America/New_York"))
        # Midnight in New York on Jan 1 is 05:00 UTC
        assert due == datetime(2026, 1, 1, 5, 0, tzinfo=timezone.utc)
        assert due.tzinfo == timezone.utc

    def test_due_at_none_without_offset(self):
        assert compute_due_at(_offset(None), JAN_START, JAN_END) is None

    def test_write_audit_rejects_unknown_action(self, template):
        with pytest.raises(ValueError):
            write_audit(auditable=template, action="archived")
        assert AuditLog.query.count() == 0
