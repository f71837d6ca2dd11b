"""
Tax Practice Operations
Tests — batch driver (auto_generate_operation_cycles).

Covers:
    1. Generation per eligible assignment, idempotent re-runs
    2. Month boundaries, leap year, recurrence types end-to-end
    3. Eligibility filters
    4. Default run date in the application time zone
    5. Error aggregation without aborting the batch
    6. fold_outcome purity
"""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import text

from app.models import db
from app.models.operations import OperationCycle
from app.services import operation_autogen_service
from app.services.operation_autogen_service import (
    AutoGenerateResult,
    auto_generate_operation_cycles,
    fold_outcome,
)
from app.services.operation_cycle_service import CycleGenerationOutcome
from app.services.operation_repository import OperationRepository


def _periods():
    return sorted(
        (c.client_id, c.period_start, c.period_end)
        for c in OperationCycle.query.all()
    )


@pytest.fixture()
def monthly(make_template, make_template_task):
    template = make_template(name="Monthly Close")
    make_template_task(template, "Reconcile bank", position=1)
    make_template_task(template, "Send statements", position=2)
    return template


# ═══════════════════════════════════════════════════════════════════════════
#  1. Generation & idempotency
# ═══════════════════════════════════════════════════════════════════════════

class TestGeneration:
    def test_generates_one_cycle_per_assignment(self, tax_client, make_client, monthly, make_assignment):
        other = make_client()
        make_assignment(tax_client, monthly)
        make_assignment(other, monthly)

        result = auto_generate_operation_cycles(run_date=date(2026, 1, 15))

        assert result.generated_count == 2
        assert result.skipped_count == 0
        assert result.errors == []
        assert _periods() == sorted([
            (tax_client.id, date(2026, 1, 1), date(2026, 1, 31)),
            (other.id, date(2026, 1, 1), date(2026, 1, 31)),
        ])
        cycle = OperationCycle.query.first()
        assert cycle.generation_mode == "auto"
        assert len(cycle.ordered_tasks()) == 2

    def test_rerun_same_day_is_idempotent(self, tax_client, monthly, make_assignment):
        make_assignment(tax_client, monthly)

        first = auto_generate_operation_cycles(run_date=date(2026, 1, 15))
        second = auto_generate_operation_cycles(run_date=date(2026, 1, 15))

        assert (first.generated_count, first.skipped_count) == (1, 0)
        assert (second.generated_count, second.skipped_count) == (0, 1)
        assert second.errors == []
        assert OperationCycle.query.count() == 1

    def test_rerun_later_in_same_period_is_idempotent(self, tax_client, monthly, make_assignment):
        make_assignment(tax_client, monthly)
        auto_generate_operation_cycles(run_date=date(2026, 1, 2))
        result = auto_generate_operation_cycles(run_date=date(2026, 1, 30))
        assert result.skipped_count == 1
        assert OperationCycle.query.count() == 1

    def test_records_generating_user(self, tax_client, monthly, make_assignment, admin_user):
        make_assignment(tax_client, monthly)
        auto_generate_operation_cycles(run_date=date(2026, 1, 15), generated_by=admin_user)
        assert OperationCycle.query.one().generated_by_id == admin_user.id

    def test_no_assignments_returns_empty_result(self):
        result = auto_generate_operation_cycles(run_date=date(2026, 1, 15))
        assert result.to_dict() == {"generated_count": 0, "skipped_count": 0, "errors": []}


# ═══════════════════════════════════════════════════════════════════════════
#  2. Period boundaries per recurrence type
# ═══════════════════════════════════════════════════════════════════════════

class TestBoundaries:
    def test_month_end_then_new_month(self, tax_client, monthly, make_assignment):
        make_assignment(tax_client, monthly)

        auto_generate_operation_cycles(run_date=date(2026, 1, 31))
        auto_generate_operation_cycles(run_date=date(2026, 2, 1))

        assert _periods() == [
            (tax_client.id, date(2026, 1, 1), date(2026, 1, 31)),
            (tax_client.id, date(2026, 2, 1), date(2026, 2, 28)),
        ]

    def test_leap_year_february(self, tax_client, monthly, make_assignment):
        make_assignment(tax_client, monthly)
        auto_generate_operation_cycles(run_date=date(2024, 2, 29))
        assert _periods() == [(tax_client.id, date(2024, 2, 1), date(2024, 2, 29))]

    def test_biweekly_uses_assignment_start_as_anchor(
        self, tax_client, make_template, make_assignment,
    ):
        template = make_template(name="Payroll", recurrence_type="biweekly")
        make_assignment(tax_client, template, starts_on=date(2026, 1, 7))

        auto_generate_operation_cycles(run_date=date(2026, 1, 22))

        assert _periods() == [(tax_client.id, date(2026, 1, 21), date(2026, 2, 3))]

    def test_explicit_anchor_date_wins_over_start(self, tax_client, make_template, make_assignment):
        template = make_template(name="Payroll", recurrence_type="biweekly")
        make_assignment(tax_client, template, starts_on=date(2026, 1, 7),
                        anchor_date=date(2026, 1, 9))

        auto_generate_operation_cycles(run_date=date(2026, 1, 22))

        assert _periods() == [(tax_client.id, date(2026, 1, 9), date(2026, 1, 22))]

    def test_custom_interval(self, tax_client, make_template, make_assignment):
        template = make_template(name="Ten Day Review", recurrence_type="custom", recurrence_interval=10)
        make_assignment(tax_client, template, starts_on=date(2026, 1, 1))

        auto_generate_operation_cycles(run_date=date(2026, 1, 25))

        assert _periods() == [(tax_client.id, date(2026, 1, 21), date(2026, 1, 30))]

    def test_custom_without_interval_is_skipped_silently(self, tax_client, make_template, make_assignment):
        template = make_template(name="Broken Custom", recurrence_type="custom", recurrence_interval=None)
        make_assignment(tax_client, template)

        result = auto_generate_operation_cycles(run_date=date(2026, 1, 25))

        assert result.generated_count == 0
        assert result.skipped_count == 1
        assert result.errors == []
        assert OperationCycle.query.count() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  3. Eligibility
# ═══════════════════════════════════════════════════════════════════════════

class TestEligibility:
    @pytest.mark.parametrize("assignment_kw", [
        {"assignment_status": "paused"},
        {"assignment_status": "inactive"},
        {"auto_generate": False},
        {"starts_on": date(2026, 2, 1)},
        {"ends_on": date(2026, 1, 14)},
    ])
    def test_ineligible_assignment_not_generated(self, tax_client, monthly, make_assignment, assignment_kw):
        make_assignment(tax_client, monthly, **assignment_kw)

        result = auto_generate_operation_cycles(run_date=date(2026, 1, 15))

        assert result.to_dict() == {"generated_count": 0, "skipped_count": 0, "errors": []}
        assert OperationCycle.query.count() == 0

    @pytest.mark.parametrize("template_kw", [{"is_active": False}, {"auto_generate": False}])
    def test_ineligible_template_not_generated(self, tax_client, make_template, make_assignment, template_kw):
        template = make_template(name="Excluded", **template_kw)
        make_assignment(tax_client, template)

        result = auto_generate_operation_cycles(run_date=date(2026, 1, 15))

        assert result.generated_count == 0
        assert OperationCycle.query.count() == 0

    def test_window_bounds_are_inclusive(self, tax_client, monthly, make_assignment):
        make_assignment(tax_client, monthly, starts_on=date(2026, 1, 15), ends_on=date(2026, 1, 15))
        result = auto_generate_operation_cycles(run_date=date(2026, 1, 15))
        assert result.generated_count == 1


# ═══════════════════════════════════════════════════════════════════════════
#  4. Default run date
# ═══════════════════════════════════════════════════════════════════════════

class TestDefaultRunDate:
    def test_defaults_to_today_in_application_zone(self, app, monkeypatch, tax_client, monthly, make_assignment):
        make_assignment(tax_client, monthly)
        # 08:30 UTC on Jan 1 is still Dec 31 in Honolulu (UTC-10)
        monkeypatch.setattr("app.utils.helpers.utcnow",
                            lambda: datetime(2026, 1, 1, 8, 30, tzinfo=timezone.utc))
        app.config["APP_TIMEZONE"] = "Pacific/Honolulu"

        auto_generate_operation_cycles()

        assert _periods() == [(tax_client.id, date(2025, 12, 1), date(2025, 12, 31))]

    def test_utc_zone_uses_utc_date(self, app, monkeypatch, tax_client, monthly, make_assignment):
        make_assignment(tax_client, monthly)
        monkeypatch.setattr("app.utils.helpers.utcnow",
                            lambda: datetime(2026, 1, 1, 8, 30, tzinfo=timezone.utc))

        auto_generate_operation_cycles()

        assert _periods() == [(tax_client.id, date(2026, 1, 1), date(2026, 1, 31))]


# ═══════════════════════════════════════════════════════════════════════════
#  5. Error aggregation
# ═══════════════════════════════════════════════════════════════════════════

class TestErrorAggregation:
    def test_failure_for_one_assignment_does_not_abort_batch(
        self, tax_client, make_client, monthly, make_assignment, monkeypatch,
    ):
        broken = make_assignment(tax_client, monthly)
        other = make_client()
        make_assignment(other, monthly)
        broken_id = broken.id

        real_period_for = operation_autogen_service.period_for

        def _period_for(assignment, run_date):
            if assignment.id == broken_id:
                raise RuntimeError("calendar service unavailable")
            return real_period_for(assignment, run_date)

        monkeypatch.setattr(operation_autogen_service, "period_for", _period_for)

        result = auto_generate_operation_cycles(run_date=date(2026, 1, 15))

        assert result.generated_count == 1
        assert result.errors == [f"Assignment {broken_id}: calendar service unavailable"]
        assert _periods() == [(other.id, date(2026, 1, 1), date(2026, 1, 31))]

    def test_rejected_outcome_is_reported_with_assignment_id(
        self, tax_client, monthly, make_assignment, monkeypatch,
    ):
        assignment = make_assignment(tax_client, monthly)

        monkeypatch.setattr(
            operation_autogen_service, "generate_operation_cycle",
            lambda **kw: CycleGenerationOutcome.rejected("Operation template is not active"),
        )

        result = auto_generate_operation_cycles(run_date=date(2026, 1, 15))

        assert result.errors == [f"Assignment {assignment.id}: Operation template is not active"]
        assert result.generated_count == 0
        assert result.skipped_count == 0

    def test_assignment_deleted_mid_batch_is_reported(
        self, tax_client, make_client, monthly, make_assignment, monkeypatch,
    ):
        first = make_assignment(tax_client, monthly)
        other = make_client()
        removed_id = make_assignment(other, monthly).id
        first_id = first.id

        real_generate = operation_autogen_service.generate_operation_cycle

        def _generate_then_delete(**kw):
            outcome = real_generate(**kw)
            if kw["assignment"].id == first_id:
                db.session.execute(
                    text("DELETE FROM client_operation_assignments WHERE id = :id"),
                    {"id": removed_id},
                )
                db.session.commit()
            return outcome

        monkeypatch.setattr(operation_autogen_service, "generate_operation_cycle", _generate_then_delete)

        result = auto_generate_operation_cycles(run_date=date(2026, 1, 15))

        assert result.generated_count == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"Assignment {removed_id}: ")
        assert _periods() == [(tax_client.id, date(2026, 1, 1), date(2026, 1, 31))]

    def test_enumeration_failure_propagates(self):
        class _Unavailable(OperationRepository):
            def find_eligible_assignments(self, run_date):
                raise RuntimeError("database unavailable")

        with pytest.raises(RuntimeError):
            auto_generate_operation_cycles(run_date=date(2026, 1, 15), repository=_Unavailable())


# ═══════════════════════════════════════════════════════════════════════════
#  6. fold_outcome
# ═══════════════════════════════════════════════════════════════════════════

class TestFoldOutcome:
    def test_does_not_mutate_input(self):
        start = AutoGenerateResult(errors=["Assignment 1: earlier"])
        folded = fold_outcome(start, 7, CycleGenerationOutcome.rejected("boom"))

        assert start.errors == ["Assignment 1: earlier"]
        assert folded.errors == ["Assignment 1: earlier", "Assignment 7: boom"]
        assert folded is not start

    @pytest.mark.parametrize("outcome,expected", [
        (CycleGenerationOutcome.created(object()), (1, 0, 0)),
        (CycleGenerationOutcome.duplicate(), (0, 1, 0)),
        (CycleGenerationOutcome.skipped(), (0, 1, 0)),
        (CycleGenerationOutcome.rejected("nope"), (0, 0, 1)),
    ])
    def test_counts(self, outcome, expected):
        folded = fold_outcome(AutoGenerateResult(), 3, outcome)
        assert (folded.generated_count, folded.skipped_count, folded.error_count) == expected
