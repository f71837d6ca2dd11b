"""recurring_operations

Create users, clients, recurring operation templates, client assignments,
generated cycles / tasks, audit log and scheduled job tables.

operation_cycles carries the unique (client, template, period_start,
period_end) index that makes cycle generation idempotent.

Revision ID: 5e1c0a7b9d21
Revises:
Create Date: 2026-03-02 09:15:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5e1c0a7b9d21"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=True),
            sa.Column("last_name", sa.String(length=100), nullable=True),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="staff"),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_role", "users", ["role"])

    if "clients" not in existing_tables:
        op.create_table(
            "clients",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("last_name", sa.String(length=100), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_clients_email", "clients", ["email"])

    if "operation_templates" not in existing_tables:
        op.create_table(
            "operation_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=False, server_default="general"),
            sa.Column("recurrence_type", sa.String(length=20), nullable=False, server_default="monthly"),
            sa.Column("recurrence_interval", sa.Integer(), nullable=True),
            sa.Column("recurrence_anchor", sa.Date(), nullable=True),
            sa.Column("auto_generate", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )
        op.create_index("ix_operation_templates_active", "operation_templates", ["is_active"])
        op.create_index("ix_operation_templates_recurrence", "operation_templates", ["recurrence_type"])

    if "operation_template_tasks" not in existing_tables:
        op.create_table(
            "operation_template_tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("operation_template_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("position", sa.Integer(), nullable=True),
            sa.Column("default_assignee_id", sa.Integer(), nullable=True),
            sa.Column("due_offset_value", sa.Integer(), nullable=True),
            sa.Column("due_offset_unit", sa.String(length=10), nullable=True),
            sa.Column("due_offset_from", sa.String(length=20), nullable=True),
            sa.Column("evidence_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("dependency_template_task_ids", sa.JSON(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["operation_template_id"], ["operation_templates.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["default_assignee_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("operation_template_id", "title", name="uq_operation_template_tasks_title"),
        )
        op.create_index("ix_operation_template_tasks_operation_template_id",
                        "operation_template_tasks", ["operation_template_id"])
        op.create_index("ix_operation_template_tasks_order",
                        "operation_template_tasks", ["operation_template_id", "position"])

    if "client_operation_assignments" not in existing_tables:
        op.create_table(
            "client_operation_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("operation_template_id", sa.Integer(), nullable=False),
            sa.Column("auto_generate", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("assignment_status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("starts_on", sa.Date(), nullable=True),
            sa.Column("ends_on", sa.Date(), nullable=True),
            sa.Column("anchor_date", sa.Date(), nullable=True),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["operation_template_id"], ["operation_templates.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("client_id", "operation_template_id", name="uq_client_operation_assignments"),
        )
        op.create_index("ix_client_operation_assignments_client_id",
                        "client_operation_assignments", ["client_id"])
        op.create_index("ix_client_operation_assignments_operation_template_id",
                        "client_operation_assignments", ["operation_template_id"])
        op.create_index("ix_client_operation_assignments_status",
                        "client_operation_assignments", ["assignment_status"])

    if "operation_cycles" not in existing_tables:
        op.create_table(
            "operation_cycles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("operation_template_id", sa.Integer(), nullable=False),
            sa.Column("client_operation_assignment_id", sa.Integer(), nullable=True),
            sa.Column("period_start", sa.Date(), nullable=False),
            sa.Column("period_end", sa.Date(), nullable=False),
            sa.Column("cycle_label", sa.String(length=300), nullable=False),
            sa.Column("generation_mode", sa.String(length=10), nullable=False, server_default="manual"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("generated_by_id", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["operation_template_id"], ["operation_templates.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["client_operation_assignment_id"], ["client_operation_assignments.id"],
                                    ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["generated_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("client_id", "operation_template_id", "period_start", "period_end",
                                name="uq_operation_cycles_period"),
            sa.CheckConstraint("period_end >= period_start", name="ck_operation_cycles_period_range"),
        )
        op.create_index("ix_operation_cycles_operation_template_id",
                        "operation_cycles", ["operation_template_id"])
        op.create_index("ix_operation_cycles_client_operation_assignment_id",
                        "operation_cycles", ["client_operation_assignment_id"])
        op.create_index("ix_operation_cycles_status", "operation_cycles", ["status"])
        op.create_index("ix_operation_cycles_client_status", "operation_cycles", ["client_id", "status"])

    if "operation_tasks" not in existing_tables:
        op.create_table(
            "operation_tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("operation_cycle_id", sa.Integer(), nullable=False),
            sa.Column("operation_template_task_id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="not_started"),
            sa.Column("assigned_to_id", sa.Integer(), nullable=True),
            sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_by_id", sa.Integer(), nullable=True),
            sa.Column("evidence_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("evidence_note", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["operation_cycle_id"], ["operation_cycles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["operation_template_task_id"], ["operation_template_tasks.id"],
                                    ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_to_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["completed_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_operation_tasks_order", "operation_tasks", ["operation_cycle_id", "position"])
        op.create_index("ix_operation_tasks_status", "operation_tasks", ["status"])
        op.create_index("ix_operation_tasks_due_at", "operation_tasks", ["due_at"])
        op.create_index("ix_operation_tasks_client_status", "operation_tasks", ["client_id", "status"])
        op.create_index("ix_operation_tasks_assignee_status", "operation_tasks", ["assigned_to_id", "status"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("auditable_type", sa.String(length=60), nullable=False),
            sa.Column("auditable_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("changes_json", sa.Text(), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_auditable", "audit_logs", ["auditable_type", "auditable_id"])
        op.create_index("idx_audit_user", "audit_logs", ["user_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["created_at"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    existing_tables = set(sa_inspect(op.get_bind()).get_table_names())

    # Children before parents
    for table in (
        "scheduled_jobs",
        "audit_logs",
        "operation_tasks",
        "operation_cycles",
        "client_operation_assignments",
        "operation_template_tasks",
        "operation_templates",
        "clients",
        "users",
    ):
        if table in existing_tables:
            op.drop_table(table)
