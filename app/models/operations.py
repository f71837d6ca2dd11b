"""
Tax Practice Operations
Recurring operations domain models.

Models:
    - OperationTemplate: reusable recurring checklist definition + recurrence rule
    - OperationTemplateTask: ordered checklist item on a template
    - ClientOperationAssignment: a client's subscription to a template
    - OperationCycle: one materialized occurrence of a template for one period
    - OperationTask: one generated checklist item inside a cycle

Invariant: at most one OperationCycle per
(client_id, operation_template_id, period_start, period_end).  Enforced by
``uq_operation_cycles_period`` so concurrent generators cannot both commit.
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

RECURRENCE_TYPES = {"weekly", "biweekly", "monthly", "quarterly", "custom"}
TEMPLATE_CATEGORIES = {"payroll", "bookkeeping", "compliance", "general", "custom"}
DUE_OFFSET_UNITS = {"hours", "days"}
DUE_OFFSET_FROM_OPTIONS = {"cycle_start", "cycle_end"}
ASSIGNMENT_STATUSES = {"active", "paused", "inactive"}
CYCLE_STATUSES = {"active", "completed", "cancelled"}
GENERATION_MODES = {"auto", "manual"}
TASK_STATUSES = {"not_started", "in_progress", "blocked", "done"}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class OperationTemplate(db.Model):
    """Recurring work template with an embedded recurrence rule."""

    __tablename__ = "operation_templates"
    __table_args__ = (
        db.Index("ix_operation_templates_active", "is_active"),
        db.Index("ix_operation_templates_recurrence", "recurrence_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(30), nullable=False, default="general",
                         comment="payroll, bookkeeping, compliance, general, custom")
    recurrence_type = db.Column(db.String(20), nullable=False, default="monthly",
                                comment="weekly, biweekly, monthly, quarterly, custom")
    recurrence_interval = db.Column(db.Integer, nullable=True,
                                    comment="Period length in days, custom recurrence only")
    recurrence_anchor = db.Column(db.Date, nullable=True)
    auto_generate = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                              nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    tasks = db.relationship(
        "OperationTemplateTask", back_populates="template",
        lazy="dynamic", cascade="all, delete-orphan",
    )
    assignments = db.relationship(
        "ClientOperationAssignment", back_populates="template",
        lazy="dynamic", cascade="all, delete-orphan",
    )
    cycles = db.relationship(
        "OperationCycle", back_populates="template",
        lazy="dynamic", cascade="all, delete-orphan",
    )
    created_by = db.relationship("User", foreign_keys=[created_by_id])

    @property
    def recurrence_rule(self):
        from app.services.operation_periods import RecurrenceRule

        return RecurrenceRule(
            type=self.recurrence_type,
            interval_days=self.recurrence_interval,
            is_active=bool(self.is_active),
            auto_generate=bool(self.auto_generate),
        )

    def ordered_tasks(self, include_inactive=False):
        query = self.tasks
        if not include_inactive:
            query = query.filter(OperationTemplateTask.is_active.is_(True))
        return query.order_by(
            OperationTemplateTask.position.asc().nullslast(),
            OperationTemplateTask.id.asc(),
        ).all()

    def to_dict(self, include_tasks=False, include_inactive=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "recurrence_type": self.recurrence_type,
            "recurrence_interval": self.recurrence_interval,
            "recurrence_anchor": _iso(self.recurrence_anchor),
            "auto_generate": self.auto_generate,
            "is_active": self.is_active,
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_tasks:
            d["tasks"] = [t.to_dict() for t in self.ordered_tasks(include_inactive)]
        return d

    def __repr__(self):
        return f"<OperationTemplate {self.id}: {self.name} [{self.recurrence_type}]>"


class OperationTemplateTask(db.Model):
    """Checklist item definition; copied into every generated cycle."""

    __tablename__ = "operation_template_tasks"
    __table_args__ = (
        db.UniqueConstraint("operation_template_id", "title",
                            name="uq_operation_template_tasks_title"),
        db.Index("ix_operation_template_tasks_order", "operation_template_id", "position"),
    )

    id = db.Column(db.Integer, primary_key=True)
    operation_template_id = db.Column(
        db.Integer, db.ForeignKey("operation_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    position = db.Column(db.Integer, nullable=True)
    default_assignee_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                    nullable=True)
    due_offset_value = db.Column(db.Integer, nullable=True)
    due_offset_unit = db.Column(db.String(10), nullable=True, comment="hours, days")
    due_offset_from = db.Column(db.String(20), nullable=True, comment="cycle_start, cycle_end")
    evidence_required = db.Column(db.Boolean, nullable=False, default=False)
    dependency_template_task_ids = db.Column(db.JSON, default=list,
                                             comment="Sibling template task ids that must be done first")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    template = db.relationship("OperationTemplate", back_populates="tasks")
    default_assignee = db.relationship("User", foreign_keys=[default_assignee_id])

    def to_dict(self):
        return {
            "id": self.id,
            "operation_template_id": self.operation_template_id,
            "title": self.title,
            "description": self.description,
            "position": self.position,
            "default_assignee_id": self.default_assignee_id,
            "due_offset_value": self.due_offset_value,
            "due_offset_unit": self.due_offset_unit,
            "due_offset_from": self.due_offset_from,
            "evidence_required": self.evidence_required,
            "dependency_template_task_ids": self.dependency_template_task_ids or [],
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<OperationTemplateTask {self.id}: {self.title} @{self.position}>"


class ClientOperationAssignment(db.Model):
    """Links a client to a template with its own schedule bounds."""

    __tablename__ = "client_operation_assignments"
    __table_args__ = (
        db.UniqueConstraint("client_id", "operation_template_id",
                            name="uq_client_operation_assignments"),
        db.Index("ix_client_operation_assignments_status", "assignment_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    operation_template_id = db.Column(
        db.Integer, db.ForeignKey("operation_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    auto_generate = db.Column(db.Boolean, nullable=False, default=True)
    assignment_status = db.Column(db.String(20), nullable=False, default="active",
                                  comment="active, paused, inactive")
    starts_on = db.Column(db.Date, nullable=True)
    ends_on = db.Column(db.Date, nullable=True)
    anchor_date = db.Column(db.Date, nullable=True,
                            comment="Phase alignment for biweekly/custom periods")
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                              nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    client = db.relationship("Client", back_populates="operation_assignments")
    template = db.relationship("OperationTemplate", back_populates="assignments")
    cycles = db.relationship("OperationCycle", back_populates="assignment", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "operation_template_id": self.operation_template_id,
            "operation_template_name": self.template.name if self.template else None,
            "auto_generate": self.auto_generate,
            "assignment_status": self.assignment_status,
            "starts_on": _iso(self.starts_on),
            "ends_on": _iso(self.ends_on),
            "anchor_date": _iso(self.anchor_date),
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return (f"<ClientOperationAssignment {self.id}: client={self.client_id} "
                f"template={self.operation_template_id} [{self.assignment_status}]>")


class OperationCycle(db.Model):
    """Materialized checklist for one (client, template, period)."""

    __tablename__ = "operation_cycles"
    __table_args__ = (
        db.UniqueConstraint("client_id", "operation_template_id", "period_start", "period_end",
                            name="uq_operation_cycles_period"),
        db.CheckConstraint("period_end >= period_start", name="ck_operation_cycles_period_range"),
        db.Index("ix_operation_cycles_status", "status"),
        db.Index("ix_operation_cycles_client_status", "client_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
                          nullable=False)
    operation_template_id = db.Column(
        db.Integer, db.ForeignKey("operation_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    client_operation_assignment_id = db.Column(
        db.Integer, db.ForeignKey("client_operation_assignments.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    cycle_label = db.Column(db.String(300), nullable=False)
    generation_mode = db.Column(db.String(10), nullable=False, default="manual",
                                comment="auto, manual")
    status = db.Column(db.String(20), nullable=False, default="active",
                       comment="active, completed, cancelled")
    generated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    generated_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    client = db.relationship("Client", back_populates="operation_cycles")
    template = db.relationship("OperationTemplate", back_populates="cycles")
    assignment = db.relationship("ClientOperationAssignment", back_populates="cycles")
    generated_by = db.relationship("User", foreign_keys=[generated_by_id])
    tasks = db.relationship(
        "OperationTask", back_populates="cycle",
        lazy="dynamic", cascade="all, delete-orphan",
    )

    def ordered_tasks(self):
        return self.tasks.order_by(OperationTask.position.asc(), OperationTask.id.asc()).all()

    def to_dict(self, include_tasks=False):
        d = {
            "id": self.id,
            "client_id": self.client_id,
            "operation_template_id": self.operation_template_id,
            "operation_template_name": self.template.name if self.template else None,
            "client_operation_assignment_id": self.client_operation_assignment_id,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "cycle_label": self.cycle_label,
            "generation_mode": self.generation_mode,
            "status": self.status,
            "generated_at": _iso(self.generated_at),
            "generated_by": self.generated_by.to_ref() if self.generated_by else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_tasks:
            d["tasks"] = [t.to_dict() for t in self.ordered_tasks()]
        return d

    def __repr__(self):
        return f"<OperationCycle {self.id}: {self.cycle_label} [{self.status}]>"


class OperationTask(db.Model):
    """Generated checklist item; created only together with its cycle."""

    __tablename__ = "operation_tasks"
    __table_args__ = (
        db.Index("ix_operation_tasks_order", "operation_cycle_id", "position"),
        db.Index("ix_operation_tasks_status", "status"),
        db.Index("ix_operation_tasks_due_at", "due_at"),
        db.Index("ix_operation_tasks_client_status", "client_id", "status"),
        db.Index("ix_operation_tasks_assignee_status", "assigned_to_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    operation_cycle_id = db.Column(
        db.Integer, db.ForeignKey("operation_cycles.id", ondelete="CASCADE"), nullable=False,
    )
    operation_template_task_id = db.Column(
        db.Integer, db.ForeignKey("operation_template_tasks.id", ondelete="RESTRICT"),
        nullable=False,
    )
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
                          nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="not_started",
                       comment="not_started, in_progress, blocked, done")
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                               nullable=True)
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                nullable=True)
    evidence_required = db.Column(db.Boolean, nullable=False, default=False)
    evidence_note = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    cycle = db.relationship("OperationCycle", back_populates="tasks")
    template_task = db.relationship("OperationTemplateTask")
    client = db.relationship("Client")
    assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])
    completed_by = db.relationship("User", foreign_keys=[completed_by_id])

    @property
    def is_done(self) -> bool:
        return self.status == "done"

    def prerequisite_tasks(self):
        """Sibling tasks generated from this task's template dependencies."""
        dependency_ids = (self.template_task.dependency_template_task_ids or []) if self.template_task else []
        if not dependency_ids or self.operation_cycle_id is None:
            return []
        return (
            OperationTask.query
            .filter(
                OperationTask.operation_cycle_id == self.operation_cycle_id,
                OperationTask.operation_template_task_id.in_(dependency_ids),
            )
            .order_by(OperationTask.position.asc(), OperationTask.id.asc())
            .all()
        )

    def unmet_prerequisite_tasks(self):
        return [t for t in self.prerequisite_tasks() if not t.is_done]

    def to_dict(self):
        return {
            "id": self.id,
            "operation_cycle_id": self.operation_cycle_id,
            "operation_template_task_id": self.operation_template_task_id,
            "client_id": self.client_id,
            "client_name": self.client.full_name if self.client else None,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "position": self.position,
            "due_at": _iso(self.due_at),
            "notes": self.notes,
            "evidence_required": self.evidence_required,
            "evidence_note": self.evidence_note,
            "unmet_prerequisites": [
                {"id": t.id, "title": t.title, "status": t.status}
                for t in self.unmet_prerequisite_tasks()
            ],
            "assigned_to": self.assigned_to.to_ref() if self.assigned_to else None,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by.to_ref() if self.completed_by else None,
        }

    def __repr__(self):
        return f"<OperationTask {self.id}: {self.title} [{self.status}]>"
