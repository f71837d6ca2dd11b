"""
Tax Practice Operations
Operation Service — CRUD and lifecycle rules for the operations domain.

Covers templates, template tasks, client assignments, cycle listing/manual
generation and generated-task lifecycle (update / complete / reopen).
Cycle materialization itself lives in ``operation_cycle_service``.

Errors:
    NotFoundError   → 404
    ValidationError → 422
    ConflictError   → 409
Services commit; blueprints never touch the session.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.auth import User
from app.models.client import Client
from app.models.operations import (
    ASSIGNMENT_STATUSES,
    DUE_OFFSET_FROM_OPTIONS,
    DUE_OFFSET_UNITS,
    RECURRENCE_TYPES,
    TASK_STATUSES,
    TEMPLATE_CATEGORIES,
    ClientOperationAssignment,
    OperationCycle,
    OperationTask,
    OperationTemplate,
    OperationTemplateTask,
)
from app.services.operation_cycle_service import generate_operation_cycle
from app.utils.helpers import app_timezone, parse_date_input, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 100
MAX_PER_PAGE = 250
UPCOMING_WINDOW_DAYS = 14

TEMPLATE_FIELDS = (
    "name", "description", "category", "recurrence_type", "recurrence_interval",
    "recurrence_anchor", "auto_generate", "is_active",
)
TEMPLATE_TASK_FIELDS = (
    "title", "description", "position", "default_assignee_id", "due_offset_value",
    "due_offset_unit", "due_offset_from", "evidence_required",
    "dependency_template_task_ids", "is_active",
)
ASSIGNMENT_FIELDS = ("auto_generate", "assignment_status", "starts_on", "ends_on", "anchor_date")
TASK_UPDATE_FIELDS = ("status", "notes", "assigned_to_id", "evidence_note")
_DATE_FIELDS = {"recurrence_anchor", "starts_on", "ends_on", "anchor_date"}


# ── Lookup helpers ───────────────────────────────────────────────────────────

def _get(model, pk, label=None):
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj


def _assign(obj, data: dict, allowed: tuple) -> None:
    for key in allowed:
        if key not in data:
            continue
        value = data[key]
        if key in _DATE_FIELDS:
            try:
                value = parse_date_input(value)
            except ValueError as exc:
                raise ValidationError(str(exc), details={key: "invalid date"}) from exc
        setattr(obj, key, value)


@contextmanager
def _rollback_on_error():
    """Discard pending edits to a persistent row when a rule rejects them."""
    try:
        yield
    except (ValidationError, ConflictError):
        db.session.rollback()
        raise


def _paginate(query, page, per_page):
    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or DEFAULT_PER_PAGE), 1), MAX_PER_PAGE)

    total_count = query.count()
    total_pages = max((total_count + per_page - 1) // per_page, 1)
    current_page = min(page, total_pages)
    items = query.offset((current_page - 1) * per_page).limit(per_page).all()
    meta = {
        "current_page": current_page,
        "per_page": per_page,
        "total_count": total_count,
        "total_pages": total_pages,
    }
    return items, meta


def _is_positive_int(value, allow_zero=False) -> bool:
    if not isinstance(value, int) or isinstance(value, bool):
        return False
    return value >= 0 if allow_zero else value > 0


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════

def _validate_template(template: OperationTemplate) -> None:
    errors: dict[str, str] = {}
    if not (template.name or "").strip():
        errors["name"] = "Name is required."
    if template.category not in TEMPLATE_CATEGORIES:
        errors["category"] = f"Must be one of: {', '.join(sorted(TEMPLATE_CATEGORIES))}."
    if template.recurrence_type not in RECURRENCE_TYPES:
        errors["recurrence_type"] = f"Must be one of: {', '.join(sorted(RECURRENCE_TYPES))}."
    interval = template.recurrence_interval
    if interval is not None and not _is_positive_int(interval):
        errors["recurrence_interval"] = "Must be a positive integer."
    if template.recurrence_type == "custom" and interval is None:
        errors["recurrence_interval"] = "Is required when recurrence type is custom."
    if errors:
        raise ValidationError("Operation template is invalid", details=errors)

    with db.session.no_autoflush:
        clash = db.session.execute(
            select(OperationTemplate.id).where(
                OperationTemplate.name == template.name,
                OperationTemplate.id != (template.id or 0),
            )
        ).first()
    if clash:
        raise ConflictError("OperationTemplate", "name", template.name)


def list_templates(include_inactive=False) -> list[dict]:
    query = OperationTemplate.query
    if not include_inactive:
        query = query.filter(OperationTemplate.is_active.is_(True))
    templates = query.order_by(OperationTemplate.name).all()
    return [t.to_dict(include_tasks=True, include_inactive=include_inactive) for t in templates]


def get_template(template_id: int, include_inactive=False) -> dict:
    template = _get(OperationTemplate, template_id)
    return template.to_dict(include_tasks=True, include_inactive=include_inactive)


def create_template(data: dict, created_by=None) -> dict:
    template = OperationTemplate(
        category="general", recurrence_type="monthly",
        auto_generate=True, is_active=True,
        created_by_id=getattr(created_by, "id", None),
    )
    _assign(template, data, TEMPLATE_FIELDS)
    if isinstance(template.name, str):
        template.name = template.name.strip()
    _validate_template(template)

    db.session.add(template)
    db.session.flush()
    write_audit(auditable=template, action="created", user=created_by,
                message=f"Created operation template {template.name}")
    db.session.commit()
    logger.info("Operation template created", extra={"event_type": "operation_template.created"})
    return template.to_dict(include_tasks=True)


def update_template(template_id: int, data: dict, actor=None) -> dict:
    template = _get(OperationTemplate, template_id)
    before = {k: getattr(template, k) for k in TEMPLATE_FIELDS}
    with _rollback_on_error():
        _assign(template, data, TEMPLATE_FIELDS)
        _validate_template(template)

    changes = _diff(before, template, TEMPLATE_FIELDS)
    if changes:
        write_audit(auditable=template, action="updated", user=actor, changes=changes)
    db.session.commit()
    return template.to_dict(include_tasks=True)


def deactivate_template(template_id: int, actor=None) -> dict:
    return update_template(template_id, {"is_active": False}, actor=actor)


# ═════════════════════════════════════════════════════════════════════════════
# Template tasks
# ═════════════════════════════════════════════════════════════════════════════

def _validate_template_task(task: OperationTemplateTask) -> None:
    errors: dict[str, str] = {}
    if not (task.title or "").strip():
        errors["title"] = "Title is required."
    if task.due_offset_unit is not None and task.due_offset_unit not in DUE_OFFSET_UNITS:
        errors["due_offset_unit"] = f"Must be one of: {', '.join(sorted(DUE_OFFSET_UNITS))}."
    if task.due_offset_from is not None and task.due_offset_from not in DUE_OFFSET_FROM_OPTIONS:
        errors["due_offset_from"] = f"Must be one of: {', '.join(sorted(DUE_OFFSET_FROM_OPTIONS))}."
    if task.due_offset_value is not None and not _is_positive_int(task.due_offset_value, allow_zero=True):
        errors["due_offset_value"] = "Must be a non-negative integer."
    if task.position is not None and not _is_positive_int(task.position, allow_zero=True):
        errors["position"] = "Must be a non-negative integer."

    offset = (task.due_offset_value, task.due_offset_unit, task.due_offset_from)
    if any(v is not None for v in offset) and not all(v is not None for v in offset):
        errors["due_offset"] = "Due offset value, unit, and reference point must all be provided together."

    deps = task.dependency_template_task_ids or []
    if not isinstance(deps, list) or not all(_is_positive_int(d) for d in deps):
        errors["dependency_template_task_ids"] = "Must be a list of task ids."
    else:
        deps = sorted(set(deps))
        task.dependency_template_task_ids = deps
        if task.id is not None and task.id in deps:
            errors["dependency_template_task_ids"] = "Cannot include the task itself."
        elif deps:
            with db.session.no_autoflush:
                valid = set(db.session.execute(
                    select(OperationTemplateTask.id).where(
                        OperationTemplateTask.operation_template_id == task.operation_template_id,
                        OperationTemplateTask.id.in_(deps),
                    )
                ).scalars().all())
            if valid != set(deps):
                errors["dependency_template_task_ids"] = "Contain invalid task references."

    if errors:
        raise ValidationError("Operation template task is invalid", details=errors)

    with db.session.no_autoflush:
        clash = db.session.execute(
            select(OperationTemplateTask.id).where(
                OperationTemplateTask.operation_template_id == task.operation_template_id,
                OperationTemplateTask.title == task.title,
                OperationTemplateTask.id != (task.id or 0),
            )
        ).first()
    if clash:
        raise ConflictError("OperationTemplateTask", "title", task.title)


def _next_position(template_id: int) -> int:
    current = db.session.execute(
        select(db.func.max(OperationTemplateTask.position)).where(
            OperationTemplateTask.operation_template_id == template_id,
        )
    ).scalar()
    return (current or 0) + 1


def list_template_tasks(template_id: int, include_inactive=False) -> list[dict]:
    template = _get(OperationTemplate, template_id)
    return [t.to_dict() for t in template.ordered_tasks(include_inactive)]


def create_template_task(template_id: int, data: dict) -> dict:
    template = _get(OperationTemplate, template_id)
    task = OperationTemplateTask(
        operation_template_id=template.id, evidence_required=False,
        is_active=True, dependency_template_task_ids=[],
    )
    _assign(task, data, TEMPLATE_TASK_FIELDS)
    if task.position is None:
        task.position = _next_position(template.id)
    _validate_template_task(task)

    db.session.add(task)
    db.session.commit()
    return task.to_dict()


def update_template_task(task_id: int, data: dict) -> dict:
    task = _get(OperationTemplateTask, task_id)
    with _rollback_on_error():
        _assign(task, data, TEMPLATE_TASK_FIELDS)
        _validate_template_task(task)
    db.session.commit()
    return task.to_dict()


def deactivate_template_task(task_id: int) -> dict:
    return update_template_task(task_id, {"is_active": False})


def reorder_template_tasks(template_id: int, positions) -> list[dict]:
    """Apply ``[{id, position?}, ...]``; missing positions take list order."""
    template = _get(OperationTemplate, template_id)
    if not isinstance(positions, list):
        raise ValidationError("positions must be an array")

    ids = []
    for item in positions:
        if not isinstance(item, dict) or not _is_positive_int(item.get("id")):
            raise ValidationError("Each position entry needs an integer id")
        ids.append(item["id"])

    tasks = {
        t.id: t for t in OperationTemplateTask.query.filter(
            OperationTemplateTask.operation_template_id == template.id,
            OperationTemplateTask.id.in_(ids),
        ).all()
    }
    if len(tasks) != len(set(ids)):
        raise ValidationError("One or more tasks are invalid for this template")

    for index, item in enumerate(positions, start=1):
        position = item.get("position", index)
        if not _is_positive_int(position, allow_zero=True):
            raise ValidationError("Positions must be non-negative integers")
        tasks[item["id"]].position = position

    db.session.commit()
    return [t.to_dict() for t in template.ordered_tasks()]


# ═════════════════════════════════════════════════════════════════════════════
# Assignments
# ═════════════════════════════════════════════════════════════════════════════

def _validate_assignment(assignment: ClientOperationAssignment) -> None:
    errors: dict[str, str] = {}
    if assignment.assignment_status not in ASSIGNMENT_STATUSES:
        errors["assignment_status"] = f"Must be one of: {', '.join(sorted(ASSIGNMENT_STATUSES))}."
    if assignment.starts_on and assignment.ends_on and assignment.ends_on < assignment.starts_on:
        errors["ends_on"] = "Must be on or after start date."
    if errors:
        raise ValidationError("Operation assignment is invalid", details=errors)

    with db.session.no_autoflush:
        clash = db.session.execute(
            select(ClientOperationAssignment.id).where(
                ClientOperationAssignment.client_id == assignment.client_id,
                ClientOperationAssignment.operation_template_id == assignment.operation_template_id,
                ClientOperationAssignment.id != (assignment.id or 0),
            )
        ).first()
    if clash:
        raise ConflictError("ClientOperationAssignment", "operation_template_id",
                            str(assignment.operation_template_id))


def list_assignments(client_id: int) -> list[dict]:
    client = _get(Client, client_id)
    assignments = client.operation_assignments.order_by(ClientOperationAssignment.id).all()
    return [a.to_dict() for a in assignments]


def create_assignment(client_id: int, data: dict, created_by=None) -> dict:
    client = _get(Client, client_id)
    template_id = data.get("operation_template_id")
    if not _is_positive_int(template_id):
        raise ValidationError("operation_template_id is required",
                              details={"operation_template_id": "required"})
    template = _get(OperationTemplate, template_id)

    assignment = ClientOperationAssignment(
        client_id=client.id, operation_template_id=template.id,
        auto_generate=True, assignment_status="active",
        created_by_id=getattr(created_by, "id", None),
    )
    _assign(assignment, data, ASSIGNMENT_FIELDS)
    _validate_assignment(assignment)

    db.session.add(assignment)
    db.session.commit()
    return assignment.to_dict()


def update_assignment(assignment_id: int, data: dict) -> dict:
    assignment = _get(ClientOperationAssignment, assignment_id)
    with _rollback_on_error():
        _assign(assignment, data, ASSIGNMENT_FIELDS)
        _validate_assignment(assignment)
    db.session.commit()
    return assignment.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Cycles
# ═════════════════════════════════════════════════════════════════════════════

def list_cycles(client_id: int, page=1, per_page=DEFAULT_PER_PAGE) -> dict:
    _get(Client, client_id)
    query = OperationCycle.query.filter(OperationCycle.client_id == client_id).order_by(
        OperationCycle.period_start.desc(), OperationCycle.created_at.desc(),
    )
    cycles, meta = _paginate(query, page, per_page)
    return {"operation_cycles": [c.to_dict() for c in cycles], "meta": meta}


def get_cycle(cycle_id: int) -> dict:
    return _get(OperationCycle, cycle_id).to_dict(include_tasks=True)


def generate_manual_cycle(client_id: int, data: dict, generated_by=None):
    """Manual generation for one client; returns the CycleGenerationOutcome.

    Either ``client_operation_assignment_id`` (must belong to the client) or
    an active ``operation_template_id`` is required.
    """
    client = _get(Client, client_id)

    assignment = None
    assignment_id = data.get("client_operation_assignment_id")
    if assignment_id:
        assignment = ClientOperationAssignment.query.filter_by(
            id=assignment_id, client_id=client.id,
        ).first()
        if assignment is None:
            raise NotFoundError(resource="ClientOperationAssignment", resource_id=assignment_id)

    template = assignment.template if assignment else None
    if template is None and data.get("operation_template_id"):
        template = OperationTemplate.query.filter_by(
            id=data["operation_template_id"], is_active=True,
        ).first()
        if template is None:
            raise NotFoundError(resource="OperationTemplate",
                                resource_id=data["operation_template_id"])
    if template is None:
        raise ValidationError("operation_template_id or client_operation_assignment_id is required")

    try:
        period_start = parse_date_input(data.get("period_start"))
        period_end = parse_date_input(data.get("period_end"))
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    return generate_operation_cycle(
        client=client,
        template=template,
        assignment=assignment,
        period_start=period_start,
        period_end=period_end,
        generation_mode="manual",
        generated_by=generated_by,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Generated tasks
# ═════════════════════════════════════════════════════════════════════════════

def _diff(before: dict, obj, fields) -> dict:
    return {
        k: [before[k], getattr(obj, k)]
        for k in fields
        if before.get(k) != getattr(obj, k)
    }


def _enforce_task_rules(task: OperationTask) -> None:
    if task.status not in TASK_STATUSES:
        raise ValidationError(
            f"Status must be one of: {', '.join(sorted(TASK_STATUSES))}",
            details={"status": "invalid"},
        )
    if task.status in ("in_progress", "done") and task.unmet_prerequisite_tasks():
        raise ValidationError(
            "Status cannot be updated until prerequisites are completed",
            details={"status": "prerequisites_incomplete"},
        )
    if task.evidence_required and task.is_done and not (task.evidence_note or "").strip():
        raise ValidationError(
            "Evidence note is required to complete this task",
            details={"evidence_note": "required"},
        )


def _save_task(task: OperationTask, before: dict, actor, message=None) -> dict:
    try:
        _enforce_task_rules(task)
    except ValidationError:
        db.session.rollback()
        raise

    if task.status == "in_progress" and task.started_at is None:
        task.started_at = utcnow()
    if task.is_done:
        task.completed_at = task.completed_at or utcnow()
        if task.completed_by_id is None:
            task.completed_by_id = getattr(actor, "id", None)
    else:
        task.completed_at = None
        task.completed_by_id = None

    changes = _diff(before, task, TASK_UPDATE_FIELDS)
    write_audit(auditable=task, action="updated", user=actor, changes=changes, message=message)
    db.session.commit()
    return task.to_dict()


def list_tasks(filters: dict, page=1, per_page=DEFAULT_PER_PAGE) -> dict:
    """Filter generated tasks.

    filters: status, assigned_to_id, client_id, due_filter
    (overdue | today | upcoming), include_done.
    """
    query = OperationTask.query
    if filters.get("status"):
        query = query.filter(OperationTask.status == filters["status"])
    if filters.get("assigned_to_id"):
        query = query.filter(OperationTask.assigned_to_id == filters["assigned_to_id"])
    if filters.get("client_id"):
        query = query.filter(OperationTask.client_id == filters["client_id"])

    now = utcnow()
    tz = app_timezone()
    local_day = now.astimezone(tz).date()
    day_start = datetime.combine(local_day, time.min, tzinfo=tz).astimezone(timezone.utc)
    day_end = datetime.combine(local_day, time.max, tzinfo=tz).astimezone(timezone.utc)

    due_filter = filters.get("due_filter")
    if due_filter == "overdue":
        query = query.filter(OperationTask.due_at.isnot(None), OperationTask.due_at < now,
                             OperationTask.status != "done")
    elif due_filter == "today":
        query = query.filter(OperationTask.due_at.between(day_start, day_end))
    elif due_filter == "upcoming":
        query = query.filter(OperationTask.due_at.between(
            day_end, day_end + timedelta(days=UPCOMING_WINDOW_DAYS)))

    if not filters.get("include_done"):
        query = query.filter(OperationTask.status != "done")

    query = query.order_by(OperationTask.due_at.asc().nullslast(),
                           OperationTask.position.asc(), OperationTask.id.asc())
    tasks, meta = _paginate(query, page, per_page)
    return {"operation_tasks": [t.to_dict() for t in tasks], "meta": meta}


def update_task(task_id: int, data: dict, actor=None) -> dict:
    task = _get(OperationTask, task_id)
    before = {k: getattr(task, k) for k in TASK_UPDATE_FIELDS}
    if data.get("assigned_to_id") is not None:
        _get(User, data["assigned_to_id"])
    _assign(task, data, TASK_UPDATE_FIELDS)
    return _save_task(task, before, actor)


def complete_task(task_id: int, evidence_note=None, actor=None) -> dict:
    task = _get(OperationTask, task_id)
    before = {k: getattr(task, k) for k in TASK_UPDATE_FIELDS}
    task.status = "done"
    task.completed_at = utcnow()
    task.completed_by_id = getattr(actor, "id", None)
    if evidence_note:
        task.evidence_note = evidence_note
    return _save_task(task, before, actor, message="Marked task done")


def reopen_task(task_id: int, actor=None) -> dict:
    task = _get(OperationTask, task_id)
    before = {k: getattr(task, k) for k in TASK_UPDATE_FIELDS}
    task.status = "not_started"
    return _save_task(task, before, actor, message="Reopened task")
