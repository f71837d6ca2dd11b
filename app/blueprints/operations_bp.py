"""
Recurring Operations Blueprint.

Endpoints:
    GET    /api/v1/operation-templates                         — list (include_inactive=true)
    POST   /api/v1/operation-templates                         — create
    GET    /api/v1/operation-templates/<id>                    — detail with tasks
    PATCH  /api/v1/operation-templates/<id>                    — update
    DELETE /api/v1/operation-templates/<id>                    — deactivate
    GET    /api/v1/operation-templates/<id>/tasks              — template tasks
    POST   /api/v1/operation-templates/<id>/tasks              — add template task
    POST   /api/v1/operation-templates/<id>/tasks/reorder      — bulk reposition
    PATCH  /api/v1/operation-template-tasks/<id>               — update template task
    DELETE /api/v1/operation-template-tasks/<id>               — deactivate template task
    GET    /api/v1/clients/<cid>/operation-assignments         — client assignments
    POST   /api/v1/clients/<cid>/operation-assignments         — assign template
    PATCH  /api/v1/operation-assignments/<id>                  — update assignment
    GET    /api/v1/clients/<cid>/operation-cycles              — paginated cycles
    POST   /api/v1/clients/<cid>/operation-cycles/generate     — manual generation
    GET    /api/v1/operation-cycles/<id>                       — cycle with tasks
    GET    /api/v1/operation-tasks                             — filtered task list
    PATCH  /api/v1/operation-tasks/<id>                        — update task
    POST   /api/v1/operation-tasks/<id>/complete               — mark done
    POST   /api/v1/operation-tasks/<id>/reopen                 — back to not_started
    POST   /api/v1/operations/auto-generate                    — run the batch now

Layer contract:
    - No ORM writes here — all DB work delegated to operation services.
    - No db.session.commit() here.
    - Acting user comes from the ``X-Actor-Id`` header when present;
      authentication itself is handled in front of this service.
"""

import logging

from flask import Blueprint, jsonify, request

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.auth import User
from app.services import operation_service
from app.services.operation_autogen_service import auto_generate_operation_cycles
from app.utils.errors import E, api_error
from app.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

operations_bp = Blueprint("operations", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@operations_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@operations_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), status=422, details=error.details)


@operations_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error))


# ── Private helpers ───────────────────────────────────────────────────────────


def _actor():
    actor_id = request.headers.get("X-Actor-Id", type=int)
    if not actor_id:
        return None
    actor = db.session.get(User, actor_id)
    if actor is None:
        raise NotFoundError(resource="User", resource_id=actor_id)
    return actor


def _flag(name: str) -> bool:
    return request.args.get(name, "false").lower() in ("1", "true", "yes")


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ═════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════


@operations_bp.route("/operation-templates", methods=["GET"])
def list_templates():
    templates = operation_service.list_templates(include_inactive=_flag("include_inactive"))
    return jsonify({"operation_templates": templates}), 200


@operations_bp.route("/operation-templates", methods=["POST"])
def create_template():
    """Create a template.

    Body (JSON):
        name (str, required), description, category, recurrence_type,
        recurrence_interval (required for custom), recurrence_anchor,
        auto_generate, is_active.
    """
    template = operation_service.create_template(_body(), created_by=_actor())
    return jsonify({"operation_template": template}), 201


@operations_bp.route("/operation-templates/<int:template_id>", methods=["GET"])
def get_template(template_id: int):
    template = operation_service.get_template(template_id, include_inactive=_flag("include_inactive"))
    return jsonify({"operation_template": template}), 200


@operations_bp.route("/operation-templates/<int:template_id>", methods=["PATCH"])
def update_template(template_id: int):
    template = operation_service.update_template(template_id, _body(), actor=_actor())
    return jsonify({"operation_template": template}), 200


@operations_bp.route("/operation-templates/<int:template_id>", methods=["DELETE"])
def deactivate_template(template_id: int):
    operation_service.deactivate_template(template_id, actor=_actor())
    return "", 204


# ═════════════════════════════════════════════════════════════════════════
# Template tasks
# ═════════════════════════════════════════════════════════════════════════


@operations_bp.route("/operation-templates/<int:template_id>/tasks", methods=["GET"])
def list_template_tasks(template_id: int):
    tasks = operation_service.list_template_tasks(template_id, include_inactive=_flag("include_inactive"))
    return jsonify({"tasks": tasks}), 200


@operations_bp.route("/operation-templates/<int:template_id>/tasks", methods=["POST"])
def create_template_task(template_id: int):
    """Add a checklist item.

    Body (JSON):
        title (str, required), description, position (defaults to last + 1),
        default_assignee_id, due_offset_value/unit/from (all or none),
        evidence_required, dependency_template_task_ids.
    """
    task = operation_service.create_template_task(template_id, _body())
    return jsonify({"task": task}), 201


@operations_bp.route("/operation-templates/<int:template_id>/tasks/reorder", methods=["POST"])
def reorder_template_tasks(template_id: int):
    tasks = operation_service.reorder_template_tasks(template_id, _body().get("positions"))
    return jsonify({"tasks": tasks}), 200


@operations_bp.route("/operation-template-tasks/<int:task_id>", methods=["PATCH"])
def update_template_task(task_id: int):
    task = operation_service.update_template_task(task_id, _body())
    return jsonify({"task": task}), 200


@operations_bp.route("/operation-template-tasks/<int:task_id>", methods=["DELETE"])
def deactivate_template_task(task_id: int):
    operation_service.deactivate_template_task(task_id)
    return "", 204


# ═════════════════════════════════════════════════════════════════════════
# Assignments
# ═════════════════════════════════════════════════════════════════════════


@operations_bp.route("/clients/<int:client_id>/operation-assignments", methods=["GET"])
def list_assignments(client_id: int):
    return jsonify({"assignments": operation_service.list_assignments(client_id)}), 200


@operations_bp.route("/clients/<int:client_id>/operation-assignments", methods=["POST"])
def create_assignment(client_id: int):
    """Subscribe a client to a template.

    Body (JSON):
        operation_template_id (int, required), auto_generate,
        assignment_status, starts_on, ends_on, anchor_date.
    """
    assignment = operation_service.create_assignment(client_id, _body(), created_by=_actor())
    return jsonify({"assignment": assignment}), 201


@operations_bp.route("/operation-assignments/<int:assignment_id>", methods=["PATCH"])
def update_assignment(assignment_id: int):
    assignment = operation_service.update_assignment(assignment_id, _body())
    return jsonify({"assignment": assignment}), 200


# ═════════════════════════════════════════════════════════════════════════
# Cycles
# ═════════════════════════════════════════════════════════════════════════


@operations_bp.route("/clients/<int:client_id>/operation-cycles", methods=["GET"])
def list_cycles(client_id: int):
    result = operation_service.list_cycles(
        client_id,
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", operation_service.DEFAULT_PER_PAGE, type=int),
    )
    return jsonify(result), 200


@operations_bp.route("/clients/<int:client_id>/operation-cycles/generate", methods=["POST"])
def generate_cycle(client_id: int):
    """Manually generate a cycle for an explicit period.

    Body (JSON):
        operation_template_id or client_operation_assignment_id (one required),
        period_start, period_end (YYYY-MM-DD).

    Returns 201 with the cycle, or 422 with the rejection/duplicate message.
    """
    outcome = operation_service.generate_manual_cycle(client_id, _body(), generated_by=_actor())
    if outcome.is_created:
        return jsonify({"operation_cycle": outcome.cycle.to_dict(include_tasks=True)}), 201
    code = E.CONFLICT_DUPLICATE if outcome.is_duplicate else E.VALIDATION_INVALID
    return api_error(code, outcome.message, status=422)


@operations_bp.route("/operation-cycles/<int:cycle_id>", methods=["GET"])
def get_cycle(cycle_id: int):
    return jsonify({"operation_cycle": operation_service.get_cycle(cycle_id)}), 200


@operations_bp.route("/operations/auto-generate", methods=["POST"])
def run_auto_generate():
    """Run the recurring-cycle batch now.

    Body (JSON, optional):
        run_date (YYYY-MM-DD): defaults to today in APP_TIMEZONE.
    """
    try:
        run_date = parse_date_input(_body().get("run_date"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))

    result = auto_generate_operation_cycles(run_date=run_date, generated_by=_actor())
    return jsonify(result.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Generated tasks
# ═════════════════════════════════════════════════════════════════════════


@operations_bp.route("/operation-tasks", methods=["GET"])
def list_tasks():
    """Query params: status, assigned_to_id, client_id, due_filter, include_done, page, per_page."""
    filters = {
        "status": request.args.get("status"),
        "assigned_to_id": request.args.get("assigned_to_id", type=int),
        "client_id": request.args.get("client_id", type=int),
        "due_filter": request.args.get("due_filter"),
        "include_done": _flag("include_done"),
    }
    result = operation_service.list_tasks(
        filters,
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", operation_service.DEFAULT_PER_PAGE, type=int),
    )
    return jsonify(result), 200


@operations_bp.route("/operation-tasks/<int:task_id>", methods=["PATCH"])
def update_task(task_id: int):
    task = operation_service.update_task(task_id, _body(), actor=_actor())
    return jsonify({"operation_task": task}), 200


@operations_bp.route("/operation-tasks/<int:task_id>/complete", methods=["POST"])
def complete_task(task_id: int):
    task = operation_service.complete_task(
        task_id, evidence_note=_body().get("evidence_note"), actor=_actor(),
    )
    return jsonify({"operation_task": task}), 200


@operations_bp.route("/operation-tasks/<int:task_id>/reopen", methods=["POST"])
def reopen_task(task_id: int):
    task = operation_service.reopen_task(task_id, actor=_actor())
    return jsonify({"operation_task": task}), 200
