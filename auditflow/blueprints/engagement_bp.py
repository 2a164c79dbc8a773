"""Engagement workflow blueprint.

REST API over the engagement services. Views stay thin: parse the request,
call one service function, return its dict as JSON. Domain exceptions are
mapped to HTTP statuses once, in the error handlers below.

Endpoint groups:
  Projects & team      POST /api/v1/projects
                       GET  /api/v1/projects/<project_id>
                       POST /api/v1/projects/<project_id>/status
                       POST /api/v1/projects/<project_id>/members
  Structure            POST   /api/v1/projects/<project_id>/steps
                       PUT    /api/v1/steps/<step_id>
                       DELETE /api/v1/steps/<step_id>
                       POST   /api/v1/steps/<step_id>/tasks
                       PUT    /api/v1/tasks/<task_id>/settings
                       DELETE /api/v1/tasks/<task_id>
  Reorder              PUT /api/v1/projects/<project_id>/steps/reorder
                       PUT /api/v1/projects/<project_id>/tasks/reorder
  Gates & reads        GET /api/v1/projects/<project_id>/gates
                       GET /api/v1/tasks/<task_id>
                       GET /api/v1/projects/<project_id>/approvals/pending
  Notifications        GET  /api/v1/projects/<project_id>/notifications
                       POST /api/v1/notifications/<notification_id>/read
  Workflow events      POST /api/v1/tasks/<task_id>/submissions
                       POST /api/v1/tasks/<task_id>/approve
                       POST /api/v1/tasks/<task_id>/reject
                       POST /api/v1/client-documents/<client_document_id>/upload
                       POST /api/v1/tasks/<task_id>/client-documents/accept
                       POST /api/v1/tasks/<task_id>/client-documents/reupload

Headers:
  X-Member-Id   acting team member (workflow events, pending approvals)
  X-User-Role   "admin" grants the locked-step override
"""

from __future__ import annotations

import json
import logging

from flask import Blueprint, jsonify, request

from auditflow.core.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    ProjectInactiveError,
    ReferentialIntegrityError,
    StateConflictError,
    ValidationError,
)
from auditflow.models.workflow import ClientDocument, Task
from auditflow.services import engagement_service, ordering, task_workflow
from auditflow.services.authorization import has_locked_step_override, resolve_actor
from auditflow.services.helpers.transaction import get_or_404
from auditflow.services.notification import NotificationService
from auditflow.services.step_gate import get_project_gates
from auditflow.services.storage import get_storage
from auditflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

engagement_bp = Blueprint("engagement", __name__, url_prefix="/api/v1")


# ── Request helpers ───────────────────────────────────────────────────────────


def _json() -> dict:
    return request.get_json(silent=True) or {}


def _member_id():
    return request.headers.get("X-Member-Id")


def _override() -> bool:
    return has_locked_step_override(request.headers.get("X-User-Role"))


def _actor_ref() -> str:
    return _member_id() or "system"


def _expected_version(data: dict):
    value = data.get("expected_version")
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("expected_version must be an integer") from None


def _form_list(key: str) -> list:
    raw = request.form.get(key)
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        raise ValidationError(f"{key} must be a JSON list") from None
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a JSON list")
    return value


# ── Error handlers ────────────────────────────────────────────────────────────


@engagement_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@engagement_bp.errorhandler(ReferentialIntegrityError)
def _handle_reference(error: ReferentialIntegrityError):
    return api_error(E.VALIDATION_REFERENCE, str(error), details=error.details)


@engagement_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@engagement_bp.errorhandler(StateConflictError)
def _handle_conflict(error: StateConflictError):
    return api_error(E.CONFLICT_STATE, str(error), details=error.details)


@engagement_bp.errorhandler(ProjectInactiveError)
def _handle_inactive(error: ProjectInactiveError):
    return api_error(E.PROJECT_INACTIVE, str(error), details={"status": error.status})


@engagement_bp.errorhandler(PermissionDeniedError)
def _handle_forbidden(error: PermissionDeniedError):
    return api_error(E.FORBIDDEN, str(error))


# ═════════════════════════════════════════════════════════════════════════
# Projects & team
# ═════════════════════════════════════════════════════════════════════════


@engagement_bp.route("/projects", methods=["POST"])
def create_project():
    """Body: {name, client_name?, description?}"""
    return jsonify(engagement_service.create_project(_json())), 201


@engagement_bp.route("/projects/<int:project_id>", methods=["GET"])
def get_project(project_id):
    return jsonify(engagement_service.get_project(project_id)), 200


@engagement_bp.route("/projects/<int:project_id>/status", methods=["POST"])
def change_project_status(project_id):
    """Body: {status}"""
    status = (_json().get("status") or "").strip()
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return jsonify(engagement_service.change_project_status(project_id, status, _actor_ref())), 200


@engagement_bp.route("/projects/<int:project_id>/members", methods=["POST"])
def add_member(project_id):
    """Body: {user_ref, name?, email?, role?}"""
    return jsonify(engagement_service.add_member(project_id, _json())), 201


# ═════════════════════════════════════════════════════════════════════════
# Structure
# ═════════════════════════════════════════════════════════════════════════


@engagement_bp.route("/projects/<int:project_id>/steps", methods=["POST"])
def create_step(project_id):
    return jsonify(engagement_service.create_step(project_id, _json())), 201


@engagement_bp.route("/steps/<int:step_id>", methods=["PUT"])
def rename_step(step_id):
    return jsonify(engagement_service.rename_step(step_id, _json())), 200


@engagement_bp.route("/steps/<int:step_id>", methods=["DELETE"])
def delete_step(step_id):
    return jsonify(engagement_service.delete_step(step_id)), 200


@engagement_bp.route("/steps/<int:step_id>/tasks", methods=["POST"])
def create_task(step_id):
    """Body: {name, is_required?, client_interact?, multiple_files?,
    approval_roles?, approval_type?, worker_ids?}"""
    return jsonify(engagement_service.create_task(step_id, _json())), 201


@engagement_bp.route("/tasks/<int:task_id>/settings", methods=["PUT"])
def update_task_settings(task_id):
    return jsonify(engagement_service.update_task_settings(task_id, _json(), _actor_ref())), 200


@engagement_bp.route("/tasks/<int:task_id>", methods=["DELETE"])
def delete_task(task_id):
    return jsonify(engagement_service.delete_task(task_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Reorder
# ═════════════════════════════════════════════════════════════════════════


@engagement_bp.route("/projects/<int:project_id>/steps/reorder", methods=["PUT"])
def reorder_steps(project_id):
    """Body: {items: [{id, order}], expected_version?}"""
    data = _json()
    result = ordering.reorder_steps(
        project_id, data.get("items"), _expected_version(data), actor=_actor_ref(),
    )
    return jsonify(result), 200


@engagement_bp.route("/projects/<int:project_id>/tasks/reorder", methods=["PUT"])
def reorder_tasks(project_id):
    """Body: {items: [{id, order, step_id}], expected_version?}"""
    data = _json()
    result = ordering.reorder_tasks(
        project_id, data.get("items"), _expected_version(data), actor=_actor_ref(),
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Gates & reads
# ═════════════════════════════════════════════════════════════════════════


@engagement_bp.route("/projects/<int:project_id>/gates", methods=["GET"])
def project_gates(project_id):
    gates = get_project_gates(project_id, override=_override())
    return jsonify({"project_id": project_id, "gates": [g.to_dict() for g in gates]}), 200


@engagement_bp.route("/tasks/<int:task_id>", methods=["GET"])
def task_detail(task_id):
    return jsonify(task_workflow.get_task_detail(task_id, override=_override())), 200


@engagement_bp.route("/projects/<int:project_id>/approvals/pending", methods=["GET"])
def pending_approvals(project_id):
    items = task_workflow.list_pending_approvals(project_id, _member_id())
    return jsonify({"items": items, "total": len(items)}), 200


@engagement_bp.route("/projects/<int:project_id>/notifications", methods=["GET"])
def member_notifications(project_id):
    """Acting member's notifications, newest first. Query: ?unread=1"""
    member = resolve_actor(project_id, _member_id())
    unread_only = request.args.get("unread", "").lower() in ("1", "true", "yes")
    items = NotificationService.list_for_member(member.id, unread_only=unread_only)
    return jsonify({
        "items": [n.to_dict() for n in items],
        "unread": NotificationService.unread_count(member.id),
    }), 200


@engagement_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def read_notification(notification_id):
    notif = NotificationService.mark_read(notification_id, _member_id())
    return jsonify(notif.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Workflow events
# ═════════════════════════════════════════════════════════════════════════


@engagement_bp.route("/tasks/<int:task_id>/submissions", methods=["POST"])
def submit_task(task_id):
    """Submit work on a task.

    JSON body: {notes?, documents?: [{name, file}], client_documents?: [{name, description?}],
                expected_version?}
    Multipart: files under "files", plus form fields notes, client_documents (JSON list),
               expected_version.
    """
    if request.files:
        task = get_or_404(Task, task_id)
        storage = get_storage()
        documents = [
            {"name": f.filename, "file": storage.save(task.project_id, task.id, f.filename, f.stream)}
            for f in request.files.getlist("files")
        ]
        data = {
            "notes": request.form.get("notes", ""),
            "client_documents": _form_list("client_documents"),
            "expected_version": request.form.get("expected_version"),
        }
    else:
        data = _json()
        documents = data.get("documents") or []

    result = task_workflow.submit(
        task_id,
        _member_id(),
        notes=data.get("notes") or "",
        documents=documents,
        client_documents=data.get("client_documents") or [],
        expected_version=_expected_version(data),
        override=_override(),
    )
    return jsonify(result), 201


@engagement_bp.route("/tasks/<int:task_id>/approve", methods=["POST"])
def approve_task(task_id):
    """Body: {role?, comment?, expected_version?}"""
    data = _json()
    result = task_workflow.approve(
        task_id, _member_id(),
        role=data.get("role"), comment=data.get("comment"),
        expected_version=_expected_version(data),
    )
    return jsonify(result), 200


@engagement_bp.route("/tasks/<int:task_id>/reject", methods=["POST"])
def reject_task(task_id):
    """Body: {comment, role?, expected_version?}"""
    data = _json()
    result = task_workflow.reject(
        task_id, _member_id(), data.get("comment"),
        role=data.get("role"), expected_version=_expected_version(data),
    )
    return jsonify(result), 200


@engagement_bp.route("/client-documents/<int:client_document_id>/upload", methods=["POST"])
def client_upload(client_document_id):
    """Client upload against a document request.

    Multipart: file under "file", optional form field client_comment.
    JSON body: {file (storage reference), client_comment?}
    """
    if request.files:
        upload = request.files.get("file")
        if upload is None:
            return api_error(E.VALIDATION_REQUIRED, "file is required")
        requested = get_or_404(ClientDocument, client_document_id, resource="ClientDocument")
        task = requested.submission.task
        file_ref = get_storage().save(task.project_id, task.id, upload.filename, upload.stream)
        data = dict(request.form)
    else:
        data = _json()
        file_ref = data.get("file") or ""

    result = task_workflow.client_upload(
        client_document_id, file_ref,
        client_comment=data.get("client_comment"),
        expected_version=_expected_version(data),
    )
    return jsonify(result), 200


@engagement_bp.route("/tasks/<int:task_id>/client-documents/accept", methods=["POST"])
def accept_client_documents(task_id):
    data = _json()
    result = task_workflow.accept_client_documents(
        task_id, _member_id(), expected_version=_expected_version(data),
    )
    return jsonify(result), 200


@engagement_bp.route("/tasks/<int:task_id>/client-documents/reupload", methods=["POST"])
def request_reupload(task_id):
    """Body: {comment, expected_version?}"""
    data = _json()
    result = task_workflow.request_reupload(
        task_id, _member_id(), data.get("comment"),
        expected_version=_expected_version(data),
    )
    return jsonify(result), 201
