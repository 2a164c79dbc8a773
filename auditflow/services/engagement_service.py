"""
Engagement administration service.

Project, team member, working step and task set-up. Step and task
positions stay dense (1..N) after every create and delete; settings
changes that flip ``is_required`` recompute the step gates.
"""

from __future__ import annotations

import logging

from auditflow.core.exceptions import (
    ProjectInactiveError,
    StateConflictError,
    ValidationError,
)
from auditflow.models import db
from auditflow.models.audit import write_audit
from auditflow.models.project import (
    MEMBER_ROLES,
    Project,
    TeamMember,
    validate_project_transition,
)
from auditflow.models.workflow import (
    ACTIVE_SUBMISSION_STATUSES,
    APPROVAL_ROLES,
    APPROVAL_TYPES,
    CLIENT_INTERACT_MODES,
    Task,
    TaskWorker,
    WorkingStep,
)
from auditflow.services import events
from auditflow.services.helpers.transaction import atomic, get_or_404
from auditflow.services.step_gate import gates_for_project, newly_unlocked

logger = logging.getLogger(__name__)

# frozen while the latest submission is active
CHAIN_SETTINGS = frozenset({"approval_roles", "approval_type"})


def _text(data: dict, key: str, *, required: bool = False, default: str = "") -> str:
    value = str(data.get(key, default) or "").strip()
    if required and not value:
        raise ValidationError(f"{key} is required", details={key: "required"})
    return value


def _require_editable(project: Project) -> None:
    if not project.is_structure_editable:
        raise ProjectInactiveError(project.id, project.status)


def _unlock_events(project: Project, before) -> list:
    steps = {s.id: s for s in project.steps}
    return [events.step_unlocked(steps[sid]) for sid in newly_unlocked(before, gates_for_project(project))
            if sid in steps]


# ═════════════════════════════════════════════════════════════════════════════
# Projects & team
# ═════════════════════════════════════════════════════════════════════════════


def create_project(data: dict) -> dict:
    with atomic():
        project = Project(
            name=_text(data, "name", required=True),
            client_name=_text(data, "client_name"),
            description=_text(data, "description"),
        )
        db.session.add(project)
        db.session.flush()
        write_audit(entity_type="project", entity_id=project.id, action="create",
                    project_id=project.id, diff={"name": project.name})
        result = project.to_dict()
    logger.info("Created project %s", result["id"], extra={"project_id": result["id"]})
    return result


def get_project(project_id: int) -> dict:
    return get_or_404(Project, project_id).to_dict(include_children=True)


def change_project_status(project_id: int, new_status: str, actor: str = "system") -> dict:
    """Move a project along its lifecycle (draft → in_progress → …)."""
    with atomic():
        project = get_or_404(Project, project_id)
        old_status = project.status
        if not validate_project_transition(old_status, new_status):
            raise StateConflictError(
                f"Cannot change project status from {old_status} to {new_status}",
                details={"status": old_status},
            )
        project.status = new_status
        write_audit(entity_type="project", entity_id=project.id, action="project.status_change",
                    actor=actor, project_id=project.id,
                    diff={"status": {"old": old_status, "new": new_status}})
        result = project.to_dict()
    logger.info("Project %s: %s → %s", project_id, old_status, new_status,
                extra={"project_id": project_id})
    return result


def add_member(project_id: int, data: dict) -> dict:
    with atomic():
        project = get_or_404(Project, project_id)
        user_ref = _text(data, "user_ref", required=True)
        role = _text(data, "role", default="member")
        if role not in MEMBER_ROLES:
            raise ValidationError(f"Unknown role: {role}", details={"role": sorted(MEMBER_ROLES)})
        if project.members.filter_by(user_ref=user_ref).first():
            raise StateConflictError(f"{user_ref} is already on this project")
        member = TeamMember(
            project_id=project.id,
            user_ref=user_ref,
            name=_text(data, "name", default=user_ref),
            email=_text(data, "email"),
            role=role,
        )
        db.session.add(member)
        db.session.flush()
        result = member.to_dict()
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Working steps
# ═════════════════════════════════════════════════════════════════════════════


def create_step(project_id: int, data: dict) -> dict:
    """Append a step at the end of the project."""
    with atomic():
        project = get_or_404(Project, project_id)
        _require_editable(project)
        step = WorkingStep(name=_text(data, "name", required=True), order=len(project.steps) + 1)
        project.steps.append(step)
        db.session.flush()
        write_audit(entity_type="working_step", entity_id=step.id, action="create",
                    project_id=project.id, diff={"name": step.name, "order": step.order})
        result = step.to_dict()
    return result


def rename_step(step_id: int, data: dict) -> dict:
    with atomic():
        step = get_or_404(WorkingStep, step_id)
        _require_editable(step.project)
        old_name = step.name
        step.name = _text(data, "name", required=True)
        write_audit(entity_type="working_step", entity_id=step.id, action="update",
                    project_id=step.project_id, diff={"name": {"old": old_name, "new": step.name}})
        result = step.to_dict()
    return result


def delete_step(step_id: int) -> dict:
    """Delete a step with its tasks and close the gap in step order."""
    with atomic():
        step = get_or_404(WorkingStep, step_id)
        project = step.project
        _require_editable(project)
        before = gates_for_project(project)
        project.steps.remove(step)
        for position, remaining in enumerate(sorted(project.steps, key=lambda s: s.order), 1):
            remaining.order = position
        project.structure_version += 1
        write_audit(entity_type="working_step", entity_id=step_id, action="delete",
                    project_id=project.id, diff={"name": step.name})
        db.session.flush()
        pending = _unlock_events(project, before)
        result = project.to_dict(include_children=True)
    events.publisher.publish(pending)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════════


def _apply_task_settings(task: Task, project: Project, data: dict) -> dict:
    """Validate and set task settings; returns the {field: {old, new}} diff."""
    diff = {}

    def _set(attr, value):
        old = getattr(task, attr)
        if old != value:
            diff[attr] = {"old": old, "new": value}
            setattr(task, attr, value)

    if "name" in data:
        _set("name", _text(data, "name", required=True))
    if "is_required" in data:
        _set("is_required", bool(data["is_required"]))
    if "multiple_files" in data:
        _set("multiple_files", bool(data["multiple_files"]))
    if "client_interact" in data:
        mode = data["client_interact"]
        if mode not in CLIENT_INTERACT_MODES:
            raise ValidationError(f"Unknown client_interact: {mode}",
                                  details={"client_interact": sorted(CLIENT_INTERACT_MODES)})
        _set("client_interact", mode)
    if "approval_type" in data:
        approval_type = data["approval_type"]
        if approval_type not in APPROVAL_TYPES:
            raise ValidationError(f"Unknown approval_type: {approval_type}",
                                  details={"approval_type": sorted(APPROVAL_TYPES)})
        _set("approval_type", approval_type)
    if "approval_roles" in data:
        roles = data["approval_roles"] or []
        if not isinstance(roles, list):
            raise ValidationError("approval_roles must be a list", details={"approval_roles": roles})
        unknown = [r for r in roles if r not in APPROVAL_ROLES]
        if unknown:
            raise ValidationError("approval_roles must be a list of approval roles",
                                  details={"unknown": unknown, "allowed": list(APPROVAL_ROLES)})
        old_roles = list(task.approval_roles or [])
        task.approval_roles = roles
        if list(task.approval_roles) != old_roles:
            diff["approval_roles"] = {"old": old_roles, "new": list(task.approval_roles)}
    if "worker_ids" in data:
        try:
            wanted = {int(w) for w in data["worker_ids"] or []}
        except (TypeError, ValueError):
            raise ValidationError("worker_ids must be team member ids") from None
        members = {m.id for m in project.members.filter(TeamMember.id.in_(wanted)).all()} if wanted else set()
        foreign = sorted(wanted - members)
        if foreign:
            raise ValidationError("Workers must be members of the project",
                                  details={"worker_ids": foreign})
        current = task.worker_member_ids
        if wanted != current:
            task.workers[:] = [w for w in task.workers if w.team_member_id in wanted]
            for member_id in sorted(wanted - current):
                task.workers.append(TaskWorker(team_member_id=member_id))
            diff["worker_ids"] = {"old": sorted(current), "new": sorted(wanted)}
    return diff


def create_task(step_id: int, data: dict) -> dict:
    """Append a task at the end of the step."""
    with atomic():
        step = get_or_404(WorkingStep, step_id)
        project = step.project
        _require_editable(project)
        before = gates_for_project(project)
        task = Task(
            project_id=project.id,
            name=_text(data, "name", required=True),
            order=len(step.tasks) + 1,
            approval_roles=[],
        )
        step.tasks.append(task)
        _apply_task_settings(task, project, data)
        db.session.flush()
        write_audit(entity_type="task", entity_id=task.id, action="create",
                    project_id=project.id, diff={"step_id": step.id, "name": task.name})
        pending = _unlock_events(project, before)
        result = task.to_dict()
    events.publisher.publish(pending)
    return result


def update_task_settings(task_id: int, data: dict, actor: str = "system") -> dict:
    with atomic():
        task = get_or_404(Task, task_id)
        project = task.step.project
        _require_editable(project)
        before = gates_for_project(project)
        diff = _apply_task_settings(task, project, data)
        if CHAIN_SETTINGS.intersection(diff) and task.status in ACTIVE_SUBMISSION_STATUSES:
            raise StateConflictError(
                f"Approval settings of task {task.id} cannot change while it is {task.status_label}",
                details={"status": task.status, "fields": sorted(CHAIN_SETTINGS.intersection(diff))},
            )
        if diff:
            write_audit(entity_type="task", entity_id=task.id, action="update", actor=actor,
                        project_id=project.id, diff=diff)
        pending = _unlock_events(project, before)
        result = task.to_dict()
    events.publisher.publish(pending)
    return result


def delete_task(task_id: int) -> dict:
    """Delete a task and close the gap in its step's task order."""
    with atomic():
        task = get_or_404(Task, task_id)
        step = task.step
        project = step.project
        _require_editable(project)
        before = gates_for_project(project)
        step.tasks.remove(task)
        for position, remaining in enumerate(sorted(step.tasks, key=lambda t: t.order), 1):
            remaining.order = position
        write_audit(entity_type="task", entity_id=task_id, action="delete",
                    project_id=project.id, diff={"step_id": step.id, "name": task.name})
        db.session.flush()
        pending = _unlock_events(project, before)
        result = step.to_dict(include_children=True)
    events.publisher.publish(pending)
    return result
