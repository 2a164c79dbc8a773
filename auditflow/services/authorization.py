"""
Authorization collaborator for the workflow engine.

The engine does not authenticate; the HTTP layer passes the acting team
member id (``X-Member-Id``) and an optional platform role
(``X-User-Role``). This module turns those into checked capabilities.

Raises PermissionDeniedError (HTTP 403) on every failed check.
"""

import logging

from auditflow.core.exceptions import PermissionDeniedError
from auditflow.models import db
from auditflow.models.project import TeamMember

logger = logging.getLogger(__name__)

# Platform roles allowed to open locked steps
LOCKED_STEP_OVERRIDE_ROLES = frozenset({"admin"})


def resolve_actor(project_id: int, member_id) -> TeamMember:
    """Return the active team member acting on ``project_id``."""
    if member_id in (None, ""):
        raise PermissionDeniedError("Acting team member is required")
    try:
        member_id = int(member_id)
    except (TypeError, ValueError):
        raise PermissionDeniedError("Acting team member id must be an integer") from None
    member = db.session.get(TeamMember, member_id)
    if member is None or member.project_id != project_id or not member.is_active:
        logger.info("Actor %s rejected for project", member_id, extra={"project_id": project_id})
        raise PermissionDeniedError("Actor is not an active member of this project")
    return member


def require_worker(task, member: TeamMember) -> None:
    if member.id not in task.worker_member_ids:
        raise PermissionDeniedError(f"{member.name} is not assigned to task {task.id}")


def require_approval_role(task, member: TeamMember, role: str | None = None) -> str:
    """
    Return the approval role ``member`` acts in for ``task``.

    ``role`` (optional) is the role the caller claims to act in; it must be
    the member's own role.
    """
    if role is not None and role != member.role:
        raise PermissionDeniedError(f"{member.name} cannot act as {role}")
    if member.role not in (task.approval_roles or []):
        raise PermissionDeniedError(f"{member.name} has no approval role on task {task.id}")
    return member.role


def has_locked_step_override(user_role: str | None) -> bool:
    return (user_role or "").lower() in LOCKED_STEP_OVERRIDE_ROLES
