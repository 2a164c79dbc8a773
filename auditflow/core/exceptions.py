"""
Engagement exception hierarchy.

Services raise these; ``engagement_bp`` maps each type to one HTTP status
and ``api_error`` code:

    NotFoundError               404  ERR_NOT_FOUND
    ValidationError             422  ERR_VALIDATION_INVALID
    ReferentialIntegrityError   422  ERR_VALIDATION_REFERENCE
    StateConflictError          409  ERR_CONFLICT_STATE
    ProjectInactiveError        423  ERR_PROJECT_INACTIVE
    PermissionDeniedError       403  ERR_FORBIDDEN

Usage:
    raise NotFoundError(resource="Task", resource_id=42)
    raise ValidationError("comment is required", details={"comment": "required"})
"""


class AuditflowError(Exception):
    """Base class; ``details`` is the field-level payload of the API error."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class NotFoundError(AuditflowError):
    """A project, step, task, member or client document does not exist."""

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        label = resource if resource_id is None else f"{resource} id={resource_id}"
        super().__init__(f"{label} not found")


class ValidationError(AuditflowError):
    """Well-formed input that breaks a business rule.

    Examples: reject without a comment, a submission with neither files nor
    client document requests, a reorder snapshot that does not cover the
    stored structure.
    """


class ReferentialIntegrityError(ValidationError):
    """A submitted id points outside the project or step."""


class StateConflictError(AuditflowError):
    """The precondition of a transition no longer holds.

    Covers invalid workflow transitions, stale ``expected_version`` tokens
    and lost optimistic-concurrency races.
    """


class ProjectInactiveError(AuditflowError):
    """The project's status does not allow the requested change."""

    def __init__(self, project_id: int, status: str) -> None:
        self.project_id = project_id
        self.status = status
        super().__init__(f"Project id={project_id} is {status}", details={"status": status})


class PermissionDeniedError(AuditflowError):
    """The actor is not an assigned worker or lacks the approval role."""

    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__(message)
