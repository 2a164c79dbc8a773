"""
Audit Engagement Workflow
Activity trail model.

One row per committed workflow transition, structure change or reorder.
Rows are written inside the caller's unit of work, so a rolled-back event
leaves no trail.
"""

from datetime import datetime, timezone

from auditflow.models import db

AUDIT_ENTITY_TYPES = {"project", "working_step", "task"}

AUDIT_ACTIONS = {
    "task.submit",
    "task.approve",
    "task.reject",
    "task.client_upload",
    "task.accept_client_documents",
    "task.request_reupload",
    "project.reorder_steps",
    "project.reorder_tasks",
    "project.status_change",
    "create",
    "update",
    "delete",
}


class AuditLog(db.Model):
    """Append-only activity row; ``diff`` holds the old/new values."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(60), nullable=False, index=True)
    actor = db.Column(
        db.String(150), nullable=False, default="system",
        comment="member user_ref, 'client' or 'system'",
    )
    diff = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity": f"{self.entity_type}/{self.entity_id}",
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} {self.entity_type}/{self.entity_id} by {self.actor}>"


def write_audit(*, entity_type: str, entity_id: int, action: str, actor: str = "system",
                project_id: int | None = None, diff: dict | None = None) -> AuditLog:
    """Add an activity row and flush; the caller owns the commit."""
    if entity_type not in AUDIT_ENTITY_TYPES or action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit entry {entity_type}:{action}")
    log = AuditLog(
        project_id=project_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor=actor,
        diff=diff or {},
    )
    db.session.add(log)
    db.session.flush()
    return log
