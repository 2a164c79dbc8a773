"""
Audit Engagement Workflow
Notification model.

One row per recipient team member per committed workflow event. Rows are
written by ``NotificationService.handle_event`` after the event's unit of
work has committed, so a failed transition never leaves a notification.
"""

from datetime import datetime, timezone

from auditflow.models import db

NOTIFICATION_EVENT_TYPES = {
    "approval_required",
    "client_reply_received",
    "step_unlocked",
    "submission_returned",
    "submitted_to_client",
    "task_completed",
}


def _iso(value):
    return value.isoformat() if value else None


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    recipient_member_id = db.Column(
        db.Integer, db.ForeignKey("team_members.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    event_type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    # what the notification points at: "task" or "working_step"
    entity_type = db.Column(db.String(30), default="")
    entity_id = db.Column(db.Integer, nullable=True)

    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    _SERIALIZED = (
        "id", "project_id", "recipient_member_id", "event_type", "title",
        "message", "entity_type", "entity_id", "is_read",
    )

    def mark_read(self):
        if not self.is_read:
            self.is_read = True
            self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        data = {key: getattr(self, key) for key in self._SERIALIZED}
        data["read_at"] = _iso(self.read_at)
        data["created_at"] = _iso(self.created_at)
        return data

    def __repr__(self):
        return f"<Notification {self.id} {self.event_type} member={self.recipient_member_id}>"
