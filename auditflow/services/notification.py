"""
Audit Engagement Workflow
Notification Service.

Persists in-app notifications for committed workflow events. Recipients are
resolved from the project team: approvers for ``approval_required``, task
workers for outcome events, every active member for ``step_unlocked``.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from auditflow.core.exceptions import NotFoundError, PermissionDeniedError
from auditflow.models import db
from auditflow.models.notification import Notification
from auditflow.models.project import TeamMember
from auditflow.models.workflow import ROLE_LABELS, Task
from auditflow.services.authorization import resolve_actor
from auditflow.services.events import publisher

logger = logging.getLogger(__name__)

_TITLES = {
    "approval_required": "Approval required: {name}",
    "step_unlocked": "Step unlocked: {name}",
    "client_reply_received": "Client uploaded documents: {name}",
    "submission_returned": "Returned for revision: {name}",
    "submitted_to_client": "Submitted to client: {name}",
    "task_completed": "Task completed: {name}",
}


class NotificationService:
    """Stateless service class for notification operations."""

    @staticmethod
    def broadcast(*, project_id, event_type, title, message="",
                  entity_type="", entity_id=None, recipient_ids=()):
        """
        Add one notification per recipient member (flush only).

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for member_id in recipient_ids:
            notif = Notification(
                project_id=project_id,
                recipient_member_id=member_id,
                event_type=event_type,
                title=title,
                message=message,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.flush()
        return notifications

    @staticmethod
    def list_for_member(member_id, unread_only=False, limit=50):
        q = Notification.query.filter_by(recipient_member_id=member_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        return q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    @staticmethod
    def unread_count(member_id):
        return Notification.query.filter_by(recipient_member_id=member_id, is_read=False).count()

    @staticmethod
    def mark_read(notification_id, member_id):
        """Mark one of the acting member's notifications as read and commit."""
        notif = db.session.get(Notification, notification_id)
        if notif is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        member = resolve_actor(notif.project_id, member_id)
        if notif.recipient_member_id != member.id:
            raise PermissionDeniedError("Notification belongs to another member")
        notif.mark_read()
        db.session.commit()
        return notif

    # ── Event subscriber ─────────────────────────────────────────────────

    @staticmethod
    def recipients_for(event) -> list[int]:
        members = TeamMember.query.filter_by(project_id=event.project_id, is_active=True)
        if event.event_type == "approval_required":
            return [m.id for m in members.filter_by(role=event.role).all()]
        if event.event_type == "step_unlocked":
            return [m.id for m in members.all()]
        task = db.session.get(Task, event.entity_id)
        if task is None:
            return []
        return sorted(task.worker_member_ids)

    @staticmethod
    def handle_event(event):
        """Persist notifications for one committed domain event."""
        recipients = NotificationService.recipients_for(event)
        if not recipients:
            logger.debug("No recipients for %s", event.event_type,
                         extra={"project_id": event.project_id, "event_type": event.event_type})
            return []
        message = ""
        if event.role:
            message = f"Role: {ROLE_LABELS.get(event.role, event.role)}"
        if event.payload.get("comment"):
            message = f"{message}. {event.payload['comment']}" if message else event.payload["comment"]
        try:
            created = NotificationService.broadcast(
                project_id=event.project_id,
                event_type=event.event_type,
                title=_TITLES[event.event_type].format(name=event.name),
                message=message,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                recipient_ids=recipients,
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return created


def register_notification_subscriber():
    publisher.subscribe(NotificationService.handle_event)
