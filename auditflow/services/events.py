"""
Domain events emitted by the workflow engine.

Services collect events while a unit of work is open and hand them to the
publisher only after the commit succeeded, so subscribers never observe a
rolled-back transition.

Event types:
    approval_required      task, role          next approver must act
    step_unlocked          step                a locked step opened
    client_reply_received  task                client uploaded a requested document
    submission_returned    task, role          approver rejected the submission
    submitted_to_client    task                client documents requested
    task_completed         task                completion_status became completed
"""

import logging
from dataclasses import asdict, dataclass, field

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "approval_required",
    "step_unlocked",
    "client_reply_received",
    "submission_returned",
    "submitted_to_client",
    "task_completed",
)


@dataclass(frozen=True)
class DomainEvent:
    event_type: str
    project_id: int
    entity_type: str
    entity_id: int
    name: str = ""
    role: str | None = None
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


# ── Constructors ─────────────────────────────────────────────────────────────

def approval_required(task, role: str) -> DomainEvent:
    return DomainEvent("approval_required", task.project_id, "task", task.id, task.name, role)


def submission_returned(task, role: str, comment: str) -> DomainEvent:
    return DomainEvent(
        "submission_returned", task.project_id, "task", task.id, task.name, role,
        {"comment": comment},
    )


def submitted_to_client(task) -> DomainEvent:
    return DomainEvent("submitted_to_client", task.project_id, "task", task.id, task.name)


def client_reply_received(task) -> DomainEvent:
    return DomainEvent("client_reply_received", task.project_id, "task", task.id, task.name)


def task_completed(task) -> DomainEvent:
    return DomainEvent("task_completed", task.project_id, "task", task.id, task.name)


def step_unlocked(step) -> DomainEvent:
    return DomainEvent("step_unlocked", step.project_id, "working_step", step.id, step.name)


# ── Publisher ────────────────────────────────────────────────────────────────

class EventPublisher:
    """In-process fan-out of committed domain events to subscribers."""

    def __init__(self):
        self._handlers = []

    def subscribe(self, handler):
        """Register ``handler(event)``; registering the same handler twice is a no-op."""
        if handler not in self._handlers:
            self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def publish(self, events):
        for event in events:
            logger.info(
                "Event %s on %s/%s", event.event_type, event.entity_type, event.entity_id,
                extra={"project_id": event.project_id, "event_type": event.event_type},
            )
            for handler in list(self._handlers):
                # the transition is already committed; a subscriber failure is logged, not raised
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Subscriber %s failed on %s", getattr(handler, "__qualname__", handler),
                        event.event_type,
                        extra={"project_id": event.project_id, "event_type": event.event_type},
                    )


publisher = EventPublisher()
