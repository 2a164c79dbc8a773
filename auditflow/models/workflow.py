"""
Audit Engagement Workflow
Working step / task / submission domain models.

Models:
    - WorkingStep:         ordered stage of an engagement
    - Task:                unit of work inside a step (aka working sub-step)
    - TaskWorker:          task ↔ team member assignment
    - Submission:          one attempt at completing a task (aka assignment)
    - SubmissionApproval:  approval log entry (approve / reject) on a submission
    - Document:            file uploaded by the team with a submission
    - ClientDocument:      document requested from the client, filled on upload

Architecture:
    WorkingStep ──1:N──▶ Task ──1:N──▶ Submission ──1:N──▶ Document
                                                  ──1:N──▶ ClientDocument
                                                  ──1:N──▶ SubmissionApproval
    Task ──N:M──▶ TeamMember  (via TaskWorker)

Lifecycle states:
    Submission:  submitted → under_review(role) → returned(role)
                 under_review → approved_final | submitted_to_client
                 submitted_to_client → client_reply → approved_final
    Task.completion_status:  pending → in_progress → completed
"""

from datetime import datetime, timezone

from sqlalchemy.orm import validates

from auditflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

# Fixed approval priority, lowest first.
APPROVAL_ROLES = ("team_leader", "supervisor", "manager", "partner")
ROLE_PRIORITY = {role: idx for idx, role in enumerate(APPROVAL_ROLES, 1)}
ROLE_LABELS = {
    "team_leader": "Team Leader",
    "supervisor": "Supervisor",
    "manager": "Manager",
    "partner": "Partner",
}

APPROVAL_TYPES = {"once", "all_attempts"}
CLIENT_INTERACT_MODES = {"read_only", "restricted", "upload", "approval"}
COMPLETION_STATUSES = {"pending", "in_progress", "completed"}

SUBMISSION_STATUSES = {
    "submitted", "under_review", "returned",
    "approved_final", "submitted_to_client", "client_reply",
}
# submission is still moving through the approval chain or the client round
ACTIVE_SUBMISSION_STATUSES = frozenset({"submitted", "under_review", "submitted_to_client", "client_reply"})
APPROVAL_DECISIONS = {"approve", "reject"}

SUBMISSION_TRANSITIONS = {
    "submitted":           ["under_review", "approved_final", "submitted_to_client"],
    "under_review":        ["under_review", "returned", "approved_final", "submitted_to_client"],
    "returned":            [],
    "approved_final":      [],
    "submitted_to_client": ["client_reply"],
    "client_reply":        ["client_reply", "approved_final"],
}


def role_priority(role: str) -> int:
    """Sort key for approval roles (team_leader first, partner last)."""
    try:
        return ROLE_PRIORITY[role]
    except KeyError:
        raise ValueError(f"Unknown approval role: {role!r}") from None


def sort_roles(roles) -> list[str]:
    """Return de-duplicated roles in fixed approval priority."""
    return sorted(set(roles or []), key=role_priority)


def validate_submission_transition(old_status, new_status):
    """Return True if Submission status transition is valid."""
    return new_status in SUBMISSION_TRANSITIONS.get(old_status, [])


def status_label(status: str, role: str | None = None) -> str:
    """Human-readable label for a submission status."""
    role_label = ROLE_LABELS.get(role or "", role or "")
    if status == "draft":
        return "Draft"
    if status == "submitted":
        return "Submitted"
    if status == "under_review":
        return f"Under Review by {role_label}"
    if status == "returned":
        return f"Returned for Revision (by {role_label})"
    if status == "approved_final":
        return "Approved"
    if status == "submitted_to_client":
        return "Submitted to Client"
    if status == "client_reply":
        return "Client Reply"
    return status


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. WorkingStep
# ═════════════════════════════════════════════════════════════════════════════


class WorkingStep(db.Model):
    """
    Ordered stage of an engagement.
    Lock state is computed by the step gate service (not stored).
    """

    __tablename__ = "working_steps"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    order = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Dense 1..N position within the project",
    )

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships ────────────────────────────────────────────────────
    tasks = db.relationship(
        "Task", backref="step", lazy="select",
        cascade="all, delete-orphan", order_by="Task.order",
    )

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "order": self.order,
            "task_count": len(self.tasks),
            "required_task_count": sum(1 for t in self.tasks if t.is_required),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            result["tasks"] = [t.to_dict() for t in self.tasks]
        return result

    def __repr__(self):
        return f"<WorkingStep {self.id}: #{self.order} {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Task
# ═════════════════════════════════════════════════════════════════════════════


class Task(db.Model):
    """
    Unit of work within a working step.

    ``approval_roles`` is always stored in fixed role priority regardless of
    the order it was assigned in.
    """

    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("working_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(300), nullable=False)
    order = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Dense 1..N position within the step",
    )

    is_required = db.Column(db.Boolean, nullable=False, default=False)
    client_interact = db.Column(
        db.String(20), nullable=False, default="read_only",
        comment="read_only | restricted | upload | approval",
    )
    multiple_files = db.Column(db.Boolean, nullable=False, default=False)
    approval_roles = db.Column(db.JSON, nullable=False, default=list)
    approval_type = db.Column(
        db.String(20), nullable=False, default="all_attempts",
        comment="once | all_attempts",
    )

    completion_status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | completed",
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "completion_status IN ('pending','in_progress','completed')",
            name="ck_task_completion_status",
        ),
        db.CheckConstraint(
            "client_interact IN ('read_only','restricted','upload','approval')",
            name="ck_task_client_interact",
        ),
        db.CheckConstraint(
            "approval_type IN ('once','all_attempts')",
            name="ck_task_approval_type",
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    # ── Relationships ────────────────────────────────────────────────────
    submissions = db.relationship(
        "Submission", backref="task", lazy="select",
        cascade="all, delete-orphan", order_by="Submission.sequence_no.desc()",
    )
    workers = db.relationship(
        "TaskWorker", backref="task", lazy="select",
        cascade="all, delete-orphan",
    )

    @validates("approval_roles")
    def _sort_approval_roles(self, key, roles):
        return sort_roles(roles)

    @property
    def latest_submission(self):
        return self.submissions[0] if self.submissions else None

    @property
    def status(self) -> str:
        latest = self.latest_submission
        return latest.status if latest else "draft"

    @property
    def status_label(self) -> str:
        latest = self.latest_submission
        if not latest:
            return status_label("draft")
        return status_label(latest.status, latest.current_role)

    @property
    def worker_member_ids(self) -> set[int]:
        return {w.team_member_id for w in self.workers}

    def to_dict(self, include_history=False):
        latest = self.latest_submission
        result = {
            "id": self.id,
            "project_id": self.project_id,
            "step_id": self.step_id,
            "name": self.name,
            "order": self.order,
            "is_required": self.is_required,
            "client_interact": self.client_interact,
            "multiple_files": self.multiple_files,
            "approval_roles": list(self.approval_roles or []),
            "approval_type": self.approval_type,
            "completion_status": self.completion_status,
            "completed_at": _iso(self.completed_at),
            "status": self.status,
            "status_label": self.status_label,
            "current_role": latest.current_role if latest else None,
            "worker_ids": sorted(self.worker_member_ids),
            "version": self.version,
        }
        if include_history:
            result["submissions"] = [s.to_dict() for s in self.submissions]
        elif latest:
            result["latest_submission"] = latest.to_dict()
        return result

    def __repr__(self):
        return f"<Task {self.id}: #{self.order} {self.name[:40]} [{self.completion_status}]>"


class TaskWorker(db.Model):
    """Assignment of a team member to a task."""

    __tablename__ = "task_workers"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    team_member_id = db.Column(
        db.Integer, db.ForeignKey("team_members.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    __table_args__ = (
        db.UniqueConstraint("task_id", "team_member_id", name="uq_task_worker"),
    )

    member = db.relationship("TeamMember")

    def __repr__(self):
        return f"<TaskWorker task={self.task_id} member={self.team_member_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Submission
# ═════════════════════════════════════════════════════════════════════════════


class Submission(db.Model):
    """
    One attempt at completing a task.

    Only the highest ``sequence_no`` of a task is active; older rows are
    history and are never modified.
    """

    __tablename__ = "submissions"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence_no = db.Column(db.Integer, nullable=False, default=1)
    notes = db.Column(db.Text, default="")
    status = db.Column(
        db.String(30), nullable=False, default="submitted",
        comment="submitted | under_review | returned | approved_final | "
                "submitted_to_client | client_reply",
    )
    current_role = db.Column(
        db.String(20), nullable=True,
        comment="Awaited role (under_review) or rejecting role (returned)",
    )
    outcome_comment = db.Column(db.Text, nullable=True, comment="Rejection / re-upload reason")
    client_comment = db.Column(db.Text, nullable=True)
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("team_members.id", ondelete="SET NULL"),
        nullable=True,
    )
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("task_id", "sequence_no", name="uq_submission_task_sequence"),
        db.CheckConstraint(
            "status IN ('submitted','under_review','returned','approved_final',"
            "'submitted_to_client','client_reply')",
            name="ck_submission_status",
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    # ── Relationships ────────────────────────────────────────────────────
    documents = db.relationship(
        "Document", backref="submission", lazy="select",
        cascade="all, delete-orphan", order_by="Document.id",
    )
    client_documents = db.relationship(
        "ClientDocument", backref="submission", lazy="select",
        cascade="all, delete-orphan", order_by="ClientDocument.id",
    )
    approvals = db.relationship(
        "SubmissionApproval", backref="submission", lazy="select",
        cascade="all, delete-orphan", order_by="SubmissionApproval.id",
    )
    created_by = db.relationship("TeamMember")

    @property
    def approval_log(self) -> list[tuple[str, str]]:
        return [(a.role, a.decision) for a in self.approvals]

    @property
    def has_uploaded_client_documents(self) -> bool:
        return any(cd.file for cd in self.client_documents)

    @property
    def all_client_documents_uploaded(self) -> bool:
        return all(cd.file for cd in self.client_documents)

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "sequence_no": self.sequence_no,
            "notes": self.notes,
            "status": self.status,
            "status_label": status_label(self.status, self.current_role),
            "current_role": self.current_role,
            "outcome_comment": self.outcome_comment,
            "client_comment": self.client_comment,
            "created_by_id": self.created_by_id,
            "version": self.version,
            "documents": [d.to_dict() for d in self.documents],
            "client_documents": [cd.to_dict() for cd in self.client_documents],
            "approvals": [a.to_dict() for a in self.approvals],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Submission {self.id}: task={self.task_id} #{self.sequence_no} [{self.status}]>"


class SubmissionApproval(db.Model):
    """Append-only approval decision on a submission."""

    __tablename__ = "submission_approvals"

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer, db.ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    role = db.Column(db.String(20), nullable=False)
    actor_id = db.Column(
        db.Integer, db.ForeignKey("team_members.id", ondelete="SET NULL"),
        nullable=True,
    )
    decision = db.Column(db.String(10), nullable=False, comment="approve | reject")
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint("decision IN ('approve','reject')", name="ck_submission_approval_decision"),
    )

    actor = db.relationship("TeamMember")

    def to_dict(self):
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "role": self.role,
            "actor_id": self.actor_id,
            "actor_name": self.actor.name if self.actor else None,
            "decision": self.decision,
            "comment": self.comment,
            "created_at": _iso(self.created_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 4. Documents
# ═════════════════════════════════════════════════════════════════════════════


class Document(db.Model):
    """File uploaded by the team with a submission."""

    __tablename__ = "documents"

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer, db.ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    file = db.Column(db.String(500), nullable=False, comment="Storage reference")
    uploaded_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "name": self.name,
            "file": self.file,
            "uploaded_at": _iso(self.uploaded_at),
        }


class ClientDocument(db.Model):
    """Document requested from the client; ``file`` is set by the client upload."""

    __tablename__ = "client_documents"

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer, db.ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    file = db.Column(db.String(500), nullable=True, comment="Storage reference once uploaded")
    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "name": self.name,
            "description": self.description,
            "file": self.file,
            "uploaded_at": _iso(self.uploaded_at),
        }
