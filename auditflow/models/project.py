"""
Audit Engagement Workflow
Project domain models.

Models:
    - Project:     one audit engagement; owns its working steps and team
    - TeamMember:  person assigned to a project with an engagement role

Architecture:
    Project ──1:N──▶ WorkingStep ──1:N──▶ Task
    Project ──1:N──▶ TeamMember

Lifecycle states:
    Project:  draft → in_progress → completed | suspended | canceled
              suspended → in_progress | canceled
"""

from datetime import datetime, timezone

from auditflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PROJECT_STATUSES = {"draft", "in_progress", "completed", "suspended", "canceled"}

# Only this status accepts submissions and approval decisions.
ACTIVE_PROJECT_STATUS = "in_progress"

# Steps and tasks can no longer be added, removed or reordered.
STRUCTURE_FROZEN_STATUSES = {"completed", "canceled"}

PROJECT_TRANSITIONS = {
    "draft":       ["in_progress", "canceled"],
    "in_progress": ["completed", "suspended", "canceled"],
    "suspended":   ["in_progress", "canceled"],
    "completed":   [],
    "canceled":    [],
}

MEMBER_ROLES = {"member", "team_leader", "supervisor", "manager", "partner"}


def validate_project_transition(old_status, new_status):
    """Return True if Project status transition is valid."""
    return new_status in PROJECT_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. Project
# ═════════════════════════════════════════════════════════════════════════════


class Project(db.Model):
    """Audit engagement for one client."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    client_name = db.Column(db.String(200), default="")
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | in_progress | completed | suspended | canceled",
    )
    structure_version = db.Column(
        db.Integer, nullable=False, default=0,
        comment="Bumped on every committed step/task reorder",
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
        db.CheckConstraint(
            "status IN ('draft','in_progress','completed','suspended','canceled')",
            name="ck_project_status",
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    # ── Relationships ────────────────────────────────────────────────────
    steps = db.relationship(
        "WorkingStep", backref="project", lazy="select",
        cascade="all, delete-orphan", order_by="WorkingStep.order",
    )
    members = db.relationship(
        "TeamMember", backref="project", lazy="dynamic",
        cascade="all, delete-orphan", order_by="TeamMember.id",
    )

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE_PROJECT_STATUS

    @property
    def is_structure_editable(self) -> bool:
        return self.status not in STRUCTURE_FROZEN_STATUSES

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "name": self.name,
            "client_name": self.client_name,
            "description": self.description,
            "status": self.status,
            "structure_version": self.structure_version,
            "step_count": len(self.steps),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_children:
            result["steps"] = [s.to_dict(include_children=True) for s in self.steps]
            result["members"] = [m.to_dict() for m in self.members]
        return result

    def __repr__(self):
        return f"<Project {self.id}: {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. TeamMember
# ═════════════════════════════════════════════════════════════════════════════


class TeamMember(db.Model):
    """
    Person assigned to a project.

    ``role`` decides which approval step the member may act on; ``member``
    can only work on tasks.
    """

    __tablename__ = "team_members"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_ref = db.Column(
        db.String(100), nullable=False,
        comment="External identity reference (user id / login)",
    )
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(200), default="")
    role = db.Column(
        db.String(20), nullable=False, default="member",
        comment="member | team_leader | supervisor | manager | partner",
    )
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("project_id", "user_ref", name="uq_team_member_project_user"),
        db.CheckConstraint(
            "role IN ('member','team_leader','supervisor','manager','partner')",
            name="ck_team_member_role",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_ref": self.user_ref,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TeamMember {self.id}: {self.name} ({self.role})>"
