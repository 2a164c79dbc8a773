"""engagement_workflow_schema

Projects, team members, working steps, tasks, submissions, documents,
notifications and the audit trail.

Revision ID: 7f3a9c2e1b40
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7f3a9c2e1b40"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("client_name", sa.String(length=200), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("structure_version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.CheckConstraint(
                "status IN ('draft','in_progress','completed','suspended','canceled')",
                name="ck_project_status",
            ),
            sa.PrimaryKeyConstraint("id"),
        )

    if "team_members" not in existing_tables:
        op.create_table(
            "team_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("user_ref", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="member"),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "user_ref", name="uq_team_member_project_user"),
            sa.CheckConstraint(
                "role IN ('member','team_leader','supervisor','manager','partner')",
                name="ck_team_member_role",
            ),
        )
        op.create_index("ix_team_members_project_id", "team_members", ["project_id"])

    if "working_steps" not in existing_tables:
        op.create_table(
            "working_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("order", sa.Integer(), nullable=False, server_default="1"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_working_steps_project_id", "working_steps", ["project_id"])

    if "tasks" not in existing_tables:
        op.create_table(
            "tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("step_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=300), nullable=False),
            sa.Column("order", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("client_interact", sa.String(length=20), nullable=False, server_default="read_only"),
            sa.Column("multiple_files", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("approval_roles", sa.JSON(), nullable=False),
            sa.Column("approval_type", sa.String(length=20), nullable=False, server_default="all_attempts"),
            sa.Column("completion_status", sa.String(length=20), nullable=False, server_default="pending"),
            _ts("completed_at"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["step_id"], ["working_steps.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(
                "completion_status IN ('pending','in_progress','completed')",
                name="ck_task_completion_status",
            ),
            sa.CheckConstraint(
                "client_interact IN ('read_only','restricted','upload','approval')",
                name="ck_task_client_interact",
            ),
            sa.CheckConstraint("approval_type IN ('once','all_attempts')", name="ck_task_approval_type"),
        )
        op.create_index("ix_tasks_project_id", "tasks", ["project_id"])
        op.create_index("ix_tasks_step_id", "tasks", ["step_id"])

    if "task_workers" not in existing_tables:
        op.create_table(
            "task_workers",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("team_member_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["team_member_id"], ["team_members.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("task_id", "team_member_id", name="uq_task_worker"),
        )
        op.create_index("ix_task_workers_task_id", "task_workers", ["task_id"])
        op.create_index("ix_task_workers_team_member_id", "task_workers", ["team_member_id"])

    if "submissions" not in existing_tables:
        op.create_table(
            "submissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("sequence_no", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="submitted"),
            sa.Column("current_role", sa.String(length=20), nullable=True),
            sa.Column("outcome_comment", sa.Text(), nullable=True),
            sa.Column("client_comment", sa.Text(), nullable=True),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_id"], ["team_members.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("task_id", "sequence_no", name="uq_submission_task_sequence"),
            sa.CheckConstraint(
                "status IN ('submitted','under_review','returned','approved_final',"
                "'submitted_to_client','client_reply')",
                name="ck_submission_status",
            ),
        )
        op.create_index("ix_submissions_task_id", "submissions", ["task_id"])

    if "submission_approvals" not in existing_tables:
        op.create_table(
            "submission_approvals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("submission_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=False),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("decision", sa.String(length=10), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["submission_id"], ["submissions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_id"], ["team_members.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("decision IN ('approve','reject')", name="ck_submission_approval_decision"),
        )
        op.create_index("ix_submission_approvals_submission_id", "submission_approvals", ["submission_id"])

    if "documents" not in existing_tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("submission_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("file", sa.String(length=500), nullable=False),
            _ts("uploaded_at"),
            sa.ForeignKeyConstraint(["submission_id"], ["submissions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_documents_submission_id", "documents", ["submission_id"])

    if "client_documents" not in existing_tables:
        op.create_table(
            "client_documents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("submission_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("file", sa.String(length=500), nullable=True),
            _ts("uploaded_at"),
            sa.ForeignKeyConstraint(["submission_id"], ["submissions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_client_documents_submission_id", "client_documents", ["submission_id"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("recipient_member_id", sa.Integer(), nullable=True),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True, server_default=sa.false()),
            _ts("read_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["recipient_member_id"], ["team_members.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_project_id", "notifications", ["project_id"])
        op.create_index("ix_notifications_recipient_member_id", "notifications", ["recipient_member_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff", sa.JSON(), nullable=False),
            _ts("created_at", nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_project_id", "audit_logs", ["project_id"])
        op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
        op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    for table in (
        "audit_logs", "notifications", "client_documents", "documents",
        "submission_approvals", "submissions", "task_workers", "tasks",
        "working_steps", "team_members", "projects",
    ):
        if table in existing_tables:
            op.drop_table(table)
