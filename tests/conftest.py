"""
Shared pytest fixtures for the audit engagement workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - engagement: in-progress project with a team, two steps and tasks

ORM helpers commit: a failing service call rolls the session back, and the
rows a test set up must survive that rollback.
"""

import pytest

from auditflow import create_app
from auditflow.models import db as _db
from auditflow.models.project import Project, TeamMember
from auditflow.models.workflow import Task, TaskWorker, WorkingStep
from auditflow.services.events import publisher


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """Create the Flask application once per test session."""
    application = create_app("testing")
    application.config["UPLOAD_FOLDER"] = str(tmp_path_factory.mktemp("uploads"))
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def captured_events():
    """Collect every domain event published during the test."""
    seen = []
    publisher.subscribe(seen.append)
    yield seen
    publisher.unsubscribe(seen.append)


# ═════════════════════════════════════════════════════════════════════════════
# ORM helper factories
# ═════════════════════════════════════════════════════════════════════════════


def make_project(status: str = "in_progress", name: str = "FY24 Statutory Audit") -> Project:
    project = Project(name=name, client_name="Acme Ltd", status=status)
    _db.session.add(project)
    _db.session.commit()
    return project


def make_member(project: Project, role: str, user_ref: str | None = None) -> TeamMember:
    member = TeamMember(
        project_id=project.id,
        user_ref=user_ref or f"{role}-{project.members.count() + 1}",
        name=(user_ref or role).replace("_", " ").title(),
        role=role,
    )
    _db.session.add(member)
    _db.session.commit()
    return member


def make_step(project: Project, name: str, order: int | None = None) -> WorkingStep:
    step = WorkingStep(
        project_id=project.id,
        name=name,
        order=order if order is not None else len(project.steps) + 1,
    )
    _db.session.add(step)
    _db.session.commit()
    return step


def make_task(
    step: WorkingStep,
    name: str,
    *,
    order: int | None = None,
    is_required: bool = False,
    approval_roles=(),
    approval_type: str = "all_attempts",
    client_interact: str = "read_only",
    multiple_files: bool = False,
    workers=(),
    completion_status: str = "pending",
) -> Task:
    task = Task(
        project_id=step.project_id,
        step_id=step.id,
        name=name,
        order=order if order is not None else len(step.tasks) + 1,
        is_required=is_required,
        approval_roles=list(approval_roles),
        approval_type=approval_type,
        client_interact=client_interact,
        multiple_files=multiple_files,
        completion_status=completion_status,
    )
    _db.session.add(task)
    _db.session.flush()
    for member in workers:
        _db.session.add(TaskWorker(task_id=task.id, team_member_id=member.id))
    _db.session.commit()
    _db.session.expire(step, ["tasks"])
    return task


DOC = {"name": "trial_balance.xlsx", "file": "1/1/abc_trial_balance.xlsx"}


class Engagement:
    """Handles to the rows of the standard engagement fixture."""

    def __init__(self):
        self.project = make_project()
        self.worker = make_member(self.project, "member", "alice")
        self.team_leader = make_member(self.project, "team_leader", "tom")
        self.supervisor = make_member(self.project, "supervisor", "sue")
        self.manager = make_member(self.project, "manager", "mia")
        self.partner = make_member(self.project, "partner", "pat")
        self.planning = make_step(self.project, "Planning")
        self.fieldwork = make_step(self.project, "Fieldwork")

    def task(self, name="Confirm bank balances", step=None, **kwargs) -> Task:
        kwargs.setdefault("workers", [self.worker])
        return make_task(step or self.planning, name, **kwargs)


@pytest.fixture()
def engagement():
    return Engagement()
