"""
Step gate: lock state of the working steps of a project.

Rule:
    - The first step (lowest order) is never locked.
    - Step k (k > 1) is locked until every required task of step k-1 is
      completed. A predecessor without required tasks unlocks its successor.
    - ``required_progress`` of step k reports the required tasks of step k-1.
    - ``can_access`` mirrors ``not is_locked`` unless the administrator
      override is supplied.

Lock state is never stored; it is recomputed from the current
(task → step) membership after every completion change and every reorder.

Usage:
    gates = get_project_gates(project_id)
    opened = newly_unlocked(before, after)   # step ids to announce
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from auditflow.models import db
from auditflow.models.project import Project
from auditflow.models.workflow import COMPLETION_STATUSES, WorkingStep
from auditflow.services.helpers.transaction import get_or_404

logger = logging.getLogger(__name__)


class GateInvariantError(AssertionError):
    """Step input that cannot describe a stored project."""


@dataclass(frozen=True)
class StepInput:
    step_id: int
    order: int
    required_statuses: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_step(cls, step: WorkingStep) -> "StepInput":
        return cls(
            step_id=step.id,
            order=step.order,
            required_statuses=tuple(t.completion_status for t in step.tasks if t.is_required),
        )


@dataclass(frozen=True)
class GateState:
    step_id: int
    order: int
    is_locked: bool
    can_access: bool
    required_progress: dict

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "order": self.order,
            "is_locked": self.is_locked,
            "can_access": self.can_access,
            "required_progress": dict(self.required_progress),
        }


def required_progress(statuses) -> dict:
    """``{total, completed, percentage}`` for a list of completion statuses."""
    total = len(statuses)
    completed = sum(1 for s in statuses if s == "completed")
    percentage = round(completed / total * 100, 2) if total else 0
    return {"total": total, "completed": completed, "percentage": percentage}


def compute_step_gates(steps, override: bool = False) -> list[GateState]:
    """Gate state per step, in ascending step order."""
    ordered = sorted(steps, key=lambda s: s.order)

    orders = [s.order for s in ordered]
    if len(set(orders)) != len(orders):
        raise GateInvariantError(f"Duplicate step orders: {orders}")
    for s in ordered:
        unknown = set(s.required_statuses) - COMPLETION_STATUSES
        if unknown:
            raise GateInvariantError(f"Step {s.step_id}: unknown completion status {sorted(unknown)}")

    gates = []
    previous = None
    for s in ordered:
        if previous is None:
            progress = required_progress(())
            locked = False
        else:
            progress = required_progress(previous.required_statuses)
            locked = progress["completed"] != progress["total"]
        gates.append(GateState(
            step_id=s.step_id,
            order=s.order,
            is_locked=locked,
            can_access=override or not locked,
            required_progress=progress,
        ))
        previous = s
    return gates


def newly_unlocked(before, after) -> list[int]:
    """Step ids locked in ``before`` and unlocked in ``after``."""
    was_locked = {g.step_id for g in before if g.is_locked}
    return [g.step_id for g in after if g.step_id in was_locked and not g.is_locked]


# ── ORM adapters ─────────────────────────────────────────────────────────────

def gates_for_project(project: Project, override: bool = False) -> list[GateState]:
    """Compute gates from the project's loaded steps and tasks."""
    return compute_step_gates([StepInput.from_step(s) for s in project.steps], override)


def gate_for_step(step: WorkingStep, override: bool = False) -> GateState:
    for gate in gates_for_project(step.project, override):
        if gate.step_id == step.id:
            return gate
    raise GateInvariantError(f"Step {step.id} missing from its project")


def get_project_gates(project_id: int, override: bool = False) -> list[GateState]:
    """Gate states for every step of a project, read in one consistent load."""
    get_or_404(Project, project_id)
    steps = db.session.execute(
        select(WorkingStep)
        .where(WorkingStep.project_id == project_id)
        .options(selectinload(WorkingStep.tasks))
        .order_by(WorkingStep.order)
    ).scalars().all()
    gates = compute_step_gates([StepInput.from_step(s) for s in steps], override)
    logger.debug("Computed %d step gates", len(gates), extra={"project_id": project_id})
    return gates
