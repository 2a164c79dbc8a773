"""
Ordering engine: step and task reorder from a client snapshot.

A snapshot is the full target order the client sees after a drag-and-drop:

    steps:  [{"id": 3, "order": 1}, {"id": 1, "order": 2}, ...]
    tasks:  [{"id": 9, "order": 1, "step_id": 2}, ...]

Rules:
    - Items are ranked by submitted ``order`` (ties by list position) and
      renumbered densely 1..N per parent (per project for steps, per step for
      tasks). Gaps and duplicate order values are tolerated.
    - A task whose ``step_id`` differs from its stored step moves; the source
      and target steps are both renumbered densely.
    - A step snapshot lists every step of the project. A task snapshot lists
      every current task of every step it touches (source or target).
    - Re-submitting an applied snapshot changes nothing and does not bump
      ``Project.structure_version``.

Errors:
    ValidationError            malformed item, duplicate id, incomplete snapshot
    ReferentialIntegrityError  id or target step outside the project
    StateConflictError         stale ``expected_version``
    ProjectInactiveError       project completed / canceled
"""

import logging

from auditflow.core.exceptions import (
    ProjectInactiveError,
    ReferentialIntegrityError,
    StateConflictError,
    ValidationError,
)
from auditflow.models.audit import write_audit
from auditflow.models.project import Project
from auditflow.services import events
from auditflow.services.helpers.transaction import atomic, lock_row
from auditflow.services.step_gate import gates_for_project, newly_unlocked

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Pure planning
# ═════════════════════════════════════════════════════════════════════════════


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _parse_items(items, keys: tuple[str, ...]) -> list[dict]:
    if not isinstance(items, list):
        raise ValidationError("Reorder payload must be a list", details={"items": "expected list"})
    parsed = []
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"Item #{position} must be an object")
        missing = [k for k in keys if not _is_int(item.get(k))]
        if missing:
            raise ValidationError(
                f"Item #{position} needs integer {', '.join(missing)}",
                details={"position": position, "fields": missing},
            )
        parsed.append({k: item[k] for k in keys} | {"position": position})

    seen, dupes = set(), set()
    for item in parsed:
        (dupes if item["id"] in seen else seen).add(item["id"])
    if dupes:
        raise ValidationError("Duplicate ids in reorder snapshot", details={"ids": sorted(dupes)})
    return parsed


def _dense(items) -> list[dict]:
    return sorted(items, key=lambda i: (i["order"], i["position"]))


def plan_step_order(current, snapshot) -> dict[int, int]:
    """
    Plan a step reorder.

    Args:
        current: ``[(step_id, order), ...]`` stored for the project.
        snapshot: client items ``[{"id", "order"}, ...]``.

    Returns:
        ``{step_id: new_order}`` for the steps whose order changes (empty
        when the snapshot is already applied).
    """
    items = _parse_items(snapshot, ("id", "order"))
    stored = dict(current)

    foreign = sorted(i["id"] for i in items if i["id"] not in stored)
    if foreign:
        raise ReferentialIntegrityError(
            "Steps do not belong to this project", details={"step_ids": foreign},
        )
    missing = sorted(set(stored) - {i["id"] for i in items})
    if missing:
        raise ValidationError(
            "Snapshot must list every step of the project", details={"missing_step_ids": missing},
        )

    changes = {}
    for new_order, item in enumerate(_dense(items), 1):
        if stored[item["id"]] != new_order:
            changes[item["id"]] = new_order
    return changes


def plan_task_order(current, snapshot, project_step_ids) -> dict[int, tuple[int, int]]:
    """
    Plan a task reorder, including moves between steps.

    Args:
        current: ``[(task_id, step_id, order), ...]`` for all project tasks.
        snapshot: client items ``[{"id", "order", "step_id"}, ...]``.
        project_step_ids: ids of the project's steps.

    Returns:
        ``{task_id: (step_id, order)}`` for the tasks whose step or order
        changes.
    """
    items = _parse_items(snapshot, ("id", "order", "step_id"))
    stored = {task_id: (step_id, order) for task_id, step_id, order in current}
    step_ids = set(project_step_ids)

    foreign = sorted(i["id"] for i in items if i["id"] not in stored)
    if foreign:
        raise ReferentialIntegrityError(
            "Tasks do not belong to this project", details={"task_ids": foreign},
        )
    bad_targets = sorted({i["step_id"] for i in items if i["step_id"] not in step_ids})
    if bad_targets:
        raise ReferentialIntegrityError(
            "Target steps do not belong to this project", details={"step_ids": bad_targets},
        )
    if not items and stored:
        raise ValidationError("Empty snapshot for a project that has tasks")

    touched = {stored[i["id"]][0] for i in items} | {i["step_id"] for i in items}
    listed = {i["id"] for i in items}
    missing = sorted(t for t, (s, _) in stored.items() if s in touched and t not in listed)
    if missing:
        raise ValidationError(
            "Snapshot must list every task of each step it changes",
            details={"missing_task_ids": missing},
        )

    changes = {}
    for step_id in sorted(touched):
        members = _dense(i for i in items if i["step_id"] == step_id)
        for new_order, item in enumerate(members, 1):
            if stored[item["id"]] != (step_id, new_order):
                changes[item["id"]] = (step_id, new_order)
    return changes


# ═════════════════════════════════════════════════════════════════════════════
# Persisting operations
# ═════════════════════════════════════════════════════════════════════════════


def _lock_project(project_id: int, expected_version) -> Project:
    project = lock_row(Project, project_id, resource="Project")
    if not project.is_structure_editable:
        raise ProjectInactiveError(project.id, project.status)
    if expected_version is not None and expected_version != project.structure_version:
        raise StateConflictError(
            "Project structure changed since it was loaded",
            details={"expected_version": expected_version,
                     "structure_version": project.structure_version},
        )
    return project


def _structure_result(project: Project, changed: bool, unlocked: list[int]) -> dict:
    return {
        "project_id": project.id,
        "structure_version": project.structure_version,
        "changed": changed,
        "unlocked_step_ids": unlocked,
        "steps": [s.to_dict(include_children=True) for s in sorted(project.steps, key=lambda s: s.order)],
    }


def reorder_steps(project_id: int, items, expected_version: int | None = None,
                  actor: str = "system") -> dict:
    """Apply a step snapshot to a project."""
    with atomic():
        project = _lock_project(project_id, expected_version)
        plan = plan_step_order([(s.id, s.order) for s in project.steps], items)
        if not plan:
            logger.debug("Step reorder is a no-op", extra={"project_id": project_id})
            return _structure_result(project, False, [])

        before = gates_for_project(project)
        steps = {s.id: s for s in project.steps}
        diff = {}
        for step_id, new_order in plan.items():
            diff[step_id] = {"old": steps[step_id].order, "new": new_order}
            steps[step_id].order = new_order
        project.structure_version += 1
        write_audit(
            entity_type="project", entity_id=project.id, action="project.reorder_steps",
            actor=actor, project_id=project.id, diff={"orders": diff},
        )
        after = gates_for_project(project)
        unlocked = newly_unlocked(before, after)
        pending = [events.step_unlocked(steps[sid]) for sid in unlocked]
        result = _structure_result(project, True, unlocked)

    logger.info("Reordered %d steps", len(plan), extra={"project_id": project_id})
    events.publisher.publish(pending)
    return result


def reorder_tasks(project_id: int, items, expected_version: int | None = None,
                  actor: str = "system") -> dict:
    """Apply a task snapshot (orders and step moves) to a project."""
    with atomic():
        project = _lock_project(project_id, expected_version)
        steps = {s.id: s for s in project.steps}
        tasks = {t.id: t for s in project.steps for t in s.tasks}
        plan = plan_task_order(
            [(t.id, t.step_id, t.order) for t in tasks.values()], items, steps.keys(),
        )
        if not plan:
            logger.debug("Task reorder is a no-op", extra={"project_id": project_id})
            return _structure_result(project, False, [])

        before = gates_for_project(project)
        diff = {}
        for task_id, (step_id, new_order) in plan.items():
            task = tasks[task_id]
            diff[task_id] = {"old": [task.step_id, task.order], "new": [step_id, new_order]}
            if task.step_id != step_id:
                task.step = steps[step_id]
            task.order = new_order
        project.structure_version += 1
        write_audit(
            entity_type="project", entity_id=project.id, action="project.reorder_tasks",
            actor=actor, project_id=project.id, diff={"tasks": diff},
        )
        for step in project.steps:
            step.tasks.sort(key=lambda t: t.order)
        after = gates_for_project(project)
        unlocked = newly_unlocked(before, after)
        pending = [events.step_unlocked(steps[sid]) for sid in unlocked]
        result = _structure_result(project, True, unlocked)

    moved = sum(1 for d in diff.values() if d["old"][0] != d["new"][0])
    logger.info("Reordered %d tasks (%d moved)", len(plan), moved, extra={"project_id": project_id})
    events.publisher.publish(pending)
    return result
