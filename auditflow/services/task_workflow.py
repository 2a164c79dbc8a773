"""
Task workflow: submission / approval / client document state machine.

Manages the active submission of a task with:
  - Chain resolution (auditflow.services.approval_chain)
  - Transition validation (SUBMISSION_TRANSITIONS in auditflow.models.workflow)
  - Step lock check on submit (auditflow.services.step_gate)
  - Activity trail (write_audit) and domain events published after commit

Events:
  submit, approve, reject, client_upload, accept_client_documents,
  request_reupload

Each event runs in one unit of work and returns
    {"task_id", "submission_id", "previous_status", "new_status",
     "current_role", "completion_status", "status_label", "events"}

Usage:
    from auditflow.services.task_workflow import submit, approve

    submit(task_id, member_id, notes="FY24 ledger",
           documents=[{"name": "ledger.xlsx", "file": "1/7/ab12_ledger.xlsx"}])
    approve(task_id, approver_member_id)
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from auditflow.core.exceptions import (
    ProjectInactiveError,
    StateConflictError,
    ValidationError,
)
from auditflow.models import db
from auditflow.models.audit import write_audit
from auditflow.models.project import Project
from auditflow.models.workflow import (
    ACTIVE_SUBMISSION_STATUSES,
    ClientDocument,
    Document,
    Submission,
    SubmissionApproval,
    Task,
    status_label,
    validate_submission_transition,
)
from auditflow.services import events
from auditflow.services.approval_chain import ChainInvariantError, resolve_for_submission
from auditflow.services.authorization import (
    require_approval_role,
    require_worker,
    resolve_actor,
)
from auditflow.services.helpers.transaction import atomic, get_or_404, lock_row
from auditflow.services.step_gate import gate_for_step, gates_for_project, newly_unlocked

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Internals
# ═════════════════════════════════════════════════════════════════════════════


def _load_task(task_id: int) -> tuple[Task, Project]:
    task = get_or_404(Task, task_id)
    project = get_or_404(Project, task.project_id)
    return task, project


def _require_active(project: Project) -> None:
    if not project.is_active:
        raise ProjectInactiveError(project.id, project.status)


def _locked_latest(task: Task) -> Submission | None:
    latest = task.latest_submission
    if latest is None:
        return None
    return lock_row(Submission, latest.id, resource="Submission")


def _check_version(sub: Submission | None, expected_version) -> None:
    if expected_version is None:
        return
    current = sub.version if sub else None
    if current != expected_version:
        raise StateConflictError(
            "Submission changed since it was loaded",
            details={"expected_version": expected_version, "version": current},
        )


def _require_comment(comment, action: str) -> str:
    comment = (comment or "").strip()
    if not comment:
        raise ValidationError(f"A comment is required to {action}", details={"comment": "required"})
    return comment


def _set_status(sub: Submission, new_status: str, role: str | None = None) -> None:
    if not validate_submission_transition(sub.status, new_status):
        raise StateConflictError(f"Invalid submission transition {sub.status} → {new_status}")
    sub.status = new_status
    sub.current_role = role


def _complete(task: Task, pending: list) -> None:
    task.completion_status = "completed"
    task.completed_at = datetime.now(timezone.utc)
    pending.append(events.task_completed(task))


def _advance(task: Task, sub: Submission, pending: list) -> None:
    """Move ``sub`` to the next awaited role, the client, or completion."""
    resolution = resolve_for_submission(task, sub)
    if resolution.next_role:
        _set_status(sub, "under_review", resolution.next_role)
        pending.append(events.approval_required(task, resolution.next_role))
    elif (task.client_interact == "upload" and sub.client_documents
          and not sub.has_uploaded_client_documents):
        _set_status(sub, "submitted_to_client")
        pending.append(events.submitted_to_client(task))
    else:
        _set_status(sub, "approved_final")
        _complete(task, pending)


def _unlock_events(project: Project, before, pending: list) -> None:
    steps = {s.id: s for s in project.steps}
    for step_id in newly_unlocked(before, gates_for_project(project)):
        pending.append(events.step_unlocked(steps[step_id]))


def _result(task: Task, sub: Submission, previous_status: str, pending: list) -> dict:
    # flush first so the reported version is the one being committed
    db.session.flush()
    return {
        "task_id": task.id,
        "submission_id": sub.id,
        "sequence_no": sub.sequence_no,
        "previous_status": previous_status,
        "new_status": sub.status,
        "current_role": sub.current_role,
        "status_label": status_label(sub.status, sub.current_role),
        "completion_status": task.completion_status,
        "version": sub.version,
        "events": [e.to_dict() for e in pending],
    }


def _audit(task: Task, sub: Submission, action: str, actor: str, previous_status: str, **extra):
    write_audit(
        entity_type="task", entity_id=task.id, action=action, actor=actor,
        project_id=task.project_id,
        diff={
            "submission_id": sub.id,
            "sequence_no": sub.sequence_no,
            "status": {"old": previous_status, "new": sub.status},
            "current_role": sub.current_role,
            **extra,
        },
    )


def _finish(action: str, task: Task, previous_status: str, result: dict, pending: list) -> dict:
    logger.info(
        "Task %s %s: %s → %s", task.id, action, previous_status, result["new_status"],
        extra={"project_id": task.project_id, "task_id": task.id, "submission_id": result["submission_id"]},
    )
    events.publisher.publish(pending)
    return result


def _clean_documents(documents) -> list[dict]:
    cleaned = []
    for idx, doc in enumerate(documents or []):
        name = (doc.get("name") or "").strip() if isinstance(doc, dict) else ""
        ref = (doc.get("file") or "").strip() if isinstance(doc, dict) else ""
        if not name or not ref:
            raise ValidationError(f"Document #{idx} needs name and file", details={"documents": idx})
        cleaned.append({"name": name, "file": ref})
    return cleaned


def _clean_requests(client_documents) -> list[dict]:
    cleaned = []
    for idx, req in enumerate(client_documents or []):
        name = (req.get("name") or "").strip() if isinstance(req, dict) else ""
        if not name:
            raise ValidationError(f"Client document request #{idx} needs a name",
                                  details={"client_documents": idx})
        cleaned.append({"name": name, "description": (req.get("description") or "").strip()})
    return cleaned


def _new_submission(task: Task, previous: Submission | None, member_id: int, *,
                    notes: str, documents: list[dict], requests: list[dict],
                    outcome_comment: str | None = None) -> Submission:
    sub = Submission(
        sequence_no=(previous.sequence_no + 1) if previous else 1,
        notes=notes,
        status="submitted",
        outcome_comment=outcome_comment,
        created_by_id=member_id,
    )
    for doc in documents:
        sub.documents.append(Document(name=doc["name"], file=doc["file"]))
    for req in requests:
        sub.client_documents.append(ClientDocument(name=req["name"], description=req["description"]))
    # newest first, matching the relationship order_by
    task.submissions.insert(0, sub)
    db.session.flush()
    return sub


# ═════════════════════════════════════════════════════════════════════════════
# Events
# ═════════════════════════════════════════════════════════════════════════════


def submit(
    task_id: int,
    member_id,
    *,
    notes: str = "",
    documents=None,
    client_documents=None,
    expected_version: int | None = None,
    override: bool = False,
) -> dict:
    """
    Submit work on a task.

    Creates a new submission when the active one is returned (or there is
    none); edits the active one in place while it still awaits the first
    required role with no decision recorded. Anything else is a conflict.

    Args:
        documents: ``[{"name", "file"}]`` storage references of team files.
        client_documents: ``[{"name", "description"}]`` requests to the client.
        override: caller holds the locked-step override.

    Raises:
        ProjectInactiveError, PermissionDeniedError, ValidationError,
        StateConflictError
    """
    pending: list = []
    with atomic():
        task, project = _load_task(task_id)
        _require_active(project)
        member = resolve_actor(project.id, member_id)
        require_worker(task, member)

        if gate_for_step(task.step).is_locked and not override:
            raise StateConflictError("The step is locked until the previous step is complete",
                                     details={"step_id": task.step_id})

        new_docs = _clean_documents(documents)
        new_requests = _clean_requests(client_documents)
        if new_requests and task.client_interact != "upload":
            raise ValidationError(
                "Client document requests need client interaction 'upload'",
                details={"client_interact": task.client_interact},
            )

        latest = _locked_latest(task)
        _check_version(latest, expected_version)
        previous_status = latest.status if latest else "draft"
        before = gates_for_project(project)

        if latest is None or latest.status == "returned":
            docs = new_docs or ([{"name": d.name, "file": d.file} for d in latest.documents] if latest else [])
            requests = new_requests or (
                [{"name": c.name, "description": c.description or ""} for c in latest.client_documents]
                if latest else []
            )
            if not docs and not requests:
                raise ValidationError("Attach at least one document or client document request")
            if len(docs) > 1 and not task.multiple_files:
                raise ValidationError("This task accepts a single document", details={"documents": len(docs)})
            sub = _new_submission(task, latest, member.id, notes=notes or "",
                                  documents=docs, requests=requests)
        elif latest.status == "under_review" and not latest.approvals:
            if resolve_for_submission(task, latest).next_role != latest.current_role:
                raise ChainInvariantError(f"Submission {latest.id} awaits an unexpected role")
            sub = latest
            if new_docs:
                if len(new_docs) > 1 and not task.multiple_files:
                    raise ValidationError("This task accepts a single document",
                                          details={"documents": len(new_docs)})
                sub.documents.clear()
                for doc in new_docs:
                    sub.documents.append(Document(name=doc["name"], file=doc["file"]))
            if new_requests:
                sub.client_documents.clear()
                for req in new_requests:
                    sub.client_documents.append(ClientDocument(name=req["name"], description=req["description"]))
            if not sub.documents and not sub.client_documents:
                raise ValidationError("Attach at least one document or client document request")
            if notes:
                sub.notes = notes
            # touch the row so the version token moves with the new attachments
            sub.updated_at = datetime.now(timezone.utc)
        else:
            raise StateConflictError(
                f"Cannot submit while the task is '{status_label(latest.status, latest.current_role)}'",
                details={"status": latest.status},
            )

        if task.completion_status == "pending":
            task.completion_status = "in_progress"
        _advance(task, sub, pending)
        _unlock_events(project, before, pending)
        _audit(task, sub, "task.submit", member.user_ref, previous_status,
               documents=len(sub.documents), client_documents=len(sub.client_documents))
        result = _result(task, sub, previous_status, pending)

    return _finish("submit", task, previous_status, result, pending)


def approve(
    task_id: int,
    member_id,
    *,
    role: str | None = None,
    comment: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """Record an approval by the awaited role and advance the chain."""
    pending: list = []
    with atomic():
        task, project = _load_task(task_id)
        _require_active(project)
        member = resolve_actor(project.id, member_id)
        acting_role = require_approval_role(task, member, role)

        sub = _locked_latest(task)
        _check_version(sub, expected_version)
        if sub is None or sub.status != "under_review" or sub.current_role != acting_role:
            current = status_label(sub.status, sub.current_role) if sub else "Draft"
            raise StateConflictError(f"Task is '{current}'; nothing awaits {acting_role}")
        if resolve_for_submission(task, sub).next_role != acting_role:
            raise ChainInvariantError(f"Submission {sub.id} awaits an unexpected role")

        previous_status = sub.status
        before = gates_for_project(project)
        sub.approvals.append(SubmissionApproval(
            role=acting_role, actor_id=member.id, decision="approve", comment=comment,
        ))
        _advance(task, sub, pending)
        _unlock_events(project, before, pending)
        _audit(task, sub, "task.approve", member.user_ref, previous_status, approved_as=acting_role)
        result = _result(task, sub, previous_status, pending)

    return _finish("approve", task, previous_status, result, pending)


def reject(
    task_id: int,
    member_id,
    comment: str,
    *,
    role: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """Return the submission to the workers; ``comment`` is mandatory."""
    pending: list = []
    with atomic():
        task, project = _load_task(task_id)
        _require_active(project)
        member = resolve_actor(project.id, member_id)
        acting_role = require_approval_role(task, member, role)
        comment = _require_comment(comment, "reject")

        sub = _locked_latest(task)
        _check_version(sub, expected_version)
        if sub is None or sub.status != "under_review" or sub.current_role != acting_role:
            current = status_label(sub.status, sub.current_role) if sub else "Draft"
            raise StateConflictError(f"Task is '{current}'; nothing awaits {acting_role}")

        previous_status = sub.status
        sub.approvals.append(SubmissionApproval(
            role=acting_role, actor_id=member.id, decision="reject", comment=comment,
        ))
        _set_status(sub, "returned", acting_role)
        sub.outcome_comment = comment
        pending.append(events.submission_returned(task, acting_role, comment))
        _audit(task, sub, "task.reject", member.user_ref, previous_status,
               rejected_as=acting_role, comment=comment)
        result = _result(task, sub, previous_status, pending)

    return _finish("reject", task, previous_status, result, pending)


def client_upload(
    client_document_id: int,
    file_ref: str,
    *,
    client_comment: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """Attach the client's file to a requested document."""
    pending: list = []
    with atomic():
        requested = get_or_404(ClientDocument, client_document_id, resource="ClientDocument")
        task, project = _load_task(requested.submission.task_id)
        _require_active(project)
        if not (file_ref or "").strip():
            raise ValidationError("A file is required", details={"file": "required"})

        sub = _locked_latest(task)
        if sub is None or sub.id != requested.submission_id:
            raise StateConflictError("The document request belongs to a superseded submission")
        _check_version(sub, expected_version)
        if sub.status not in ("submitted_to_client", "client_reply"):
            raise StateConflictError(
                f"Task is '{status_label(sub.status, sub.current_role)}'; client uploads are closed",
            )

        previous_status = sub.status
        requested.file = file_ref
        requested.uploaded_at = datetime.now(timezone.utc)
        if client_comment:
            sub.client_comment = client_comment
        if sub.status == "submitted_to_client":
            _set_status(sub, "client_reply")
            pending.append(events.client_reply_received(task))
        _audit(task, sub, "task.client_upload", "client", previous_status,
               client_document_id=requested.id, file=file_ref)
        result = _result(task, sub, previous_status, pending)

    return _finish("client_upload", task, previous_status, result, pending)


def accept_client_documents(task_id: int, member_id, *, expected_version: int | None = None) -> dict:
    """Accept the client's documents and complete the task."""
    pending: list = []
    with atomic():
        task, project = _load_task(task_id)
        _require_active(project)
        member = resolve_actor(project.id, member_id)
        require_worker(task, member)

        sub = _locked_latest(task)
        _check_version(sub, expected_version)
        if sub is None or sub.status != "client_reply":
            current = status_label(sub.status, sub.current_role) if sub else "Draft"
            raise StateConflictError(f"Task is '{current}'; there is no client reply to accept")
        missing = [cd.name for cd in sub.client_documents if not cd.file]
        if missing:
            raise ValidationError("Not every requested document was uploaded",
                                  details={"missing": missing})

        previous_status = sub.status
        before = gates_for_project(project)
        _set_status(sub, "approved_final")
        _complete(task, pending)
        _unlock_events(project, before, pending)
        _audit(task, sub, "task.accept_client_documents", member.user_ref, previous_status)
        result = _result(task, sub, previous_status, pending)

    return _finish("accept_client_documents", task, previous_status, result, pending)


def request_reupload(task_id: int, member_id, comment: str, *,
                     expected_version: int | None = None) -> dict:
    """
    Ask the client for new documents.

    The current submission is kept as history; a new round copies its
    documents and its requests (without files). The approval chain decides
    whether the round goes straight back to the client or re-enters review.
    """
    pending: list = []
    with atomic():
        task, project = _load_task(task_id)
        _require_active(project)
        member = resolve_actor(project.id, member_id)
        require_worker(task, member)
        comment = _require_comment(comment, "request a re-upload")

        sub = _locked_latest(task)
        _check_version(sub, expected_version)
        if sub is None or sub.status != "client_reply":
            current = status_label(sub.status, sub.current_role) if sub else "Draft"
            raise StateConflictError(f"Task is '{current}'; there is no client reply to return")

        previous_status = sub.status
        new_sub = _new_submission(
            task, sub, member.id,
            notes=sub.notes or "",
            documents=[{"name": d.name, "file": d.file} for d in sub.documents],
            requests=[{"name": c.name, "description": c.description or ""} for c in sub.client_documents],
            outcome_comment=comment,
        )
        _advance(task, new_sub, pending)
        _audit(task, new_sub, "task.request_reupload", member.user_ref, previous_status,
               previous_submission_id=sub.id, comment=comment)
        result = _result(task, new_sub, previous_status, pending)

    return _finish("request_reupload", task, previous_status, result, pending)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def _chain_summary(task, latest):
    if latest is None:
        return None
    if latest.status in ACTIVE_SUBMISSION_STATUSES:
        return resolve_for_submission(task, latest).to_dict()
    # settled rounds are reported as recorded; the chain settings may have changed since
    log = latest.approval_log
    return {
        "required_roles": list(task.approval_roles or []),
        "approved_roles": [role for role, decision in log if decision == "approve"],
        "next_role": None,
        "is_satisfied": latest.status == "approved_final",
        "rejected_by": next((role for role, decision in log if decision == "reject"), None),
    }


def get_task_detail(task_id: int, override: bool = False) -> dict:
    """Task with full submission history, chain position and step gate."""
    task = get_or_404(Task, task_id)
    result = task.to_dict(include_history=True)
    result["chain"] = _chain_summary(task, task.latest_submission)
    result["gate"] = gate_for_step(task.step, override).to_dict()
    return result


def list_pending_approvals(project_id: int, member_id) -> list[dict]:
    """Tasks whose active submission awaits the member's role."""
    get_or_404(Project, project_id)
    member = resolve_actor(project_id, member_id)
    stmt = (
        select(Submission)
        .join(Task, Submission.task_id == Task.id)
        .where(
            Task.project_id == project_id,
            Submission.status == "under_review",
            Submission.current_role == member.role,
        )
        .order_by(Task.id)
    )
    pending = []
    for sub in db.session.execute(stmt).scalars():
        if sub.task.latest_submission is sub:
            pending.append(sub.task.to_dict())
    return pending
