"""
Task workflow: service-level tests for the submission / approval / client
document state machine.

Covers:
    - approval chains (all_attempts, once) through approve and reject
    - client document requests, uploads, acceptance and re-upload
    - submit validation, edit in place, locked steps and the override
    - permission checks, version tokens, inactive projects
    - audit rows, notifications and pending approval queries
"""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from auditflow.core.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    ProjectInactiveError,
    StateConflictError,
    ValidationError,
)
from auditflow.models import db
from auditflow.models.audit import AuditLog
from auditflow.models.notification import Notification
from auditflow.models.project import Project
from auditflow.models.workflow import ClientDocument, Submission, Task
from auditflow.services import task_workflow as wf
from auditflow.services.events import publisher
from auditflow.services.helpers.transaction import atomic
from auditflow.services.notification import NotificationService
from tests.conftest import DOC, make_member, make_project

DOC_2 = {"name": "bank_letter.pdf", "file": "1/1/def_bank_letter.pdf"}


def _task(task_id) -> Task:
    return db.session.get(Task, task_id)


def _client_doc_ids(task_id) -> list[int]:
    return [cd.id for cd in _task(task_id).latest_submission.client_documents]


@pytest.fixture()
def chain_task(engagement):
    """Task reviewed by team leader then partner."""
    task = engagement.task(approval_roles=["partner", "team_leader"])
    return engagement, task.id


@pytest.fixture()
def upload_task(engagement):
    """Upload-mode task with no approval chain."""
    task = engagement.task("Bank confirmations", client_interact="upload", multiple_files=True)
    return engagement, task.id


# ═════════════════════════════════════════════════════════════════════════════
# Approval chain
# ═════════════════════════════════════════════════════════════════════════════


class TestApprovalChain:
    def test_submit_enters_review_of_first_role(self, chain_task):
        e, task_id = chain_task
        res = wf.submit(task_id, e.worker.id, notes="FY24", documents=[DOC])

        assert res["previous_status"] == "draft"
        assert res["new_status"] == "under_review"
        assert res["current_role"] == "team_leader"
        assert res["status_label"] == "Under Review by Team Leader"
        assert res["sequence_no"] == 1
        assert res["completion_status"] == "in_progress"
        assert [ev["event_type"] for ev in res["events"]] == ["approval_required"]
        assert res["events"][0]["role"] == "team_leader"

    def test_full_chain_all_attempts(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        res = wf.approve(task_id, e.team_leader.id, comment="ok")
        assert (res["new_status"], res["current_role"]) == ("under_review", "partner")

        res = wf.reject(task_id, e.partner.id, "Tie out the bank letter")
        assert res["new_status"] == "returned"
        assert res["status_label"] == "Returned for Revision (by Partner)"
        assert _task(task_id).latest_submission.outcome_comment == "Tie out the bank letter"
        assert _task(task_id).completion_status == "in_progress"

        res = wf.submit(task_id, e.worker.id, documents=[DOC_2])
        assert res["sequence_no"] == 2
        assert res["current_role"] == "team_leader"

        wf.approve(task_id, e.team_leader.id)
        res = wf.approve(task_id, e.partner.id)
        assert res["new_status"] == "approved_final"
        assert res["status_label"] == "Approved"
        assert res["completion_status"] == "completed"
        assert "task_completed" in [ev["event_type"] for ev in res["events"]]
        assert _task(task_id).completed_at is not None

    def test_once_resumes_at_rejecting_role(self, engagement):
        task_id = engagement.task(approval_roles=["team_leader", "partner"], approval_type="once").id
        wf.submit(task_id, engagement.worker.id, documents=[DOC])
        wf.approve(task_id, engagement.team_leader.id)
        wf.reject(task_id, engagement.partner.id, "Missing sign-off")

        res = wf.submit(task_id, engagement.worker.id)
        assert res["current_role"] == "partner"
        res = wf.approve(task_id, engagement.partner.id)
        assert res["new_status"] == "approved_final"

    def test_resubmit_carries_documents_forward(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        wf.reject(task_id, e.team_leader.id, "Wrong period")
        wf.submit(task_id, e.worker.id)

        history = _task(task_id).submissions
        assert [s.sequence_no for s in history] == [2, 1]
        assert [d.file for d in history[0].documents] == [DOC["file"]]

    def test_no_roles_completes_on_submit(self, engagement):
        task_id = engagement.task().id
        res = wf.submit(task_id, engagement.worker.id, documents=[DOC])
        assert res["new_status"] == "approved_final"
        assert res["completion_status"] == "completed"

    def test_reject_requires_comment(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        with pytest.raises(ValidationError):
            wf.reject(task_id, e.team_leader.id, "   ")
        assert _task(task_id).latest_submission.status == "under_review"

    def test_approve_out_of_turn(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        with pytest.raises(StateConflictError):
            wf.approve(task_id, e.partner.id)

    def test_approve_without_submission(self, chain_task):
        e, task_id = chain_task
        with pytest.raises(StateConflictError):
            wf.approve(task_id, e.team_leader.id)

    def test_approvals_are_logged_on_the_submission(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        wf.approve(task_id, e.team_leader.id, comment="fine")
        approvals = _task(task_id).latest_submission.approvals
        assert [(a.role, a.decision, a.actor_id, a.comment) for a in approvals] == [
            ("team_leader", "approve", e.team_leader.id, "fine"),
        ]


# ═════════════════════════════════════════════════════════════════════════════
# Submit rules
# ═════════════════════════════════════════════════════════════════════════════


class TestSubmitRules:
    def test_needs_document_or_request(self, chain_task):
        e, task_id = chain_task
        with pytest.raises(ValidationError):
            wf.submit(task_id, e.worker.id, notes="nothing attached")
        assert _task(task_id).latest_submission is None

    def test_client_requests_need_upload_mode(self, chain_task):
        e, task_id = chain_task
        with pytest.raises(ValidationError):
            wf.submit(task_id, e.worker.id, documents=[DOC],
                      client_documents=[{"name": "Bank confirmation"}])

    def test_single_file_task(self, chain_task):
        e, task_id = chain_task
        with pytest.raises(ValidationError):
            wf.submit(task_id, e.worker.id, documents=[DOC, DOC_2])

    def test_document_needs_name_and_file(self, chain_task):
        e, task_id = chain_task
        with pytest.raises(ValidationError):
            wf.submit(task_id, e.worker.id, documents=[{"name": "x.pdf"}])

    def test_edit_in_place_before_first_decision(self, chain_task):
        e, task_id = chain_task
        first = wf.submit(task_id, e.worker.id, documents=[DOC])
        second = wf.submit(task_id, e.worker.id, notes="replaced", documents=[DOC_2])

        assert second["submission_id"] == first["submission_id"]
        assert second["previous_status"] == "under_review"
        assert second["current_role"] == "team_leader"
        sub = db.session.get(Submission, second["submission_id"])
        assert [d.file for d in sub.documents] == [DOC_2["file"]]
        assert sub.notes == "replaced"

    def test_no_edit_after_a_decision(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        wf.approve(task_id, e.team_leader.id)
        with pytest.raises(StateConflictError):
            wf.submit(task_id, e.worker.id, documents=[DOC_2])

    def test_no_submit_after_completion(self, engagement):
        task_id = engagement.task().id
        wf.submit(task_id, engagement.worker.id, documents=[DOC])
        with pytest.raises(StateConflictError):
            wf.submit(task_id, engagement.worker.id, documents=[DOC_2])

    def test_inactive_project(self, chain_task):
        e, task_id = chain_task
        project = db.session.get(Project, e.project.id)
        project.status = "suspended"
        db.session.commit()
        with pytest.raises(ProjectInactiveError):
            wf.submit(task_id, e.worker.id, documents=[DOC])

    def test_unknown_task(self, engagement):
        with pytest.raises(NotFoundError):
            wf.submit(999, engagement.worker.id, documents=[DOC])


# ═════════════════════════════════════════════════════════════════════════════
# Step gates
# ═════════════════════════════════════════════════════════════════════════════


class TestStepLock:
    @pytest.fixture()
    def gated(self, engagement):
        gate_task = engagement.task("Engagement letter", is_required=True)
        later = engagement.task("Inventory count", step=engagement.fieldwork)
        return engagement, gate_task.id, later.id

    def test_locked_step_rejects_submit(self, gated):
        e, _, later = gated
        with pytest.raises(StateConflictError) as exc:
            wf.submit(later, e.worker.id, documents=[DOC])
        assert exc.value.details == {"step_id": e.fieldwork.id}

    def test_override_opens_locked_step(self, gated):
        e, _, later = gated
        res = wf.submit(later, e.worker.id, documents=[DOC], override=True)
        assert res["completion_status"] == "completed"

    def test_completing_required_task_unlocks_next_step(self, gated, captured_events):
        e, gate_task, later = gated
        res = wf.submit(gate_task, e.worker.id, documents=[DOC])

        unlocked = [ev for ev in res["events"] if ev["event_type"] == "step_unlocked"]
        assert [ev["entity_id"] for ev in unlocked] == [e.fieldwork.id]
        assert "step_unlocked" in [ev.event_type for ev in captured_events]
        wf.submit(later, e.worker.id, documents=[DOC])


# ═════════════════════════════════════════════════════════════════════════════
# Client documents
# ═════════════════════════════════════════════════════════════════════════════


class TestClientDocuments:
    def test_request_upload_accept(self, upload_task):
        e, task_id = upload_task
        res = wf.submit(task_id, e.worker.id, client_documents=[
            {"name": "Bank confirmation", "description": "All accounts at 31 Dec"},
        ])
        assert res["new_status"] == "submitted_to_client"
        assert [ev["event_type"] for ev in res["events"]] == ["submitted_to_client"]

        [cd_id] = _client_doc_ids(task_id)
        res = wf.client_upload(cd_id, "1/1/xyz_confirmation.pdf", client_comment="Attached")
        assert res["new_status"] == "client_reply"
        assert res["status_label"] == "Client Reply"
        assert _task(task_id).latest_submission.client_comment == "Attached"

        res = wf.accept_client_documents(task_id, e.worker.id)
        assert res["new_status"] == "approved_final"
        assert res["completion_status"] == "completed"

    def test_chain_runs_before_the_client(self, engagement):
        task_id = engagement.task(client_interact="upload", approval_roles=["team_leader"]).id
        res = wf.submit(task_id, engagement.worker.id, documents=[DOC],
                        client_documents=[{"name": "Loan agreement"}])
        assert res["current_role"] == "team_leader"
        res = wf.approve(task_id, engagement.team_leader.id)
        assert res["new_status"] == "submitted_to_client"

    def test_second_upload_stays_in_client_reply(self, upload_task):
        e, task_id = upload_task
        wf.submit(task_id, e.worker.id, client_documents=[{"name": "A"}, {"name": "B"}])
        first, second = _client_doc_ids(task_id)
        wf.client_upload(first, "ref/a.pdf")
        res = wf.client_upload(second, "ref/b.pdf")
        assert (res["previous_status"], res["new_status"]) == ("client_reply", "client_reply")
        assert res["events"] == []

    def test_accept_needs_every_upload(self, upload_task):
        e, task_id = upload_task
        wf.submit(task_id, e.worker.id, client_documents=[{"name": "A"}, {"name": "B"}])
        first, _ = _client_doc_ids(task_id)
        wf.client_upload(first, "ref/a.pdf")
        with pytest.raises(ValidationError) as exc:
            wf.accept_client_documents(task_id, e.worker.id)
        assert exc.value.details == {"missing": ["B"]}

    def test_upload_needs_a_file(self, upload_task):
        e, task_id = upload_task
        wf.submit(task_id, e.worker.id, client_documents=[{"name": "A"}])
        [cd_id] = _client_doc_ids(task_id)
        with pytest.raises(ValidationError):
            wf.client_upload(cd_id, "")

    def test_accept_before_reply(self, upload_task):
        e, task_id = upload_task
        wf.submit(task_id, e.worker.id, client_documents=[{"name": "A"}])
        with pytest.raises(StateConflictError):
            wf.accept_client_documents(task_id, e.worker.id)

    def test_request_reupload_starts_new_round(self, upload_task):
        e, task_id = upload_task
        wf.submit(task_id, e.worker.id, documents=[DOC], client_documents=[{"name": "A"}])
        [old_cd] = _client_doc_ids(task_id)
        wf.client_upload(old_cd, "ref/a.pdf")

        res = wf.request_reupload(task_id, e.worker.id, "Scan is unreadable")
        assert res["sequence_no"] == 2
        assert res["previous_status"] == "client_reply"
        assert res["new_status"] == "submitted_to_client"

        latest = _task(task_id).latest_submission
        assert latest.outcome_comment == "Scan is unreadable"
        assert [(cd.name, cd.file) for cd in latest.client_documents] == [("A", None)]
        assert [d.file for d in latest.documents] == [DOC["file"]]
        assert db.session.get(ClientDocument, old_cd).file == "ref/a.pdf"

        with pytest.raises(StateConflictError):
            wf.client_upload(old_cd, "ref/a2.pdf")

    def test_reupload_requires_comment(self, upload_task):
        e, task_id = upload_task
        wf.submit(task_id, e.worker.id, client_documents=[{"name": "A"}])
        [cd_id] = _client_doc_ids(task_id)
        wf.client_upload(cd_id, "ref/a.pdf")
        with pytest.raises(ValidationError):
            wf.request_reupload(task_id, e.worker.id, "")

    def test_reupload_reenters_review(self, engagement):
        task_id = engagement.task(client_interact="upload", approval_roles=["manager"]).id
        wf.submit(task_id, engagement.worker.id, client_documents=[{"name": "A"}])
        wf.approve(task_id, engagement.manager.id)
        [cd_id] = _client_doc_ids(task_id)
        wf.client_upload(cd_id, "ref/a.pdf")

        res = wf.request_reupload(task_id, engagement.worker.id, "Wrong year")
        assert (res["new_status"], res["current_role"]) == ("under_review", "manager")


# ═════════════════════════════════════════════════════════════════════════════
# Permissions & concurrency
# ═════════════════════════════════════════════════════════════════════════════


class TestPermissions:
    def test_only_workers_submit(self, chain_task):
        e, task_id = chain_task
        with pytest.raises(PermissionDeniedError):
            wf.submit(task_id, e.manager.id, documents=[DOC])

    def test_member_of_another_project(self, chain_task):
        e, task_id = chain_task
        outsider = make_member(make_project(name="Other"), "team_leader", "olga")
        wf.submit(task_id, e.worker.id, documents=[DOC])
        with pytest.raises(PermissionDeniedError):
            wf.approve(task_id, outsider.id)

    @pytest.mark.parametrize("member_id", [None, "", "abc", 999])
    def test_unresolvable_actor(self, chain_task, member_id):
        _, task_id = chain_task
        with pytest.raises(PermissionDeniedError):
            wf.submit(task_id, member_id, documents=[DOC])

    def test_role_not_on_task(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        with pytest.raises(PermissionDeniedError):
            wf.approve(task_id, e.supervisor.id)

    def test_claimed_role_must_match(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        with pytest.raises(PermissionDeniedError):
            wf.approve(task_id, e.team_leader.id, role="partner")

    def test_inactive_member(self, chain_task):
        e, task_id = chain_task
        e.team_leader.is_active = False
        db.session.commit()
        wf.submit(task_id, e.worker.id, documents=[DOC])
        with pytest.raises(PermissionDeniedError):
            wf.approve(task_id, e.team_leader.id)


class TestVersionToken:
    def test_matching_version(self, chain_task):
        e, task_id = chain_task
        res = wf.submit(task_id, e.worker.id, documents=[DOC])
        res = wf.approve(task_id, e.team_leader.id, expected_version=res["version"])
        assert res["current_role"] == "partner"

    def test_stale_version(self, chain_task):
        e, task_id = chain_task
        first = wf.submit(task_id, e.worker.id, documents=[DOC])
        wf.submit(task_id, e.worker.id, documents=[DOC_2])
        with pytest.raises(StateConflictError):
            wf.approve(task_id, e.team_leader.id, expected_version=first["version"])


class TestConcurrentWriters:
    def test_lost_race_rolls_back_everything(self, chain_task):
        e, task_id = chain_task
        res = wf.submit(task_id, e.worker.id, notes="v1", documents=[DOC])
        sub_id = res["submission_id"]

        with pytest.raises(StateConflictError):
            with atomic():
                sub = db.session.get(Submission, sub_id)
                # another writer commits between our read and our flush
                db.session.execute(
                    text("UPDATE submissions SET version = version + 1 WHERE id = :id"), {"id": sub_id},
                )
                sub.notes = "v2"
                _task(task_id).name = "Renamed mid-race"

        db.session.expire_all()
        sub = db.session.get(Submission, sub_id)
        assert (sub.notes, sub.version) == ("v1", res["version"])
        assert _task(task_id).name == "Confirm bank balances"

    def test_approve_after_losing_race(self, chain_task):
        e, task_id = chain_task
        res = wf.submit(task_id, e.worker.id, documents=[DOC])
        wf.approve(task_id, e.team_leader.id, expected_version=res["version"])
        with pytest.raises(StateConflictError):
            wf.approve(task_id, e.team_leader.id, expected_version=res["version"])
        assert _task(task_id).latest_submission.approval_log == [("team_leader", "approve")]


# ═════════════════════════════════════════════════════════════════════════════
# Side effects & queries
# ═════════════════════════════════════════════════════════════════════════════


class TestSideEffects:
    def test_audit_rows(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        wf.reject(task_id, e.team_leader.id, "Redo")

        logs = AuditLog.query.filter_by(entity_type="task", entity_id=task_id) \
            .order_by(AuditLog.id).all()
        assert [log.action for log in logs] == ["task.submit", "task.reject"]
        assert logs[0].actor == "alice"
        assert logs[1].diff["status"] == {"old": "under_review", "new": "returned"}
        assert logs[1].diff["comment"] == "Redo"

    def test_failed_event_leaves_no_trace(self, chain_task):
        e, task_id = chain_task
        with pytest.raises(ValidationError):
            wf.submit(task_id, e.worker.id, documents=[DOC, DOC_2])
        assert AuditLog.query.filter_by(action="task.submit").count() == 0
        assert Submission.query.count() == 0

    def test_notifications(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        wf.reject(task_id, e.team_leader.id, "Redo")

        approval = Notification.query.filter_by(event_type="approval_required").one()
        assert approval.recipient_member_id == e.team_leader.id
        returned = Notification.query.filter_by(event_type="submission_returned").one()
        assert returned.recipient_member_id == e.worker.id
        assert "Redo" in returned.message

    def test_failing_subscriber_does_not_fail_the_event(self, chain_task, captured_events, caplog):
        e, task_id = chain_task

        def relay_down(event):
            raise RuntimeError("mail relay down")

        publisher.subscribe(relay_down)
        try:
            res = wf.submit(task_id, e.worker.id, documents=[DOC])
        finally:
            publisher.unsubscribe(relay_down)

        assert res["new_status"] == "under_review"
        assert [ev.event_type for ev in captured_events] == ["approval_required"]
        assert Notification.query.filter_by(event_type="approval_required").count() == 1
        assert "mail relay down" in caplog.text

    def test_notification_failure_rolls_back_its_rows(self, chain_task, monkeypatch):
        e, task_id = chain_task

        def half_written(**kwargs):
            db.session.add(Notification(project_id=kwargs["project_id"], event_type="approval_required",
                                        title="partial", recipient_member_id=e.team_leader.id))
            db.session.flush()
            raise SQLAlchemyError("notifications table locked")

        monkeypatch.setattr(NotificationService, "broadcast", staticmethod(half_written))
        res = wf.submit(task_id, e.worker.id, documents=[DOC])

        assert res["new_status"] == "under_review"
        assert Notification.query.count() == 0
        assert _task(task_id).status == "under_review"

    def test_pending_approvals(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])

        assert [t["id"] for t in wf.list_pending_approvals(e.project.id, e.team_leader.id)] == [task_id]
        assert wf.list_pending_approvals(e.project.id, e.partner.id) == []

    def test_task_detail(self, chain_task):
        e, task_id = chain_task
        wf.submit(task_id, e.worker.id, documents=[DOC])
        wf.approve(task_id, e.team_leader.id)

        detail = wf.get_task_detail(task_id)
        assert detail["status_label"] == "Under Review by Partner"
        assert detail["chain"]["approved_roles"] == ["team_leader"]
        assert detail["chain"]["next_role"] == "partner"
        assert detail["gate"]["is_locked"] is False
        assert len(detail["submissions"]) == 1
