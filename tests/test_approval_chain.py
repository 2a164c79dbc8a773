"""
Approval chain resolver: pure unit tests (no database).

Covers:
    - role sorting / priority
    - all_attempts vs once chains
    - resume_role after a rejection
    - invariant violations (out-of-order, after rejection, past the end)
"""

import pytest

from auditflow.services.approval_chain import (
    ChainInvariantError,
    resolve_chain,
    resume_role,
    role_priority,
    sort_roles,
)

ALL = ["team_leader", "supervisor", "manager", "partner"]


# ═════════════════════════════════════════════════════════════════════════════
# Role ordering
# ═════════════════════════════════════════════════════════════════════════════


class TestRoleOrdering:
    def test_priority_is_fixed(self):
        assert [role_priority(r) for r in ALL] == [1, 2, 3, 4]

    def test_sort_roles_ignores_input_order_and_duplicates(self):
        assert sort_roles(["partner", "team_leader", "partner"]) == ["team_leader", "partner"]

    def test_sort_roles_empty(self):
        assert sort_roles(None) == []

    def test_unknown_role_priority(self):
        with pytest.raises(ValueError):
            role_priority("director")


# ═════════════════════════════════════════════════════════════════════════════
# all_attempts
# ═════════════════════════════════════════════════════════════════════════════


class TestAllAttempts:
    def test_fresh_submission_waits_for_first_role(self):
        res = resolve_chain(["partner", "team_leader"], "all_attempts")
        assert res.required_roles == ("team_leader", "partner")
        assert res.next_role == "team_leader"
        assert res.is_satisfied is False

    def test_partial_approval_moves_to_next_role(self):
        res = resolve_chain(ALL, "all_attempts", [("team_leader", "approve"), ("supervisor", "approve")])
        assert res.approved_roles == ("team_leader", "supervisor")
        assert res.next_role == "manager"

    def test_full_chain_is_satisfied(self):
        log = [(r, "approve") for r in ALL]
        res = resolve_chain(ALL, "all_attempts", log)
        assert res.next_role is None
        assert res.is_satisfied is True

    def test_no_roles_is_satisfied_immediately(self):
        res = resolve_chain([], "all_attempts")
        assert res.required_roles == ()
        assert res.is_satisfied is True

    def test_rejection_stops_the_chain(self):
        res = resolve_chain(["team_leader", "partner"], "all_attempts",
                            [("team_leader", "approve"), ("partner", "reject")])
        assert res.rejected_by == "partner"
        assert res.next_role is None
        assert res.is_satisfied is False

    def test_earlier_approvals_do_not_count(self):
        res = resolve_chain(["team_leader", "partner"], "all_attempts", (), {"team_leader"})
        assert res.next_role == "team_leader"


# ═════════════════════════════════════════════════════════════════════════════
# once
# ═════════════════════════════════════════════════════════════════════════════


class TestOnce:
    def test_previously_approved_roles_are_skipped(self):
        res = resolve_chain(["team_leader", "partner"], "once", (), {"team_leader"})
        assert res.required_roles == ("partner",)
        assert res.next_role == "partner"

    def test_every_role_approved_before(self):
        res = resolve_chain(["team_leader", "partner"], "once", (), {"team_leader", "partner"})
        assert res.is_satisfied is True

    def test_without_history_behaves_like_all_attempts(self):
        assert resolve_chain(ALL, "once").next_role == "team_leader"


class TestResumeRole:
    def test_once_resumes_at_the_rejecting_role(self):
        assert resume_role(["team_leader", "partner"], "once", {"team_leader"}) == "partner"

    def test_all_attempts_restarts_at_the_first_role(self):
        assert resume_role(["team_leader", "partner"], "all_attempts", {"team_leader"}) == "team_leader"

    def test_satisfied_chain(self):
        assert resume_role([], "once") is None


# ═════════════════════════════════════════════════════════════════════════════
# Invariant violations
# ═════════════════════════════════════════════════════════════════════════════


class TestInvariants:
    @pytest.mark.parametrize("log", [
        [("partner", "approve")],
        [("team_leader", "approve"), ("team_leader", "approve")],
    ])
    def test_out_of_order_decision(self, log):
        with pytest.raises(ChainInvariantError):
            resolve_chain(["team_leader", "partner"], "all_attempts", log)

    def test_decision_after_rejection(self):
        with pytest.raises(ChainInvariantError):
            resolve_chain(["team_leader", "partner"], "all_attempts",
                          [("team_leader", "reject"), ("partner", "approve")])

    def test_decision_after_satisfied_chain(self):
        with pytest.raises(ChainInvariantError):
            resolve_chain(["team_leader"], "all_attempts",
                          [("team_leader", "approve"), ("team_leader", "approve")])

    def test_unknown_decision(self):
        with pytest.raises(ChainInvariantError):
            resolve_chain(["team_leader"], "all_attempts", [("team_leader", "maybe")])

    def test_unknown_role(self):
        with pytest.raises(ChainInvariantError):
            resolve_chain(["director"], "all_attempts")

    def test_unknown_approval_type(self):
        with pytest.raises(ChainInvariantError):
            resolve_chain(["team_leader"], "sometimes")

    def test_invariant_error_is_an_assertion(self):
        assert issubclass(ChainInvariantError, AssertionError)

    def test_to_dict(self):
        res = resolve_chain(["partner"], "all_attempts")
        assert res.to_dict() == {
            "required_roles": ["partner"],
            "approved_roles": [],
            "next_role": "partner",
            "is_satisfied": False,
            "rejected_by": None,
        }
