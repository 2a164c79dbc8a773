"""
Approval chain resolver.

Pure, stateless computation of where a submission stands in its task's
role-ordered approval chain. No session access, no side effects.

Inputs:
    approval_roles     roles configured on the task (any order; evaluated in
                       fixed priority team_leader → supervisor → manager → partner)
    approval_type      "all_attempts": every submission needs every role
                       "once": a role that ever approved the task stays satisfied
    approval_log       [(role, decision), ...] of the active submission
    ever_approved      roles that approved an earlier submission of the task
                       (only consulted for "once")

Usage:
    from auditflow.services.approval_chain import resolve_chain

    res = resolve_chain(["partner", "team_leader"], "all_attempts",
                        [("team_leader", "approve")])
    res.next_role       # "partner"
"""

from dataclasses import dataclass

from auditflow.models.workflow import (
    APPROVAL_DECISIONS,
    APPROVAL_TYPES,
    ROLE_PRIORITY,
    role_priority,
    sort_roles,
)

__all__ = [
    "ChainInvariantError",
    "ChainResolution",
    "resolve_chain",
    "resolve_for_submission",
    "resume_role",
    "role_priority",
    "sort_roles",
]


class ChainInvariantError(AssertionError):
    """Approval inputs that no valid sequence of events could have produced."""


@dataclass(frozen=True)
class ChainResolution:
    required_roles: tuple[str, ...]
    approved_roles: tuple[str, ...]
    next_role: str | None
    is_satisfied: bool
    rejected_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "required_roles": list(self.required_roles),
            "approved_roles": list(self.approved_roles),
            "next_role": self.next_role,
            "is_satisfied": self.is_satisfied,
            "rejected_by": self.rejected_by,
        }


def _checked_roles(roles) -> list[str]:
    unknown = [r for r in roles or [] if r not in ROLE_PRIORITY]
    if unknown:
        raise ChainInvariantError(f"Unknown approval role(s): {unknown}")
    return sort_roles(roles)


def resolve_chain(
    approval_roles,
    approval_type: str,
    approval_log=(),
    ever_approved=(),
) -> ChainResolution:
    """Compute the chain position of the active submission."""
    if approval_type not in APPROVAL_TYPES:
        raise ChainInvariantError(f"Unknown approval type: {approval_type!r}")

    roles = _checked_roles(approval_roles)
    if approval_type == "once":
        already = set(_checked_roles(ever_approved))
        required = [r for r in roles if r not in already]
    else:
        required = roles

    approved: list[str] = []
    rejected_by = None
    for role, decision in approval_log:
        if decision not in APPROVAL_DECISIONS:
            raise ChainInvariantError(f"Unknown decision {decision!r} by {role}")
        if rejected_by is not None:
            raise ChainInvariantError(f"Decision by {role} recorded after rejection by {rejected_by}")
        position = len(approved)
        if position >= len(required):
            raise ChainInvariantError(f"Decision by {role} recorded after the chain was satisfied")
        if role != required[position]:
            raise ChainInvariantError(
                f"Out-of-order decision: expected {required[position]}, got {role}"
            )
        if decision == "approve":
            approved.append(role)
        else:
            rejected_by = role

    if rejected_by is not None:
        next_role = None
    else:
        next_role = required[len(approved)] if len(approved) < len(required) else None

    return ChainResolution(
        required_roles=tuple(required),
        approved_roles=tuple(approved),
        next_role=next_role,
        is_satisfied=rejected_by is None and next_role is None,
        rejected_by=rejected_by,
    )


def resume_role(approval_roles, approval_type: str, ever_approved=()) -> str | None:
    """
    Role a fresh submission starts at.

    After a rejection by R this is R under "once" (earlier roles stay
    satisfied) and the first configured role under "all_attempts".
    ``None`` means the chain is already satisfied.
    """
    return resolve_chain(approval_roles, approval_type, (), ever_approved).next_role


# ── ORM adapter ──────────────────────────────────────────────────────────────

def roles_approved_before(task, submission) -> set[str]:
    """Roles that approved any submission of ``task`` older than ``submission``."""
    return {
        a.role
        for s in task.submissions
        if s.sequence_no < submission.sequence_no
        for a in s.approvals
        if a.decision == "approve"
    }


def resolve_for_submission(task, submission) -> ChainResolution:
    """Resolve ``submission`` against its task's configured chain."""
    return resolve_chain(
        task.approval_roles,
        task.approval_type,
        submission.approval_log,
        roles_approved_before(task, submission),
    )
