"""Leave request lifecycle: allowed transitions and who may perform them.

The planners in this module are pure. They look at the request status, the
requester and the team's approval chain and return which write the caller has
to perform, or raise ``LeaveAuthorizationError`` with a fixed message. Nothing
here touches the database.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from leaveflow.errors import LeaveAuthorizationError
from leaveflow.models import LeaveStatus, UserRole

ALLOWED_TRANSITIONS: dict[LeaveStatus, frozenset[LeaveStatus]] = {
    LeaveStatus.SUBMITTED: frozenset(
        {
            LeaveStatus.TL_APPROVED,
            LeaveStatus.APPROVED,
            LeaveStatus.REJECTED,
            LeaveStatus.CANCELLED,
        }
    ),
    LeaveStatus.TL_APPROVED: frozenset(
        {
            LeaveStatus.APPROVED,
            LeaveStatus.REJECTED,
            LeaveStatus.CANCELLED,
        }
    ),
    LeaveStatus.APPROVED: frozenset({LeaveStatus.CANCELLED}),
    LeaveStatus.REJECTED: frozenset(),
    LeaveStatus.CANCELLED: frozenset(),
}

PENDING_STATUSES: frozenset[LeaveStatus] = frozenset({LeaveStatus.SUBMITTED, LeaveStatus.TL_APPROVED})
TERMINAL_STATUSES: frozenset[LeaveStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

NOT_ALLOWED_TO_APPROVE = "You are not allowed to approve this request."
NOT_ALLOWED_TO_REJECT = "You are not allowed to reject this request."
NOT_ALLOWED_TO_CANCEL = "You are not allowed to cancel this request."
LEAD_SELF_APPROVAL = "Team lead cannot approve their own request."
LEAD_SELF_REJECTION = "Team lead cannot reject their own request."
NO_LONGER_APPROVABLE = "This request can no longer be approved."
NO_LONGER_REJECTABLE = "This request can no longer be rejected."
NO_LONGER_CANCELLABLE = "This request can no longer be cancelled."
ADMIN_ONLY_APPROVED_CANCEL = "Only an admin can cancel an approved request."


class ApprovalKind(str, enum.Enum):
    TEAM_LEAD_STEP = "TEAM_LEAD_STEP"
    TEAM_LEAD_FINAL = "TEAM_LEAD_FINAL"
    MANAGER = "MANAGER"
    MANAGER_DIRECT = "MANAGER_DIRECT"
    ADMIN = "ADMIN"


class RejectionKind(str, enum.Enum):
    TEAM_LEAD = "TEAM_LEAD"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"


class CancellationKind(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED_RESTORE = "APPROVED_RESTORE"


@dataclass(frozen=True, slots=True)
class Actor:
    uid: str
    role: UserRole = UserRole.EMPLOYEE

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True, slots=True)
class ApprovalChain:
    lead_uid: str | None
    manager_uid: str | None

    @property
    def has_manager(self) -> bool:
        return bool(self.manager_uid)


def _known(status: LeaveStatus) -> LeaveStatus:
    if status not in ALLOWED_TRANSITIONS:
        raise ValueError(f"Unhandled leave status: {status!r}")
    return status


def can_transition(current: LeaveStatus, target: LeaveStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[_known(current)]


def is_pending(status: LeaveStatus) -> bool:
    return _known(status) in PENDING_STATUSES


def target_status(kind: ApprovalKind) -> LeaveStatus:
    if kind == ApprovalKind.TEAM_LEAD_STEP:
        return LeaveStatus.TL_APPROVED
    if kind in (
        ApprovalKind.TEAM_LEAD_FINAL,
        ApprovalKind.MANAGER,
        ApprovalKind.MANAGER_DIRECT,
        ApprovalKind.ADMIN,
    ):
        return LeaveStatus.APPROVED
    raise ValueError(f"Unhandled approval kind: {kind!r}")


APPROVAL_SOURCES: dict[ApprovalKind, frozenset[LeaveStatus]] = {
    ApprovalKind.TEAM_LEAD_STEP: frozenset({LeaveStatus.SUBMITTED}),
    ApprovalKind.TEAM_LEAD_FINAL: frozenset({LeaveStatus.SUBMITTED}),
    ApprovalKind.MANAGER: frozenset({LeaveStatus.TL_APPROVED}),
    ApprovalKind.MANAGER_DIRECT: frozenset({LeaveStatus.SUBMITTED}),
    ApprovalKind.ADMIN: PENDING_STATUSES,
}

REJECTION_SOURCES: dict[RejectionKind, frozenset[LeaveStatus]] = {
    RejectionKind.TEAM_LEAD: frozenset({LeaveStatus.SUBMITTED}),
    RejectionKind.MANAGER: PENDING_STATUSES,
    RejectionKind.ADMIN: PENDING_STATUSES,
}


def can_apply_approval(current: LeaveStatus, kind: ApprovalKind) -> bool:
    return current in APPROVAL_SOURCES[kind] and can_transition(current, target_status(kind))


def can_apply_rejection(current: LeaveStatus, kind: RejectionKind) -> bool:
    return current in REJECTION_SOURCES[kind] and can_transition(current, LeaveStatus.REJECTED)


def can_apply_cancellation(current: LeaveStatus, kind: CancellationKind) -> bool:
    if kind == CancellationKind.APPROVED_RESTORE:
        source_ok = current == LeaveStatus.APPROVED
    else:
        source_ok = is_pending(current)
    return source_ok and can_transition(current, LeaveStatus.CANCELLED)


def plan_approval(
    *,
    status: LeaveStatus,
    employee_uid: str,
    chain: ApprovalChain,
    actor: Actor,
) -> ApprovalKind:
    status = _known(status)
    is_team_lead = bool(chain.lead_uid) and chain.lead_uid == actor.uid
    is_manager = bool(chain.manager_uid) and chain.manager_uid == actor.uid

    if is_team_lead and status == LeaveStatus.SUBMITTED:
        if employee_uid == chain.lead_uid:
            raise LeaveAuthorizationError(LEAD_SELF_APPROVAL)
        if chain.has_manager:
            return ApprovalKind.TEAM_LEAD_STEP
        return ApprovalKind.TEAM_LEAD_FINAL

    if is_manager:
        if status == LeaveStatus.TL_APPROVED:
            return ApprovalKind.MANAGER
        if status == LeaveStatus.SUBMITTED and employee_uid == chain.lead_uid:
            return ApprovalKind.MANAGER_DIRECT

    if actor.is_admin:
        if status in PENDING_STATUSES:
            return ApprovalKind.ADMIN
        raise LeaveAuthorizationError(NO_LONGER_APPROVABLE)

    raise LeaveAuthorizationError(NOT_ALLOWED_TO_APPROVE)


def plan_rejection(
    *,
    status: LeaveStatus,
    employee_uid: str,
    chain: ApprovalChain,
    actor: Actor,
) -> RejectionKind:
    status = _known(status)
    is_team_lead = bool(chain.lead_uid) and chain.lead_uid == actor.uid
    is_manager = bool(chain.manager_uid) and chain.manager_uid == actor.uid

    if is_team_lead and status == LeaveStatus.SUBMITTED:
        if employee_uid == chain.lead_uid:
            raise LeaveAuthorizationError(LEAD_SELF_REJECTION)
        return RejectionKind.TEAM_LEAD

    if is_manager:
        manager_direct = status == LeaveStatus.TL_APPROVED or (
            status == LeaveStatus.SUBMITTED and employee_uid == chain.lead_uid
        )
        if manager_direct:
            return RejectionKind.MANAGER

    if actor.is_admin:
        if status in PENDING_STATUSES:
            return RejectionKind.ADMIN
        raise LeaveAuthorizationError(NO_LONGER_REJECTABLE)

    raise LeaveAuthorizationError(NOT_ALLOWED_TO_REJECT)


def plan_cancellation(
    *,
    status: LeaveStatus,
    employee_uid: str,
    actor: Actor,
) -> CancellationKind:
    status = _known(status)
    is_owner = employee_uid == actor.uid

    if status in TERMINAL_STATUSES:
        raise LeaveAuthorizationError(NO_LONGER_CANCELLABLE)

    if status == LeaveStatus.APPROVED:
        if actor.is_admin:
            return CancellationKind.APPROVED_RESTORE
        if is_owner:
            raise LeaveAuthorizationError(ADMIN_ONLY_APPROVED_CANCEL)
        raise LeaveAuthorizationError(NOT_ALLOWED_TO_CANCEL)

    if is_owner or actor.is_admin:
        return CancellationKind.PENDING
    raise LeaveAuthorizationError(NOT_ALLOWED_TO_CANCEL)


def should_auto_approve(*, employee_uid: str, chain: ApprovalChain) -> bool:
    return bool(chain.lead_uid) and chain.lead_uid == employee_uid and not chain.has_manager
