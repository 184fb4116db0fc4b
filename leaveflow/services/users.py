from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from leaveflow.errors import LeaveConflictError, LeaveNotFoundError, LeaveValidationError
from leaveflow.models import LeaveRequest, Team, UserProfile, UserRole
from leaveflow.services.context import LeaveContext
from leaveflow.services.leave_state import PENDING_STATUSES, Actor
from leaveflow.services.ledger import run_transaction
from leaveflow.services.requests import CancelLeaveRequestInput, cancel_leave_request
from leaveflow.services.teams import TEAM_LEAD_TAKEN, find_team_lead_conflict

logger = logging.getLogger("leaveflow.users")

NOT_WHITELISTED = "not_whitelisted"
NO_TEAM = "no_team"

JOIN_DATE_ALREADY_SET = "Join date is already set and cannot be changed."
PENDING_BEFORE_CHANGE = "This team has pending requests. Resolve them before changing this team lead/manager."
PENDING_BEFORE_ASSIGN = "This team has pending requests. Resolve them before assigning a team lead/manager."
TEAM_CHANGE_CANCEL_REASON = "Cancelled due to team change"

_APPROVER_ROLES = frozenset({UserRole.TEAM_LEAD, UserRole.MANAGER})


@dataclass(slots=True)
class UpdateUserAdminInput:
    uid: str
    is_whitelisted: bool
    role: UserRole
    team_id: int | None
    actor_uid: str


@dataclass(slots=True)
class UpdateUserAdminResult:
    profile: UserProfile
    cancelled_request_ids: list[int] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_user(db: Session, uid: str) -> UserProfile:
    profile = db.get(UserProfile, uid)
    if profile is None:
        raise LeaveNotFoundError("User not found.")
    return profile


def list_users(db: Session) -> list[UserProfile]:
    return list(
        db.scalars(select(UserProfile).order_by(UserProfile.display_name.asc(), UserProfile.uid.asc())).all()
    )


def ensure_user_profile(
    db: Session,
    *,
    uid: str,
    email: str | None,
    display_name: str | None,
    photo_url: str | None = None,
) -> UserProfile:
    """Create the profile on first login, refresh identity fields afterwards.

    New profiles start blocked: not whitelisted, role ``employee`` and no team.
    """

    def _work(session: Session) -> UserProfile:
        now = _utcnow()
        profile = session.get(UserProfile, uid, with_for_update=True)
        if profile is None:
            profile = UserProfile(
                uid=uid,
                is_whitelisted=False,
                role=UserRole.EMPLOYEE,
                team_id=None,
                created_at=now,
            )
            session.add(profile)
            logger.info("user_profile_created", extra={"uid": uid})
        profile.email = email or ""
        profile.display_name = display_name or "Employee"
        profile.photo_url = photo_url or None
        profile.last_login_at = now
        session.flush()
        return profile

    return run_transaction(db, _work, name="user_profile_upsert")


def set_join_date(db: Session, *, uid: str, join_date: date) -> UserProfile:
    if not isinstance(join_date, date):
        raise LeaveValidationError("Join date must be a valid date.")

    def _work(session: Session) -> UserProfile:
        profile = session.get(UserProfile, uid, with_for_update=True)
        if profile is None:
            raise LeaveNotFoundError("User not found.")
        if profile.join_date is not None:
            raise LeaveConflictError(JOIN_DATE_ALREADY_SET)
        profile.join_date = join_date
        return profile

    profile = run_transaction(db, _work, name="user_join_date")
    logger.info("user_join_date_set", extra={"uid": uid, "join_date": join_date.isoformat()})
    return profile


def get_access_issues(profile: UserProfile | None) -> list[str]:
    if profile is None:
        return [NOT_WHITELISTED, NO_TEAM]
    issues: list[str] = []
    if profile.is_whitelisted is not True:
        issues.append(NOT_WHITELISTED)
    if profile.role != UserRole.ADMIN and not profile.team_id:
        issues.append(NO_TEAM)
    return issues


def can_access_app(profile: UserProfile | None) -> bool:
    return not get_access_issues(profile)


def _team_has_pending(db: Session, team_id: int) -> bool:
    pending = db.scalar(
        select(LeaveRequest.id)
        .where(LeaveRequest.team_id == team_id, LeaveRequest.status.in_(PENDING_STATUSES))
        .limit(1)
    )
    return pending is not None


def _sync_team_assignments(
    session: Session,
    *,
    uid: str,
    role: UserRole,
    previous_team_id: int | None,
    next_team_id: int | None,
) -> None:
    if previous_team_id is not None and previous_team_id != next_team_id:
        previous = session.get(Team, previous_team_id)
        if previous is not None:
            if previous.lead_uid == uid:
                previous.lead_uid = None
            if previous.manager_uid == uid:
                previous.manager_uid = None

    if next_team_id is None:
        return
    team = session.get(Team, next_team_id)
    if team is None:
        return
    if role == UserRole.TEAM_LEAD:
        team.lead_uid = uid
    elif team.lead_uid == uid:
        team.lead_uid = None
    if role == UserRole.MANAGER:
        team.manager_uid = uid
    elif team.manager_uid == uid:
        team.manager_uid = None


def update_user_admin(ctx: LeaveContext, data: UpdateUserAdminInput) -> UpdateUserAdminResult:
    db = ctx.db
    profile = get_user(db, data.uid)
    role = UserRole(data.role)
    is_admin = profile.role == UserRole.ADMIN
    previous_team_id = profile.team_id
    next_team_id = previous_team_id if is_admin else data.team_id
    if next_team_id is not None and db.get(Team, next_team_id) is None:
        raise LeaveNotFoundError("Team not found.")

    team_changed = next_team_id != previous_team_id
    role_changed = role != profile.role

    if role == UserRole.TEAM_LEAD and next_team_id is not None:
        members = db.scalars(select(UserProfile).where(UserProfile.team_id == next_team_id)).all()
        if find_team_lead_conflict(members, next_team_id, profile.uid) is not None:
            raise LeaveConflictError(TEAM_LEAD_TAKEN)

    if team_changed or role_changed:
        if profile.role in _APPROVER_ROLES and previous_team_id is not None and _team_has_pending(db, previous_team_id):
            raise LeaveConflictError(PENDING_BEFORE_CHANGE)
        if role in _APPROVER_ROLES and next_team_id is not None and _team_has_pending(db, next_team_id):
            raise LeaveConflictError(PENDING_BEFORE_ASSIGN)

    cancelled: list[int] = []
    if team_changed and role == UserRole.EMPLOYEE:
        pending_ids = db.scalars(
            select(LeaveRequest.id).where(
                LeaveRequest.employee_uid == profile.uid,
                LeaveRequest.status.in_(PENDING_STATUSES),
            )
        ).all()
        admin = Actor(uid=data.actor_uid, role=UserRole.ADMIN)
        for request_id in pending_ids:
            cancel_leave_request(
                ctx,
                CancelLeaveRequestInput(request_id=request_id, actor=admin, reason=TEAM_CHANGE_CANCEL_REASON),
            )
            cancelled.append(request_id)

    def _work(session: Session) -> UserProfile:
        target = session.get(UserProfile, data.uid, with_for_update=True)
        target.is_whitelisted = bool(data.is_whitelisted)
        target.role = role
        target.team_id = next_team_id
        _sync_team_assignments(
            session,
            uid=target.uid,
            role=role,
            previous_team_id=previous_team_id,
            next_team_id=next_team_id,
        )
        return target

    profile = run_transaction(db, _work, name="user_admin_update")
    logger.info(
        "user_admin_updated",
        extra={
            "uid": profile.uid,
            "actor_uid": data.actor_uid,
            "role": role.value,
            "team_id": next_team_id,
            "is_whitelisted": profile.is_whitelisted,
            "cancelled_requests": len(cancelled),
        },
    )
    return UpdateUserAdminResult(profile=profile, cancelled_request_ids=cancelled)
