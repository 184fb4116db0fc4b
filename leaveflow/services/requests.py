from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from leaveflow.errors import LeaveConflictError, LeaveNotFoundError, LeaveValidationError
from leaveflow.models import LeaveRequest, LeaveStatus, LeaveType, Team, UserProfile
from leaveflow.services import leave_repository
from leaveflow.services.context import LeaveContext
from leaveflow.services.email_templates import EmailRecipient, NotificationFields, NotificationType
from leaveflow.services.leave_state import (
    Actor,
    ApprovalChain,
    ApprovalKind,
    CancellationKind,
    plan_approval,
    plan_cancellation,
    plan_rejection,
    should_auto_approve,
)
from leaveflow.services.leave_time import (
    as_utc,
    compute_minutes,
    format_datetime,
    format_duration_with_days,
    has_overlap,
)
from leaveflow.services.notifications import fetch_approver_recipients, fetch_employee_recipient
from leaveflow.services.subscriptions import (
    APPROVED_REQUESTS_TOPIC,
    request_logs_topic,
    team_requests_topic,
    user_balances_topic,
    user_requests_topic,
)

logger = logging.getLogger("leaveflow.requests")

END_BEFORE_START = "End time must be after start time."
ZERO_DURATION = "Duration must be greater than zero."
OVERLAPPING_REQUEST = "This request overlaps with an existing leave request."
PROFILE_NOT_FOUND = "User profile not found."
NO_TEAM_ASSIGNED = "You must be assigned to a team before requesting leave."
UNKNOWN_LEAVE_TYPE = "Unknown leave type."

_ROLE_LABELS = {
    ApprovalKind.TEAM_LEAD_FINAL: "Team Lead",
    ApprovalKind.MANAGER: "Manager",
    ApprovalKind.MANAGER_DIRECT: "Manager",
    ApprovalKind.ADMIN: "Admin",
}


@dataclass(slots=True)
class CreateLeaveRequestInput:
    employee_uid: str
    leave_type: LeaveType | str
    start_at: datetime
    end_at: datetime
    note: str | None = None


@dataclass(frozen=True, slots=True)
class CreateLeaveRequestResult:
    request_id: int
    status: LeaveStatus
    requested_minutes: int
    auto_approved: bool = False


@dataclass(slots=True)
class ApproveLeaveRequestInput:
    request_id: int
    actor: Actor


@dataclass(slots=True)
class RejectLeaveRequestInput:
    request_id: int
    actor: Actor
    reason: str | None = None


@dataclass(slots=True)
class CancelLeaveRequestInput:
    request_id: int
    actor: Actor
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class LeaveTransitionResult:
    request_id: int
    status: LeaveStatus
    action: str
    balance_delta_minutes: int = 0


def _coerce_leave_type(value: LeaveType | str) -> LeaveType:
    try:
        return LeaveType(value)
    except ValueError as exc:
        raise LeaveValidationError(UNKNOWN_LEAVE_TYPE) from exc


def _clean_text(value: str | None) -> str | None:
    text = (value or "").strip()
    return text or None


def _chain_for(ctx: LeaveContext, team_id: int | None) -> tuple[Team | None, ApprovalChain]:
    team = ctx.db.get(Team, team_id) if team_id is not None else None
    if team is None:
        return None, ApprovalChain(lead_uid=None, manager_uid=None)
    return team, ApprovalChain(lead_uid=team.lead_uid, manager_uid=team.manager_uid)


def _publish(
    ctx: LeaveContext,
    request: LeaveRequest,
    action: str,
    *,
    balance_changed: bool = False,
    approved_changed: bool = False,
) -> None:
    topics = [
        team_requests_topic(request.team_id),
        user_requests_topic(request.employee_uid),
        request_logs_topic(request.id),
    ]
    if balance_changed:
        topics.append(user_balances_topic(request.employee_uid))
    if approved_changed:
        topics.append(APPROVED_REQUESTS_TOPIC)
    ctx.publish(
        topics,
        {
            "type": "leave_request",
            "action": action,
            "request_id": request.id,
            "status": request.status.value,
            "employee_uid": request.employee_uid,
            "team_id": request.team_id,
        },
    )


def _display_name(ctx: LeaveContext, uid: str | None) -> str:
    profile = ctx.db.get(UserProfile, uid) if uid else None
    if profile is None or not profile.display_name:
        return "Unknown"
    return profile.display_name


def _dedupe(recipients: list[EmailRecipient | None], *, exclude: str | None = None) -> list[EmailRecipient]:
    seen: set[str] = set()
    result: list[EmailRecipient] = []
    for recipient in recipients:
        if recipient is None:
            continue
        key = recipient.email.strip().lower()
        if key in seen or (exclude and key == exclude.strip().lower()):
            continue
        seen.add(key)
        result.append(recipient)
    return result


def _dispatch(
    ctx: LeaveContext,
    notification_type: NotificationType,
    request: LeaveRequest,
    build: Callable[[NotificationFields], list[EmailRecipient]],
) -> None:
    if not ctx.notifier.is_enabled():
        return
    try:
        employee = fetch_employee_recipient(ctx.db, request.employee_uid)
        if employee is None:
            return
        fields = NotificationFields(
            request_id=request.id,
            employee_email=employee.email,
            employee_name=employee.name,
            leave_type=request.type.value,
            duration=format_duration_with_days(request.requested_minutes),
            start_date=format_datetime(request.start_at),
            end_date=format_datetime(request.end_at),
            note=request.note,
        )
        recipients = build(fields)
        if not recipients:
            logger.warning(
                "notification_no_recipients",
                extra={"notification_type": notification_type.value, "request_id": request.id},
            )
            return
        ctx.notifier.send_notification(notification_type, recipients, fields)
    except Exception:
        logger.exception(
            "notification_dispatch_failed",
            extra={"notification_type": notification_type.value, "request_id": request.id},
        )


def _approvers(ctx: LeaveContext, team: Team | None) -> list[EmailRecipient | None]:
    approvers = fetch_approver_recipients(ctx.db, team)
    return [approvers["team_lead"], approvers["manager"]]


def create_leave_request(ctx: LeaveContext, data: CreateLeaveRequestInput) -> CreateLeaveRequestResult:
    db = ctx.db
    leave_type = _coerce_leave_type(data.leave_type)
    start_at = as_utc(data.start_at)
    end_at = as_utc(data.end_at)
    if end_at <= start_at:
        raise LeaveValidationError(END_BEFORE_START)

    requested_minutes = compute_minutes(start_at, end_at)
    if requested_minutes <= 0:
        raise LeaveValidationError(ZERO_DURATION)

    profile = db.get(UserProfile, data.employee_uid)
    if profile is None:
        raise LeaveNotFoundError(PROFILE_NOT_FOUND)
    if profile.team_id is None:
        raise LeaveValidationError(NO_TEAM_ASSIGNED)

    submitted = db.scalars(
        select(LeaveRequest).where(
            LeaveRequest.employee_uid == data.employee_uid,
            LeaveRequest.status == LeaveStatus.SUBMITTED,
        )
    ).all()
    if has_overlap(submitted, start_at, end_at):
        raise LeaveConflictError(OVERLAPPING_REQUEST)

    team, chain = _chain_for(ctx, profile.team_id)
    request = leave_repository.create_request_record(
        db,
        employee_uid=data.employee_uid,
        team_id=profile.team_id,
        leave_type=leave_type,
        start_at=start_at,
        end_at=end_at,
        year=start_at.year,
        requested_minutes=requested_minutes,
        note=_clean_text(data.note),
    )
    logger.info(
        "leave_request_created",
        extra={
            "request_id": request.id,
            "employee_uid": request.employee_uid,
            "team_id": request.team_id,
            "leave_type": leave_type.value,
            "requested_minutes": requested_minutes,
        },
    )
    _publish(ctx, request, "created")
    _dispatch(
        ctx,
        NotificationType.REQUEST_CREATED,
        request,
        lambda fields: _dedupe(_approvers(ctx, team), exclude=fields.employee_email),
    )

    auto_approved = False
    if should_auto_approve(employee_uid=data.employee_uid, chain=chain):
        request = leave_repository.auto_approve(db, request_id=request.id, actor_uid=data.employee_uid)
        auto_approved = True
        logger.info(
            "leave_request_auto_approved",
            extra={"request_id": request.id, "employee_uid": request.employee_uid},
        )
        _publish(ctx, request, "approved", balance_changed=True, approved_changed=True)

    return CreateLeaveRequestResult(
        request_id=request.id,
        status=request.status,
        requested_minutes=requested_minutes,
        auto_approved=auto_approved,
    )


def approve_leave_request(ctx: LeaveContext, data: ApproveLeaveRequestInput) -> LeaveTransitionResult:
    request = leave_repository.get_request(ctx.db, data.request_id)
    team, chain = _chain_for(ctx, request.team_id)
    kind = plan_approval(
        status=request.status,
        employee_uid=request.employee_uid,
        chain=chain,
        actor=data.actor,
    )
    request = leave_repository.approve(ctx.db, request_id=request.id, actor_uid=data.actor.uid, kind=kind)
    is_final = request.status == LeaveStatus.APPROVED
    logger.info(
        "leave_request_approved",
        extra={
            "request_id": request.id,
            "actor_uid": data.actor.uid,
            "approval_kind": kind.value,
            "status": request.status.value,
        },
    )
    _publish(ctx, request, "approved", balance_changed=is_final, approved_changed=is_final)

    if kind == ApprovalKind.TEAM_LEAD_STEP:

        def _to_manager(fields: NotificationFields) -> list[EmailRecipient]:
            fields.approver_name = _display_name(ctx, data.actor.uid)
            fields.approver_role = "Team Lead"
            fields.team_lead_approval_date = format_datetime(request.step1_at)
            return _dedupe([fetch_approver_recipients(ctx.db, team)["manager"]])

        _dispatch(ctx, NotificationType.TL_APPROVED_WITH_MANAGER, request, _to_manager)
    else:
        notification_type = (
            NotificationType.TL_APPROVED_FINAL
            if kind == ApprovalKind.TEAM_LEAD_FINAL
            else NotificationType.MANAGER_APPROVED_FINAL
        )

        def _to_employee(fields: NotificationFields) -> list[EmailRecipient]:
            fields.approver_name = _display_name(ctx, data.actor.uid)
            fields.approver_role = _ROLE_LABELS[kind]
            fields.approval_date = format_datetime(request.updated_at)
            if request.step1_at is not None and kind != ApprovalKind.TEAM_LEAD_FINAL:
                fields.team_lead_approval_date = format_datetime(request.step1_at)
            if request.step2_at is not None:
                fields.manager_approval_date = format_datetime(request.step2_at)
            return [EmailRecipient(email=fields.employee_email, name=fields.employee_name)]

        _dispatch(ctx, notification_type, request, _to_employee)

    return LeaveTransitionResult(
        request_id=request.id,
        status=request.status,
        action=kind.value,
        balance_delta_minutes=-request.requested_minutes if is_final else 0,
    )


def reject_leave_request(ctx: LeaveContext, data: RejectLeaveRequestInput) -> LeaveTransitionResult:
    request = leave_repository.get_request(ctx.db, data.request_id)
    _, chain = _chain_for(ctx, request.team_id)
    kind = plan_rejection(
        status=request.status,
        employee_uid=request.employee_uid,
        chain=chain,
        actor=data.actor,
    )
    reason = _clean_text(data.reason)
    request = leave_repository.reject(
        ctx.db,
        request_id=request.id,
        actor_uid=data.actor.uid,
        reason=reason,
        kind=kind,
    )
    logger.info(
        "leave_request_rejected",
        extra={"request_id": request.id, "actor_uid": data.actor.uid, "rejection_kind": kind.value},
    )
    _publish(ctx, request, "rejected")

    def _to_employee(fields: NotificationFields) -> list[EmailRecipient]:
        fields.approver_name = _display_name(ctx, data.actor.uid)
        fields.rejection_reason = reason
        return [EmailRecipient(email=fields.employee_email, name=fields.employee_name)]

    _dispatch(ctx, NotificationType.REQUEST_REJECTED, request, _to_employee)
    return LeaveTransitionResult(request_id=request.id, status=request.status, action=kind.value)


def cancel_leave_request(ctx: LeaveContext, data: CancelLeaveRequestInput) -> LeaveTransitionResult:
    request = leave_repository.get_request(ctx.db, data.request_id)
    kind = plan_cancellation(
        status=request.status,
        employee_uid=request.employee_uid,
        actor=data.actor,
    )
    reason = _clean_text(data.reason)
    team, _ = _chain_for(ctx, request.team_id)
    request = leave_repository.cancel(
        ctx.db,
        request_id=request.id,
        actor_uid=data.actor.uid,
        reason=reason,
        kind=kind,
    )
    restored = kind == CancellationKind.APPROVED_RESTORE
    logger.info(
        "leave_request_cancelled",
        extra={
            "request_id": request.id,
            "actor_uid": data.actor.uid,
            "cancellation_kind": kind.value,
            "restored_minutes": request.requested_minutes if restored else 0,
        },
    )
    _publish(ctx, request, "cancelled", balance_changed=restored, approved_changed=restored)

    def _to_approvers(fields: NotificationFields) -> list[EmailRecipient]:
        fields.rejection_reason = reason
        recipients = _approvers(ctx, team)
        if data.actor.uid != request.employee_uid:
            recipients.append(EmailRecipient(email=fields.employee_email, name=fields.employee_name))
        return _dedupe(recipients)

    _dispatch(ctx, NotificationType.REQUEST_CANCELLED, request, _to_approvers)
    return LeaveTransitionResult(
        request_id=request.id,
        status=request.status,
        action=kind.value,
        balance_delta_minutes=request.requested_minutes if restored else 0,
    )
