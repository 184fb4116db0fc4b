from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from leaveflow.errors import LeaveConflictError, LeaveNotFoundError
from leaveflow.models import (
    AdjustmentSource,
    LeaveLog,
    LeaveLogAction,
    LeaveRequest,
    LeaveStatus,
    LeaveType,
)
from leaveflow.services.leave_state import (
    ApprovalKind,
    CancellationKind,
    RejectionKind,
    can_apply_approval,
    can_apply_cancellation,
    can_apply_rejection,
)
from leaveflow.services.ledger import record_adjustment, run_transaction
from leaveflow.services.leave_time import as_utc

logger = logging.getLogger("leaveflow.leave_repository")

APPROVAL_DEDUCTION_REASON = "Approval deduction"
CANCELLATION_RESTORE_REASON = "Approved cancellation restore"
NO_LONGER_PENDING = "Request is no longer pending."
ONLY_APPROVED_CANCEL = "Only approved requests can be cancelled this way."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ledger_reference(request_id: int) -> str:
    return f"leave-request:{request_id}"


def _log(
    db: Session,
    request: LeaveRequest,
    action: LeaveLogAction,
    actor_uid: str,
    at: datetime,
    meta: dict[str, Any] | None = None,
) -> LeaveLog:
    entry = LeaveLog(request_id=request.id, action=action, actor_uid=actor_uid, at=at, meta=meta)
    db.add(entry)
    return entry


def _lock_request(db: Session, request_id: int) -> LeaveRequest:
    request = db.scalar(
        select(LeaveRequest)
        .where(LeaveRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if request is None:
        raise LeaveNotFoundError("Request not found.")
    if not request.employee_uid:
        raise LeaveConflictError("Request is missing employee info.")
    return request


def _debit(db: Session, request: LeaveRequest, actor_uid: str) -> int:
    return record_adjustment(
        db,
        user_id=request.employee_uid,
        leave_type_id=request.type,
        year=request.year,
        delta_minutes=-int(request.requested_minutes),
        reason=APPROVAL_DEDUCTION_REASON,
        reference=ledger_reference(request.id),
        actor_uid=actor_uid,
        source=AdjustmentSource.SYSTEM,
    )


def _stale(request: LeaveRequest, message: str = NO_LONGER_PENDING) -> LeaveConflictError:
    logger.warning(
        "leave_request_stale_transition",
        extra={"request_id": request.id, "status": request.status.value},
    )
    return LeaveConflictError(message)


def _reason_meta(reason: str | None) -> dict[str, Any] | None:
    return {"reason": reason} if reason else None


def get_request(db: Session, request_id: int) -> LeaveRequest:
    request = db.get(LeaveRequest, request_id)
    if request is None:
        raise LeaveNotFoundError("Request not found.")
    return request


def create_request_record(
    db: Session,
    *,
    employee_uid: str,
    team_id: int,
    leave_type: LeaveType,
    start_at: datetime,
    end_at: datetime,
    year: int,
    requested_minutes: int,
    note: str | None,
) -> LeaveRequest:
    def _work(session: Session) -> LeaveRequest:
        now = _utcnow()
        request = LeaveRequest(
            employee_uid=employee_uid,
            team_id=team_id,
            type=leave_type,
            start_at=as_utc(start_at),
            end_at=as_utc(end_at),
            year=year,
            requested_minutes=requested_minutes,
            status=LeaveStatus.SUBMITTED,
            note=note,
            created_at=now,
            updated_at=now,
        )
        session.add(request)
        session.flush()
        _log(session, request, LeaveLogAction.CREATED, employee_uid, now)
        session.flush()
        return request

    return run_transaction(db, _work, name="leave_request_create")


def auto_approve(db: Session, *, request_id: int, actor_uid: str) -> LeaveRequest:
    def _work(session: Session) -> LeaveRequest:
        request = _lock_request(session, request_id)
        if request.status != LeaveStatus.SUBMITTED:
            raise _stale(request)
        now = _utcnow()
        request.status = LeaveStatus.APPROVED
        request.step1_by_uid = None
        request.step1_at = None
        request.step2_by_uid = None
        request.step2_at = None
        _clear_rejection(request)
        request.updated_at = now
        _log(session, request, LeaveLogAction.APPROVED, actor_uid, now, {"auto": True})
        _debit(session, request, actor_uid)
        return request

    return run_transaction(db, _work, name="leave_request_auto_approve")


def _clear_rejection(request: LeaveRequest) -> None:
    request.rejected_by_uid = None
    request.rejected_at = None
    request.rejection_reason = None


def approve(db: Session, *, request_id: int, actor_uid: str, kind: ApprovalKind) -> LeaveRequest:
    def _work(session: Session) -> LeaveRequest:
        request = _lock_request(session, request_id)
        if not can_apply_approval(request.status, kind):
            raise _stale(request)
        now = _utcnow()
        request.updated_at = now

        if kind == ApprovalKind.TEAM_LEAD_STEP:
            request.status = LeaveStatus.TL_APPROVED
            request.step1_by_uid = actor_uid
            request.step1_at = now
            _log(session, request, LeaveLogAction.TL_APPROVED, actor_uid, now)
            return request

        request.status = LeaveStatus.APPROVED
        _clear_rejection(request)
        if kind == ApprovalKind.TEAM_LEAD_FINAL:
            request.step1_by_uid = actor_uid
            request.step1_at = now
            request.step2_by_uid = None
            request.step2_at = None
            _log(session, request, LeaveLogAction.TL_APPROVED, actor_uid, now)
            _log(session, request, LeaveLogAction.APPROVED, actor_uid, now)
        elif kind in (ApprovalKind.MANAGER, ApprovalKind.MANAGER_DIRECT):
            request.step2_by_uid = actor_uid
            request.step2_at = now
            meta = {"direct": True} if kind == ApprovalKind.MANAGER_DIRECT else None
            _log(session, request, LeaveLogAction.APPROVED, actor_uid, now, meta)
        elif kind == ApprovalKind.ADMIN:
            _log(session, request, LeaveLogAction.APPROVED, actor_uid, now, {"admin": True})
        else:
            raise ValueError(f"Unhandled approval kind: {kind!r}")

        _debit(session, request, actor_uid)
        return request

    return run_transaction(db, _work, name="leave_request_approve")


def reject(
    db: Session,
    *,
    request_id: int,
    actor_uid: str,
    reason: str | None,
    kind: RejectionKind,
) -> LeaveRequest:
    def _work(session: Session) -> LeaveRequest:
        request = _lock_request(session, request_id)
        if not can_apply_rejection(request.status, kind):
            raise _stale(request)
        now = _utcnow()
        request.status = LeaveStatus.REJECTED
        request.rejected_by_uid = actor_uid
        request.rejected_at = now
        request.rejection_reason = reason
        request.updated_at = now
        _log(session, request, LeaveLogAction.REJECTED, actor_uid, now, _reason_meta(reason))
        return request

    return run_transaction(db, _work, name="leave_request_reject")


def cancel(
    db: Session,
    *,
    request_id: int,
    actor_uid: str,
    reason: str | None,
    kind: CancellationKind,
) -> LeaveRequest:
    def _work(session: Session) -> LeaveRequest:
        request = _lock_request(session, request_id)
        if not can_apply_cancellation(request.status, kind):
            if kind == CancellationKind.APPROVED_RESTORE:
                raise _stale(request, ONLY_APPROVED_CANCEL)
            raise _stale(request)

        now = _utcnow()
        request.status = LeaveStatus.CANCELLED
        request.updated_at = now
        _log(session, request, LeaveLogAction.CANCELLED, actor_uid, now, _reason_meta(reason))
        if kind == CancellationKind.APPROVED_RESTORE:
            record_adjustment(
                session,
                user_id=request.employee_uid,
                leave_type_id=request.type,
                year=request.year,
                delta_minutes=int(request.requested_minutes),
                reason=CANCELLATION_RESTORE_REASON,
                reference=ledger_reference(request.id),
                actor_uid=actor_uid,
                source=AdjustmentSource.SYSTEM,
            )
        return request

    return run_transaction(db, _work, name="leave_request_cancel")


def list_user_requests(db: Session, employee_uid: str) -> list[LeaveRequest]:
    return list(
        db.scalars(
            select(LeaveRequest)
            .where(LeaveRequest.employee_uid == employee_uid)
            .order_by(LeaveRequest.start_at.desc(), LeaveRequest.id.desc())
        ).all()
    )


def list_team_requests(db: Session, team_id: int) -> list[LeaveRequest]:
    return list(
        db.scalars(
            select(LeaveRequest)
            .where(LeaveRequest.team_id == team_id)
            .order_by(LeaveRequest.start_at.desc(), LeaveRequest.id.desc())
        ).all()
    )


def list_requests(
    db: Session,
    *,
    status: LeaveStatus | None = None,
    team_id: int | None = None,
    range_start: datetime | None = None,
    range_end: datetime | None = None,
) -> list[LeaveRequest]:
    stmt = select(LeaveRequest).order_by(LeaveRequest.start_at.desc(), LeaveRequest.id.desc())
    if status is not None:
        stmt = stmt.where(LeaveRequest.status == status)
    if team_id is not None:
        stmt = stmt.where(LeaveRequest.team_id == team_id)
    if range_start is not None:
        stmt = stmt.where(LeaveRequest.end_at > as_utc(range_start))
    if range_end is not None:
        stmt = stmt.where(LeaveRequest.start_at < as_utc(range_end))
    return list(db.scalars(stmt).all())


def list_logs(db: Session, request_id: int) -> list[LeaveLog]:
    return list(
        db.scalars(
            select(LeaveLog)
            .where(LeaveLog.request_id == request_id)
            .order_by(LeaveLog.at.asc(), LeaveLog.id.asc())
        ).all()
    )
