import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.websockets import WebSocketDisconnect
from sqlalchemy.orm import Session

from leaveflow.db import SessionLocal, get_db
from leaveflow.errors import ApiError
from leaveflow.models import LeaveRequest, LeaveStatus, Team, UserProfile, UserRole
from leaveflow.schemas import (
    CalendarEntryRead,
    JoinDateUpdate,
    LeaveBalanceAdjustmentRead,
    LeaveBalanceRead,
    LeaveDecisionRequest,
    LeaveLogRead,
    LeaveRequestCreate,
    LeaveRequestCreateRead,
    LeaveRequestRead,
    LeaveTransitionRead,
    SessionRead,
    UserRead,
)
from leaveflow.security import AuthIdentity, actor_for, decode_identity_token, require_identity, require_member
from leaveflow.services import leave_repository
from leaveflow.services.context import LeaveContext
from leaveflow.services.leave_time import format_duration_with_days
from leaveflow.services.ledger import list_adjustments, list_user_balances
from leaveflow.services.notifications import DisabledNotificationSender
from leaveflow.services.requests import (
    ApproveLeaveRequestInput,
    CancelLeaveRequestInput,
    CreateLeaveRequestInput,
    RejectLeaveRequestInput,
    approve_leave_request,
    cancel_leave_request,
    create_leave_request,
    reject_leave_request,
)
from leaveflow.services.subscriptions import (
    APPROVED_REQUESTS_TOPIC,
    SubscriptionHub,
    team_requests_topic,
    user_balances_topic,
    user_requests_topic,
)
from leaveflow.services.users import can_access_app, ensure_user_profile, get_access_issues, set_join_date

router = APIRouter(tags=["leaves"])
stream_logger = logging.getLogger("leaveflow.stream")


def get_leave_context(request: Request, db: Session = Depends(get_db)) -> LeaveContext:
    state = request.app.state
    notifier = getattr(state, "notifier", None) or DisabledNotificationSender()
    return LeaveContext(db=db, notifier=notifier, feed=getattr(state, "change_feed", None))


def _session_read(profile: UserProfile) -> SessionRead:
    return SessionRead(
        profile=UserRead.model_validate(profile),
        access_issues=get_access_issues(profile),
        can_access_app=can_access_app(profile),
    )


def _is_team_approver(db: Session, profile: UserProfile, team_id: int) -> bool:
    team = db.get(Team, team_id)
    if team is None:
        return False
    return profile.uid in {team.lead_uid, team.manager_uid}


def _ensure_can_view(db: Session, profile: UserProfile, leave_request: LeaveRequest) -> None:
    if profile.role == UserRole.ADMIN or leave_request.employee_uid == profile.uid:
        return
    if profile.team_id == leave_request.team_id or _is_team_approver(db, profile, leave_request.team_id):
        return
    raise ApiError(status_code=403, code="FORBIDDEN", message="You are not allowed to view this request.")


@router.post("/api/me/session", response_model=SessionRead)
def open_session(
    request: Request,
    identity: AuthIdentity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> SessionRead:
    profile = ensure_user_profile(
        db,
        uid=identity.uid,
        email=identity.email,
        display_name=identity.name,
        photo_url=identity.picture,
    )
    request.state.actor_id = profile.uid
    return _session_read(profile)


@router.get("/api/me", response_model=SessionRead)
def read_me(
    identity: AuthIdentity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> SessionRead:
    profile = db.get(UserProfile, identity.uid)
    if profile is None:
        raise ApiError(status_code=404, code="NOT_FOUND", message="User profile not found.")
    return _session_read(profile)


@router.post("/api/me/join-date", response_model=UserRead)
def set_my_join_date(
    payload: JoinDateUpdate,
    profile: UserProfile = Depends(require_member),
    db: Session = Depends(get_db),
) -> UserRead:
    updated = set_join_date(db, uid=profile.uid, join_date=payload.join_date)
    return UserRead.model_validate(updated)


@router.get("/api/me/balances", response_model=list[LeaveBalanceRead])
def list_my_balances(
    profile: UserProfile = Depends(require_member),
    db: Session = Depends(get_db),
) -> list[LeaveBalanceRead]:
    return [LeaveBalanceRead.model_validate(item) for item in list_user_balances(db, profile.uid)]


@router.get("/api/me/adjustments", response_model=list[LeaveBalanceAdjustmentRead])
def list_my_adjustments(
    limit: int = Query(default=200, ge=1, le=1000),
    profile: UserProfile = Depends(require_member),
    db: Session = Depends(get_db),
) -> list[LeaveBalanceAdjustmentRead]:
    return [
        LeaveBalanceAdjustmentRead.model_validate(item)
        for item in list_adjustments(db, user_id=profile.uid, limit=limit)
    ]


@router.post(
    "/api/leave-requests",
    response_model=LeaveRequestCreateRead,
    status_code=status.HTTP_201_CREATED,
)
def create_request(
    payload: LeaveRequestCreate,
    request: Request,
    profile: UserProfile = Depends(require_member),
    ctx: LeaveContext = Depends(get_leave_context),
) -> LeaveRequestCreateRead:
    result = create_leave_request(
        ctx,
        CreateLeaveRequestInput(
            employee_uid=profile.uid,
            leave_type=payload.type,
            start_at=payload.start_at,
            end_at=payload.end_at,
            note=payload.note,
        ),
    )
    request.state.leave_request_id = result.request_id
    return LeaveRequestCreateRead(
        request_id=result.request_id,
        status=result.status,
        requested_minutes=result.requested_minutes,
        auto_approved=result.auto_approved,
    )


@router.get("/api/leave-requests/mine", response_model=list[LeaveRequestRead])
def list_my_requests(
    profile: UserProfile = Depends(require_member),
    db: Session = Depends(get_db),
) -> list[LeaveRequestRead]:
    return [LeaveRequestRead.model_validate(item) for item in leave_repository.list_user_requests(db, profile.uid)]


@router.get("/api/leave-requests/team", response_model=list[LeaveRequestRead])
def list_team_requests(
    team_id: int | None = Query(default=None, ge=1),
    profile: UserProfile = Depends(require_member),
    db: Session = Depends(get_db),
) -> list[LeaveRequestRead]:
    target_team_id = team_id or profile.team_id
    if target_team_id is None:
        return []
    if (
        profile.role != UserRole.ADMIN
        and target_team_id != profile.team_id
        and not _is_team_approver(db, profile, target_team_id)
    ):
        raise ApiError(status_code=403, code="FORBIDDEN", message="You are not allowed to view this team.")
    return [
        LeaveRequestRead.model_validate(item)
        for item in leave_repository.list_team_requests(db, target_team_id)
    ]


@router.get("/api/leave-requests/{request_id}", response_model=LeaveRequestRead)
def read_request(
    request_id: int,
    profile: UserProfile = Depends(require_member),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave_request = leave_repository.get_request(db, request_id)
    _ensure_can_view(db, profile, leave_request)
    return LeaveRequestRead.model_validate(leave_request)


@router.get("/api/leave-requests/{request_id}/logs", response_model=list[LeaveLogRead])
def list_request_logs(
    request_id: int,
    profile: UserProfile = Depends(require_member),
    db: Session = Depends(get_db),
) -> list[LeaveLogRead]:
    leave_request = leave_repository.get_request(db, request_id)
    _ensure_can_view(db, profile, leave_request)
    return [LeaveLogRead.model_validate(item) for item in leave_repository.list_logs(db, request_id)]


def _transition_read(result: Any) -> LeaveTransitionRead:
    return LeaveTransitionRead(
        request_id=result.request_id,
        status=result.status,
        action=result.action,
        balance_delta_minutes=result.balance_delta_minutes,
    )


@router.post("/api/leave-requests/{request_id}/approve", response_model=LeaveTransitionRead)
def approve_request(
    request_id: int,
    request: Request,
    profile: UserProfile = Depends(require_member),
    ctx: LeaveContext = Depends(get_leave_context),
) -> LeaveTransitionRead:
    request.state.leave_request_id = request_id
    result = approve_leave_request(ctx, ApproveLeaveRequestInput(request_id=request_id, actor=actor_for(profile)))
    return _transition_read(result)


@router.post("/api/leave-requests/{request_id}/reject", response_model=LeaveTransitionRead)
def reject_request(
    request_id: int,
    request: Request,
    payload: LeaveDecisionRequest | None = None,
    profile: UserProfile = Depends(require_member),
    ctx: LeaveContext = Depends(get_leave_context),
) -> LeaveTransitionRead:
    request.state.leave_request_id = request_id
    result = reject_leave_request(
        ctx,
        RejectLeaveRequestInput(
            request_id=request_id,
            actor=actor_for(profile),
            reason=payload.reason if payload else None,
        ),
    )
    return _transition_read(result)


@router.post("/api/leave-requests/{request_id}/cancel", response_model=LeaveTransitionRead)
def cancel_request(
    request_id: int,
    request: Request,
    payload: LeaveDecisionRequest | None = None,
    profile: UserProfile = Depends(require_member),
    ctx: LeaveContext = Depends(get_leave_context),
) -> LeaveTransitionRead:
    request.state.leave_request_id = request_id
    result = cancel_leave_request(
        ctx,
        CancelLeaveRequestInput(
            request_id=request_id,
            actor=actor_for(profile),
            reason=payload.reason if payload else None,
        ),
    )
    return _transition_read(result)


@router.get("/api/calendar", response_model=list[CalendarEntryRead])
def team_calendar(
    start: datetime,
    end: datetime,
    team_id: int | None = Query(default=None, ge=1),
    profile: UserProfile = Depends(require_member),
    db: Session = Depends(get_db),
) -> list[CalendarEntryRead]:
    if end <= start:
        raise ApiError(status_code=422, code="VALIDATION_ERROR", message="end must be after start")
    target_team_id = team_id if profile.role == UserRole.ADMIN else profile.team_id
    approved = leave_repository.list_requests(
        db,
        status=LeaveStatus.APPROVED,
        team_id=target_team_id,
        range_start=start,
        range_end=end,
    )
    names: dict[str, str] = {}
    entries: list[CalendarEntryRead] = []
    for item in sorted(approved, key=lambda row: (row.start_at, row.id)):
        if item.employee_uid not in names:
            employee = db.get(UserProfile, item.employee_uid)
            names[item.employee_uid] = employee.display_name if employee is not None else "Employee"
        entries.append(
            CalendarEntryRead(
                request_id=item.id,
                employee_uid=item.employee_uid,
                employee_name=names[item.employee_uid],
                team_id=item.team_id,
                type=item.type,
                start_at=item.start_at,
                end_at=item.end_at,
                duration=format_duration_with_days(item.requested_minutes),
            )
        )
    return entries


def _allowed_topic(db: Session, profile: UserProfile, topic: str) -> bool:
    if profile.role == UserRole.ADMIN:
        return True
    if topic in {user_requests_topic(profile.uid), user_balances_topic(profile.uid), APPROVED_REQUESTS_TOPIC}:
        return True
    parts = topic.split(":")
    if len(parts) != 3 or not parts[1].isdigit():
        return False
    if parts[0] == "team" and parts[2] == "requests":
        team_id = int(parts[1])
        return team_id == profile.team_id or _is_team_approver(db, profile, team_id)
    if parts[0] == "request" and parts[2] == "logs":
        leave_request = db.get(LeaveRequest, int(parts[1]))
        if leave_request is None:
            return False
        try:
            _ensure_can_view(db, profile, leave_request)
        except ApiError:
            return False
        return True
    return False


def _default_topics(profile: UserProfile) -> list[str]:
    topics = [user_requests_topic(profile.uid), user_balances_topic(profile.uid)]
    if profile.team_id is not None:
        topics.append(team_requests_topic(profile.team_id))
    return topics


@dataclass(frozen=True)
class _StreamGrant:
    uid: str
    topics: list[str]


def _authorize_stream(token: str, topics: str) -> _StreamGrant | int:
    try:
        identity = decode_identity_token(token)
    except ApiError:
        return 4401

    with SessionLocal() as db:
        profile = db.get(UserProfile, identity.uid)
        if get_access_issues(profile):
            return 4403
        requested = [item.strip() for item in topics.split(",") if item.strip()] or _default_topics(profile)
        if not all(_allowed_topic(db, profile, item) for item in requested):
            return 4403
        return _StreamGrant(uid=profile.uid, topics=list(dict.fromkeys(requested)))


@router.websocket("/ws/leave-stream")
async def leave_stream(
    websocket: WebSocket,
    token: str = Query(...),
    topics: str = Query(default=""),
) -> None:
    grant = await asyncio.to_thread(_authorize_stream, token, topics)
    if isinstance(grant, int):
        await websocket.close(code=grant)
        return

    hub: SubscriptionHub = websocket.app.state.subscription_hub
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def _listener(event: dict[str, Any]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    await websocket.accept()
    unsubscribes = [hub.subscribe(topic, _listener) for topic in grant.topics]
    stream_logger.info("leave_stream_opened", extra={"uid": grant.uid, "topics": grant.topics})

    async def _pump() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(jsonable_encoder(event))

    pump = asyncio.create_task(_pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        pump.cancel()
        with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await pump
        for unsubscribe in unsubscribes:
            unsubscribe()
        stream_logger.info("leave_stream_closed", extra={"uid": grant.uid})
