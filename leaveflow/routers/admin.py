from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from leaveflow.db import get_db
from leaveflow.errors import ApiError
from leaveflow.models import LeaveStatus, UserProfile
from leaveflow.routers.leaves import get_leave_context
from leaveflow.schemas import (
    AccrualReferenceRead,
    AccrualSummaryRead,
    BalanceAdjustRead,
    BalanceAdjustRequest,
    CarryoverRead,
    CarryoverRequest,
    JoinDateUpdate,
    LeaveBalanceAdjustmentRead,
    LeaveBalanceRead,
    LeaveRequestRead,
    TeamCreate,
    TeamRead,
    TeamUpdate,
    UserAdminUpdate,
    UserAdminUpdateRead,
    UserRead,
)
from leaveflow.security import require_admin
from leaveflow.services import leave_repository
from leaveflow.services.balances import (
    AdjustLeaveBalanceInput,
    CarryoverInput,
    adjust_leave_balance,
    build_accrual_summary,
    carryover_leave_balance,
)
from leaveflow.services.context import LeaveContext
from leaveflow.services.ledger import list_adjustments, list_user_balances
from leaveflow.services.teams import UpdateTeamInput, create_team, list_teams, update_team
from leaveflow.services.users import (
    UpdateUserAdminInput,
    get_user,
    list_users,
    set_join_date,
    update_user_admin,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/teams", response_model=list[TeamRead])
def admin_list_teams(
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[TeamRead]:
    return [TeamRead.model_validate(item) for item in list_teams(db)]


@router.post("/teams", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
def admin_create_team(
    payload: TeamCreate,
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TeamRead:
    return TeamRead.model_validate(create_team(db, name=payload.name))


@router.put("/teams/{team_id}", response_model=TeamRead)
def admin_update_team(
    team_id: int,
    payload: TeamUpdate,
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TeamRead:
    team = update_team(
        db,
        UpdateTeamInput(
            team_id=team_id,
            name=payload.name,
            lead_uid=payload.lead_uid,
            manager_uid=payload.manager_uid,
        ),
    )
    return TeamRead.model_validate(team)


@router.get("/users", response_model=list[UserRead])
def admin_list_users(
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in list_users(db)]


@router.get("/users/{uid}", response_model=UserRead)
def admin_read_user(
    uid: str,
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> UserRead:
    return UserRead.model_validate(get_user(db, uid))


@router.put("/users/{uid}", response_model=UserAdminUpdateRead)
def admin_update_user(
    uid: str,
    payload: UserAdminUpdate,
    admin: UserProfile = Depends(require_admin),
    ctx: LeaveContext = Depends(get_leave_context),
) -> UserAdminUpdateRead:
    result = update_user_admin(
        ctx,
        UpdateUserAdminInput(
            uid=uid,
            is_whitelisted=payload.is_whitelisted,
            role=payload.role,
            team_id=payload.team_id,
            actor_uid=admin.uid,
        ),
    )
    return UserAdminUpdateRead(
        profile=UserRead.model_validate(result.profile),
        cancelled_request_ids=result.cancelled_request_ids,
    )


@router.post("/users/{uid}/join-date", response_model=UserRead)
def admin_set_join_date(
    uid: str,
    payload: JoinDateUpdate,
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> UserRead:
    return UserRead.model_validate(set_join_date(db, uid=uid, join_date=payload.join_date))


@router.get("/users/{uid}/requests", response_model=list[LeaveRequestRead])
def admin_list_user_requests(
    uid: str,
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[LeaveRequestRead]:
    return [LeaveRequestRead.model_validate(item) for item in leave_repository.list_user_requests(db, uid)]


@router.get("/users/{uid}/balances", response_model=list[LeaveBalanceRead])
def admin_list_user_balances(
    uid: str,
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[LeaveBalanceRead]:
    return [LeaveBalanceRead.model_validate(item) for item in list_user_balances(db, uid)]


@router.get("/users/{uid}/adjustments", response_model=list[LeaveBalanceAdjustmentRead])
def admin_list_user_adjustments(
    uid: str,
    limit: int = Query(default=500, ge=1, le=2000),
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[LeaveBalanceAdjustmentRead]:
    return [
        LeaveBalanceAdjustmentRead.model_validate(item)
        for item in list_adjustments(db, user_id=uid, limit=limit)
    ]


@router.post("/users/{uid}/balances/adjust", response_model=BalanceAdjustRead)
def admin_adjust_balance(
    uid: str,
    payload: BalanceAdjustRequest,
    admin: UserProfile = Depends(require_admin),
    ctx: LeaveContext = Depends(get_leave_context),
) -> BalanceAdjustRead:
    result = adjust_leave_balance(
        ctx,
        AdjustLeaveBalanceInput(
            user_id=uid,
            leave_type=payload.leave_type,
            year=payload.year,
            delta_minutes=payload.delta_minutes,
            reason=payload.reason,
            actor_uid=admin.uid,
            reference=payload.reference,
        ),
    )
    return BalanceAdjustRead(balance_minutes=result.balance_minutes)


@router.post("/users/{uid}/balances/carryover", response_model=CarryoverRead)
def admin_carryover_balance(
    uid: str,
    payload: CarryoverRequest,
    admin: UserProfile = Depends(require_admin),
    ctx: LeaveContext = Depends(get_leave_context),
) -> CarryoverRead:
    result = carryover_leave_balance(
        ctx,
        CarryoverInput(
            user_id=uid,
            leave_type=payload.leave_type,
            from_year=payload.from_year,
            to_year=payload.to_year,
            actor_uid=admin.uid,
        ),
    )
    return CarryoverRead(
        carried=result.carried,
        balance_minutes=result.balance_minutes,
        delta_minutes=result.delta_minutes,
    )


@router.get("/users/{uid}/accrual", response_model=AccrualSummaryRead)
def admin_accrual_summary(
    uid: str,
    year: int | None = Query(default=None, ge=2000, le=2100),
    _admin: UserProfile = Depends(require_admin),
    ctx: LeaveContext = Depends(get_leave_context),
) -> AccrualSummaryRead:
    target_year = year or datetime.now(timezone.utc).year
    summary = build_accrual_summary(ctx, user_id=uid, year=target_year)
    if summary is None:
        raise ApiError(
            status_code=404,
            code="NOT_FOUND",
            message=f"Annual balance is not set for {target_year}. Accrual reference is unavailable.",
        )
    return AccrualSummaryRead(
        year=summary.year,
        join_date=summary.join_date,
        annual_entitlement_minutes=summary.annual_entitlement_minutes,
        remaining_minutes=summary.remaining_minutes,
        used_paid_minutes=summary.used_paid_minutes,
        admin_adjustment_minutes=summary.admin_adjustment_minutes,
        advance_minutes=summary.advance_minutes,
        reference=AccrualReferenceRead(**summary.reference.to_dict()),
    )


@router.get("/adjustments", response_model=list[LeaveBalanceAdjustmentRead])
def admin_list_adjustments(
    limit: int = Query(default=500, ge=1, le=2000),
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[LeaveBalanceAdjustmentRead]:
    return [LeaveBalanceAdjustmentRead.model_validate(item) for item in list_adjustments(db, limit=limit)]


@router.get("/leave-requests", response_model=list[LeaveRequestRead])
def admin_list_requests(
    status_filter: LeaveStatus | None = Query(default=None, alias="status"),
    team_id: int | None = Query(default=None, ge=1),
    _admin: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[LeaveRequestRead]:
    return [
        LeaveRequestRead.model_validate(item)
        for item in leave_repository.list_requests(db, status=status_filter, team_id=team_id)
    ]
