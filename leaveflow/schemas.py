from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from leaveflow.models import AdjustmentSource, LeaveLogAction, LeaveStatus, LeaveType, UserRole


class TeamCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class TeamUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    lead_uid: str | None = None
    manager_uid: str | None = None


class TeamRead(BaseModel):
    id: int
    name: str
    lead_uid: str | None
    manager_uid: str | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserRead(BaseModel):
    uid: str
    email: str
    display_name: str
    photo_url: str | None
    is_whitelisted: bool
    role: UserRole
    team_id: int | None
    join_date: date | None
    annual_entitlement_days: int | None = None
    created_at: datetime
    last_login_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class SessionRead(BaseModel):
    profile: UserRead
    access_issues: list[str]
    can_access_app: bool


class UserAdminUpdate(BaseModel):
    is_whitelisted: bool
    role: UserRole
    team_id: int | None = Field(default=None, ge=1)


class UserAdminUpdateRead(BaseModel):
    profile: UserRead
    cancelled_request_ids: list[int] = Field(default_factory=list)


class JoinDateUpdate(BaseModel):
    join_date: date


class LeaveRequestCreate(BaseModel):
    type: LeaveType
    start_at: datetime
    end_at: datetime
    note: str | None = Field(default=None, max_length=1000)


class LeaveRequestCreateRead(BaseModel):
    request_id: int
    status: LeaveStatus
    requested_minutes: int
    auto_approved: bool


class LeaveRequestRead(BaseModel):
    id: int
    employee_uid: str
    team_id: int
    type: LeaveType
    start_at: datetime
    end_at: datetime
    year: int
    requested_minutes: int
    status: LeaveStatus
    note: str | None
    step1_by_uid: str | None
    step1_at: datetime | None
    step2_by_uid: str | None
    step2_at: datetime | None
    rejected_by_uid: str | None
    rejected_at: datetime | None
    rejection_reason: str | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeaveDecisionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class LeaveTransitionRead(BaseModel):
    request_id: int
    status: LeaveStatus
    action: str
    balance_delta_minutes: int


class LeaveLogRead(BaseModel):
    id: int
    request_id: int
    action: LeaveLogAction
    actor_uid: str
    at: datetime
    meta: dict[str, Any] | None

    model_config = ConfigDict(from_attributes=True)


class LeaveBalanceRead(BaseModel):
    user_id: str
    leave_type_id: str
    year: int
    balance_minutes: int
    updated_at: datetime | None
    updated_by: str | None
    last_carryover_at: datetime | None
    last_carryover_from_year: int | None

    model_config = ConfigDict(from_attributes=True)


class LeaveBalanceAdjustmentRead(BaseModel):
    id: int
    user_id: str
    leave_type_id: str
    year: int
    delta_minutes: int
    reason: str
    reference: str | None
    actor_uid: str
    source: AdjustmentSource
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BalanceAdjustRequest(BaseModel):
    leave_type: LeaveType
    year: int = Field(ge=2000, le=2100)
    delta_minutes: int
    reason: str = Field(max_length=500)
    reference: str | None = Field(default=None, max_length=500)


class BalanceAdjustRead(BaseModel):
    balance_minutes: int


class CarryoverRequest(BaseModel):
    leave_type: LeaveType
    from_year: int = Field(ge=2000, le=2100)
    to_year: int = Field(ge=2000, le=2100)


class CarryoverRead(BaseModel):
    carried: bool
    balance_minutes: int
    delta_minutes: int


class AccrualReferenceRead(BaseModel):
    monthly_rate_minutes: float
    months_since_join: int
    entitlement_minutes: int
    is_valid: bool


class AccrualSummaryRead(BaseModel):
    year: int
    join_date: date
    annual_entitlement_minutes: int
    remaining_minutes: int
    used_paid_minutes: int
    admin_adjustment_minutes: int
    advance_minutes: int
    reference: AccrualReferenceRead

    model_config = ConfigDict(from_attributes=True)


class CalendarEntryRead(BaseModel):
    request_id: int
    employee_uid: str
    employee_name: str
    team_id: int
    type: LeaveType
    start_at: datetime
    end_at: datetime
    duration: str
