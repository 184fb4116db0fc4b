from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from leaveflow.errors import LeaveNotFoundError, LeaveValidationError
from leaveflow.models import AdjustmentSource, LeaveBalanceAdjustment, LeaveType, UserProfile
from leaveflow.services.accrual import AccrualReference, calculate_accrual_reference
from leaveflow.services.context import LeaveContext
from leaveflow.services.leave_time import WORKDAY_MINUTES
from leaveflow.services.ledger import fetch_balance, lock_balance, record_adjustment, run_transaction
from leaveflow.services.subscriptions import user_balances_topic
from leaveflow.settings import get_settings

logger = logging.getLogger("leaveflow.balances")

REASON_REQUIRED = "Adjustment reason is required."
DELTA_REQUIRED = "Adjustment must change the balance."
JOIN_DATE_REQUIRED = "Join date must be set before adjusting balances."
NEGATIVE_BALANCE = "Balance cannot go negative. Record as UNPAID or increase the leave balance."
SAME_YEAR_CARRYOVER = "Carryover must target a different year."
USER_NOT_FOUND = "User not found."


@dataclass(slots=True)
class AdjustLeaveBalanceInput:
    user_id: str
    leave_type: LeaveType | str
    year: int
    delta_minutes: int
    reason: str
    actor_uid: str
    reference: str | None = None


@dataclass(frozen=True, slots=True)
class AdjustLeaveBalanceResult:
    balance_minutes: int


@dataclass(slots=True)
class CarryoverInput:
    user_id: str
    leave_type: LeaveType | str
    from_year: int
    to_year: int
    actor_uid: str


@dataclass(frozen=True, slots=True)
class CarryoverResult:
    carried: bool
    balance_minutes: int
    delta_minutes: int = 0


@dataclass(frozen=True, slots=True)
class AccrualSummary:
    year: int
    join_date: date
    annual_entitlement_minutes: int
    remaining_minutes: int
    used_paid_minutes: int
    admin_adjustment_minutes: int
    advance_minutes: int
    reference: AccrualReference


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _leave_type(value: LeaveType | str) -> LeaveType:
    try:
        return LeaveType(value)
    except ValueError as exc:
        raise LeaveValidationError("Unknown leave type.") from exc


def _load_profile(ctx: LeaveContext, user_id: str) -> UserProfile:
    profile = ctx.db.get(UserProfile, user_id)
    if profile is None:
        raise LeaveNotFoundError(USER_NOT_FOUND)
    return profile


def _publish_balance(ctx: LeaveContext, user_id: str, leave_type: LeaveType, year: int, balance_minutes: int) -> None:
    ctx.publish(
        [user_balances_topic(user_id)],
        {
            "type": "leave_balance",
            "user_id": user_id,
            "leave_type_id": leave_type.value,
            "year": year,
            "balance_minutes": balance_minutes,
        },
    )


def adjust_leave_balance(ctx: LeaveContext, data: AdjustLeaveBalanceInput) -> AdjustLeaveBalanceResult:
    reason = (data.reason or "").strip()
    if not reason:
        raise LeaveValidationError(REASON_REQUIRED)
    if int(data.delta_minutes) == 0:
        raise LeaveValidationError(DELTA_REQUIRED)
    leave_type = _leave_type(data.leave_type)
    profile = _load_profile(ctx, data.user_id)
    if profile.join_date is None:
        raise LeaveValidationError(JOIN_DATE_REQUIRED)

    def _work(session: Session) -> int:
        balance = lock_balance(session, data.user_id, leave_type.value, data.year)
        current = balance.balance_minutes if balance is not None else 0
        if current + int(data.delta_minutes) < 0:
            raise LeaveValidationError(NEGATIVE_BALANCE)
        return record_adjustment(
            session,
            user_id=data.user_id,
            leave_type_id=leave_type,
            year=data.year,
            delta_minutes=int(data.delta_minutes),
            reason=reason,
            reference=(data.reference or "").strip() or None,
            actor_uid=data.actor_uid,
            source=AdjustmentSource.ADMIN,
        )

    balance_minutes = run_transaction(ctx.db, _work, name="leave_balance_adjust")
    logger.info(
        "ledger_adjustment_applied",
        extra={
            "user_id": data.user_id,
            "leave_type_id": leave_type.value,
            "year": data.year,
            "delta_minutes": int(data.delta_minutes),
            "balance_minutes": balance_minutes,
            "source": AdjustmentSource.ADMIN.value,
            "actor_uid": data.actor_uid,
        },
    )
    _publish_balance(ctx, data.user_id, leave_type, data.year, balance_minutes)
    return AdjustLeaveBalanceResult(balance_minutes=balance_minutes)


def carryover_leave_balance(ctx: LeaveContext, data: CarryoverInput) -> CarryoverResult:
    """Move the full ``from_year`` balance into ``to_year`` once per year pair.

    Re-running with the same pair is a no-op: the target row remembers the
    source year it last received a carryover from.
    """
    if data.from_year == data.to_year:
        raise LeaveValidationError(SAME_YEAR_CARRYOVER)
    leave_type = _leave_type(data.leave_type)
    profile = _load_profile(ctx, data.user_id)
    if profile.join_date is None:
        raise LeaveValidationError(JOIN_DATE_REQUIRED)

    def _work(session: Session) -> CarryoverResult:
        source = fetch_balance(session, data.user_id, leave_type, data.from_year)
        target = lock_balance(session, data.user_id, leave_type.value, data.to_year)
        target_minutes = target.balance_minutes if target is not None else 0
        if source is None or source.balance_minutes == 0:
            return CarryoverResult(carried=False, balance_minutes=target_minutes)
        if target is not None and target.last_carryover_from_year == data.from_year:
            return CarryoverResult(carried=False, balance_minutes=target_minutes)

        delta = int(source.balance_minutes)
        next_minutes = record_adjustment(
            session,
            user_id=data.user_id,
            leave_type_id=leave_type,
            year=data.to_year,
            delta_minutes=delta,
            reason=f"Yearly carryover from {data.from_year}",
            reference=None,
            actor_uid=data.actor_uid,
            source=AdjustmentSource.SYSTEM,
            last_carryover_at=_utcnow(),
            last_carryover_from_year=data.from_year,
        )
        return CarryoverResult(carried=True, balance_minutes=next_minutes, delta_minutes=delta)

    result = run_transaction(ctx.db, _work, name="leave_balance_carryover")
    if result.carried:
        logger.info(
            "leave_balance_carried_over",
            extra={
                "user_id": data.user_id,
                "leave_type_id": leave_type.value,
                "from_year": data.from_year,
                "to_year": data.to_year,
                "delta_minutes": result.delta_minutes,
                "balance_minutes": result.balance_minutes,
            },
        )
        _publish_balance(ctx, data.user_id, leave_type, data.to_year, result.balance_minutes)
    else:
        logger.info(
            "leave_balance_carryover_skipped",
            extra={"user_id": data.user_id, "from_year": data.from_year, "to_year": data.to_year},
        )
    return result


def build_accrual_summary(ctx: LeaveContext, *, user_id: str, year: int, today: date | None = None) -> AccrualSummary | None:
    """Annual-leave accrual reference for one user and year.

    Returns ``None`` when the user has no annual balance for ``year``.
    """
    profile = _load_profile(ctx, user_id)
    if profile.join_date is None:
        raise LeaveValidationError("Join date is not set. Accrual reference is unavailable.")

    balance = fetch_balance(ctx.db, user_id, LeaveType.ANNUAL, year)
    if balance is None:
        return None

    today = today or _utcnow().date()
    entitlement_days = profile.annual_entitlement_days or get_settings().policy_annual_entitlement_days
    annual_minutes = int(entitlement_days) * WORKDAY_MINUTES
    join_month = profile.join_date.month if profile.join_date.year == year else 1
    reference = calculate_accrual_reference(annual_minutes, join_month, today.month)

    admin_minutes = ctx.db.scalar(
        select(func.coalesce(func.sum(LeaveBalanceAdjustment.delta_minutes), 0)).where(
            LeaveBalanceAdjustment.user_id == user_id,
            LeaveBalanceAdjustment.leave_type_id == LeaveType.ANNUAL.value,
            LeaveBalanceAdjustment.year == year,
            LeaveBalanceAdjustment.source == AdjustmentSource.ADMIN,
        )
    )
    used_paid = annual_minutes - balance.balance_minutes
    return AccrualSummary(
        year=year,
        join_date=profile.join_date,
        annual_entitlement_minutes=annual_minutes,
        remaining_minutes=balance.balance_minutes,
        used_paid_minutes=used_paid,
        admin_adjustment_minutes=int(admin_minutes or 0),
        advance_minutes=max(0, used_paid - reference.entitlement_minutes) if reference.is_valid else 0,
        reference=reference,
    )
