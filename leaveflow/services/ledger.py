from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from leaveflow.models import AdjustmentSource, LeaveBalance, LeaveBalanceAdjustment
from leaveflow.settings import get_settings

logger = logging.getLogger("leaveflow.ledger")

T = TypeVar("T")

_RETRYABLE_SQLSTATES = {"40001", "40P01"}
_UNIQUE_VIOLATION = "23505"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _type_key(leave_type_id: Any) -> str:
    return str(getattr(leave_type_id, "value", leave_type_id))


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    value = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return str(value) if value else None


def _is_retryable(exc: DBAPIError) -> bool:
    code = _sqlstate(exc)
    if isinstance(exc, IntegrityError):
        # First insert of a balance row lost the race against another writer.
        return code in (None, _UNIQUE_VIOLATION)
    if isinstance(exc, OperationalError):
        return code in _RETRYABLE_SQLSTATES
    return False


def run_transaction(
    db: Session,
    work: Callable[[Session], T],
    *,
    max_attempts: int | None = None,
    name: str = "transaction",
) -> T:
    """Run ``work`` and commit it as one unit.

    A transaction that loses a race is rolled back and ``work`` runs again
    against fresh reads. Anything else rolls back and propagates unchanged.
    """
    attempts = max(1, max_attempts or get_settings().transaction_max_attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            result = work(db)
            db.commit()
            return result
        except (IntegrityError, OperationalError) as exc:
            db.rollback()
            if attempt >= attempts or not _is_retryable(exc):
                raise
            logger.warning(
                "transaction_retry",
                extra={"transaction": name, "attempt": attempt, "sqlstate": _sqlstate(exc)},
            )
        except Exception:
            db.rollback()
            raise


def lock_balance(db: Session, user_id: str, leave_type_id: str, year: int) -> LeaveBalance | None:
    return db.scalar(
        select(LeaveBalance)
        .where(
            LeaveBalance.user_id == user_id,
            LeaveBalance.leave_type_id == leave_type_id,
            LeaveBalance.year == year,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def record_adjustment(
    db: Session,
    *,
    user_id: str,
    leave_type_id: Any,
    year: int,
    delta_minutes: int,
    reason: str,
    reference: str | None,
    actor_uid: str,
    source: AdjustmentSource,
    last_carryover_at: datetime | None = None,
    last_carryover_from_year: int | None = None,
) -> int:
    """Write the balance row and its ledger entry inside the caller's transaction."""
    type_key = _type_key(leave_type_id)
    now = _utcnow()
    balance = lock_balance(db, user_id, type_key, year)
    current_minutes = balance.balance_minutes if balance is not None else 0
    next_minutes = int(current_minutes) + int(delta_minutes)

    if balance is None:
        balance = LeaveBalance(
            user_id=user_id,
            leave_type_id=type_key,
            year=year,
            balance_minutes=next_minutes,
        )
        db.add(balance)
    else:
        balance.balance_minutes = next_minutes
    balance.updated_at = now
    balance.updated_by = actor_uid
    if last_carryover_from_year is not None:
        balance.last_carryover_at = last_carryover_at or now
        balance.last_carryover_from_year = last_carryover_from_year

    db.add(
        LeaveBalanceAdjustment(
            user_id=user_id,
            leave_type_id=type_key,
            year=year,
            delta_minutes=int(delta_minutes),
            reason=reason,
            reference=reference,
            actor_uid=actor_uid,
            source=source,
            created_at=now,
        )
    )
    db.flush()
    return next_minutes


def apply_adjustment_with_log(
    db: Session,
    *,
    user_id: str,
    leave_type_id: Any,
    year: int,
    delta_minutes: int,
    reason: str,
    reference: str | None,
    actor_uid: str,
    source: AdjustmentSource,
    last_carryover_at: datetime | None = None,
    last_carryover_from_year: int | None = None,
) -> int:
    next_minutes = run_transaction(
        db,
        lambda session: record_adjustment(
            session,
            user_id=user_id,
            leave_type_id=leave_type_id,
            year=year,
            delta_minutes=delta_minutes,
            reason=reason,
            reference=reference,
            actor_uid=actor_uid,
            source=source,
            last_carryover_at=last_carryover_at,
            last_carryover_from_year=last_carryover_from_year,
        ),
        name="ledger_adjustment",
    )
    logger.info(
        "ledger_adjustment_applied",
        extra={
            "user_id": user_id,
            "leave_type_id": _type_key(leave_type_id),
            "year": year,
            "delta_minutes": delta_minutes,
            "balance_minutes": next_minutes,
            "source": source.value,
            "actor_uid": actor_uid,
        },
    )
    return next_minutes


def fetch_balance(db: Session, user_id: str, leave_type_id: Any, year: int) -> LeaveBalance | None:
    return db.scalar(
        select(LeaveBalance).where(
            LeaveBalance.user_id == user_id,
            LeaveBalance.leave_type_id == _type_key(leave_type_id),
            LeaveBalance.year == year,
        )
    )


def list_user_balances(db: Session, user_id: str) -> list[LeaveBalance]:
    return list(
        db.scalars(
            select(LeaveBalance)
            .where(LeaveBalance.user_id == user_id)
            .order_by(LeaveBalance.year.desc(), LeaveBalance.leave_type_id.asc())
        ).all()
    )


def list_adjustments(db: Session, *, user_id: str | None = None, limit: int = 500) -> list[LeaveBalanceAdjustment]:
    stmt = select(LeaveBalanceAdjustment).order_by(
        LeaveBalanceAdjustment.created_at.desc(),
        LeaveBalanceAdjustment.id.desc(),
    )
    if user_id is not None:
        stmt = stmt.where(LeaveBalanceAdjustment.user_id == user_id)
    return list(db.scalars(stmt.limit(limit)).all())


def sum_adjustments(db: Session, user_id: str, leave_type_id: Any, year: int) -> int:
    total = db.scalar(
        select(func.coalesce(func.sum(LeaveBalanceAdjustment.delta_minutes), 0)).where(
            LeaveBalanceAdjustment.user_id == user_id,
            LeaveBalanceAdjustment.leave_type_id == _type_key(leave_type_id),
            LeaveBalanceAdjustment.year == year,
        )
    )
    return int(total or 0)
