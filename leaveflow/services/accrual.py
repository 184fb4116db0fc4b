from __future__ import annotations

from dataclasses import dataclass
from math import floor
from typing import Any


@dataclass(frozen=True, slots=True)
class AccrualReference:
    monthly_rate_minutes: float
    months_since_join: int
    entitlement_minutes: int
    is_valid: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "monthly_rate_minutes": self.monthly_rate_minutes,
            "months_since_join": self.months_since_join,
            "entitlement_minutes": self.entitlement_minutes,
            "is_valid": self.is_valid,
        }


def _is_valid_month(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, float) and not value.is_integer():
        return False
    return 1 <= value <= 12


def _round_half_up(value: float) -> int:
    return int(floor(value + 0.5))


def calculate_accrual_reference(
    annual_entitlement_minutes: float,
    join_month: int,
    current_month: int,
) -> AccrualReference:
    """Monthly accrual for the year a user joined.

    Invalid months never raise; they produce ``is_valid=False`` with zero
    months and zero entitlement.
    """
    annual_entitlement = max(0.0, float(annual_entitlement_minutes or 0))
    monthly_rate_minutes = annual_entitlement / 12

    months_since_join = 0
    if _is_valid_month(join_month) and _is_valid_month(current_month):
        months_since_join = max(0, int(current_month) - int(join_month) + 1)

    is_valid = months_since_join >= 1
    return AccrualReference(
        monthly_rate_minutes=monthly_rate_minutes,
        months_since_join=months_since_join,
        entitlement_minutes=_round_half_up(monthly_rate_minutes * months_since_join),
        is_valid=is_valid,
    )


def make_balance_id(user_id: str, leave_type_id: str, year: int) -> str:
    return f"{user_id}__{leave_type_id}__{year}"


def is_stale_balance_year(year: int, current_year: int) -> bool:
    return year <= current_year - 2
