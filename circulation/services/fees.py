"""Overdue fee calculation.

Everything here is a pure function of a due date, an instant and a policy
snapshot, so the sweeper and the return path always agree on the amount.
Amounts are integers in the currency's minor unit.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from circulation.models.enums import LoanStatus
from circulation.schemas.policy import PolicySnapshot
from circulation.utils.timezone import ensure_utc

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class FeeAssessment:
    overdue_days: int
    amount: int
    currency: str


def _ceil_days(delta: timedelta) -> int:
    # Ceil to whole seconds, then ceil-divide; valid for negative deltas too
    seconds = delta.days * SECONDS_PER_DAY + delta.seconds + (1 if delta.microseconds else 0)
    return -(-seconds // SECONDS_PER_DAY)


def overdue_days(due_date: Optional[datetime], as_of: datetime) -> int:
    """Days past due, rounded up; 0 when not yet due."""
    if due_date is None:
        return 0
    delta = ensure_utc(as_of) - ensure_utc(due_date)
    if delta <= timedelta(0):
        return 0
    return _ceil_days(delta)


def compute_fee(due_date: Optional[datetime], as_of: datetime, policy: PolicySnapshot) -> FeeAssessment:
    days = overdue_days(due_date, as_of)
    amount = min(days * policy.overdue_fee_per_day, policy.overdue_fee_cap_per_loan) if days else 0
    return FeeAssessment(overdue_days=days, amount=amount, currency=policy.currency.value)


def days_until_due(due_date: Optional[datetime], now: datetime) -> int:
    """Remaining days until due, rounded up; negative once past due."""
    if due_date is None:
        return 0
    return _ceil_days(ensure_utc(due_date) - ensure_utc(now))


def is_overdue(loan, now: datetime) -> bool:
    if loan.due_date is None:
        return False
    if loan.status not in (LoanStatus.ACTIVE, LoanStatus.OVERDUE):
        return False
    return ensure_utc(loan.due_date) < ensure_utc(now)
