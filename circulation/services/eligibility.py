"""Borrowing and renewal eligibility rules."""
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from circulation.models.enums import LoanStatus, OPEN_LOAN_STATUSES
from circulation.models.loan import Loan
from circulation.models.member import Member
from circulation.schemas.policy import PolicySnapshot
from circulation.services.errors import (
    LoanEngineError,
    NotFound,
    MemberNotActive,
    LoanLimitExceeded,
    MemberHasOverdueLoans,
    InvalidTransition,
    RenewalLimitReached,
    RenewalWindowClosed,
)
from circulation.services.state_machine import LoanAction
from circulation.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)


def get_member(db: Session, member_id: int, lock: bool = False) -> Member:
    query = db.query(Member).filter(Member.member_id == member_id)
    if lock:
        # Serializes concurrent requests from one member on PostgreSQL;
        # SQLite ignores it and serializes writers on its own
        query = query.with_for_update()
    member = query.first()
    if member is None:
        logger.warning(f"Member not found: {member_id}")
        raise NotFound("Member", member_id)
    return member


def count_open_loans(db: Session, member_id: int) -> int:
    return (
        db.query(func.count(Loan.loan_id))
        .filter(Loan.member_id == member_id, Loan.status.in_(OPEN_LOAN_STATUSES))
        .scalar()
    )


def count_overdue_loans(db: Session, member_id: int) -> int:
    return (
        db.query(func.count(Loan.loan_id))
        .filter(Loan.member_id == member_id, Loan.status == LoanStatus.OVERDUE)
        .scalar()
    )


def check_member_active(member: Member):
    if not member.is_active:
        logger.warning(f"Member {member.member_id} has status {member.status.value}")
        raise MemberNotActive(member.member_id, member.status.value)


def check_can_borrow(db: Session, member_id: int, policy: PolicySnapshot) -> Member:
    """Raise unless the member may open another loan; returns the locked member."""
    member = get_member(db, member_id, lock=True)
    check_member_active(member)

    if policy.block_borrowing_when_overdue:
        overdue = count_overdue_loans(db, member_id)
        if overdue > 0:
            logger.warning(f"Member {member_id} has {overdue} overdue loans")
            raise MemberHasOverdueLoans(member_id, overdue)

    open_loans = count_open_loans(db, member_id)
    if open_loans >= policy.max_concurrent_loans:
        logger.warning(
            f"Member {member_id} has reached the maximum concurrent loans limit ({policy.max_concurrent_loans})"
        )
        raise LoanLimitExceeded(member_id, open_loans, policy.max_concurrent_loans)
    return member


def latest_renewal_time(due_date: datetime, policy: PolicySnapshot) -> datetime:
    return ensure_utc(due_date) - timedelta(days=policy.renewal_min_days_before_due)


def renewal_denial(
    loan: Loan,
    member: Member,
    policy: PolicySnapshot,
    now: datetime,
    overdue_loans: int = 0,
) -> Optional[LoanEngineError]:
    """The error a renewal of ``loan`` would fail with right now, or None.

    ``overdue_loans`` is the member's current OVERDUE loan count. Order
    matters: status, member, renewal count, overdue loans, then window."""
    if loan.status != LoanStatus.ACTIVE:
        # OVERDUE loans already breached their due date and may not self-renew
        return InvalidTransition(loan.loan_id, loan.status.value, LoanAction.RENEW.value, LoanStatus.ACTIVE.value)
    if not member.is_active:
        return MemberNotActive(member.member_id, member.status.value)
    if loan.renewal_count >= policy.max_renewals:
        return RenewalLimitReached(loan.loan_id, policy.max_renewals)
    if policy.block_borrowing_when_overdue and overdue_loans > 0:
        return MemberHasOverdueLoans(member.member_id, overdue_loans)
    deadline = latest_renewal_time(loan.due_date, policy)
    if ensure_utc(now) > deadline:
        return RenewalWindowClosed(loan.loan_id, policy.renewal_min_days_before_due, deadline.isoformat())
    return None


def overdue_loan_counts(db: Session, member_ids: Iterable[int]) -> Dict[int, int]:
    """OVERDUE loan count per member, for list views; members without any are absent."""
    member_ids = list(member_ids)
    if not member_ids:
        return {}
    rows = (
        db.query(Loan.member_id, func.count(Loan.loan_id))
        .filter(Loan.member_id.in_(member_ids), Loan.status == LoanStatus.OVERDUE)
        .group_by(Loan.member_id)
        .all()
    )
    return {member_id: count for member_id, count in rows}


def check_can_renew(db: Session, loan: Loan, policy: PolicySnapshot, now: datetime):
    member = get_member(db, loan.member_id)
    overdue = count_overdue_loans(db, loan.member_id) if policy.block_borrowing_when_overdue else 0
    denial = renewal_denial(loan, member, policy, now, overdue)
    if denial is not None:
        logger.warning(f"Renewal denied for loan {loan.loan_id}: {denial.message}")
        raise denial


def can_renew(loan: Loan, member: Member, policy: PolicySnapshot, now: datetime, overdue_loans: int = 0) -> bool:
    return renewal_denial(loan, member, policy, now, overdue_loans) is None
