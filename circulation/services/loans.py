"""Loan lifecycle operations.

Each public operation reads the current policy, runs in exactly one
transaction and returns the refreshed loan. Any ``LoanEngineError`` rolls the
whole operation back before it reaches the caller.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation.database import transaction
from circulation.models.book import Book
from circulation.models.enums import BookStatus, LoanStatus
from circulation.models.loan import Loan
from circulation.models.member import Member
from circulation.schemas.policy import PolicySnapshot
from circulation.services import allocator
from circulation.services.eligibility import (
    check_can_borrow,
    check_can_renew,
    check_member_active,
    get_member,
    can_renew,
    overdue_loan_counts,
)
from circulation.services.errors import NotFound, CopyUnavailable
from circulation.services.fees import compute_fee, days_until_due, is_overdue
from circulation.services.policy_store import get_policy
from circulation.services.state_machine import LoanAction, apply_transition, next_status
from circulation.utils.timezone import ensure_utc, now_utc

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "due_date": Loan.due_date,
    "requested_at": Loan.requested_at,
    "borrowed_at": Loan.borrowed_at,
    "status": Loan.status,
}


def _resolve_now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now is not None else now_utc()


def get_loan(db: Session, loan_id: int, lock: bool = False) -> Loan:
    query = db.query(Loan).filter(Loan.loan_id == loan_id)
    if lock:
        query = query.with_for_update().populate_existing()
    loan = query.first()
    if loan is None:
        logger.warning(f"Loan not found: {loan_id}")
        raise NotFound("Loan", loan_id)
    return loan


def get_book(db: Session, book_id: int) -> Book:
    book = db.get(Book, book_id)
    if book is None or book.status != BookStatus.ACTIVE:
        logger.warning(f"Book not found or inactive: {book_id}")
        raise NotFound("Book", book_id)
    return book


def _approve(db: Session, loan: Loan, copy_id: Optional[int], policy: PolicySnapshot, now: datetime):
    """Reserve a copy and hand it out: REQUESTED -> APPROVED -> ACTIVE.

    Pickup is not a separate event, so approval and hand-off are one step."""
    next_status(loan.status, LoanAction.APPROVE, loan.loan_id)
    check_member_active(get_member(db, loan.member_id))

    copy = allocator.reserve_copy(db, loan.book_id, copy_id or loan.requested_copy_id)
    try:
        apply_transition(db, loan, LoanAction.APPROVE, copy_id=copy.copy_id, approved_at=now)
        apply_transition(
            db,
            loan,
            LoanAction.ACTIVATE,
            borrowed_at=now,
            due_date=now + timedelta(days=policy.loan_days),
        )
    except IntegrityError:
        # Open-loan-per-copy index: another transaction holds this copy
        logger.warning(f"Copy {copy.copy_id} already referenced by an open loan")
        raise CopyUnavailable(copy.copy_id, "copy is already on loan to another member")


def request_loan(
    db: Session,
    member_id: int,
    book_id: int,
    copy_id: Optional[int] = None,
    now: Optional[datetime] = None,
    policy: Optional[PolicySnapshot] = None,
) -> Loan:
    """Create a borrow request, auto-approving it when policy allows."""
    now = _resolve_now(now)
    with transaction(db):
        policy = policy or get_policy(db)
        check_can_borrow(db, member_id, policy)
        get_book(db, book_id)
        if copy_id is not None:
            allocator.select_available_copy(db, book_id, copy_id)

        loan = Loan(
            member_id=member_id,
            book_id=book_id,
            requested_copy_id=copy_id,
            status=LoanStatus.REQUESTED,
            requested_at=now,
            renewal_count=0,
            overdue_fee=0,
        )
        db.add(loan)
        db.flush()

        if not policy.approvals_required:
            _approve(db, loan, copy_id, policy, now)

    db.refresh(loan)
    logger.info(f"Loan created: {loan.loan_id} for member {member_id}, book {book_id}, status {loan.status.value}")
    return loan


def approve_loan(
    db: Session,
    loan_id: int,
    copy_id: Optional[int] = None,
    now: Optional[datetime] = None,
    policy: Optional[PolicySnapshot] = None,
) -> Loan:
    now = _resolve_now(now)
    with transaction(db):
        policy = policy or get_policy(db)
        loan = get_loan(db, loan_id, lock=True)
        _approve(db, loan, copy_id, policy, now)

    db.refresh(loan)
    logger.info(f"Loan approved: {loan_id} with copy {loan.copy_id}, due {loan.due_date}")
    return loan


def reject_loan(db: Session, loan_id: int, reason: Optional[str] = None) -> Loan:
    with transaction(db):
        loan = get_loan(db, loan_id, lock=True)
        apply_transition(db, loan, LoanAction.REJECT, rejection_reason=reason)

    db.refresh(loan)
    logger.info(f"Loan rejected: {loan_id}" + (f", reason: {reason}" if reason else ""))
    return loan


def cancel_loan(db: Session, loan_id: int, now: Optional[datetime] = None) -> Loan:
    """Member withdrawal before pickup; frees the copy if one was reserved."""
    now = _resolve_now(now)
    with transaction(db):
        loan = get_loan(db, loan_id, lock=True)
        reserved_copy_id = loan.copy_id if loan.status == LoanStatus.APPROVED else None
        apply_transition(db, loan, LoanAction.CANCEL, cancelled_at=now)
        allocator.release_copy(db, reserved_copy_id)

    db.refresh(loan)
    logger.info(f"Loan cancelled: {loan_id}")
    return loan


def return_loan(
    db: Session,
    loan_id: int,
    now: Optional[datetime] = None,
    policy: Optional[PolicySnapshot] = None,
) -> Loan:
    """Check a copy back in and finalize the overdue fee as of ``now``."""
    now = _resolve_now(now)
    with transaction(db):
        policy = policy or get_policy(db)
        loan = get_loan(db, loan_id, lock=True)
        fee = compute_fee(loan.due_date, now, policy)
        copy_id = loan.copy_id
        apply_transition(db, loan, LoanAction.RETURN, returned_at=now, overdue_fee=fee.amount)
        allocator.release_copy(db, copy_id)

    db.refresh(loan)
    if fee.amount > 0:
        logger.info(f"Loan returned: {loan_id}, {fee.overdue_days} day(s) overdue, fee {fee.amount} {fee.currency}")
    else:
        logger.info(f"Loan returned: {loan_id}, no fee")
    return loan


def renew_loan(
    db: Session,
    loan_id: int,
    now: Optional[datetime] = None,
    policy: Optional[PolicySnapshot] = None,
) -> Loan:
    """Extend the due date by the renewal period; status stays ACTIVE."""
    now = _resolve_now(now)
    with transaction(db):
        policy = policy or get_policy(db)
        loan = get_loan(db, loan_id, lock=True)
        check_can_renew(db, loan, policy, now)
        apply_transition(
            db,
            loan,
            LoanAction.RENEW,
            expect={"renewal_count": loan.renewal_count},
            due_date=ensure_utc(loan.due_date) + timedelta(days=policy.renewal_days),
            renewal_count=loan.renewal_count + 1,
            due_soon_notified_at=None,
        )

    db.refresh(loan)
    logger.info(f"Loan renewed: {loan_id}, renewal {loan.renewal_count}/{policy.max_renewals}, new due date {loan.due_date}")
    return loan


def _paginate(query, sort_by: str, sort_order: str, page: int, page_size: int) -> Tuple[List[Loan], int]:
    column = SORTABLE_FIELDS.get(sort_by)
    if column is None:
        raise ValueError(f"Cannot sort loans by {sort_by}")
    ordering = column.desc() if sort_order == "desc" else column.asc()
    total = query.count()
    items = (
        query.order_by(ordering, Loan.loan_id.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def total_pages(total: int, page_size: int) -> int:
    return math.ceil(total / page_size) if page_size else 0


def list_loans(
    db: Session,
    status: Optional[LoanStatus] = None,
    member_id: Optional[int] = None,
    book_id: Optional[int] = None,
    due_before: Optional[datetime] = None,
    due_after: Optional[datetime] = None,
    sort_by: str = "due_date",
    sort_order: str = "asc",
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Loan], int]:
    query = db.query(Loan)
    if status:
        query = query.filter(Loan.status == status)
    if member_id:
        query = query.filter(Loan.member_id == member_id)
    if book_id:
        query = query.filter(Loan.book_id == book_id)
    if due_before:
        query = query.filter(Loan.due_date <= ensure_utc(due_before))
    if due_after:
        query = query.filter(Loan.due_date >= ensure_utc(due_after))

    items, total = _paginate(query, sort_by, sort_order, page, page_size)
    logger.info(f"Listed {len(items)} loans (page {page}/{total_pages(total, page_size)}, total {total})")
    return items, total


def loan_view(
    loan: Loan,
    member: Member,
    policy: PolicySnapshot,
    now: datetime,
    overdue_loans: int = 0,
) -> Dict[str, Any]:
    """Loan dict plus the computed renewal and due-date fields."""
    view = loan.to_dict()
    view.update({
        "canRenew": can_renew(loan, member, policy, now, overdue_loans),
        "isOverdue": is_overdue(loan, now),
        "daysUntilDue": days_until_due(loan.due_date, now),
        "currency": policy.currency.value,
    })
    return view


def loan_views(db: Session, items: List[Loan], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Views for one page of loans, reading policy and member state once."""
    now = _resolve_now(now)
    policy = get_policy(db)
    member_ids = {loan.member_id for loan in items}
    members = {
        member.member_id: member
        for member in db.query(Member).filter(Member.member_id.in_(member_ids))
    } if member_ids else {}
    overdue = overdue_loan_counts(db, member_ids)
    return [
        loan_view(loan, members[loan.member_id], policy, now, overdue.get(loan.member_id, 0))
        for loan in items
    ]


def list_member_loans(
    db: Session,
    member_id: int,
    status: Optional[LoanStatus] = None,
    sort_by: str = "due_date",
    sort_order: str = "asc",
    page: int = 1,
    page_size: int = 20,
    now: Optional[datetime] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    get_member(db, member_id)

    query = db.query(Loan).filter(Loan.member_id == member_id)
    if status:
        query = query.filter(Loan.status == status)

    items, total = _paginate(query, sort_by, sort_order, page, page_size)
    logger.info(f"Listed {len(items)} loans for member {member_id} (total {total})")
    return loan_views(db, items, now), total
