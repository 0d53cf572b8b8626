from datetime import timedelta

import pytest

from circulation.models.enums import LoanStatus, MembershipStatus
from circulation.models.loan import Loan
from circulation.models.member import Member
from circulation.schemas.policy import PolicySnapshot
from circulation.services.eligibility import can_renew, check_can_borrow, renewal_denial
from circulation.services.errors import (
    InvalidTransition,
    LoanLimitExceeded,
    MemberHasOverdueLoans,
    MemberNotActive,
    NotFound,
    RenewalLimitReached,
    RenewalWindowClosed,
)

from conftest import NOW


def _loan(db, member, book, status, due_date=None):
    loan = Loan(
        member_id=member.member_id,
        book_id=book.book_id,
        status=status,
        requested_at=NOW,
        due_date=due_date,
    )
    db.add(loan)
    db.commit()
    return loan


@pytest.mark.parametrize("status", [MembershipStatus.PENDING, MembershipStatus.SUSPENDED])
def test_inactive_members_cannot_borrow(db, make_member, status):
    member = make_member(status=status)
    with pytest.raises(MemberNotActive) as excinfo:
        check_can_borrow(db, member.member_id, PolicySnapshot())
    assert excinfo.value.to_dict()["memberStatus"] == status.value


def test_unknown_member(db):
    with pytest.raises(NotFound):
        check_can_borrow(db, 404, PolicySnapshot())


def test_open_loans_count_against_the_limit(db, make_member, make_book):
    member = make_member()
    book = make_book(copies=0)
    _loan(db, member, book, LoanStatus.REQUESTED)
    _loan(db, member, book, LoanStatus.ACTIVE, NOW + timedelta(days=3))
    # Finished loans do not count
    _loan(db, member, book, LoanStatus.RETURNED)
    _loan(db, member, book, LoanStatus.CANCELLED)

    check_can_borrow(db, member.member_id, PolicySnapshot(max_concurrent_loans=3))
    with pytest.raises(LoanLimitExceeded) as excinfo:
        check_can_borrow(db, member.member_id, PolicySnapshot(max_concurrent_loans=2))
    assert excinfo.value.to_dict()["openLoans"] == 2


def test_overdue_loans_block_borrowing_only_when_enabled(db, make_member, make_book):
    member = make_member()
    _loan(db, member, make_book(copies=0), LoanStatus.OVERDUE, NOW - timedelta(days=1))

    check_can_borrow(db, member.member_id, PolicySnapshot(block_borrowing_when_overdue=False))
    with pytest.raises(MemberHasOverdueLoans) as excinfo:
        check_can_borrow(db, member.member_id, PolicySnapshot(block_borrowing_when_overdue=True))
    assert excinfo.value.code == "MEMBER_HAS_OVERDUE_LOANS"
    assert excinfo.value.status_code == 403


POLICY = PolicySnapshot(max_renewals=1, renewal_min_days_before_due=1)
ACTIVE_MEMBER = Member(member_id=1, status=MembershipStatus.ACTIVE)


def _renewable(**overrides):
    values = dict(loan_id=1, status=LoanStatus.ACTIVE, renewal_count=0, due_date=NOW + timedelta(days=5))
    values.update(overrides)
    return Loan(**values)


def test_renewal_allowed_inside_window():
    assert renewal_denial(_renewable(), ACTIVE_MEMBER, POLICY, NOW) is None
    assert can_renew(_renewable(due_date=NOW + timedelta(days=1)), ACTIVE_MEMBER, POLICY, NOW)


def test_renewal_window_closes_before_due_date():
    loan = _renewable(due_date=NOW + timedelta(hours=23))
    assert isinstance(renewal_denial(loan, ACTIVE_MEMBER, POLICY, NOW), RenewalWindowClosed)


def test_renewal_limit():
    loan = _renewable(renewal_count=1)
    assert isinstance(renewal_denial(loan, ACTIVE_MEMBER, POLICY, NOW), RenewalLimitReached)


def test_renewal_denial_order():
    suspended = Member(member_id=2, status=MembershipStatus.SUSPENDED)
    exhausted_and_late = _renewable(renewal_count=1, due_date=NOW)

    assert isinstance(
        renewal_denial(_renewable(status=LoanStatus.OVERDUE, renewal_count=1), suspended, POLICY, NOW),
        InvalidTransition,
    )
    assert isinstance(renewal_denial(exhausted_and_late, suspended, POLICY, NOW), MemberNotActive)
    assert isinstance(renewal_denial(exhausted_and_late, ACTIVE_MEMBER, POLICY, NOW), RenewalLimitReached)


def test_overdue_loans_deny_renewal_after_the_limit_check():
    overdue_policy = PolicySnapshot(max_renewals=1, renewal_min_days_before_due=1, block_borrowing_when_overdue=True)

    assert isinstance(renewal_denial(_renewable(), ACTIVE_MEMBER, overdue_policy, NOW, 2), MemberHasOverdueLoans)
    assert isinstance(
        renewal_denial(_renewable(renewal_count=1), ACTIVE_MEMBER, overdue_policy, NOW, 2),
        RenewalLimitReached,
    )
    assert not can_renew(_renewable(), ACTIVE_MEMBER, overdue_policy, NOW, overdue_loans=1)

    relaxed = PolicySnapshot(max_renewals=1, renewal_min_days_before_due=1, block_borrowing_when_overdue=False)
    assert can_renew(_renewable(), ACTIVE_MEMBER, relaxed, NOW, overdue_loans=1)


def test_overdue_block_is_on_by_default():
    assert PolicySnapshot().block_borrowing_when_overdue is True
