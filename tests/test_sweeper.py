from datetime import timedelta

from circulation.models.enums import LoanStatus
from circulation.models.loan import Loan
from circulation.services import loans
from circulation.services.events import LOAN_DUE_SOON, LOAN_OVERDUE
from circulation.services.sweeper import sweep_overdue

from conftest import NOW, assert_copy_invariant

DUE = NOW + timedelta(days=14)


def _borrow(db, member, book):
    loan = loans.request_loan(db, member.member_id, book.book_id, now=NOW)
    return loans.approve_loan(db, loan.loan_id, now=NOW)


def _reload(db, loan_id):
    db.expire_all()
    return db.get(Loan, loan_id)


def test_sweep_marks_past_due_loans_overdue(db, session_factory, policy, publisher, make_member, make_book):
    loan = _borrow(db, make_member(), make_book())

    report = sweep_overdue(session_factory, now=DUE + timedelta(days=3), publisher=publisher)

    stored = _reload(db, loan.loan_id)
    assert stored.status == LoanStatus.OVERDUE
    assert stored.overdue_fee == 3000
    assert report.checked == 1
    assert report.marked_overdue == 1
    assert report.failed == []
    assert [event.name for event in publisher.events] == [LOAN_OVERDUE]
    assert publisher.events[0].payload["overdueDays"] == 3
    assert_copy_invariant(db)


def test_sweep_is_idempotent_and_refreshes_fees(db, session_factory, policy, publisher, make_member, make_book):
    loan = _borrow(db, make_member(), make_book())
    as_of = DUE + timedelta(days=3)

    sweep_overdue(session_factory, now=as_of, publisher=publisher)
    report = sweep_overdue(session_factory, now=as_of, publisher=publisher)
    assert report.marked_overdue == 0
    assert report.fees_updated == 0
    assert _reload(db, loan.loan_id).overdue_fee == 3000

    report = sweep_overdue(session_factory, now=DUE + timedelta(days=5), publisher=publisher)
    assert report.fees_updated == 1
    assert _reload(db, loan.loan_id).overdue_fee == 5000
    # The overdue notice goes out once, on the transition
    assert [event.name for event in publisher.events] == [LOAN_OVERDUE]


def test_sweep_respects_fee_cap(db, session_factory, policy, publisher, make_member, make_book):
    loan = _borrow(db, make_member(), make_book())
    sweep_overdue(session_factory, now=DUE + timedelta(days=100), publisher=publisher)
    assert _reload(db, loan.loan_id).overdue_fee == 20000


def test_sweep_leaves_other_loans_alone(db, session_factory, policy, publisher, make_member, make_book):
    member = make_member()
    returned = _borrow(db, member, make_book())
    loans.return_loan(db, returned.loan_id, now=NOW + timedelta(days=1))
    not_due = _borrow(db, member, make_book())
    requested = loans.request_loan(db, member.member_id, make_book().book_id, now=NOW)

    report = sweep_overdue(session_factory, now=NOW + timedelta(days=5), publisher=publisher)

    assert report.checked == 0
    assert _reload(db, returned.loan_id).status == LoanStatus.RETURNED
    assert _reload(db, not_due.loan_id).status == LoanStatus.ACTIVE
    assert _reload(db, requested.loan_id).status == LoanStatus.REQUESTED


def test_return_after_sweep_finalizes_the_fee(db, session_factory, policy, publisher, make_member, make_book):
    loan = _borrow(db, make_member(), make_book())
    sweep_overdue(session_factory, now=DUE + timedelta(days=2), publisher=publisher)

    returned = loans.return_loan(db, loan.loan_id, now=DUE + timedelta(days=6))
    assert returned.status == LoanStatus.RETURNED
    assert returned.overdue_fee == 6000

    sweep_overdue(session_factory, now=DUE + timedelta(days=9), publisher=publisher)
    assert _reload(db, loan.loan_id).overdue_fee == 6000
    assert_copy_invariant(db)


def test_due_soon_notice_is_sent_once(db, session_factory, policy, publisher, make_member, make_book):
    loan = _borrow(db, make_member(), make_book())
    two_days_before = DUE - timedelta(days=2)

    report = sweep_overdue(session_factory, now=two_days_before, publisher=publisher)
    assert report.due_soon_notified == 1
    assert [(event.name, event.loan_id) for event in publisher.events] == [(LOAN_DUE_SOON, loan.loan_id)]
    assert _reload(db, loan.loan_id).due_soon_notified_at is not None

    report = sweep_overdue(session_factory, now=two_days_before + timedelta(hours=6), publisher=publisher)
    assert report.due_soon_notified == 0
    assert len(publisher.events) == 1


def test_renewal_rearms_due_soon_notice(db, session_factory, policy, publisher, make_member, make_book):
    loan = _borrow(db, make_member(), make_book())
    sweep_overdue(session_factory, now=DUE - timedelta(days=2), publisher=publisher)

    loans.renew_loan(db, loan.loan_id, now=DUE - timedelta(days=2))
    assert _reload(db, loan.loan_id).due_soon_notified_at is None


def test_notifications_disabled(db, session_factory, set_policy, policy, publisher, make_member, make_book):
    set_policy(notifications_enabled=False)
    loan = _borrow(db, make_member(), make_book())

    sweep_overdue(session_factory, now=DUE - timedelta(days=1), publisher=publisher)
    report = sweep_overdue(session_factory, now=DUE + timedelta(days=1), publisher=publisher)

    assert report.marked_overdue == 1
    assert _reload(db, loan.loan_id).status == LoanStatus.OVERDUE
    assert publisher.events == []


def test_report_serializes_camel_case(session_factory, policy, publisher):
    report = sweep_overdue(session_factory, now=NOW, publisher=publisher)
    body = report.to_dict()
    assert body["ranAt"] == NOW.isoformat()
    assert body["checked"] == 0
    assert body["failed"] == []


def test_parallel_sweep_marks_every_loan(db, session_factory, policy, publisher, make_member, make_book):
    loan_ids = [_borrow(db, make_member(), make_book()).loan_id for _ in range(12)]

    report = sweep_overdue(session_factory, now=DUE + timedelta(days=3), publisher=publisher, max_workers=4)

    assert report.failed == []
    assert report.checked == 12
    assert report.marked_overdue == 12
    db.expire_all()
    stored = db.query(Loan).filter(Loan.loan_id.in_(loan_ids)).all()
    assert {loan.status for loan in stored} == {LoanStatus.OVERDUE}
    assert {loan.overdue_fee for loan in stored} == {3000}
    assert sorted(event.loan_id for event in publisher.events) == sorted(loan_ids)
    assert_copy_invariant(db)
