import itertools
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from circulation.database import Base, get_db, get_session_factory
from circulation.models import (
    Book,
    BookCopy,
    CopyStatus,
    Loan,
    Member,
    MembershipStatus,
    Policy,
)
from circulation.models.enums import COPY_HOLDING_STATUSES
from circulation.utils.timezone import UTC

NOW = UTC.localize(datetime(2025, 3, 1, 10, 0, 0))


@pytest.fixture
def engine(tmp_path):
    # A file database per test so separate sessions really are separate connections
    engine = create_engine(
        f"sqlite:///{tmp_path / 'circulation_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def set_policy(db):
    def _set(**values):
        policy = db.get(Policy, 1) or Policy(policy_id=1)
        for key, value in values.items():
            setattr(policy, key, value)
        db.add(policy)
        db.commit()
        return policy
    return _set


@pytest.fixture
def policy(set_policy):
    return set_policy(
        approvals_required=True,
        loan_days=14,
        renewal_days=7,
        max_renewals=1,
        renewal_min_days_before_due=1,
        max_concurrent_loans=3,
        overdue_fee_per_day=1000,
        overdue_fee_cap_per_loan=20000,
    )


@pytest.fixture
def make_member(db):
    counter = itertools.count(1)

    def _make(status=MembershipStatus.ACTIVE):
        n = next(counter)
        member = Member(first_name="Member", last_name=str(n), email=f"member{n}@library.test", status=status)
        db.add(member)
        db.commit()
        return member
    return _make


@pytest.fixture
def make_book(db):
    counter = itertools.count(1)

    def _make(copies=1, title=None):
        n = next(counter)
        book = Book(title=title or f"Book {n}", author="Ursula K. Le Guin", isbn=f"978000000{n:04d}")
        db.add(book)
        db.flush()
        for i in range(copies):
            db.add(BookCopy(book_id=book.book_id, code=f"B{book.book_id}-C{i + 1}"))
        db.commit()
        return book
    return _make


@pytest.fixture
def copies_of(db):
    def _copies(book):
        return (
            db.query(BookCopy)
            .filter(BookCopy.book_id == book.book_id)
            .order_by(BookCopy.copy_id)
            .all()
        )
    return _copies


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return True


@pytest.fixture
def publisher():
    return RecordingPublisher()


def assert_copy_invariant(session):
    """A copy is ON_LOAN iff exactly one copy-holding loan references it."""
    session.expire_all()
    for copy in session.query(BookCopy).all():
        holders = (
            session.query(Loan)
            .filter(Loan.copy_id == copy.copy_id, Loan.status.in_(COPY_HOLDING_STATUSES))
            .count()
        )
        if copy.status == CopyStatus.ON_LOAN:
            assert holders == 1, f"copy {copy.copy_id} is ON_LOAN with {holders} holding loans"
        else:
            assert holders == 0, f"copy {copy.copy_id} is {copy.status.value} but held by {holders} loans"


@pytest.fixture
def client(session_factory, policy):
    from circulation.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()
