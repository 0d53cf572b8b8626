import pytest
from pydantic import ValidationError

from circulation.models.enums import Currency
from circulation.models.policy import Policy
from circulation.schemas.policy import PolicySnapshot, PolicyUpdate
from circulation.services.policy_store import get_policy, update_policy


def test_missing_policy_falls_back_to_defaults(db):
    snapshot = get_policy(db)
    assert snapshot == PolicySnapshot()
    assert db.get(Policy, 1) is not None


def test_snapshot_reflects_row(db, policy):
    snapshot = get_policy(db)
    assert snapshot.max_concurrent_loans == 3
    assert snapshot.overdue_fee_cap_per_loan == 20000


def test_snapshot_is_immutable(db, policy):
    snapshot = get_policy(db)
    with pytest.raises(ValidationError):
        snapshot.loan_days = 30


def test_partial_update_only_touches_given_fields(db, policy):
    updated = update_policy(db, PolicyUpdate(max_renewals=3, currency=Currency.EUR))
    assert updated.max_renewals == 3
    assert updated.currency == Currency.EUR
    assert updated.loan_days == 14

    # Explicit nulls are ignored rather than written
    updated = update_policy(db, PolicyUpdate(loan_days=None))
    assert updated.loan_days == 14


def test_snapshot_taken_before_update_is_unchanged(db, policy):
    before = get_policy(db)
    update_policy(db, PolicyUpdate(loan_days=30))
    assert before.loan_days == 14
    assert get_policy(db).loan_days == 30
