"""Loan status transitions.

The table below is the only place loan status edges are defined. Every
status change goes through ``apply_transition``, which writes the new status
with a guarded UPDATE so a concurrent writer that already moved the loan
makes this one fail instead of being overwritten.
"""
import enum
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from circulation.models.enums import LoanStatus
from circulation.models.loan import Loan
from circulation.services.errors import InvalidTransition

logger = logging.getLogger(__name__)


class LoanAction(str, enum.Enum):
    APPROVE = "APPROVE"
    ACTIVATE = "ACTIVATE"
    REJECT = "REJECT"
    CANCEL = "CANCEL"
    RETURN = "RETURN"
    MARK_OVERDUE = "MARK_OVERDUE"
    RENEW = "RENEW"


TRANSITIONS: Dict[LoanAction, Dict[LoanStatus, LoanStatus]] = {
    LoanAction.APPROVE: {LoanStatus.REQUESTED: LoanStatus.APPROVED},
    LoanAction.ACTIVATE: {LoanStatus.APPROVED: LoanStatus.ACTIVE},
    LoanAction.REJECT: {LoanStatus.REQUESTED: LoanStatus.REJECTED},
    LoanAction.CANCEL: {
        LoanStatus.REQUESTED: LoanStatus.CANCELLED,
        LoanStatus.APPROVED: LoanStatus.CANCELLED,
    },
    LoanAction.RETURN: {
        LoanStatus.ACTIVE: LoanStatus.RETURNED,
        LoanStatus.OVERDUE: LoanStatus.RETURNED,
    },
    LoanAction.MARK_OVERDUE: {LoanStatus.ACTIVE: LoanStatus.OVERDUE},
    LoanAction.RENEW: {LoanStatus.ACTIVE: LoanStatus.ACTIVE},
}


def _requested_status(action: LoanAction) -> Optional[str]:
    targets = {target.value for target in TRANSITIONS[action].values()}
    return targets.pop() if len(targets) == 1 else None


def next_status(current: LoanStatus, action: LoanAction, loan_id: Optional[int] = None) -> LoanStatus:
    """Resolve the status ``action`` leads to from ``current``."""
    target = TRANSITIONS[action].get(current)
    if target is None:
        raise InvalidTransition(loan_id, current.value, action.value, _requested_status(action))
    return target


def can_apply(current: LoanStatus, action: LoanAction) -> bool:
    return current in TRANSITIONS[action]


def apply_transition(
    db: Session,
    loan: Loan,
    action: LoanAction,
    expect: Optional[Dict[str, Any]] = None,
    **values: Any,
) -> Loan:
    """Move ``loan`` along ``action`` and write ``values`` in the same UPDATE.

    ``expect`` adds extra column equality guards (e.g. the renewal count the
    caller validated). Zero matched rows means the loan changed underneath
    us; the caller's transaction is expected to roll back."""
    current = loan.status
    target = next_status(current, action, loan.loan_id)

    query = db.query(Loan).filter(Loan.loan_id == loan.loan_id, Loan.status == current)
    for column, expected in (expect or {}).items():
        query = query.filter(getattr(Loan, column) == expected)

    values["status"] = target
    updated = query.update(values, synchronize_session="evaluate")
    if updated != 1:
        actual = db.query(Loan.status).filter(Loan.loan_id == loan.loan_id).scalar()
        actual = actual.value if actual is not None else "MISSING"
        logger.warning(
            f"Loan {loan.loan_id} changed concurrently: expected {current.value}, found {actual} ({action.value})"
        )
        raise InvalidTransition(loan.loan_id, actual, action.value, target.value)

    if target != current:
        logger.info(f"Loan {loan.loan_id}: {current.value} -> {target.value} ({action.value})")
    return loan
