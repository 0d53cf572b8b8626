"""Periodic overdue sweep.

An external scheduler invokes ``sweep_overdue`` (through the jobs route or
``python -m circulation.services.sweeper``). Each loan is handled in its own
transaction with the row locked and its status re-read, so a return or
renewal that commits first simply wins and the sweep skips that loan.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from circulation.database import transaction
from circulation.models.enums import LoanStatus
from circulation.models.loan import Loan
from circulation.schemas.policy import PolicySnapshot
from circulation.services.errors import LoanEngineError
from circulation.services.events import (
    LOAN_DUE_SOON,
    LOAN_OVERDUE,
    LoanEvent,
    LoanEventPublisher,
    event_publisher,
)
from circulation.services.fees import compute_fee
from circulation.services.policy_store import get_policy
from circulation.services.state_machine import LoanAction, apply_transition
from circulation.utils.timezone import ensure_utc, now_utc, to_library_time

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    ran_at: datetime
    checked: int = 0
    marked_overdue: int = 0
    fees_updated: int = 0
    due_soon_notified: int = 0
    failed: List[int] = field(default_factory=list)

    def to_dict(self):
        return {
            "ranAt": self.ran_at.isoformat(),
            "checked": self.checked,
            "markedOverdue": self.marked_overdue,
            "feesUpdated": self.fees_updated,
            "dueSoonNotified": self.due_soon_notified,
            "failed": [str(loan_id) for loan_id in self.failed],
        }


@dataclass
class _Outcome:
    loan_id: int
    marked_overdue: bool = False
    fee_updated: bool = False
    event: Optional[LoanEvent] = None
    failed: bool = False


def _event_payload(loan: Loan, policy: PolicySnapshot) -> dict:
    return {
        "bookId": str(loan.book_id),
        "dueDate": ensure_utc(loan.due_date).isoformat(),
        "dueDateLocal": to_library_time(loan.due_date).isoformat(),
        "overdueFee": loan.overdue_fee,
        "currency": policy.currency.value,
    }


def _notifications_on(policy: PolicySnapshot) -> bool:
    return policy.notifications_enabled and policy.due_date_notifications_enabled


def _sweep_overdue_loan(session_factory: sessionmaker, loan_id: int, now: datetime) -> _Outcome:
    outcome = _Outcome(loan_id=loan_id)
    db = session_factory()
    try:
        with transaction(db):
            policy = get_policy(db)
            loan = (
                db.query(Loan)
                .filter(Loan.loan_id == loan_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if loan is None or loan.status not in (LoanStatus.ACTIVE, LoanStatus.OVERDUE):
                # Returned or otherwise finished since the candidate scan
                return outcome
            if ensure_utc(loan.due_date) >= now:
                # Renewed since the candidate scan
                return outcome

            fee = compute_fee(loan.due_date, now, policy)
            if loan.status == LoanStatus.ACTIVE:
                apply_transition(db, loan, LoanAction.MARK_OVERDUE, overdue_fee=fee.amount)
                outcome.marked_overdue = True
                outcome.fee_updated = True
                if _notifications_on(policy):
                    outcome.event = LoanEvent(
                        name=LOAN_OVERDUE,
                        loan_id=loan.loan_id,
                        member_id=loan.member_id,
                        payload={**_event_payload(loan, policy), "overdueDays": fee.overdue_days},
                    )
            elif loan.overdue_fee != fee.amount:
                loan.overdue_fee = fee.amount
                outcome.fee_updated = True
    except LoanEngineError as e:
        logger.warning(f"Overdue sweep skipped loan {loan_id}: {e.message}")
        outcome.failed = True
    except Exception as e:
        logger.error(f"Overdue sweep failed for loan {loan_id}: {e}", exc_info=True)
        outcome.failed = True
    finally:
        db.close()
    return outcome


def _notify_due_soon(session_factory: sessionmaker, loan_id: int, now: datetime) -> _Outcome:
    outcome = _Outcome(loan_id=loan_id)
    db = session_factory()
    try:
        with transaction(db):
            policy = get_policy(db)
            loan = (
                db.query(Loan)
                .filter(Loan.loan_id == loan_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if loan is None or loan.status != LoanStatus.ACTIVE or loan.due_soon_notified_at is not None:
                return outcome
            loan.due_soon_notified_at = now
            outcome.event = LoanEvent(
                name=LOAN_DUE_SOON,
                loan_id=loan.loan_id,
                member_id=loan.member_id,
                payload=_event_payload(loan, policy),
            )
    except Exception as e:
        logger.error(f"Due-soon notification failed for loan {loan_id}: {e}", exc_info=True)
        outcome.failed = True
    finally:
        db.close()
    return outcome


def _run(fn, session_factory, loan_ids, now, max_workers) -> List[_Outcome]:
    if max_workers <= 1 or len(loan_ids) <= 1:
        return [fn(session_factory, loan_id, now) for loan_id in loan_ids]
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(lambda loan_id: fn(session_factory, loan_id, now), loan_ids))


def sweep_overdue(
    session_factory: sessionmaker,
    now: Optional[datetime] = None,
    publisher: Optional[LoanEventPublisher] = None,
    max_workers: int = 1,
) -> SweepReport:
    """Mark past-due ACTIVE loans OVERDUE and refresh accrued fees.

    Safe to re-run: OVERDUE loans only get their fee recomputed and finished
    loans are never touched."""
    now = ensure_utc(now) if now is not None else now_utc()
    publisher = publisher or event_publisher
    report = SweepReport(ran_at=now)

    db = session_factory()
    try:
        policy = get_policy(db)
        overdue_ids = [
            loan_id for (loan_id,) in db.query(Loan.loan_id)
            .filter(
                Loan.status.in_((LoanStatus.ACTIVE, LoanStatus.OVERDUE)),
                Loan.due_date < now,
            )
            .order_by(Loan.loan_id)
            .all()
        ]
        due_soon_ids = []
        if _notifications_on(policy):
            due_soon_ids = [
                loan_id for (loan_id,) in db.query(Loan.loan_id)
                .filter(
                    Loan.status == LoanStatus.ACTIVE,
                    Loan.due_date >= now,
                    Loan.due_date < now + timedelta(days=policy.due_soon_days),
                    Loan.due_soon_notified_at.is_(None),
                )
                .order_by(Loan.loan_id)
                .all()
            ]
    finally:
        db.close()

    report.checked = len(overdue_ids)
    logger.info(f"Overdue sweep at {now.isoformat()}: {len(overdue_ids)} past-due loan(s), {len(due_soon_ids)} due soon")

    outcomes = _run(_sweep_overdue_loan, session_factory, overdue_ids, now, max_workers)
    outcomes += _run(_notify_due_soon, session_factory, due_soon_ids, now, max_workers)

    for outcome in outcomes:
        if outcome.failed:
            report.failed.append(outcome.loan_id)
            continue
        report.marked_overdue += outcome.marked_overdue
        report.fees_updated += outcome.fee_updated
        if outcome.event is not None:
            # Published after commit; delivery failures never undo the sweep
            publisher.publish(outcome.event)
            if outcome.event.name == LOAN_DUE_SOON:
                report.due_soon_notified += 1

    logger.info(
        f"Overdue sweep done: {report.marked_overdue} marked overdue, {report.fees_updated} fee(s) updated, "
        f"{report.due_soon_notified} due-soon notice(s), {len(report.failed)} failed"
    )
    return report


if __name__ == "__main__":
    from circulation.config import settings
    from circulation.database import SessionLocal, init_db

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    init_db()
    event_publisher.connect()
    try:
        sweep_overdue(SessionLocal, max_workers=settings.sweeper_max_workers)
    finally:
        event_publisher.disconnect()
