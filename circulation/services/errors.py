"""Typed failures raised by the loan engine.

Every error is an expected, caller-recoverable condition. The request layer
translates them into HTTP responses (see ``circulation.main``); the engine
itself never swallows or retries them.
"""
from typing import Any, Dict, Optional
from fastapi import status


class LoanEngineError(Exception):
    code = "LOAN_ENGINE_ERROR"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update({key: value for key, value in self.context.items() if value is not None})
        return body


class NotFound(LoanEngineError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entityId=str(entity_id))


class MemberNotActive(LoanEngineError):
    code = "MEMBER_NOT_ACTIVE"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, member_id: int, member_status: str):
        super().__init__(
            f"Member {member_id} cannot borrow or renew. Member status is {member_status}",
            memberId=str(member_id),
            memberStatus=member_status,
        )


class LoanLimitExceeded(LoanEngineError):
    code = "LOAN_LIMIT_EXCEEDED"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, member_id: int, open_loans: int, limit: int):
        super().__init__(
            f"Member {member_id} has reached the maximum concurrent loans limit ({limit})",
            memberId=str(member_id),
            openLoans=open_loans,
            limit=limit,
        )


class MemberHasOverdueLoans(LoanLimitExceeded):
    code = "MEMBER_HAS_OVERDUE_LOANS"

    def __init__(self, member_id: int, overdue_loans: int):
        LoanEngineError.__init__(
            self,
            f"Member {member_id} has {overdue_loans} overdue loan(s). Please return them first.",
            memberId=str(member_id),
            overdueLoans=overdue_loans,
        )


class NoCopyAvailable(LoanEngineError):
    code = "NO_COPY_AVAILABLE"

    def __init__(self, book_id: int):
        super().__init__(f"No available copies for book {book_id}", bookId=str(book_id))


class CopyUnavailable(LoanEngineError):
    code = "COPY_UNAVAILABLE"

    def __init__(self, copy_id: int, reason: str):
        super().__init__(f"Book copy {copy_id} is not available: {reason}", copyId=str(copy_id), reason=reason)


class InvalidTransition(LoanEngineError):
    code = "INVALID_TRANSITION"

    def __init__(self, loan_id: Optional[int], current: str, action: str, requested: Optional[str]):
        target = f" to {requested}" if requested else ""
        super().__init__(
            f"Cannot {action.lower()} loan {loan_id}{target}: loan status is {current}",
            loanId=str(loan_id) if loan_id is not None else None,
            currentStatus=current,
            action=action,
            requestedStatus=requested,
        )
        self.current = current
        self.action = action
        self.requested = requested


class RenewalLimitReached(LoanEngineError):
    code = "RENEWAL_LIMIT_REACHED"

    def __init__(self, loan_id: int, max_renewals: int):
        super().__init__(
            f"Maximum renewals ({max_renewals}) reached for loan {loan_id}",
            loanId=str(loan_id),
            maxRenewals=max_renewals,
        )


class RenewalWindowClosed(LoanEngineError):
    code = "RENEWAL_WINDOW_CLOSED"

    def __init__(self, loan_id: int, min_days_before_due: int, last_renewal_at: str):
        super().__init__(
            f"Loan {loan_id} must be renewed at least {min_days_before_due} day(s) before its due date",
            loanId=str(loan_id),
            renewalMinDaysBeforeDue=min_days_before_due,
            lastRenewalAt=last_renewal_at,
        )
