from .loan import (
    LoanRequestCreate, LoanApprove, LoanReject,
    LoanResponse, LoanViewResponse, PaginatedLoansResponse,
)
from .policy import PolicySnapshot, PolicyUpdate
from .jobs import SweepReportResponse

__all__ = [
    "LoanRequestCreate", "LoanApprove", "LoanReject",
    "LoanResponse", "LoanViewResponse", "PaginatedLoansResponse",
    "PolicySnapshot", "PolicyUpdate",
    "SweepReportResponse",
]
