from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session
from circulation.database import get_db
from circulation.models.enums import LoanStatus
from circulation.schemas.loan import (
    LoanRequestCreate,
    LoanApprove,
    LoanReject,
    LoanResponse,
    LoanViewResponse,
    PaginatedLoansResponse,
)
from circulation.services import loans as loan_service

router = APIRouter(prefix="/api/loans", tags=["Loans"])

SORT_FIELDS_PATTERN = "^(due_date|requested_at|borrowed_at|status)$"

@router.post("", response_model=LoanResponse, status_code=status.HTTP_201_CREATED)
def request_loan(
    loan_data: LoanRequestCreate,
    db: Session = Depends(get_db)
):
    """Request to borrow a book.
    Auto-approved with the first available copy when the policy needs no approval."""
    loan = loan_service.request_loan(db, loan_data.member_id, loan_data.book_id, loan_data.copy_id)
    return LoanResponse.model_validate(loan.to_dict())

@router.get("", response_model=PaginatedLoansResponse)
def list_loans(
    status_filter: Optional[LoanStatus] = Query(None, alias="status"),
    member_id: Optional[int] = Query(None, gt=0),
    book_id: Optional[int] = Query(None, gt=0),
    due_before: Optional[datetime] = None,
    due_after: Optional[datetime] = None,
    sort_by: str = Query("due_date", pattern=SORT_FIELDS_PATTERN),
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """List loans with filtering, sorting, and pagination (staff view).
    Each loan carries canRenew, isOverdue and daysUntilDue."""
    items, total = loan_service.list_loans(
        db,
        status=status_filter,
        member_id=member_id,
        book_id=book_id,
        due_before=due_before,
        due_after=due_after,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        page_size=page_size,
    )
    return PaginatedLoansResponse(
        items=[LoanViewResponse.model_validate(view) for view in loan_service.loan_views(db, items)],
        page=page,
        pageSize=page_size,
        total=total,
        totalPages=loan_service.total_pages(total, page_size),
    )

@router.get("/{loan_id}", response_model=LoanResponse)
def get_loan(loan_id: int, db: Session = Depends(get_db)):
    """Get specific loan details."""
    return LoanResponse.model_validate(loan_service.get_loan(db, loan_id).to_dict())

@router.post("/{loan_id}/approve", response_model=LoanResponse)
def approve_loan(
    loan_id: int,
    request: Optional[LoanApprove] = Body(None),
    db: Session = Depends(get_db)
):
    """Approve a requested loan and hand out the copy (staff)."""
    copy_id = request.copy_id if request else None
    loan = loan_service.approve_loan(db, loan_id, copy_id)
    return LoanResponse.model_validate(loan.to_dict())

@router.post("/{loan_id}/reject", response_model=LoanResponse)
def reject_loan(
    loan_id: int,
    request: Optional[LoanReject] = Body(None),
    db: Session = Depends(get_db)
):
    """Reject a requested loan (staff)."""
    reason = request.reason if request else None
    loan = loan_service.reject_loan(db, loan_id, reason)
    return LoanResponse.model_validate(loan.to_dict())

@router.post("/{loan_id}/cancel", response_model=LoanResponse)
def cancel_loan(loan_id: int, db: Session = Depends(get_db)):
    """Withdraw a loan that has not been picked up yet."""
    return LoanResponse.model_validate(loan_service.cancel_loan(db, loan_id).to_dict())

@router.post("/{loan_id}/return", response_model=LoanResponse)
def return_loan(loan_id: int, db: Session = Depends(get_db)):
    """Return a borrowed copy; any overdue fee is finalized."""
    return LoanResponse.model_validate(loan_service.return_loan(db, loan_id).to_dict())

@router.post("/{loan_id}/renew", response_model=LoanResponse)
def renew_loan(loan_id: int, db: Session = Depends(get_db)):
    """Extend an active loan's due date."""
    return LoanResponse.model_validate(loan_service.renew_loan(db, loan_id).to_dict())
