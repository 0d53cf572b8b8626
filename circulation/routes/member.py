from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from circulation.database import get_db
from circulation.models.enums import LoanStatus
from circulation.routes.loan import SORT_FIELDS_PATTERN
from circulation.schemas.loan import LoanViewResponse, PaginatedLoansResponse
from circulation.services import loans as loan_service

router = APIRouter(prefix="/api/members", tags=["Member Loans"])

@router.get("/{member_id}/loans", response_model=PaginatedLoansResponse)
def get_member_loans(
    member_id: int,
    status_filter: Optional[LoanStatus] = Query(None, alias="status"),
    sort_by: str = Query("due_date", pattern=SORT_FIELDS_PATTERN),
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """A member's loans with canRenew, isOverdue and daysUntilDue."""
    items, total = loan_service.list_member_loans(
        db,
        member_id,
        status=status_filter,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        page_size=page_size,
    )
    return PaginatedLoansResponse(
        items=[LoanViewResponse.model_validate(item) for item in items],
        page=page,
        pageSize=page_size,
        total=total,
        totalPages=loan_service.total_pages(total, page_size),
    )
