from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

class LoanRequestCreate(BaseModel):
    member_id: int = Field(..., gt=0)
    book_id: int = Field(..., gt=0)
    copy_id: Optional[int] = Field(None, gt=0)

class LoanApprove(BaseModel):
    copy_id: Optional[int] = Field(None, gt=0, description="Copy to hand out; auto-selected when omitted")

class LoanReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)

class LoanResponse(BaseModel):
    id: str
    memberId: str
    bookId: str
    copyId: Optional[str] = None
    requestedCopyId: Optional[str] = None
    status: str
    requestedAt: datetime
    approvedAt: Optional[datetime] = None
    borrowedAt: Optional[datetime] = None
    dueDate: Optional[datetime] = None
    returnedAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None
    renewalCount: int
    overdueFee: int
    rejectionReason: Optional[str] = None
    book: Optional[dict] = None
    bookCopy: Optional[dict] = None

class LoanViewResponse(LoanResponse):
    canRenew: bool
    isOverdue: bool
    daysUntilDue: int
    currency: str

class PaginatedLoansResponse(BaseModel):
    items: List[LoanViewResponse]
    page: int
    pageSize: int
    total: int
    totalPages: int