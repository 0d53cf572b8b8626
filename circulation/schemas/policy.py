from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from circulation.models.enums import Currency

class PolicySnapshot(BaseModel):
    """Immutable view of the policy row, read once per engine operation."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    approvals_required: bool = True
    loan_days: int = 14
    renewal_days: int = 7
    renewal_min_days_before_due: int = 1
    max_renewals: int = 1
    overdue_fee_per_day: int = 1000
    overdue_fee_cap_per_loan: int = 1000000
    currency: Currency = Currency.IDR
    max_concurrent_loans: int = 5
    block_borrowing_when_overdue: bool = True
    notifications_enabled: bool = True
    due_soon_days: int = 3
    due_date_notifications_enabled: bool = True

class PolicyUpdate(BaseModel):
    """Partial policy update; only provided fields are applied."""
    model_config = ConfigDict(extra="forbid")

    approvals_required: Optional[bool] = None
    loan_days: Optional[int] = Field(None, ge=1, le=90)
    renewal_days: Optional[int] = Field(None, ge=1, le=90)
    renewal_min_days_before_due: Optional[int] = Field(None, ge=0, le=30)
    max_renewals: Optional[int] = Field(None, ge=0, le=10)
    overdue_fee_per_day: Optional[int] = Field(None, ge=0)
    overdue_fee_cap_per_loan: Optional[int] = Field(None, ge=0)
    currency: Optional[Currency] = None
    max_concurrent_loans: Optional[int] = Field(None, ge=1, le=50)
    block_borrowing_when_overdue: Optional[bool] = None
    notifications_enabled: Optional[bool] = None
    due_soon_days: Optional[int] = Field(None, ge=1, le=14)
    due_date_notifications_enabled: Optional[bool] = None
