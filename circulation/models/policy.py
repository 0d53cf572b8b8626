from sqlalchemy import Column, DateTime, Integer, BigInteger, Boolean, Enum, CheckConstraint
from sqlalchemy.sql import func
from circulation.database import Base
from circulation.models.enums import Currency

class Policy(Base):
    """Singleton row of admin-tunable library policy."""
    __tablename__ = "policy"

    policy_id = Column(Integer, primary_key=True, default=1)
    approvals_required = Column(Boolean, default=True, nullable=False)
    loan_days = Column(Integer, default=14, nullable=False)
    renewal_days = Column(Integer, default=7, nullable=False)
    renewal_min_days_before_due = Column(Integer, default=1, nullable=False)
    max_renewals = Column(Integer, default=1, nullable=False)
    overdue_fee_per_day = Column(BigInteger, default=1000, nullable=False)  # Minor units
    overdue_fee_cap_per_loan = Column(BigInteger, default=1000000, nullable=False)  # Minor units
    currency = Column(Enum(Currency, name="currency", native_enum=False, length=3), default=Currency.IDR, nullable=False)
    max_concurrent_loans = Column(Integer, default=5, nullable=False)
    block_borrowing_when_overdue = Column(Boolean, default=True, nullable=False)
    notifications_enabled = Column(Boolean, default=True, nullable=False)
    due_soon_days = Column(Integer, default=3, nullable=False)
    due_date_notifications_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("policy_id = 1", name="chk_policy_singleton"),
    )
