from sqlalchemy import Column, String, DateTime, Integer, BigInteger, Text, ForeignKey, CheckConstraint, Enum, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from circulation.database import Base
from circulation.models.enums import LoanStatus
from circulation.utils.timezone import ensure_utc

# Partial unique index backing "at most one open loan per copy"
_OPEN_COPY_PREDICATE = text("status IN ('APPROVED', 'ACTIVE', 'OVERDUE')")

def _iso(value):
    value = ensure_utc(value)
    return value.isoformat() if value else None

class Loan(Base):
    __tablename__ = "loan"

    loan_id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(Integer, ForeignKey("member.member_id", ondelete="RESTRICT"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("book.book_id", ondelete="RESTRICT"), nullable=False, index=True)
    copy_id = Column(Integer, ForeignKey("book_copy.copy_id", ondelete="RESTRICT"), nullable=True, index=True)
    requested_copy_id = Column(Integer, ForeignKey("book_copy.copy_id", ondelete="SET NULL"), nullable=True)
    status = Column(
        Enum(LoanStatus, name="loan_status", native_enum=False, length=20),
        default=LoanStatus.REQUESTED,
        nullable=False,
        index=True,
    )
    requested_at = Column(DateTime(timezone=True), nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    borrowed_at = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    returned_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    due_soon_notified_at = Column(DateTime(timezone=True), nullable=True)
    renewal_count = Column(Integer, default=0, nullable=False)
    overdue_fee = Column(BigInteger, default=0, nullable=False)  # Minor currency units
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    member = relationship("Member", back_populates="loans")
    book = relationship("Book")
    copy = relationship("BookCopy", back_populates="loans", foreign_keys=[copy_id])
    requested_copy = relationship("BookCopy", foreign_keys=[requested_copy_id])

    __table_args__ = (
        CheckConstraint("renewal_count >= 0", name="chk_loan_renewal_count"),
        CheckConstraint("overdue_fee >= 0", name="chk_loan_overdue_fee"),
        Index("idx_loan_status_due", "status", "due_date"),
        Index(
            "uq_loan_open_copy",
            "copy_id",
            unique=True,
            postgresql_where=_OPEN_COPY_PREDICATE,
            sqlite_where=_OPEN_COPY_PREDICATE,
        ),
    )

    def to_dict(self):
        return {
            "id": str(self.loan_id),
            "memberId": str(self.member_id),
            "bookId": str(self.book_id),
            "copyId": str(self.copy_id) if self.copy_id else None,
            "requestedCopyId": str(self.requested_copy_id) if self.requested_copy_id else None,
            "status": self.status.value,
            "requestedAt": _iso(self.requested_at),
            "approvedAt": _iso(self.approved_at),
            "borrowedAt": _iso(self.borrowed_at),
            "dueDate": _iso(self.due_date),
            "returnedAt": _iso(self.returned_at),
            "cancelledAt": _iso(self.cancelled_at),
            "renewalCount": self.renewal_count,
            "overdueFee": self.overdue_fee,
            "rejectionReason": self.rejection_reason,
            "book": self.book.to_dict() if self.book else None,
            "bookCopy": self.copy.to_dict() if self.copy else None,  # Not 'copy', which shadows BaseModel.copy()
        }
