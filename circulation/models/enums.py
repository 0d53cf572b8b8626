import enum


class MembershipStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class BookStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class CopyStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    ON_LOAN = "ON_LOAN"
    LOST = "LOST"
    DAMAGED = "DAMAGED"


class LoanStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class Currency(str, enum.Enum):
    IDR = "IDR"
    USD = "USD"
    EUR = "EUR"


# Loans counted against a member's concurrent-loan limit
OPEN_LOAN_STATUSES = (
    LoanStatus.REQUESTED,
    LoanStatus.APPROVED,
    LoanStatus.ACTIVE,
    LoanStatus.OVERDUE,
)

# Loans that hold a copy
COPY_HOLDING_STATUSES = (
    LoanStatus.APPROVED,
    LoanStatus.ACTIVE,
    LoanStatus.OVERDUE,
)
