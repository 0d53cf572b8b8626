from .enums import MembershipStatus, BookStatus, CopyStatus, LoanStatus, Currency
from .member import Member
from .book import Book, BookCopy
from .loan import Loan
from .policy import Policy

__all__ = [
    "MembershipStatus",
    "BookStatus",
    "CopyStatus",
    "LoanStatus",
    "Currency",
    "Member",
    "Book",
    "BookCopy",
    "Loan",
    "Policy",
]
