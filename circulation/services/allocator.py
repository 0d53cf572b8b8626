"""Copy selection and reservation.

Reservation is a compare-and-set UPDATE run inside the caller's transaction:
the copy only flips to ON_LOAN if it is still AVAILABLE at write time, so two
approvals racing for one copy cannot both win.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from circulation.models.book import BookCopy
from circulation.models.enums import CopyStatus
from circulation.services.errors import NotFound, NoCopyAvailable, CopyUnavailable

logger = logging.getLogger(__name__)


def get_copy(db: Session, copy_id: int) -> BookCopy:
    copy = db.get(BookCopy, copy_id)
    if copy is None:
        logger.warning(f"Copy not found: {copy_id}")
        raise NotFound("Book copy", copy_id)
    return copy


def _available_copies(db: Session, book_id: int):
    return (
        db.query(BookCopy)
        .filter(BookCopy.book_id == book_id, BookCopy.status == CopyStatus.AVAILABLE)
        .order_by(BookCopy.copy_id.asc())
    )


def select_available_copy(db: Session, book_id: int, copy_id: Optional[int] = None) -> BookCopy:
    """Pick the copy a loan would receive, without reserving it.

    With ``copy_id`` the given copy is validated instead of choosing one."""
    if copy_id is not None:
        copy = get_copy(db, copy_id)
        _check_copy(copy, book_id)
        return copy

    copy = _available_copies(db, book_id).first()
    if copy is None:
        logger.warning(f"No available copies for book: {book_id}")
        raise NoCopyAvailable(book_id)
    return copy


def _check_copy(copy: BookCopy, book_id: int):
    if copy.book_id != book_id:
        logger.warning(f"Copy {copy.copy_id} does not belong to book {book_id}")
        raise CopyUnavailable(copy.copy_id, f"copy belongs to book {copy.book_id}, not {book_id}")
    if copy.status != CopyStatus.AVAILABLE:
        logger.warning(f"Copy not available: {copy.copy_id} (status: {copy.status.value})")
        raise CopyUnavailable(copy.copy_id, f"copy status is {copy.status.value}")


def _compare_and_set(db: Session, copy_id: int, expected: CopyStatus, new: CopyStatus) -> bool:
    updated = (
        db.query(BookCopy)
        .filter(BookCopy.copy_id == copy_id, BookCopy.status == expected)
        .update({"status": new}, synchronize_session="evaluate")
    )
    return updated == 1


def reserve_copy(db: Session, book_id: int, copy_id: Optional[int] = None) -> BookCopy:
    """Reserve a specific copy, or the lowest-id available copy of the book.

    Must run inside the transaction that moves the loan to APPROVED."""
    if copy_id is not None:
        copy = get_copy(db, copy_id)
        _check_copy(copy, book_id)
        if not _compare_and_set(db, copy_id, CopyStatus.AVAILABLE, CopyStatus.ON_LOAN):
            logger.warning(f"Copy {copy_id} was reserved by a concurrent loan")
            raise CopyUnavailable(copy_id, "copy is already on loan to another member")
        db.refresh(copy)
        return copy

    candidate_ids = [copy.copy_id for copy in _available_copies(db, book_id).all()]
    for candidate_id in candidate_ids:
        if _compare_and_set(db, candidate_id, CopyStatus.AVAILABLE, CopyStatus.ON_LOAN):
            copy = db.get(BookCopy, candidate_id)
            db.refresh(copy)
            return copy
        logger.info(f"Copy {candidate_id} taken concurrently, trying next candidate")

    logger.warning(f"No available copies for book: {book_id}")
    raise NoCopyAvailable(book_id)


def release_copy(db: Session, copy_id: Optional[int]):
    """Return a reserved copy to the available pool."""
    if copy_id is None:
        return
    if not _compare_and_set(db, copy_id, CopyStatus.ON_LOAN, CopyStatus.AVAILABLE):
        # Catalog marked it LOST/DAMAGED meanwhile; leave that status alone
        status = db.query(BookCopy.status).filter(BookCopy.copy_id == copy_id).scalar()
        logger.warning(f"Copy {copy_id} not released: status is {status.value if status else 'MISSING'}")
