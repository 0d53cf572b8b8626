from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from circulation.database import Base
from circulation.models.enums import BookStatus, CopyStatus

class Book(Base):
    __tablename__ = "book"

    book_id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(
        Enum(BookStatus, name="book_status", native_enum=False, length=20),
        default=BookStatus.ACTIVE,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    copies = relationship("BookCopy", back_populates="book", order_by="BookCopy.copy_id")

    def to_dict(self):
        return {
            "id": str(self.book_id),
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "status": self.status.value,
        }

class BookCopy(Base):
    __tablename__ = "book_copy"

    copy_id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.book_id", ondelete="RESTRICT"), nullable=False, index=True)
    code = Column(String(100), unique=True, nullable=False)  # Shelf code printed on the copy
    status = Column(
        Enum(CopyStatus, name="copy_status", native_enum=False, length=20),
        default=CopyStatus.AVAILABLE,
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    book = relationship("Book", back_populates="copies")
    loans = relationship("Loan", back_populates="copy", foreign_keys="Loan.copy_id")

    def to_dict(self):
        return {
            "id": str(self.copy_id),
            "bookId": str(self.book_id),
            "code": self.code,
            "status": self.status.value,
        }
