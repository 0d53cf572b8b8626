from sqlalchemy import Column, String, DateTime, Integer, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from circulation.database import Base
from circulation.models.enums import MembershipStatus

class Member(Base):
    """Read model of the member directory; the engine only reads status."""
    __tablename__ = "member"

    member_id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    status = Column(
        Enum(MembershipStatus, name="membership_status", native_enum=False, length=20),
        default=MembershipStatus.PENDING,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    loans = relationship("Loan", back_populates="member")

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE

    def to_dict(self):
        return {
            "id": str(self.member_id),
            "name": f"{self.first_name} {self.last_name}",
            "email": self.email,
            "status": self.status.value,
        }
