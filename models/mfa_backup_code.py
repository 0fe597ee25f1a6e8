"""Single-use MFA backup codes, stored hashed."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.database import Base


class MfaBackupCode(Base):
    """
    One row per unused backup code.

    Consumption deletes the row with a conditional DELETE; the affected row
    count tells the caller whether it won the code.
    """

    __tablename__ = "mfa_backup_codes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="backup_codes")

    __table_args__ = (
        UniqueConstraint("user_id", "code_hash", name="uq_mfa_backup_codes_user_code"),
    )

    def __repr__(self):
        return f"<MfaBackupCode(id={self.id}, user_id={self.user_id})>"
