"""Server-side session storage."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from db.database import Base


class UserSession(Base):
    """
    One authenticated client context.

    Only the SHA-256 hash of the opaque token is stored. Timestamps are written
    by SessionManager from its clock rather than by the database, so
    inactivity and absolute expiry are computed on a single time source.
    """

    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_activity = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    mfa_verified = Column(Boolean, default=False, nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index("ix_user_sessions_user_expires", "user_id", "expires_at"),
        Index("ix_user_sessions_last_activity", "last_activity"),
    )

    def __repr__(self):
        return f"<UserSession(id={self.id}, user_id={self.user_id}, mfa_verified={self.mfa_verified})>"
