"""Append-only failed authentication attempts used for lockout decisions."""

from sqlalchemy import Column, DateTime, Index, Integer, String

from db.database import Base


class FailedLoginAttempt(Base):
    __tablename__ = "failed_login_attempts"

    id = Column(Integer, primary_key=True, index=True)
    # Identity claim as submitted; may not correspond to an existing user
    email = Column(String(320), nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    attempt_type = Column(String(50), nullable=False)
    attempt_time = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_failed_login_email_time", "email", "attempt_time"),
    )

    TYPE_INVALID_CREDENTIALS = "invalid_credentials"
    TYPE_ACCOUNT_LOCKED = "account_locked"
    TYPE_ACCOUNT_DISABLED = "account_disabled"
    TYPE_TOO_MANY_ATTEMPTS = "too_many_attempts"

    def __repr__(self):
        return f"<FailedLoginAttempt(id={self.id}, email='{self.email}', type='{self.attempt_type}')>"
