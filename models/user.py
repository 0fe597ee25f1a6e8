from db.database import Base
from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func


class User(Base):
    """
    Identity record consumed by the security services.

    Admin and MFA state are typed columns. The TOTP secret is never serialized
    back to clients once enrollment completes.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), nullable=False, unique=True, index=True)
    # bcrypt hash, see services.password.hash_password
    hashed_password = Column(String(128), nullable=False)
    name = Column(String(200), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    mfa_enabled = Column(Boolean, default=False, nullable=False)
    mfa_secret = Column(String(64), nullable=True)  # base32
    mfa_enrolled_at = Column(DateTime(timezone=True), nullable=True)
    last_mfa_challenge = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_login = Column(DateTime(timezone=True), nullable=True)

    sessions = relationship(
        "UserSession", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    backup_codes = relationship(
        "MfaBackupCode", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', admin={self.is_admin}, mfa={self.mfa_enabled})>"
