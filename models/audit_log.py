"""Security audit log models for event tracking."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from db.database import Base


class SecurityAuditLog(Base):
    """
    Stores security-relevant events: logins, MFA challenges, session
    expiry, suspicious activity and data access.

    Rows are append-only. user_id is nullable because failed logins and
    anonymous probes have no resolved identity.
    """

    __tablename__ = "security_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    action = Column(String(50), nullable=False, index=True)
    resource = Column(String(100), nullable=False)
    resource_id = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(String(500), nullable=True)
    request_method = Column(String(10), nullable=True)
    request_path = Column(String(500), nullable=True)
    status_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)  # Additional context as JSON
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    user = relationship("User")

    __table_args__ = (
        Index("ix_security_audit_user_action", "user_id", "action"),
    )

    ACTION_REGISTER = "register"
    ACTION_LOGIN = "login"
    ACTION_LOGIN_FAILED = "login_failed"
    ACTION_LOGOUT = "logout"
    ACTION_LOGOUT_ALL = "logout_all"
    ACTION_SESSION_REFRESH = "session_refresh"
    ACTION_SESSION_EXPIRED = "session_expired"
    ACTION_MFA_ENABLED = "mfa_enabled"
    ACTION_MFA_DISABLED = "mfa_disabled"
    ACTION_MFA_VERIFY_SUCCESS = "mfa_verify_success"
    ACTION_MFA_VERIFY_FAILED = "mfa_verify_failed"
    ACTION_MFA_BACKUP_CODES_REGENERATED = "mfa_backup_codes_regenerated"
    ACTION_SUSPICIOUS_ACTIVITY = "suspicious_activity"
    ACTION_ADMIN_REQUEST = "admin_request"
    ACTION_REQUEST = "request"

    def __repr__(self):
        return f"<SecurityAuditLog(id={self.id}, user_id={self.user_id}, action='{self.action}')>"


class AdminAuditLog(Base):
    """One row per privileged action taken by an administrator."""

    __tablename__ = "admin_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    admin_user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    action = Column(String(100), nullable=False, index=True)
    resource = Column(String(100), nullable=False)
    details_json = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<AdminAuditLog(id={self.id}, admin_user_id={self.admin_user_id}, action='{self.action}')>"
