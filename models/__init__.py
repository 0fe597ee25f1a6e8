from .audit_log import AdminAuditLog, SecurityAuditLog
from .failed_login import FailedLoginAttempt
from .mfa_backup_code import MfaBackupCode
from .session import UserSession
from .user import User

__all__ = [
    "AdminAuditLog",
    "FailedLoginAttempt",
    "MfaBackupCode",
    "SecurityAuditLog",
    "User",
    "UserSession",
]
