from .admin import AdminUserCreate, AdminUserCreated, SessionsRevoked
from .auth import (
    CsrfTokenResponse,
    LoginRequest,
    LoginResponse,
    PasswordStrength,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    SessionInfo,
    SessionListResponse,
    UserResponse,
)
from .common import MessageResponse, PaginatedResponse
from .mfa import (
    BackupCodesResponse,
    MfaCodeRequest,
    MfaEnableRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
)

__all__ = [
    "AdminUserCreate",
    "AdminUserCreated",
    "BackupCodesResponse",
    "CsrfTokenResponse",
    "LoginRequest",
    "LoginResponse",
    "MessageResponse",
    "MfaCodeRequest",
    "MfaEnableRequest",
    "MfaSetupResponse",
    "MfaStatusResponse",
    "MfaVerifyRequest",
    "PaginatedResponse",
    "PasswordStrength",
    "RefreshResponse",
    "RegisterRequest",
    "RegisterResponse",
    "SessionInfo",
    "SessionListResponse",
    "SessionsRevoked",
    "UserResponse",
]
