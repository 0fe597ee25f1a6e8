import logging
import warnings
from enum import Enum
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


# Default insecure secret key - MUST be changed in production
_DEFAULT_INSECURE_SECRET_KEY = "picortex-insecure-dev-secret-change-me"


class AppMode(str, Enum):
    DEV = "dev"
    PROD = "prod"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application mode - defaults to DEV for safety
    APP_MODE: AppMode = AppMode.DEV

    # Debug mode - MUST be False in production
    DEBUG: bool = False

    # Database (SQLite default for dev, use PostgreSQL in production)
    DATABASE_URL: str = "sqlite+aiosqlite:///./picortex_security.db"

    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Keys the HMAC that derives CSRF session identifiers from credentials.
    # SECURITY: MUST be set via environment variable in production.
    SECRET_KEY: str = _DEFAULT_INSECURE_SECRET_KEY

    LOG_LEVEL: str = "INFO"

    # Redis URL shared by the rate limiter and CSRF token store.
    # When unset both fall back to process-local memory.
    REDIS_URL: Optional[str] = None

    # Trusted proxy networks (comma-separated CIDR notation)
    # SECURITY: Only IPs from these networks are trusted to set X-Forwarded-For headers
    TRUSTED_PROXIES: Optional[str] = None

    # Rate limiting (requests per window, per client identifier)
    RATE_LIMIT_AUTH: int = 5
    RATE_LIMIT_API: int = 30
    RATE_LIMIT_ADMIN: int = 60
    RATE_LIMIT_PAYMENT: int = 3
    RATE_LIMIT_WEBHOOK: int = 100
    RATE_LIMIT_WINDOW: int = 60  # window in seconds

    # Sessions
    SESSION_TIMEOUT_MINUTES: int = 30  # inactivity
    SESSION_ABSOLUTE_TIMEOUT_HOURS: int = 24
    SESSION_REFRESH_THRESHOLD_MINUTES: int = 5
    SESSION_COOKIE_NAME: str = "session_token"
    SESSION_HEADER_NAME: str = "X-Session-Token"

    # CSRF
    CSRF_TOKEN_BYTES: int = 32
    CSRF_TOKEN_EXPIRY_HOURS: int = 24
    CSRF_HEADER_NAME: str = "X-CSRF-Token"
    CSRF_COOKIE_NAME: str = "csrf-token"
    # Signature-authenticated callbacks are exempt
    CSRF_EXEMPT_PATHS: str = "/api/stripe/webhook,/api/whatsapp/webhook"

    # MFA (TOTP)
    MFA_ISSUER: str = "PICORTEX AI"
    MFA_DIGITS: int = 6
    MFA_INTERVAL: int = 30
    MFA_VALID_WINDOW: int = 2
    MFA_BACKUP_CODE_COUNT: int = 10

    # Account lockout
    LOCKOUT_MAX_ATTEMPTS: int = 5
    LOCKOUT_WINDOW_MINUTES: int = 15

    # Password hashing cost (bcrypt log rounds)
    PASSWORD_HASH_ROUNDS: int = 12

    # Retention windows for maintenance cleanup
    AUDIT_RETENTION_DAYS: int = 90
    FAILED_LOGIN_RETENTION_DAYS: int = 30
    MAINTENANCE_INTERVAL_SECONDS: int = 3600

    CORS_ALLOWED_ORIGINS: str = ""  # Comma-separated list of allowed origins

    @property
    def is_prod(self) -> bool:
        return self.APP_MODE == AppMode.PROD

    @property
    def rate_limit_classes(self) -> Dict[str, Tuple[int, int]]:
        """Limiter class name -> (max requests, window seconds)."""
        window = self.RATE_LIMIT_WINDOW
        return {
            "auth": (self.RATE_LIMIT_AUTH, window),
            "api": (self.RATE_LIMIT_API, window),
            "admin": (self.RATE_LIMIT_ADMIN, window),
            "payment": (self.RATE_LIMIT_PAYMENT, window),
            "webhook": (self.RATE_LIMIT_WEBHOOK, window),
        }

    @property
    def csrf_exempt_paths(self) -> List[str]:
        return [p.strip() for p in self.CSRF_EXEMPT_PATHS.split(",") if p.strip()]

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """
        Get allowed CORS origins.

        SECURITY: never returns ["*"]; production requires CORS_ALLOWED_ORIGINS.
        """
        origins: List[str] = []
        if self.APP_MODE == AppMode.DEV:
            origins = [
                "http://localhost:3000",
                "http://127.0.0.1:3000",
            ]

        if self.CORS_ALLOWED_ORIGINS:
            origins.extend(
                o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()
            )

        if not origins and self.APP_MODE == AppMode.PROD:
            logger.warning(
                "SECURITY WARNING: No CORS_ALLOWED_ORIGINS configured in production. "
                "Cross-origin requests will be blocked."
            )
        return origins


def _validate_settings(settings: Settings) -> Settings:
    """
    Validate settings and warn/error on security issues.

    Production startup fails on the default secret or DEBUG=True.
    """
    if settings.APP_MODE == AppMode.PROD:
        if settings.SECRET_KEY == _DEFAULT_INSECURE_SECRET_KEY:
            error_msg = (
                "CRITICAL SECURITY ERROR: Default SECRET_KEY is being used in production! "
                "Set a strong, unique SECRET_KEY environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if settings.DEBUG:
            error_msg = (
                "CRITICAL SECURITY ERROR: DEBUG=True in production! "
                "Set DEBUG=False or remove the DEBUG environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if len(settings.SECRET_KEY) < 32:
            warnings.warn(
                "SECRET_KEY appears to be weak (less than 32 characters).",
                SecurityWarning,
                stacklevel=2,
            )

        if not settings.TRUSTED_PROXIES:
            logger.warning(
                "TRUSTED_PROXIES not configured in production. "
                "If behind a reverse proxy, rate limiting and audit IPs will be the proxy's."
            )

        if not settings.REDIS_URL:
            logger.warning(
                "REDIS_URL not configured in production. "
                "In-memory rate limiting and CSRF tokens are NOT shared between workers."
            )

    if settings.PASSWORD_HASH_ROUNDS < 4 or settings.PASSWORD_HASH_ROUNDS > 31:
        raise ValueError("PASSWORD_HASH_ROUNDS must be between 4 and 31")

    return settings


class SecurityWarning(UserWarning):
    """Warning for security-related configuration issues."""
    pass


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Validates on first access and raises for critical production misconfiguration.
    """
    settings = Settings()
    return _validate_settings(settings)
