"""Process-wide security collaborators.

The guards reach their stores through this registry instead of module
globals so tests can swap in in-memory stores, a throwaway database and a
fake clock with configure_services().
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from middleware.rate_limit import RateLimiter, get_rate_limiter
from services.audit import AuditService
from services.clock import Clock, utc_now
from services.csrf import CsrfService
from services.session import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class SecurityServices:
    session_factory: async_sessionmaker
    rate_limiter: RateLimiter
    csrf: CsrfService
    clock: Clock = field(default=utc_now)

    def audit(self) -> AuditService:
        return AuditService(self.session_factory, clock=self.clock)

    def sessions(self, db: AsyncSession) -> SessionManager:
        return SessionManager(db, audit=self.audit(), clock=self.clock)


_services: Optional[SecurityServices] = None


def get_services() -> SecurityServices:
    global _services
    if _services is None:
        from db.database import AsyncSessionLocal

        _services = SecurityServices(
            session_factory=AsyncSessionLocal,
            rate_limiter=get_rate_limiter(),
            csrf=CsrfService(),
        )
    return _services


def configure_services(services: Optional[SecurityServices]) -> None:
    """Replace the registry (None resets to lazily built defaults)."""
    global _services
    _services = services
