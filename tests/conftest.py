"""
Test fixtures and configuration for pytest.

Settings are read once per process, so the environment is prepared before
any application module is imported.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, List, Optional

os.environ["APP_MODE"] = "dev"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_picortex.db"
os.environ["PASSWORD_HASH_ROUNDS"] = "4"
os.environ["SECRET_KEY"] = "test-secret-key-with-enough-length-0123456789"
os.environ.pop("REDIS_URL", None)
os.environ.pop("TRUSTED_PROXIES", None)

import pyotp
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db.database import Base, enable_sqlite_foreign_keys
from middleware.rate_limit import InMemoryRateLimiterBackend, RateLimiter
from models.mfa_backup_code import MfaBackupCode
from models.user import User
from services.csrf import CsrfService, InMemoryCsrfTokenStore
from services.mfa import generate_backup_codes, hash_backup_code
from services.password import hash_password
from services.registry import SecurityServices, configure_services

TEST_PASSWORD = "Blue-Harbor-Kite-42"


class FakeClock:
    """Settable clock: call for an aware datetime, .time() for epoch seconds."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh file-backed SQLite database per test."""
    import models  # noqa: F401  (registers tables)

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def services(session_factory, clock) -> SecurityServices:
    """In-memory limiter and CSRF store on the fake clock, installed process-wide."""
    registry = SecurityServices(
        session_factory=session_factory,
        rate_limiter=RateLimiter(backend=InMemoryRateLimiterBackend(clock=clock.time), clock=clock.time),
        csrf=CsrfService(store=InMemoryCsrfTokenStore(clock=clock.time), clock=clock.time),
        clock=clock,
    )
    configure_services(registry)
    yield registry
    configure_services(None)


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    from main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ============== Data helpers ==============


async def create_user(
    session_factory: async_sessionmaker,
    email: str = "user@example.com",
    password: str = TEST_PASSWORD,
    is_admin: bool = False,
    is_active: bool = True,
    mfa_secret: Optional[str] = None,
    backup_codes: Optional[List[str]] = None,
) -> User:
    async with session_factory() as db:
        user = User(
            email=email,
            hashed_password=hash_password(password),
            is_admin=is_admin,
            is_active=is_active,
            mfa_enabled=mfa_secret is not None,
            mfa_secret=mfa_secret,
        )
        db.add(user)
        await db.flush()
        for code in backup_codes or []:
            db.add(MfaBackupCode(user_id=user.id, code_hash=hash_backup_code(code)))
        await db.commit()
        await db.refresh(user)
        return user


@pytest_asyncio.fixture
async def user(session_factory) -> User:
    return await create_user(session_factory)


@pytest_asyncio.fixture
async def admin_user(session_factory) -> User:
    return await create_user(session_factory, email="admin@example.com", is_admin=True)


@pytest_asyncio.fixture
async def mfa_user(session_factory):
    """User with MFA enabled; returns (user, secret, backup_codes)."""
    secret = pyotp.random_base32(length=32)
    codes = generate_backup_codes(10)
    user = await create_user(
        session_factory,
        email="mfa@example.com",
        mfa_secret=secret,
        backup_codes=codes,
    )
    return user, secret, codes


def totp_code(secret: str, clock: FakeClock) -> str:
    import hashlib

    return pyotp.TOTP(secret, digits=6, digest=hashlib.sha256, interval=30).at(clock())


# ============== HTTP helpers ==============


def auth_headers(session_token: Optional[str] = None, csrf_token: Optional[str] = None) -> dict:
    headers = {}
    if session_token:
        headers["X-Session-Token"] = session_token
    if csrf_token:
        headers["X-CSRF-Token"] = csrf_token
    return headers


async def fetch_csrf_token(client: AsyncClient, session_token: Optional[str] = None) -> str:
    response = await client.get("/api/csrf-token", headers=auth_headers(session_token))
    assert response.status_code == 200
    return response.json()["token"]


async def login(client: AsyncClient, email: str, password: str = TEST_PASSWORD):
    """
    Log in over HTTP and return the response.

    Cookies are cleared afterwards so tests drive the session explicitly
    through the X-Session-Token header.
    """
    csrf_token = await fetch_csrf_token(client)
    response = await client.post(
        "/api/auth/login",
        json={"email": email, "password": password},
        headers=auth_headers(csrf_token=csrf_token),
    )
    client.cookies.clear()
    return response
