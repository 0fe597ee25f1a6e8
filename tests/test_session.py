"""
Tests for the session lifecycle: creation, validation, timeouts, rotation
and revocation.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from models.audit_log import SecurityAuditLog
from models.session import UserSession
from services.audit import AuditService, RequestInfo
from services.session import SessionManager, hash_session_token


def manager(db, session_factory, clock) -> SessionManager:
    return SessionManager(db, audit=AuditService(session_factory, clock=clock), clock=clock)


class TestCreate:
    @pytest.mark.asyncio
    async def test_only_the_hash_is_stored(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id, RequestInfo(ip_address="198.51.100.4", user_agent="pytest"))

        assert len(issued.token) == 64
        row = (await db_session.execute(select(UserSession))).scalar_one()
        assert row.token_hash == hash_session_token(issued.token)
        assert row.token_hash != issued.token
        assert row.ip_address == "198.51.100.4"
        assert row.mfa_verified is False

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        tokens = {(await sessions.create(user.id)).token for _ in range(5)}
        assert len(tokens) == 5


class TestValidate:
    @pytest.mark.asyncio
    async def test_fresh_session_is_valid(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id, mfa_verified=True)

        result = await sessions.validate(issued.token)

        assert result.valid
        assert result.user_id == user.id
        assert result.mfa_verified
        assert not result.needs_refresh
        assert result.remaining_minutes == 24 * 60

    @pytest.mark.asyncio
    async def test_missing_and_unknown_tokens(self, db_session, session_factory, clock):
        sessions = manager(db_session, session_factory, clock)
        assert (await sessions.validate(None)).reason == SessionManager.REASON_MISSING
        assert (await sessions.validate("f" * 64)).reason == SessionManager.REASON_NOT_FOUND

    @pytest.mark.asyncio
    async def test_idle_just_under_timeout_is_valid(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id)

        clock.advance(minutes=29, seconds=59)
        assert (await sessions.validate(issued.token)).valid

    @pytest.mark.asyncio
    async def test_idle_exactly_timeout_is_valid(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id)

        clock.advance(minutes=30)
        assert (await sessions.validate(issued.token)).valid

    @pytest.mark.asyncio
    async def test_idle_past_timeout_expires_and_deletes(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id)

        clock.advance(minutes=30, seconds=1)
        result = await sessions.validate(issued.token)

        assert not result.valid
        assert result.reason == SessionManager.REASON_EXPIRED_INACTIVITY
        assert (await db_session.execute(select(UserSession))).scalar_one_or_none() is None
        async with session_factory() as db:
            event = (await db.execute(select(SecurityAuditLog))).scalar_one()
        assert event.action == SecurityAuditLog.ACTION_SESSION_EXPIRED
        assert event.user_id == user.id

        # Deleted: later lookups do not resurrect it
        assert (await sessions.validate(issued.token)).reason == SessionManager.REASON_NOT_FOUND

    @pytest.mark.asyncio
    async def test_activity_extends_inactivity_window(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id)

        for _ in range(4):
            clock.advance(minutes=25)
            assert (await sessions.validate(issued.token)).valid

    @pytest.mark.asyncio
    async def test_absolute_ceiling_despite_activity(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id)

        for _ in range(72):
            clock.advance(minutes=20)
            assert (await sessions.validate(issued.token)).valid

        clock.advance(minutes=1)
        result = await sessions.validate(issued.token)
        assert not result.valid
        assert result.reason == SessionManager.REASON_EXPIRED_ABSOLUTE

    @pytest.mark.asyncio
    async def test_needs_refresh_near_ceiling(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id)

        for _ in range(71):
            clock.advance(minutes=20)
            await sessions.validate(issued.token)
        clock.advance(minutes=16)  # 4 minutes left

        result = await sessions.validate(issued.token)
        assert result.valid
        assert result.needs_refresh
        assert result.remaining_minutes == 4


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotation_invalidates_old_token(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id, mfa_verified=True)

        # Two hours of steady activity keeps the session inside the idle window
        for _ in range(6):
            clock.advance(minutes=20)
            assert (await sessions.validate(issued.token)).valid
        refreshed = await sessions.refresh(issued.token)

        assert refreshed.success
        assert refreshed.token != issued.token
        assert refreshed.expires_at == clock() + timedelta(hours=24)
        assert not (await sessions.validate(issued.token)).valid

        new_state = await sessions.validate(refreshed.token)
        assert new_state.valid
        assert new_state.mfa_verified
        assert new_state.remaining_minutes == 24 * 60

    @pytest.mark.asyncio
    async def test_refresh_of_expired_session_fails(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id)

        clock.advance(minutes=31)
        refreshed = await sessions.refresh(issued.token)
        assert not refreshed.success
        assert refreshed.reason == SessionManager.REASON_EXPIRED_INACTIVITY

    @pytest.mark.asyncio
    async def test_concurrent_refresh_has_one_winner(self, session_factory, clock, user):
        async with session_factory() as db:
            issued = await manager(db, session_factory, clock).create(user.id)

        async def rotate():
            async with session_factory() as db:
                return await manager(db, session_factory, clock).refresh(issued.token)

        results = await asyncio.gather(rotate(), rotate())
        assert sum(1 for r in results if r.success) == 1


class TestRevocation:
    @pytest.mark.asyncio
    async def test_destroy(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id)

        assert await sessions.destroy(issued.token)
        assert not await sessions.destroy(issued.token)
        assert not (await sessions.validate(issued.token)).valid

    @pytest.mark.asyncio
    async def test_destroy_all(self, db_session, session_factory, clock, user, admin_user):
        sessions = manager(db_session, session_factory, clock)
        mine = [await sessions.create(user.id) for _ in range(3)]
        theirs = await sessions.create(admin_user.id)

        assert await sessions.destroy_all(user.id) == 3
        for issued in mine:
            assert not (await sessions.validate(issued.token)).valid
        assert (await sessions.validate(theirs.token)).valid

    @pytest.mark.asyncio
    async def test_update_mfa_flag(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        issued = await sessions.create(user.id, mfa_verified=False)

        assert await sessions.update_mfa_flag(issued.token, True)
        assert (await sessions.validate(issued.token)).mfa_verified
        assert not await sessions.update_mfa_flag("0" * 64, True)

    @pytest.mark.asyncio
    async def test_list_and_cleanup(self, db_session, session_factory, clock, user):
        sessions = manager(db_session, session_factory, clock)
        stale = await sessions.create(user.id)
        clock.advance(minutes=40)
        live = await sessions.create(user.id)

        listed = await sessions.list_user_sessions(user.id)
        assert [s.token_hash for s in listed] == [hash_session_token(live.token)]

        assert await sessions.cleanup_expired() == 1
        assert not (await sessions.validate(stale.token)).valid
        assert (await sessions.validate(live.token)).valid
