"""
Tests for TOTP enrollment, login verification, backup codes and disabling.
"""

import asyncio
import re
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select

from models.audit_log import SecurityAuditLog
from models.mfa_backup_code import MfaBackupCode
from models.user import User
from services.audit import AuditService
from services.mfa import (
    GENERIC_CODE_ERROR,
    MfaService,
    MfaState,
    generate_backup_codes,
    hash_backup_code,
    normalize_backup_code,
)

from conftest import totp_code


def mfa_service(db, session_factory, clock) -> MfaService:
    return MfaService(db, AuditService(session_factory, clock=clock), clock=clock)


async def audit_actions(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(SecurityAuditLog.action).order_by(SecurityAuditLog.id))
        return list(result.scalars().all())


class TestBackupCodeFormat:
    def test_generated_codes(self):
        codes = generate_backup_codes(10)
        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}", c) for c in codes)

    def test_normalization(self):
        assert normalize_backup_code(" ab12-cd34 ") == "AB12CD34"
        assert hash_backup_code("ab12 cd34") == hash_backup_code("AB12-CD34")


class TestEnrollment:
    @pytest.mark.asyncio
    async def test_begin_enrollment_persists_nothing(self, db_session, session_factory, clock, user):
        service = mfa_service(db_session, session_factory, clock)
        enrollment = service.begin_enrollment(user)

        assert len(enrollment.secret) == 32
        uri = urlparse(enrollment.provisioning_uri)
        assert uri.scheme == "otpauth"
        params = parse_qs(uri.query)
        assert params["issuer"] == ["PICORTEX AI"]
        assert params["algorithm"] == ["SHA256"]
        assert "user%40example.com" in enrollment.provisioning_uri or "user@example.com" in enrollment.provisioning_uri

        refreshed = await db_session.get(User, user.id)
        assert refreshed.mfa_secret is None
        assert MfaService.state_of(refreshed) == MfaState.DISABLED

    @pytest.mark.asyncio
    async def test_full_enrollment_then_login(self, db_session, session_factory, clock, user):
        service = mfa_service(db_session, session_factory, clock)
        enrollment = service.begin_enrollment(user)

        result = await service.complete_enrollment(user.id, enrollment.secret, totp_code(enrollment.secret, clock))

        assert result.success
        assert len(result.backup_codes) == 10
        stored = await db_session.scalar(
            select(func.count(MfaBackupCode.id)).where(MfaBackupCode.user_id == user.id)
        )
        assert stored == 10
        hashes = set(
            (await db_session.execute(select(MfaBackupCode.code_hash))).scalars().all()
        )
        assert hash_backup_code(result.backup_codes[0]) in hashes
        assert result.backup_codes[0] not in hashes

        clock.advance(minutes=5)
        login = await service.verify_login(user.id, totp_code(enrollment.secret, clock))
        assert login.success
        assert SecurityAuditLog.ACTION_MFA_ENABLED in await audit_actions(session_factory)

    @pytest.mark.asyncio
    async def test_wrong_first_code_keeps_mfa_disabled(self, db_session, session_factory, clock, user):
        service = mfa_service(db_session, session_factory, clock)
        enrollment = service.begin_enrollment(user)

        result = await service.complete_enrollment(user.id, enrollment.secret, "000000")

        assert not result.success
        assert result.error == GENERIC_CODE_ERROR
        status = await service.get_status(user.id)
        assert not status.enabled
        assert status.backup_codes_remaining == 0

    @pytest.mark.asyncio
    async def test_enrollment_rejected_when_already_enabled(self, db_session, session_factory, clock, mfa_user):
        user, secret, _ = mfa_user
        service = mfa_service(db_session, session_factory, clock)
        new_secret = service.begin_enrollment(user).secret

        result = await service.complete_enrollment(user.id, new_secret, totp_code(new_secret, clock))
        assert not result.success
        assert result.error == "MFA is already enabled"

    @pytest.mark.asyncio
    async def test_invalid_secret_rejected(self, db_session, session_factory, clock, user):
        service = mfa_service(db_session, session_factory, clock)
        result = await service.complete_enrollment(user.id, "not base32 at all!", "123456")
        assert not result.success


class TestTotpVerification:
    @pytest.mark.asyncio
    async def test_drift_within_two_steps_accepted(self, db_session, session_factory, clock, mfa_user):
        user, secret, _ = mfa_user
        service = mfa_service(db_session, session_factory, clock)
        code = totp_code(secret, clock)

        clock.advance(seconds=60)
        assert (await service.verify_login(user.id, code)).success

    @pytest.mark.asyncio
    async def test_drift_beyond_window_rejected(self, db_session, session_factory, clock, mfa_user):
        user, secret, _ = mfa_user
        service = mfa_service(db_session, session_factory, clock)
        code = totp_code(secret, clock)

        clock.advance(seconds=120)
        result = await service.verify_login(user.id, code)
        assert not result.success
        assert result.error == GENERIC_CODE_ERROR

    @pytest.mark.asyncio
    async def test_malformed_codes_rejected(self, db_session, session_factory, clock, mfa_user):
        _, secret, _ = mfa_user
        service = mfa_service(db_session, session_factory, clock)
        assert not service.verify_totp(secret, "")
        assert not service.verify_totp(secret, "12345")
        assert not service.verify_totp(secret, "12345a")
        assert not service.verify_totp(secret, None)

    @pytest.mark.asyncio
    async def test_every_attempt_is_audited(self, db_session, session_factory, clock, mfa_user):
        user, secret, _ = mfa_user
        service = mfa_service(db_session, session_factory, clock)

        await service.verify_login(user.id, "000000")
        await service.verify_login(user.id, totp_code(secret, clock))

        actions = await audit_actions(session_factory)
        assert actions == [
            SecurityAuditLog.ACTION_MFA_VERIFY_FAILED,
            SecurityAuditLog.ACTION_MFA_VERIFY_SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_success_stamps_last_challenge(self, db_session, session_factory, clock, mfa_user):
        user, secret, _ = mfa_user
        service = mfa_service(db_session, session_factory, clock)
        await service.verify_login(user.id, totp_code(secret, clock))

        status = await service.get_status(user.id)
        assert status.last_challenge == clock()

    @pytest.mark.asyncio
    async def test_user_without_mfa(self, db_session, session_factory, clock, user):
        service = mfa_service(db_session, session_factory, clock)
        result = await service.verify_login(user.id, "123456")
        assert not result.success
        assert result.error == "MFA is not enabled"


class TestBackupCodes:
    @pytest.mark.asyncio
    async def test_backup_code_works_once(self, db_session, session_factory, clock, mfa_user):
        user, _, codes = mfa_user
        service = mfa_service(db_session, session_factory, clock)

        assert (await service.verify_login(user.id, codes[0], is_backup_code=True)).success
        assert not (await service.verify_login(user.id, codes[0], is_backup_code=True)).success
        assert (await service.get_status(user.id)).backup_codes_remaining == 9

    @pytest.mark.asyncio
    async def test_backup_code_accepts_loose_formatting(self, db_session, session_factory, clock, mfa_user):
        user, _, codes = mfa_user
        service = mfa_service(db_session, session_factory, clock)
        loose = codes[1].replace("-", " ").lower()
        assert (await service.verify_login(user.id, loose, is_backup_code=True)).success

    @pytest.mark.asyncio
    async def test_concurrent_use_has_one_winner(self, session_factory, clock, mfa_user):
        user, _, codes = mfa_user

        async def attempt():
            async with session_factory() as db:
                service = mfa_service(db, session_factory, clock)
                return await service.verify_login(user.id, codes[2], is_backup_code=True)

        results = await asyncio.gather(attempt(), attempt())
        assert sorted(r.success for r in results) == [False, True]

    @pytest.mark.asyncio
    async def test_another_users_code_rejected(self, db_session, session_factory, clock, mfa_user, user):
        _, _, codes = mfa_user
        service = mfa_service(db_session, session_factory, clock)
        assert not (await service.verify_login(user.id, codes[0], is_backup_code=True)).success

    @pytest.mark.asyncio
    async def test_regenerate_replaces_set(self, db_session, session_factory, clock, mfa_user):
        user, secret, old_codes = mfa_user
        service = mfa_service(db_session, session_factory, clock)

        result = await service.regenerate_backup_codes(user.id, totp_code(secret, clock))

        assert result.success
        assert len(result.backup_codes) == 10
        assert not set(result.backup_codes) & set(old_codes)
        assert not (await service.verify_login(user.id, old_codes[0], is_backup_code=True)).success
        assert (await service.verify_login(user.id, result.backup_codes[0], is_backup_code=True)).success

    @pytest.mark.asyncio
    async def test_regenerate_requires_totp(self, db_session, session_factory, clock, mfa_user):
        user, _, codes = mfa_user
        service = mfa_service(db_session, session_factory, clock)

        result = await service.regenerate_backup_codes(user.id, codes[0])
        assert not result.success
        assert (await service.get_status(user.id)).backup_codes_remaining == 10


class TestDisable:
    @pytest.mark.asyncio
    async def test_disable_clears_everything(self, db_session, session_factory, clock, mfa_user):
        user, secret, _ = mfa_user
        service = mfa_service(db_session, session_factory, clock)

        assert (await service.disable(user.id, totp_code(secret, clock))).success

        status = await service.get_status(user.id)
        assert not status.enabled
        assert status.backup_codes_remaining == 0
        assert status.enrolled_at is None
        refreshed = await db_session.get(User, user.id, populate_existing=True)
        assert refreshed.mfa_secret is None
        assert SecurityAuditLog.ACTION_MFA_DISABLED in await audit_actions(session_factory)

    @pytest.mark.asyncio
    async def test_disable_rejects_wrong_code(self, db_session, session_factory, clock, mfa_user):
        user, _, _ = mfa_user
        service = mfa_service(db_session, session_factory, clock)
        result = await service.disable(user.id, "000000")
        assert not result.success
        assert (await service.get_status(user.id)).enabled

    @pytest.mark.asyncio
    async def test_disable_rejects_backup_code(self, db_session, session_factory, clock, mfa_user):
        user, _, codes = mfa_user
        service = mfa_service(db_session, session_factory, clock)
        result = await service.disable(user.id, codes[0])
        assert not result.success
        assert (await service.get_status(user.id)).enabled

    @pytest.mark.asyncio
    async def test_disable_when_not_enabled(self, db_session, session_factory, clock, user):
        service = mfa_service(db_session, session_factory, clock)
        result = await service.disable(user.id, "123456")
        assert not result.success
        assert result.error == "MFA is not enabled"
