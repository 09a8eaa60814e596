"""MFA enrollment, recovery codes and the MFA attempt throttle."""

import re
from datetime import timedelta

import pytest

from conftest import IDENTIFIER, PASSWORD, T0, wrong_totp
from pivotauth.service.errors import ConflictError, InvalidMfaCode, RateLimitedError, Unauthorized
from pivotauth.service.totp import TotpVerifier

CODE_FORMAT = re.compile(r"^[A-HJ-NP-Z2-9]{5}-[A-HJ-NP-Z2-9]{5}$")


async def _session(auth_service, when=T0):
    return await auth_service.login(IDENTIFIER, PASSWORD, now=when)


async def _mfa_session(auth_service, secret, when):
    """Log in to an account that already has MFA enabled."""
    session = await auth_service.login(
        IDENTIFIER, PASSWORD, mfa_code=TotpVerifier.code_at(secret, when), now=when
    )
    assert session.mfa_required is False
    return session


async def _enroll(auth_service, when=T0):
    session = await _session(auth_service, when)
    setup = await auth_service.mfa_setup(session.token.access, now=when)
    verified = await auth_service.mfa_verify(
        session.token.access, TotpVerifier.code_at(setup.secret, when), now=when
    )
    return session, setup.secret, verified.codes


class TestSetup:
    async def test_setup_provisions_secret(self, auth_service, account, memory_store):
        session = await _session(auth_service)
        setup = await auth_service.mfa_setup(session.token.access, now=T0)

        assert setup.provisioning_uri.startswith("otpauth://totp/")
        assert "issuer=PivotAuth" in setup.provisioning_uri
        assert setup.secret in setup.provisioning_uri
        stored = memory_store.find_by_id(account.id)
        assert stored.mfa_enabled is False
        assert stored.mfa_secret == setup.secret

    async def test_secret_is_encrypted_at_rest(self, auth_service, account, memory_store):
        session = await _session(auth_service)
        setup = await auth_service.mfa_setup(session.token.access, now=T0)
        raw = memory_store.accounts[account.id].mfa_secret
        assert raw != setup.secret
        assert setup.secret not in raw

    async def test_repeat_setup_replaces_pending_secret(self, auth_service, account, memory_store):
        session = await _session(auth_service)
        first = await auth_service.mfa_setup(session.token.access, now=T0)
        second = await auth_service.mfa_setup(session.token.access, now=T0)
        assert first.secret != second.secret
        assert memory_store.find_by_id(account.id).mfa_secret == second.secret

        # a code for the abandoned secret no longer verifies
        with pytest.raises(InvalidMfaCode):
            await auth_service.mfa_verify(
                session.token.access, TotpVerifier.code_at(first.secret, T0), now=T0
            )

    async def test_setup_while_enabled_conflicts(self, auth_service, account):
        session, _, _ = await _enroll(auth_service)
        with pytest.raises(ConflictError):
            await auth_service.mfa_setup(session.token.access, now=T0)

    async def test_setup_requires_valid_access_token(self, auth_service, account):
        session = await _session(auth_service)
        with pytest.raises(Unauthorized):
            await auth_service.mfa_setup(session.token.refresh, now=T0)


class TestVerify:
    async def test_verify_enables_and_returns_codes_once(self, auth_service, account, memory_store, settings):
        _, _, codes = await _enroll(auth_service)

        assert len(codes) == settings.mfa_recovery_code_count == 10
        assert len(set(codes)) == len(codes)
        assert all(CODE_FORMAT.match(code) for code in codes)
        stored = memory_store.find_by_id(account.id)
        assert stored.mfa_enabled is True
        assert len(stored.mfa_recovery_codes) == 10
        # only hashes are stored
        assert not set(codes) & set(stored.mfa_recovery_codes)

    async def test_second_verify_conflicts_without_new_codes(self, auth_service, account, memory_store):
        session, secret, _ = await _enroll(auth_service)
        stored_before = memory_store.find_by_id(account.id).mfa_recovery_codes

        later = T0 + timedelta(minutes=1)
        with pytest.raises(ConflictError):
            await auth_service.mfa_verify(session.token.access, TotpVerifier.code_at(secret, later), now=later)
        assert memory_store.find_by_id(account.id).mfa_recovery_codes == stored_before

    async def test_verify_without_setup_conflicts(self, auth_service, account):
        session = await _session(auth_service)
        with pytest.raises(ConflictError):
            await auth_service.mfa_verify(session.token.access, "123456", now=T0)

    async def test_wrong_code_keeps_provisioning(self, auth_service, account, memory_store):
        session = await _session(auth_service)
        setup = await auth_service.mfa_setup(session.token.access, now=T0)
        with pytest.raises(InvalidMfaCode):
            await auth_service.mfa_verify(session.token.access, wrong_totp(setup.secret, T0), now=T0)
        stored = memory_store.find_by_id(account.id)
        assert stored.mfa_enabled is False
        assert stored.mfa_secret == setup.secret

    async def test_adjacent_step_is_accepted(self, auth_service, account):
        session = await _session(auth_service)
        setup = await auth_service.mfa_setup(session.token.access, now=T0)
        previous_step = TotpVerifier.code_at(setup.secret, T0 - timedelta(seconds=30))
        result = await auth_service.mfa_verify(session.token.access, previous_step, now=T0)
        assert result.mfa_enabled is True

    async def test_verify_revokes_existing_refresh_tokens(self, auth_service, account):
        before = await _session(auth_service, T0 - timedelta(minutes=5))
        await _enroll(auth_service)
        with pytest.raises(Unauthorized):
            await auth_service.refresh(before.token.refresh, now=T0 + timedelta(minutes=1))

    async def test_failures_do_not_count_as_login_failures(self, auth_service, account, memory_store):
        session = await _session(auth_service)
        setup = await auth_service.mfa_setup(session.token.access, now=T0)
        for _ in range(3):
            with pytest.raises(InvalidMfaCode):
                await auth_service.mfa_verify(session.token.access, wrong_totp(setup.secret, T0), now=T0)
        assert memory_store.find_by_id(account.id).failed_login_attempts == 0


class TestThrottle:
    async def test_guessing_is_rate_limited(self, auth_service, account, settings):
        session = await _session(auth_service)
        setup = await auth_service.mfa_setup(session.token.access, now=T0)
        bad = wrong_totp(setup.secret, T0)
        for _ in range(settings.mfa_rate_limit_attempts):
            with pytest.raises(InvalidMfaCode):
                await auth_service.mfa_verify(session.token.access, bad, now=T0)

        # even the right code is refused while throttled
        with pytest.raises(RateLimitedError) as excinfo:
            await auth_service.mfa_verify(
                session.token.access, TotpVerifier.code_at(setup.secret, T0), now=T0
            )
        assert excinfo.value.status_code == 429
        assert excinfo.value.detail["retry_after_seconds"] == settings.mfa_rate_limit_window_seconds

        after = T0 + timedelta(seconds=settings.mfa_rate_limit_window_seconds)
        result = await auth_service.mfa_verify(
            session.token.access, TotpVerifier.code_at(setup.secret, after), now=after
        )
        assert result.mfa_enabled is True


class TestRecoveryCodes:
    async def test_regenerate_yields_disjoint_sets(self, auth_service, account):
        session, secret, initial = await _enroll(auth_service)
        fresh = await _mfa_session(auth_service, secret, T0 + timedelta(minutes=1))
        when = T0 + timedelta(minutes=2)
        code = TotpVerifier.code_at(secret, when)

        first = await auth_service.mfa_regenerate_recovery_codes(fresh.token.access, code, now=when)
        second = await auth_service.mfa_regenerate_recovery_codes(fresh.token.access, code, now=when)

        assert len(first.codes) == len(second.codes) == 10
        assert not set(first.codes) & set(second.codes)
        assert not set(initial) & set(first.codes)
        assert first.mfa_enabled is True

    async def test_regenerate_requires_totp(self, auth_service, account):
        session, secret, _ = await _enroll(auth_service)
        with pytest.raises(InvalidMfaCode):
            await auth_service.mfa_regenerate_recovery_codes(
                session.token.access, wrong_totp(secret, T0), now=T0
            )

    async def test_regenerate_requires_enabled_mfa(self, auth_service, account):
        session = await _session(auth_service)
        with pytest.raises(ConflictError):
            await auth_service.mfa_regenerate_recovery_codes(session.token.access, "123456", now=T0)

    async def test_regenerate_invalidates_previous_codes(self, auth_service, account):
        session, secret, initial = await _enroll(auth_service)
        when = T0 + timedelta(minutes=1)
        await auth_service.mfa_regenerate_recovery_codes(
            session.token.access, TotpVerifier.code_at(secret, when), now=when
        )
        with pytest.raises(InvalidMfaCode):
            await auth_service.login_with_recovery_code(IDENTIFIER, PASSWORD, initial[0], now=when)

    async def test_regenerate_bumps_pivot(self, auth_service, account):
        _, secret, _ = await _enroll(auth_service)
        session = await _mfa_session(auth_service, secret, T0 + timedelta(minutes=1))
        when = T0 + timedelta(minutes=2)
        await auth_service.mfa_regenerate_recovery_codes(
            session.token.access, TotpVerifier.code_at(secret, when), now=when
        )
        with pytest.raises(Unauthorized):
            await auth_service.refresh(session.token.refresh, now=when + timedelta(seconds=1))

    async def test_code_is_single_use(self, auth_service, account, memory_store):
        _, _, codes = await _enroll(auth_service)
        when = T0 + timedelta(minutes=1)

        result = await auth_service.login_with_recovery_code(IDENTIFIER, PASSWORD, codes[3], now=when)
        assert result.token is not None
        assert len(memory_store.find_by_id(account.id).mfa_recovery_codes) == 9

        with pytest.raises(InvalidMfaCode):
            await auth_service.login_with_recovery_code(IDENTIFIER, PASSWORD, codes[3], now=when)
        assert len(memory_store.find_by_id(account.id).mfa_recovery_codes) == 9

    async def test_code_matching_ignores_case_and_separators(self, auth_service, account):
        _, _, codes = await _enroll(auth_service)
        sloppy = codes[0].replace("-", " ").lower()
        consumed = await auth_service.mfa.consume_recovery_code(account.id, sloppy, T0)
        assert consumed is True

    async def test_consume_removes_exactly_one_entry(self, auth_service, account, memory_store):
        _, _, codes = await _enroll(auth_service)
        before = memory_store.find_by_id(account.id).mfa_recovery_codes
        assert await auth_service.mfa.consume_recovery_code(account.id, codes[5], T0)
        after = memory_store.find_by_id(account.id).mfa_recovery_codes
        assert after == before[:5] + before[6:]

    async def test_unknown_code_is_rejected(self, auth_service, account):
        await _enroll(auth_service)
        assert await auth_service.mfa.consume_recovery_code(account.id, "AAAAA-AAAAA", T0) is False
        assert await auth_service.mfa.consume_recovery_code(account.id, "", T0) is False

    async def test_recovery_login_needs_mfa_enabled(self, auth_service, account):
        with pytest.raises(InvalidMfaCode):
            await auth_service.login_with_recovery_code(IDENTIFIER, PASSWORD, "AAAAA-AAAAA", now=T0)


class TestDisable:
    async def test_disable_clears_state_and_bumps_pivot(self, auth_service, account, memory_store):
        _, secret, _ = await _enroll(auth_service)
        session = await _mfa_session(auth_service, secret, T0 + timedelta(minutes=1))
        when = T0 + timedelta(minutes=2)

        result = await auth_service.mfa_disable(
            session.token.access, TotpVerifier.code_at(secret, when), now=when
        )

        assert result.mfa_enabled is False
        stored = memory_store.find_by_id(account.id)
        assert stored.mfa_enabled is False
        assert stored.mfa_secret is None
        assert stored.mfa_recovery_codes == []
        with pytest.raises(Unauthorized):
            await auth_service.refresh(session.token.refresh, now=when + timedelta(seconds=1))

    async def test_disable_when_not_enabled_conflicts(self, auth_service, account):
        session = await _session(auth_service)
        with pytest.raises(ConflictError):
            await auth_service.mfa_disable(session.token.access, "123456", now=T0)
