"""Refresh rotation and pivot-based revocation."""

from datetime import timedelta

import pytest

from conftest import IDENTIFIER, PASSWORD, T0
from pivotauth.service.auth import AuthService
from pivotauth.service.errors import AccountNotUsable, Unauthorized


async def _login(auth_service, when=T0):
    return await auth_service.login(IDENTIFIER, PASSWORD, now=when)


class TestRotation:
    async def test_refresh_has_login_shape_and_later_expiry(self, auth_service, account):
        first = await _login(auth_service)
        rotated = await auth_service.refresh(first.token.refresh, now=T0 + timedelta(seconds=1))

        assert set(rotated.model_dump()) == set(first.model_dump())
        assert rotated.id == first.id
        assert rotated.role == first.role
        assert rotated.profile == first.profile
        assert rotated.token.expired_at > first.token.expired_at
        assert rotated.token.refreshable_until > first.token.refreshable_until
        assert rotated.token.refresh != first.token.refresh

    async def test_rotation_does_not_revoke_other_devices(self, auth_service, account, memory_store):
        laptop = await _login(auth_service)
        phone = await _login(auth_service, T0 + timedelta(seconds=1))

        await auth_service.refresh(laptop.token.refresh, now=T0 + timedelta(minutes=1))
        await auth_service.refresh(phone.token.refresh, now=T0 + timedelta(minutes=1))
        # the presented token is not blacklisted either; only the pivot revokes
        await auth_service.refresh(laptop.token.refresh, now=T0 + timedelta(minutes=2))
        assert memory_store.find_by_id(account.id).version == account.version

    async def test_refresh_is_accepted_until_its_own_expiry(self, auth_service, account):
        first = await _login(auth_service)
        near_end = first.token.refreshable_until - timedelta(minutes=1)
        assert (await auth_service.refresh(first.token.refresh, now=near_end)).token


class TestRejection:
    async def test_access_token_is_refused(self, auth_service, account):
        first = await _login(auth_service)
        with pytest.raises(Unauthorized):
            await auth_service.refresh(first.token.access, now=T0)

    async def test_refresh_token_cannot_authenticate(self, auth_service, account):
        first = await _login(auth_service)
        with pytest.raises(Unauthorized):
            await auth_service.authenticate(first.token.refresh, now=T0)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c", "a.b"])
    async def test_malformed_tokens(self, auth_service, account, token):
        with pytest.raises(Unauthorized) as excinfo:
            await auth_service.refresh(token, now=T0)
        assert excinfo.value.message == "invalid token"

    @pytest.mark.parametrize("signature", ["\u00e9\u00e9", "\udcff"])
    async def test_non_ascii_signature(self, auth_service, account, signature):
        first = await _login(auth_service)
        header, payload, _ = first.token.refresh.split(".")
        with pytest.raises(Unauthorized):
            await auth_service.refresh(f"{header}.{payload}.{signature}", now=T0)
        with pytest.raises(Unauthorized):
            await auth_service.authenticate(f"{header}.{payload}.{signature}", now=T0)

    async def test_tampered_payload(self, auth_service, account):
        first = await _login(auth_service)
        header, payload, signature = first.token.refresh.split(".")
        forged = ".".join([header, payload[:-2] + ("A" if payload[-2] != "A" else "B") + payload[-1], signature])
        with pytest.raises(Unauthorized):
            await auth_service.refresh(forged, now=T0)

    async def test_expired_refresh(self, auth_service, account):
        first = await _login(auth_service)
        with pytest.raises(Unauthorized):
            await auth_service.refresh(first.token.refresh, now=first.token.refreshable_until + timedelta(minutes=5))

    async def test_other_role_engine_refuses(self, auth_service, account, memory_store, settings, fast_hasher):
        first = await _login(auth_service)
        admin = AuthService(memory_store, settings, role="administrator", hasher=fast_hasher)
        with pytest.raises(Unauthorized):
            await admin.refresh(first.token.refresh, now=T0)

    async def test_role_drift_is_refused(self, auth_service, account, memory_store):
        first = await _login(auth_service)
        memory_store.update(account.id, {"role": "administrator"})
        with pytest.raises(Unauthorized):
            await auth_service.refresh(first.token.refresh, now=T0 + timedelta(seconds=5))

    async def test_deleted_account(self, auth_service, account, memory_store):
        first = await _login(auth_service)
        memory_store.update(account.id, {"deleted_at": T0})
        with pytest.raises(Unauthorized):
            await auth_service.refresh(first.token.refresh, now=T0 + timedelta(seconds=5))

    async def test_suspended_account(self, auth_service, account, memory_store):
        first = await _login(auth_service)
        memory_store.update(account.id, {"status": "suspended"})
        with pytest.raises(AccountNotUsable):
            await auth_service.refresh(first.token.refresh, now=T0 + timedelta(seconds=5))


class TestPivotRevocation:
    async def test_logout_all_revokes_earlier_tokens(self, auth_service, account):
        old = await _login(auth_service)
        await auth_service.logout_all(old.token.access, now=T0 + timedelta(minutes=10))

        with pytest.raises(Unauthorized) as excinfo:
            await auth_service.refresh(old.token.refresh, now=T0 + timedelta(minutes=11))
        assert excinfo.value.message == "token revoked"

        fresh = await _login(auth_service, T0 + timedelta(minutes=12))
        assert (await auth_service.refresh(fresh.token.refresh, now=T0 + timedelta(minutes=13))).token

    async def test_pivot_equal_to_issue_time_is_honoured(self, auth_service, account, memory_store):
        issued = await _login(auth_service)
        memory_store.update(account.id, {"security_pivot": T0})
        assert (await auth_service.refresh(issued.token.refresh, now=T0 + timedelta(seconds=1))).token

        memory_store.update(account.id, {"security_pivot": T0 + timedelta(microseconds=1)})
        with pytest.raises(Unauthorized):
            await auth_service.refresh(issued.token.refresh, now=T0 + timedelta(seconds=2))

    async def test_pivot_never_moves_backwards(self, auth_service, account, memory_store):
        session = await _login(auth_service)
        later = T0 + timedelta(hours=2)
        memory_store.update(account.id, {"security_pivot": later})
        await auth_service.logout_all(session.token.access, now=T0 + timedelta(minutes=1))
        assert memory_store.find_by_id(account.id).security_pivot == later

    async def test_access_tokens_outlive_pivot_until_expiry(self, auth_service, account):
        old = await _login(auth_service)
        await auth_service.logout_all(old.token.access, now=T0 + timedelta(minutes=1))
        ctx = await auth_service.authenticate(old.token.access, now=T0 + timedelta(minutes=2))
        assert ctx.account_id == account.id
