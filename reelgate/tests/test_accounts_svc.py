"""Account, settings, and audit services."""

from __future__ import annotations

import pytest

from reelgate.services import accounts, audit, mfa, settings_svc
from reelgate.tests.helpers import FAST_PARAMS, PASSWORD, make_settings


@pytest.mark.asyncio
async def test_usernames_are_case_insensitive(db, account):
    found = await accounts.authenticate_password(db, "  ALICE ", PASSWORD, params=FAST_PARAMS)
    assert found is not None and found.id == account.id
    with pytest.raises(accounts.AccountExists):
        await accounts.create_account(db, username="Alice", password=PASSWORD, params=FAST_PARAMS)


@pytest.mark.asyncio
async def test_short_password_is_refused(db):
    with pytest.raises(ValueError):
        await accounts.create_account(db, username="bob", password="short", params=FAST_PARAMS)


@pytest.mark.asyncio
async def test_groups_are_normalised(db):
    created = await accounts.create_account(db, username="carol", groups=" Requesters,users,,USERS", params=FAST_PARAMS)
    assert created.group_list == ["requesters", "users"]
    assert accounts.is_admin_groups(["admins"])
    assert not accounts.is_admin_groups(created.group_list)


@pytest.mark.asyncio
async def test_ban_invalidates_cached_snapshot(db, ctx, account):
    before = await accounts.load_snapshot(db, ctx.account_cache, account.id)
    assert before.banned is False
    await accounts.set_banned(db, ctx.account_cache, account, True)
    after = await accounts.load_snapshot(db, ctx.account_cache, account.id)
    assert after.banned is True


@pytest.mark.asyncio
async def test_bootstrap_runs_once(db):
    settings_obj = make_settings(bootstrap_username="admin", bootstrap_password="bootstrap-pass")
    first = await accounts.ensure_bootstrap_account(db, settings_obj, FAST_PARAMS)
    assert first.group_list == ["administrators", "users"]
    assert await accounts.ensure_bootstrap_account(db, settings_obj, FAST_PARAMS) is None


@pytest.mark.asyncio
async def test_runtime_setting_turns_off_mfa(db, ctx, account):
    await settings_svc.set_setting(db, ctx.settings_cache, settings_svc.OTP_ENABLED, "false")
    outcome = await mfa.complete_primary_factor(db, ctx, account)
    assert outcome.state == mfa.LoginState.SESSION_ISSUED
    assert outcome.session_token


@pytest.mark.asyncio
async def test_setting_session_max_age(db, ctx):
    await settings_svc.set_setting(db, ctx.settings_cache, settings_svc.SESSION_MAX_AGE, "3600")
    assert await mfa.session_max_age(db, ctx) == 3600
    await settings_svc.set_setting(db, ctx.settings_cache, settings_svc.SESSION_MAX_AGE, "5")
    assert await mfa.session_max_age(db, ctx) == 60


@pytest.mark.asyncio
async def test_failing_audit_sink_does_not_block():
    seen = []

    def broken(event):
        raise RuntimeError("sink down")

    emitter = audit.AuditEmitter([broken, seen.append])
    event = await emitter.emit(audit.USER_LOGIN, actor="alice", method="password")
    assert event.metadata == {"method": "password"}
    assert seen == [event]
