"""Unit tests for the quota ledger.

Covers:
- Reserve/commit/release accounting against tier limits
- Concurrent reservations competing for the last slot
- Guest counters on the guest session row
- File-upload counter alongside the message counter
- Fail-open behaviour when the counter backend is down
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chatgate.service.errors import AuthenticationError
from chatgate.service.identity import Authenticated, Guest
from chatgate.service.quota import Allowed, Denied, QuotaLedger
from chatgate.storage.errors import StoreUnavailable
from chatgate.storage.models import GuestSession, utcnow


def _ledger(settings, store, cache=None, **overrides):
    return QuotaLedger(settings.model_copy(update=overrides), store, cache)


def _guest(store, **kwargs) -> Guest:
    session = store.create_guest_session(GuestSession.new(**kwargs))
    return Guest(session_token=session.session_token, expires_at=session.expires_at)


class TestAuthenticatedQuota:
    async def test_commits_up_to_limit_then_denies(self, settings, memory_store):
        ledger = _ledger(settings, memory_store, quota_user_daily_messages=3)
        identity = Authenticated(user_id="user-1", role="user")

        for expected in (1, 2, 3):
            decision = await ledger.check_and_reserve(identity)
            assert isinstance(decision, Allowed)
            usage = await ledger.commit(decision.reservation)
            assert usage.message_count == expected
            assert usage.remaining == 3 - expected

        denied = await ledger.check_and_reserve(identity)
        assert isinstance(denied, Denied)
        assert denied.current == 3
        assert denied.limit == 3
        assert denied.reset_time > utcnow()

    async def test_concurrent_reservations_admit_only_one_for_last_slot(
        self, settings, memory_store
    ):
        ledger = _ledger(settings, memory_store, quota_user_daily_messages=1)
        identity = Authenticated(user_id="user-2", role="user")

        decisions = await asyncio.gather(
            *(ledger.check_and_reserve(identity) for _ in range(5))
        )

        allowed = [d for d in decisions if isinstance(d, Allowed)]
        assert len(allowed) == 1
        assert sum(isinstance(d, Denied) for d in decisions) == 4

    async def test_release_returns_the_slot(self, settings, memory_store):
        ledger = _ledger(settings, memory_store, quota_user_daily_messages=1)
        identity = Authenticated(user_id="user-3", role="user")

        first = await ledger.check_and_reserve(identity)
        assert isinstance(first, Allowed)
        assert isinstance(await ledger.check_and_reserve(identity), Denied)

        await ledger.release(first.reservation)

        again = await ledger.check_and_reserve(identity)
        assert isinstance(again, Allowed)

    async def test_admin_is_unbounded(self, settings, memory_store):
        ledger = _ledger(settings, memory_store, quota_admin_daily_messages=0)
        identity = Authenticated(user_id="admin-1", role="admin")

        for _ in range(25):
            decision = await ledger.check_and_reserve(identity)
            assert isinstance(decision, Allowed)
            assert decision.remaining is None
            usage = await ledger.commit(decision.reservation)

        assert usage.message_count == 25
        assert usage.remaining is None

    async def test_usage_snapshot_reports_committed_counts(self, settings, memory_store):
        ledger = _ledger(settings, memory_store)
        identity = Authenticated(user_id="user-4", role="user")
        decision = await ledger.check_and_reserve(identity, attachment_count=2)
        await ledger.commit(decision.reservation)

        snapshot = await ledger.usage_for(identity)

        assert snapshot["messageCount"] == 1
        assert snapshot["fileUploads"] == 1
        assert snapshot["remainingQuota"] == settings.quota_user_daily_messages - 1

    async def test_in_process_counters_from_old_days_are_dropped(self, settings, memory_store):
        ledger = _ledger(settings, memory_store)
        identity = Authenticated(user_id="user-5", role="user")
        now = utcnow()
        yesterday = (now - timedelta(days=1)).strftime("%Y%m%d")
        ledger._local_counters["quota:message:user-5:20000101"] = [7, 0]
        ledger._local_counters[f"quota:message:user-5:{yesterday}"] = [2, 1]
        ledger._local_counters["quota:file_upload:guest_abc:session"] = [1, 0]

        decision = await ledger.check_and_reserve(identity)

        assert isinstance(decision, Allowed)
        assert "quota:message:user-5:20000101" not in ledger._local_counters
        assert f"quota:message:user-5:{yesterday}" in ledger._local_counters
        assert "quota:file_upload:guest_abc:session" in ledger._local_counters
        assert f"quota:message:user-5:{now.strftime('%Y%m%d')}" in ledger._local_counters


class TestFileUploadQuota:
    async def test_file_limit_denial_releases_message_slot(self, settings, memory_store):
        ledger = _ledger(
            settings,
            memory_store,
            quota_user_daily_messages=5,
            quota_user_daily_file_uploads=1,
        )
        identity = Authenticated(user_id="user-5", role="user")

        first = await ledger.check_and_reserve(identity, attachment_count=1)
        assert isinstance(first, Allowed)
        assert first.reservation.file_slot
        await ledger.commit(first.reservation)

        denied = await ledger.check_and_reserve(identity, attachment_count=1)
        assert isinstance(denied, Denied)
        assert denied.counter == "file_upload"

        # The message slot taken before the file check was handed back
        snapshot = await ledger.usage_for(identity)
        assert snapshot["messageCount"] == 1
        plain = await ledger.check_and_reserve(identity)
        assert isinstance(plain, Allowed)
        assert plain.remaining == 3


class TestGuestQuota:
    async def test_guest_limit_uses_session_row(self, settings, memory_store):
        ledger = _ledger(settings, memory_store)
        guest = _guest(memory_store, max_messages=2)

        for expected in (1, 2):
            decision = await ledger.check_and_reserve(guest)
            assert isinstance(decision, Allowed)
            usage = await ledger.commit(decision.reservation)
            assert usage.message_count == expected

        denied = await ledger.check_and_reserve(guest)
        assert isinstance(denied, Denied)
        assert denied.current == 2
        assert denied.limit == 2
        assert memory_store.get_guest_session(guest.session_token).message_count == 2

    async def test_guest_release_keeps_count(self, settings, memory_store):
        ledger = _ledger(settings, memory_store)
        guest = _guest(memory_store, max_messages=1)

        decision = await ledger.check_and_reserve(guest)
        await ledger.release(decision.reservation)

        stored = memory_store.get_guest_session(guest.session_token)
        assert stored.message_count == 0
        assert stored.reserved_count == 0

    async def test_vanished_guest_session_is_unauthorized(self, settings, memory_store):
        ledger = _ledger(settings, memory_store)
        ghost = Guest(session_token="guest_missing", expires_at=utcnow() + timedelta(hours=1))

        with pytest.raises(AuthenticationError):
            await ledger.check_and_reserve(ghost)

    async def test_fallback_guest_is_admitted_degraded(self, settings, memory_store):
        ledger = _ledger(settings, memory_store)
        fallback = Guest(
            session_token="guest_fallback",
            expires_at=utcnow() + timedelta(hours=1),
            fallback=True,
        )

        decision = await ledger.check_and_reserve(fallback)

        assert isinstance(decision, Allowed)
        assert decision.degraded
        assert decision.remaining == settings.quota_guest_messages


class TestFailOpen:
    async def test_redis_outage_admits_with_tier_limit(self, settings, memory_store):
        cache = Mock()
        cache.reserve_quota = AsyncMock(side_effect=RedisConnectionError("redis down"))
        cache.commit_quota = AsyncMock()
        cache.release_quota = AsyncMock()
        ledger = _ledger(settings, memory_store, cache)
        identity = Authenticated(user_id="user-6", role="user")

        decision = await ledger.check_and_reserve(identity)

        assert isinstance(decision, Allowed)
        assert decision.degraded
        assert decision.remaining == settings.quota_user_daily_messages
        usage = await ledger.commit(decision.reservation)
        assert usage.degraded
        cache.commit_quota.assert_not_awaited()

    async def test_guest_store_outage_admits_degraded(self, settings):
        store = Mock()
        store.reserve_guest_message.side_effect = StoreUnavailable("db down")
        ledger = _ledger(settings, store)
        guest = Guest(session_token="guest_x", expires_at=utcnow() + timedelta(hours=1))

        decision = await ledger.check_and_reserve(guest)

        assert isinstance(decision, Allowed)
        assert decision.degraded
        await ledger.release(decision.reservation)
        store.release_guest_message.assert_not_called()

    async def test_release_failure_is_logged_not_raised(self, settings, memory_store):
        cache = Mock()
        cache.reserve_quota = AsyncMock(return_value=(True, 0, 1))
        cache.release_quota = AsyncMock(side_effect=RedisConnectionError("gone"))
        ledger = _ledger(settings, memory_store, cache)
        identity = Authenticated(user_id="user-7", role="user")

        decision = await ledger.check_and_reserve(identity)
        await ledger.release(decision.reservation)

        cache.release_quota.assert_awaited_once()
