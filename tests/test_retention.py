"""
Tests for usage log retention.
"""
from datetime import date, timedelta

import pytest

from movie_api_server.retention import RetentionPolicy
from movie_api_server.store import StoreError


@pytest.fixture
def policy(store, frozen_clock):
    return RetentionPolicy(store, frozen_clock)


class TestRetentionPolicy:
    """Test the cleanup marker and deletion threshold."""

    def test_cutoff_is_ninety_days_back(self, policy):
        assert policy.cutoff() == date(2024, 12, 1)

    @pytest.mark.asyncio
    async def test_deletes_logs_before_cutoff(self, policy, store, frozen_clock):
        key_id = store.add_key("mk_abc")
        other_key = store.add_key("mk_def")
        now = frozen_clock.now()
        store.add_log(key_id, "/api/movies", now - timedelta(days=91))
        store.add_log(other_key, "/api/movies", now - timedelta(days=200))
        store.add_log(key_id, "/api/movies", now - timedelta(days=3))

        ran = await policy.maybe_cleanup(key_id)

        assert ran is True
        assert len(store.usage_logs) == 1
        assert store.cleanup_markers[key_id] == now

    @pytest.mark.asyncio
    async def test_second_call_within_interval_is_noop(self, policy, store, frozen_clock):
        key_id = store.add_key("mk_abc")

        assert await policy.maybe_cleanup(key_id) is True
        frozen_clock.advance(hours=23, minutes=59)
        store.add_log(key_id, "/api/movies", frozen_clock.now() - timedelta(days=100))

        assert await policy.maybe_cleanup(key_id) is False
        assert store.calls.count("delete_usage_logs_before") == 1
        assert len(store.usage_logs) == 1

    @pytest.mark.asyncio
    async def test_runs_again_after_interval(self, policy, store, frozen_clock):
        key_id = store.add_key("mk_abc")

        await policy.maybe_cleanup(key_id)
        frozen_clock.advance(hours=24, seconds=1)

        assert await policy.maybe_cleanup(key_id) is True
        assert store.calls.count("delete_usage_logs_before") == 2

    @pytest.mark.asyncio
    async def test_markers_are_per_key(self, policy, store):
        first = store.add_key("mk_abc")
        second = store.add_key("mk_def")

        assert await policy.maybe_cleanup(first) is True
        assert await policy.maybe_cleanup(second) is True
        assert await policy.maybe_cleanup(first) is False

    @pytest.mark.asyncio
    async def test_failed_delete_leaves_marker_unset(self, policy, store):
        key_id = store.add_key("mk_abc")
        store.fail("delete_usage_logs_before")

        with pytest.raises(StoreError):
            await policy.maybe_cleanup(key_id)

        assert key_id not in store.cleanup_markers
        store.recover()
        assert await policy.is_due(key_id) is True

    @pytest.mark.asyncio
    async def test_custom_retention(self, store, frozen_clock):
        policy = RetentionPolicy(store, frozen_clock, retention_days=7, interval=timedelta(hours=1))
        key_id = store.add_key("mk_abc")
        store.add_log(key_id, "/api/movies", frozen_clock.now() - timedelta(days=8))

        await policy.maybe_cleanup(key_id)
        frozen_clock.advance(hours=2)

        assert store.usage_logs == []
        assert await policy.is_due(key_id) is True
