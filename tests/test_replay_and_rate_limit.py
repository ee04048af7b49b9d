"""
Tests for the shared-state stores: replay guard and failed-attempt limiter.
"""
import threading
from unittest.mock import MagicMock

import pytest

from app.core.keyed_lock import KeyedLock
from app.core.memory_rate_limiter import MemoryRateLimiter
from app.core.rate_limiter import RedisRateLimiter
from app.core.replay_guard import ReplayGuard, MemoryUsedTokenStore, RedisUsedTokenStore

from tests.conftest import T0


def run_concurrently(target, count: int = 16):
    barrier = threading.Barrier(count)

    def wrapped():
        barrier.wait()
        target()

    threads = [threading.Thread(target=wrapped) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


class TestReplayGuard:
    def test_same_triple_admitted_once(self):
        guard = ReplayGuard()
        assert guard.admit("fp", "123456", 100, now=T0) is True
        assert guard.admit("fp", "123456", 100, now=T0 + 1) is False

    def test_distinct_triples_are_independent(self):
        guard = ReplayGuard()
        assert guard.admit("fp", "123456", 100, now=T0)
        assert guard.admit("fp", "123456", 101, now=T0)
        assert guard.admit("fp", "654321", 100, now=T0)
        assert guard.admit("other", "123456", 100, now=T0)

    def test_retention_covers_the_acceptance_span(self):
        assert ReplayGuard(period=30, tolerance_windows=1, safety_margin=0).retention == 90
        assert ReplayGuard(period=30, tolerance_windows=1, safety_margin=120).retention == 150

    def test_sweep_evicts_only_old_entries(self):
        store = MemoryUsedTokenStore()
        guard = ReplayGuard(store, period=30, tolerance_windows=1, safety_margin=60)
        guard.admit("fp", "111111", 1, now=T0)
        guard.admit("fp", "222222", 2, now=T0 + 60)
        assert len(store) == 2

        assert guard.sweep(T0 + 100) == 1
        assert len(store) == 1
        # the surviving entry still blocks its replay
        assert guard.admit("fp", "222222", 2, now=T0 + 100) is False

    def test_concurrent_admits_have_one_winner(self):
        guard = ReplayGuard()
        results = []
        run_concurrently(lambda: results.append(guard.admit("fp", "123456", 7, now=T0)))
        assert results.count(True) == 1
        assert results.count(False) == 15

    def test_span_admission_claims_every_window(self):
        guard = ReplayGuard()
        assert guard.admit_span("fp", "123456", range(99, 102), now=T0) is True
        assert guard.admit("fp", "123456", 101, now=T0) is False
        assert guard.admit_span("fp", "123456", range(101, 104), now=T0 + 30) is False
        # the collision does not stop the later windows from being claimed
        assert guard.admit("fp", "123456", 103, now=T0 + 30) is False

    def test_span_admission_after_a_single_window(self):
        guard = ReplayGuard()
        assert guard.admit("fp", "123456", 100, now=T0)
        assert guard.admit_span("fp", "123456", range(100, 103), now=T0 + 30) is False
        assert guard.admit_span("fp", "654321", range(100, 103), now=T0 + 30) is True

    def test_empty_span_is_rejected(self):
        assert ReplayGuard().admit_span("fp", "123456", [], now=T0) is False

    def test_redis_store_uses_set_nx(self):
        client = MagicMock()
        client.set.side_effect = [True, None]
        guard = ReplayGuard(RedisUsedTokenStore(client), period=30, tolerance_windows=1, safety_margin=60)

        assert guard.admit("fp", "123456", 7, now=T0) is True
        assert guard.admit("fp", "123456", 7, now=T0) is False

        key, value = client.set.call_args.args
        assert key.startswith("totp:used:")
        assert "123456" not in key
        assert client.set.call_args.kwargs == {"nx": True, "ex": 90}


class TestMemoryRateLimiter:
    def test_locks_after_max_attempts(self, rate_limiter):
        for attempt in range(1, 5):
            assert rate_limiter.record_failure("alice", now=T0 + attempt) == attempt
            assert not rate_limiter.is_locked("alice", now=T0 + attempt)
        rate_limiter.record_failure("alice", now=T0 + 5)
        assert rate_limiter.is_locked("alice", now=T0 + 5)
        assert rate_limiter.retry_after("alice", now=T0 + 5) == pytest.approx(896)

    def test_lock_expires_with_the_window(self, rate_limiter):
        for i in range(5):
            rate_limiter.record_failure("alice", now=T0)
        assert rate_limiter.is_locked("alice", now=T0 + 899)
        assert not rate_limiter.is_locked("alice", now=T0 + 900)
        # a failure after expiry opens a new window
        assert rate_limiter.record_failure("alice", now=T0 + 900) == 1

    def test_success_clears_the_entry(self, rate_limiter):
        for i in range(3):
            rate_limiter.record_failure("alice", now=T0)
        rate_limiter.record_success("alice")
        assert rate_limiter.get_remaining_attempts("alice", now=T0)["remaining"] == 5
        assert rate_limiter.record_failure("alice", now=T0) == 1

    def test_explicit_thresholds(self, rate_limiter):
        for i in range(3):
            rate_limiter.record_failure("alice", now=T0)
        assert rate_limiter.is_locked("alice", now=T0, max_attempts=3, lockout_duration=60)
        assert not rate_limiter.is_locked("alice", now=T0 + 61, max_attempts=3, lockout_duration=60)

    def test_principals_are_independent(self, rate_limiter):
        for i in range(5):
            rate_limiter.record_failure("alice", now=T0)
        assert rate_limiter.is_locked("alice", now=T0)
        assert not rate_limiter.is_locked("bob", now=T0)

    def test_failures_sweep_stale_windows(self, rate_limiter):
        rate_limiter.record_failure("bob", now=T0)
        rate_limiter.record_failure("alice", now=T0 + 900)
        assert "bob" not in rate_limiter.storage

    def test_reset_and_cleanup(self, rate_limiter):
        rate_limiter.record_failure("alice", now=T0)
        rate_limiter.record_failure("bob", now=T0 + 500)
        assert rate_limiter.cleanup_old_entries(now=T0 + 901) == 1
        assert rate_limiter.reset("bob") is True
        assert rate_limiter.reset("bob") is False

    def test_concurrent_failures_are_all_counted(self):
        limiter = MemoryRateLimiter(max_attempts=100, lockout_seconds=900)
        run_concurrently(lambda: limiter.record_failure("alice", now=T0), count=32)
        assert limiter.storage["alice"].failure_count == 32


class TestRedisRateLimiter:
    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.register_script.return_value = MagicMock(return_value=1)
        return client

    def test_record_failure_runs_the_script(self, client):
        limiter = RedisRateLimiter(client, max_attempts=5, lockout_seconds=900)
        assert limiter.record_failure("alice", now=T0) == 1
        script = client.register_script.return_value
        assert script.call_args.kwargs["keys"] == ["ratelimit:totp:alice"]
        assert script.call_args.kwargs["args"][1] == 900

    def test_is_locked_reads_the_hash(self, client):
        client.hmget.return_value = [b"5", str(float(T0)).encode()]
        limiter = RedisRateLimiter(client, max_attempts=5, lockout_seconds=900)
        assert limiter.is_locked("alice", now=T0 + 10)
        assert limiter.retry_after("alice", now=T0 + 10) == pytest.approx(890)
        assert not limiter.is_locked("alice", now=T0 + 900)

    def test_missing_entry_is_unlocked(self, client):
        client.hmget.return_value = [None, None]
        limiter = RedisRateLimiter(client)
        assert not limiter.is_locked("alice", now=T0)
        assert limiter.get_remaining_attempts("alice", now=T0)["remaining"] == limiter.max_attempts

    def test_success_deletes_the_key(self, client):
        RedisRateLimiter(client).record_success("alice")
        client.delete.assert_called_once_with("ratelimit:totp:alice")


class TestKeyedLock:
    def test_locks_are_released_and_dropped(self):
        locks = KeyedLock()
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_serializes_one_key(self):
        locks = KeyedLock()
        counter = {"value": 0}

        def bump():
            with locks.hold("k"):
                current = counter["value"]
                counter["value"] = current + 1

        run_concurrently(bump, count=32)
        assert counter["value"] == 32
