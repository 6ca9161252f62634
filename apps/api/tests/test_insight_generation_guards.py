"""
Tests for the guards around insight generation: the per-athlete Redis lock
and the generation-log rate limit.

Redis is a FakeRedis; the rate limit runs against SQLite.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

from services.insight_lock import InsightGenerationLock, _lock_key
from services.insight_rate_limit import InsightRateLimiter
from fixtures.training_fixtures import add_generation_log


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}

    def get(self, key):
        return self._store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self._store:
            return False
        self._store[key] = value
        if ex:
            self._ttls[key] = ex
        return True

    def delete(self, *keys):
        for k in keys:
            self._store.pop(k, None)
            self._ttls.pop(k, None)

    def ping(self):
        return True


@pytest.fixture
def fake_redis():
    r = FakeRedis()
    with patch("services.insight_lock.get_redis_client", return_value=r):
        yield r


class TestInsightGenerationLock:

    def test_second_acquire_is_refused(self, fake_redis):
        athlete_id = uuid4()
        first = InsightGenerationLock(ttl_s=120)
        second = InsightGenerationLock(ttl_s=120)

        assert first.acquire(athlete_id) is True
        assert second.acquire(athlete_id) is False
        assert fake_redis._ttls[_lock_key(athlete_id)] == 120

    def test_release_frees_the_lock(self, fake_redis):
        athlete_id = uuid4()
        lock = InsightGenerationLock()

        lock.acquire(athlete_id)
        lock.release(athlete_id)

        assert _lock_key(athlete_id) not in fake_redis._store
        assert InsightGenerationLock().acquire(athlete_id) is True

    def test_release_leaves_foreign_lock(self, fake_redis):
        athlete_id = uuid4()
        holder = InsightGenerationLock()
        other = InsightGenerationLock()

        holder.acquire(athlete_id)
        other.acquire(athlete_id)
        other.release(athlete_id)

        assert _lock_key(athlete_id) in fake_redis._store

    def test_expired_token_is_not_deleted(self, fake_redis):
        athlete_id = uuid4()
        lock = InsightGenerationLock()
        lock.acquire(athlete_id)

        # lock expired and someone else took it
        fake_redis._store[_lock_key(athlete_id)] = "someone-else"
        lock.release(athlete_id)

        assert fake_redis._store[_lock_key(athlete_id)] == "someone-else"

    def test_fails_open_without_redis(self):
        lock = InsightGenerationLock()
        assert lock.acquire(uuid4()) is True

    def test_fails_open_on_redis_error(self):
        broken = MagicMock()
        broken.set.side_effect = RedisConnectionError("connection refused")
        with patch("services.insight_lock.get_redis_client", return_value=broken):
            assert InsightGenerationLock().acquire(uuid4()) is True


class TestInsightRateLimiter:
    NOW = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)

    def test_due_without_history(self, session_factory, test_athlete):
        assert InsightRateLimiter(session_factory, interval_hours=6).should_generate(test_athlete.id, self.NOW)

    def test_not_due_inside_interval(self, session_factory, db_session, test_athlete):
        add_generation_log(db_session, test_athlete.id, self.NOW - timedelta(hours=2))

        limiter = InsightRateLimiter(session_factory, interval_hours=6)

        assert limiter.should_generate(test_athlete.id, self.NOW) is False
        assert limiter.last_generated_at(test_athlete.id) == self.NOW - timedelta(hours=2)

    def test_due_after_interval(self, session_factory, db_session, test_athlete):
        add_generation_log(db_session, test_athlete.id, self.NOW - timedelta(hours=7))
        assert InsightRateLimiter(session_factory, interval_hours=6).should_generate(test_athlete.id, self.NOW)

    def test_latest_log_wins(self, session_factory, db_session, test_athlete):
        add_generation_log(db_session, test_athlete.id, self.NOW - timedelta(hours=30))
        add_generation_log(db_session, test_athlete.id, self.NOW - timedelta(hours=1))
        assert InsightRateLimiter(session_factory, interval_hours=6).should_generate(test_athlete.id, self.NOW) is False

    def test_other_athletes_logs_are_ignored(self, session_factory, db_session, test_athlete):
        add_generation_log(db_session, uuid4(), self.NOW - timedelta(minutes=5))
        assert InsightRateLimiter(session_factory, interval_hours=6).should_generate(test_athlete.id, self.NOW)

    def test_store_error_is_not_due(self, session_factory, test_athlete, monkeypatch):
        limiter = InsightRateLimiter(session_factory, interval_hours=6)

        def failing(athlete_id):
            raise OperationalError("SELECT", {}, Exception("db down"))

        monkeypatch.setattr(limiter, "last_generated_at", failing)
        assert limiter.should_generate(test_athlete.id, self.NOW) is False
