"""
Per-athlete advisory lock around insight generation.

Redis SET NX EX keyed by athlete. Fails open: when Redis is missing or
erroring, acquire() returns True and the unique constraint on insights
is the only guard against duplicates.
"""
import logging
import uuid
from typing import Dict, Optional

from redis.exceptions import RedisError

from core.cache import get_redis_client
from core.config import settings

logger = logging.getLogger(__name__)


def _lock_key(athlete_id) -> str:
    return f"insight_generation_lock:{athlete_id}"


class InsightGenerationLock:
    def __init__(self, ttl_s: Optional[int] = None):
        self.ttl_s = ttl_s or settings.INSIGHT_LOCK_TTL_S
        self._tokens: Dict[str, str] = {}

    def acquire(self, athlete_id) -> bool:
        """True if this caller may generate (lock taken or Redis unavailable)."""
        r = get_redis_client()
        if not r:
            return True  # fail open

        token = uuid.uuid4().hex
        try:
            acquired = r.set(_lock_key(athlete_id), token, nx=True, ex=self.ttl_s)
        except RedisError as e:
            logger.warning(f"[InsightLock] Lock acquire error for {athlete_id}: {e}")
            return True  # fail open

        if acquired:
            self._tokens[str(athlete_id)] = token
        return bool(acquired)

    def release(self, athlete_id) -> None:
        """Release only a lock this instance holds."""
        token = self._tokens.pop(str(athlete_id), None)
        if token is None:
            return
        r = get_redis_client()
        if not r:
            return
        try:
            key = _lock_key(athlete_id)
            if r.get(key) == token:
                r.delete(key)
        except RedisError as e:
            logger.warning(f"[InsightLock] Lock release error for {athlete_id}: {e}")
