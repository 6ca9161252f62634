"""
Insight generation rate limit.

Generation is due when the athlete has no generation log yet, or the
latest log row is older than INSIGHT_GENERATION_INTERVAL_HOURS.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from models import InsightGenerationLog

logger = logging.getLogger(__name__)


def _aware(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class InsightRateLimiter:
    def __init__(self, session_factory, interval_hours: Optional[int] = None):
        self.session_factory = session_factory
        self.interval = timedelta(
            hours=settings.INSIGHT_GENERATION_INTERVAL_HOURS if interval_hours is None else interval_hours
        )

    def last_generated_at(self, athlete_id: UUID) -> Optional[datetime]:
        """Raises SQLAlchemyError on store failure."""
        with self.session_factory() as db:
            latest = (
                db.query(func.max(InsightGenerationLog.generated_at))
                .filter(InsightGenerationLog.athlete_id == athlete_id)
                .scalar()
            )
        return _aware(latest) if latest is not None else None

    def should_generate(self, athlete_id: UUID, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        try:
            latest = self.last_generated_at(athlete_id)
        except SQLAlchemyError as e:
            logger.error(f"[InsightRateLimit] Could not read generation log for athlete {athlete_id}: {e}")
            return False

        if latest is None:
            return True
        return now - latest > self.interval
