"""
Insight Generator

Turns detected patterns into stored insights and serves them back.

Generation run, per athlete:
1. Advisory per-athlete lock (fails open)
2. Rate limit (skipped when force=True)
3. Detect patterns
4. Drop patterns already stored as insights within the dedup window,
   keyed by "type:title" (skipped if the lookup fails; step 6 still holds)
5. Enhance urgent/high descriptions (best effort, never raises)
6. Bulk insert with ON CONFLICT DO NOTHING on
   (athlete_id, insight_type, title, dedup_day)
7. Write an insight_generation_log row

No public method raises. Store failures come back as empty reads,
False writes, or GenerationResult(success=False, error=...).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set
from uuid import UUID
import logging
import time
import uuid

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.database import SessionLocal, dialect_insert
from models import Insight, InsightGenerationLog
from services.insight_enhancer import EnhancementResult, InsightEnhancer, get_gemini_client
from services.insight_lock import InsightGenerationLock
from services.insight_rate_limit import InsightRateLimiter
from services.pattern_detector import DetectedPattern, PatternDetector

logger = logging.getLogger(__name__)


class InsightSource(str, Enum):
    AI_GENERATED = "ai_generated"
    RULE_BASED = "rule_based"
    PATTERN_DETECTED = "pattern_detected"


@dataclass
class GenerationResult:
    success: bool
    insights_created: int = 0
    patterns_detected: int = 0
    error: Optional[str] = None


@dataclass
class GenerationStatus:
    should_generate: bool
    last_generated_at: Optional[datetime] = None
    insights_created: Optional[int] = None
    patterns_detected: List[str] = field(default_factory=list)
    model_used: Optional[str] = None


def _utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class InsightGenerator:
    """
    Owns the insight lifecycle for athletes.

    Collaborators are injected so tests can substitute fakes:
        rate_limiter: .should_generate(athlete_id, now) -> bool
        enhancer: .enhance(patterns) -> EnhancementResult (None disables enhancement)
        detector: .detect(athlete_id, today) -> List[DetectedPattern]
        lock: .acquire(athlete_id) -> bool, .release(athlete_id)
    """

    def __init__(
        self,
        session_factory,
        rate_limiter,
        enhancer=None,
        detector=None,
        lock=None,
        dedup_window_hours: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter
        self.enhancer = enhancer
        self.detector = detector or PatternDetector(session_factory)
        self.lock = lock or InsightGenerationLock()
        self.dedup_window = timedelta(
            hours=settings.INSIGHT_DEDUP_WINDOW_HOURS if dedup_window_hours is None else dedup_window_hours
        )

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(self, athlete_id: UUID, force: bool = False, now: Optional[datetime] = None) -> GenerationResult:
        now = _utc(now or datetime.now(timezone.utc))

        if not self.lock.acquire(athlete_id):
            logger.info(f"[InsightGenerator] Generation already running for athlete {athlete_id}, skipping")
            return GenerationResult(success=True)

        try:
            return self._generate(athlete_id, force, now)
        except Exception as e:
            logger.exception(f"[InsightGenerator] Generation failed for athlete {athlete_id}: {e}")
            return GenerationResult(success=False, error=str(e))
        finally:
            self.lock.release(athlete_id)

    def _generate(self, athlete_id: UUID, force: bool, now: datetime) -> GenerationResult:
        started = time.monotonic()

        if not force and not self.rate_limiter.should_generate(athlete_id, now):
            return GenerationResult(success=True)

        patterns = self.detector.detect(athlete_id, today=now.date())
        pattern_types = [p.type.value for p in patterns]

        if not patterns:
            self._log_generation(athlete_id, now, 0, [], None, 0, started)
            return GenerationResult(success=True)

        fresh = self._filter_recent(athlete_id, patterns, now)

        if not fresh:
            self._log_generation(athlete_id, now, 0, pattern_types, None, 0, started)
            return GenerationResult(success=True, patterns_detected=len(patterns))

        enhancement = self._enhance(fresh)

        try:
            created = self._persist(athlete_id, enhancement.patterns, now)
        except SQLAlchemyError as e:
            logger.error(f"[InsightGenerator] Error storing insights for athlete {athlete_id}: {e}")
            return GenerationResult(success=False, patterns_detected=len(patterns), error=str(e))

        self._log_generation(
            athlete_id, now, created, pattern_types,
            enhancement.model_used, enhancement.tokens_used, started,
        )
        logger.info(
            f"[InsightGenerator] Athlete {athlete_id}: {len(patterns)} patterns, "
            f"{len(fresh)} new, {created} stored"
        )
        return GenerationResult(success=True, insights_created=created, patterns_detected=len(patterns))

    def _recent_keys(self, athlete_id: UUID, now: datetime) -> Set[str]:
        """Dedup keys of insights stored within the window; empty if the store can't be read."""
        try:
            with self.session_factory() as db:
                recent = (
                    db.query(Insight.insight_type, Insight.title)
                    .filter(
                        Insight.athlete_id == athlete_id,
                        Insight.created_at >= now - self.dedup_window,
                    )
                    .all()
                )
        except SQLAlchemyError as e:
            # The unique key on insights still stops same-day duplicates
            logger.warning(f"[InsightGenerator] Dedup lookup failed for athlete {athlete_id}, continuing without it: {e}")
            return set()
        return {f"{insight_type}:{title}" for insight_type, title in recent}

    def _filter_recent(
        self,
        athlete_id: UUID,
        patterns: Sequence[DetectedPattern],
        now: datetime,
    ) -> List[DetectedPattern]:
        """Drop patterns stored within the dedup window, and repeats within this batch."""
        seen = self._recent_keys(athlete_id, now)

        fresh = []
        for p in patterns:
            if p.dedup_key in seen:
                continue
            seen.add(p.dedup_key)
            fresh.append(p)
        return fresh

    def _enhance(self, patterns: List[DetectedPattern]) -> EnhancementResult:
        if self.enhancer is None:
            return EnhancementResult(patterns=patterns)
        try:
            return self.enhancer.enhance(patterns)
        except Exception as e:
            logger.error(f"[InsightGenerator] Enhancement failed, using original text: {e}")
            return EnhancementResult(patterns=patterns, error=str(e))

    def _persist(self, athlete_id: UUID, patterns: Sequence[DetectedPattern], now: datetime) -> int:
        """Insert insights; returns how many rows were actually written."""
        rows = [
            {
                "id": uuid.uuid4(),
                "athlete_id": athlete_id,
                "insight_type": p.type.value,
                "priority": p.priority.value,
                "title": p.title,
                "content": p.description,
                "data": dict(p.data),
                "source": InsightSource.PATTERN_DETECTED.value,
                "is_read": False,
                "is_dismissed": False,
                "created_at": now,
                "dedup_day": now.date(),
            }
            for p in patterns
        ]

        table = Insight.__table__
        with self.session_factory() as db:
            try:
                stmt = (
                    dialect_insert(db, table)
                    .values(rows)
                    .on_conflict_do_nothing(
                        index_elements=[table.c.athlete_id, table.c.insight_type, table.c.title, table.c.dedup_day]
                    )
                    .returning(table.c.id)
                )
                inserted = db.execute(stmt).all()
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
        return len(inserted)

    def _log_generation(
        self,
        athlete_id: UUID,
        now: datetime,
        insights_created: int,
        pattern_types: List[str],
        model_used: Optional[str],
        tokens_used: int,
        started: float,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            with self.session_factory() as db:
                db.add(InsightGenerationLog(
                    athlete_id=athlete_id,
                    generated_at=now,
                    insights_created=insights_created,
                    patterns_detected=pattern_types,
                    model_used=model_used,
                    tokens_used=tokens_used,
                    duration_ms=duration_ms,
                ))
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"[InsightGenerator] Could not write generation log for athlete {athlete_id}: {e}")

    # -------------------------------------------------------------------------
    # Reads / updates
    # -------------------------------------------------------------------------

    def list_insights(
        self,
        athlete_id: UUID,
        limit: Optional[int] = None,
        include_read: bool = False,
        types: Optional[Sequence[str]] = None,
    ) -> List[Insight]:
        """Undismissed insights, newest first."""
        limit = limit or settings.INSIGHT_DEFAULT_LIMIT
        try:
            with self.session_factory() as db:
                query = db.query(Insight).filter(
                    Insight.athlete_id == athlete_id,
                    Insight.is_dismissed.is_(False),
                )
                if not include_read:
                    query = query.filter(Insight.is_read.is_(False))
                if types:
                    query = query.filter(Insight.insight_type.in_(list(types)))
                return query.order_by(Insight.created_at.desc()).limit(limit).all()
        except SQLAlchemyError as e:
            logger.error(f"[InsightGenerator] Error fetching insights for athlete {athlete_id}: {e}")
            return []

    def _set_flag(self, insight_id: UUID, athlete_id: UUID, column: str) -> bool:
        try:
            with self.session_factory() as db:
                updated = (
                    db.query(Insight)
                    .filter(Insight.id == insight_id, Insight.athlete_id == athlete_id)
                    .update({column: True}, synchronize_session=False)
                )
                db.commit()
            return updated > 0
        except SQLAlchemyError as e:
            logger.error(f"[InsightGenerator] Could not set {column} on insight {insight_id}: {e}")
            return False

    def mark_read(self, insight_id: UUID, athlete_id: UUID) -> bool:
        return self._set_flag(insight_id, athlete_id, "is_read")

    def dismiss(self, insight_id: UUID, athlete_id: UUID) -> bool:
        return self._set_flag(insight_id, athlete_id, "is_dismissed")

    def counts_by_type(self, athlete_id: UUID) -> Dict[str, int]:
        """Unread, undismissed insight counts per insight type."""
        try:
            with self.session_factory() as db:
                rows = (
                    db.query(Insight.insight_type, func.count(Insight.id))
                    .filter(
                        Insight.athlete_id == athlete_id,
                        Insight.is_dismissed.is_(False),
                        Insight.is_read.is_(False),
                    )
                    .group_by(Insight.insight_type)
                    .all()
                )
            return {insight_type: count for insight_type, count in rows}
        except SQLAlchemyError as e:
            logger.error(f"[InsightGenerator] Error counting insights for athlete {athlete_id}: {e}")
            return {}

    def get_generation_status(self, athlete_id: UUID, now: Optional[datetime] = None) -> GenerationStatus:
        should_generate = self.rate_limiter.should_generate(athlete_id, now)
        try:
            with self.session_factory() as db:
                last = (
                    db.query(InsightGenerationLog)
                    .filter(InsightGenerationLog.athlete_id == athlete_id)
                    .order_by(InsightGenerationLog.generated_at.desc())
                    .first()
                )
        except SQLAlchemyError as e:
            logger.error(f"[InsightGenerator] Could not read generation status for athlete {athlete_id}: {e}")
            return GenerationStatus(should_generate=should_generate)

        if last is None:
            return GenerationStatus(should_generate=should_generate)
        return GenerationStatus(
            should_generate=should_generate,
            last_generated_at=_utc(last.generated_at),
            insights_created=last.insights_created,
            patterns_detected=list(last.patterns_detected or []),
            model_used=last.model_used,
        )


# =============================================================================
# MODULE-LEVEL API
# =============================================================================

def build_insight_generator(session_factory=SessionLocal) -> InsightGenerator:
    """Generator wired to the real store, Redis lock and Gemini enhancer."""
    return InsightGenerator(
        session_factory=session_factory,
        rate_limiter=InsightRateLimiter(session_factory),
        enhancer=InsightEnhancer(client=get_gemini_client()),
        lock=InsightGenerationLock(),
    )


def generate_insights(athlete_id: UUID, force: bool = False) -> GenerationResult:
    return build_insight_generator().generate(athlete_id, force=force)


def get_insights(
    athlete_id: UUID,
    limit: Optional[int] = None,
    include_read: bool = False,
    types: Optional[Sequence[str]] = None,
) -> List[Insight]:
    return build_insight_generator().list_insights(athlete_id, limit, include_read, types)


def mark_insight_read(insight_id: UUID, athlete_id: UUID) -> bool:
    return build_insight_generator().mark_read(insight_id, athlete_id)


def dismiss_insight(insight_id: UUID, athlete_id: UUID) -> bool:
    return build_insight_generator().dismiss(insight_id, athlete_id)
