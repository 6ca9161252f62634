"""
Tests for the insight lifecycle: generation, dedup, persistence, reads and
flag updates.

Detector, rate limiter and lock are fakes; the store is SQLite.
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from uuid import uuid4

from sqlalchemy.exc import OperationalError

from models import Insight, InsightGenerationLog
from services.insight_enhancer import EnhancementResult
from services.insight_generator import InsightGenerator, InsightSource
from services.pattern_detector import DetectedPattern, InsightPriority, PatternType
from fixtures.training_fixtures import (
    FakeDetector,
    FakeLock,
    FakeRateLimiter,
    add_generation_log,
    add_insight,
)

NOW = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)

FATIGUE = DetectedPattern(
    PatternType.WARNING, InsightPriority.URGENT, "High Fatigue Alert",
    "Your form (TSB) is at -35.", {"tsb": -35.0},
)
STATUS = DetectedPattern(
    PatternType.TREND, InsightPriority.LOW, "Current Training Status",
    "Fitness (CTL): 50.", {"ctl": 50.0},
)


def _generator(session_factory, patterns=(), due=True, lock=None, enhancer=None, dedup_window_hours=24):
    return InsightGenerator(
        session_factory=session_factory,
        rate_limiter=FakeRateLimiter(due),
        enhancer=enhancer,
        detector=FakeDetector(patterns),
        lock=lock or FakeLock(),
        dedup_window_hours=dedup_window_hours,
    )


def _stored(db_session, athlete_id):
    db_session.expire_all()
    return (
        db_session.query(Insight)
        .filter(Insight.athlete_id == athlete_id)
        .order_by(Insight.title)
        .all()
    )


class TestGenerate:

    def test_persists_patterns_and_logs_run(self, session_factory, db_session, test_athlete):
        gen = _generator(session_factory, [FATIGUE, STATUS])

        result = gen.generate(test_athlete.id, now=NOW)

        assert result.success is True
        assert (result.insights_created, result.patterns_detected) == (2, 2)

        rows = _stored(db_session, test_athlete.id)
        assert [r.title for r in rows] == ["Current Training Status", "High Fatigue Alert"]
        fatigue = rows[1]
        assert fatigue.insight_type == "warning"
        assert fatigue.priority == "urgent"
        assert fatigue.content == "Your form (TSB) is at -35."
        assert fatigue.data == {"tsb": -35.0}
        assert fatigue.source == InsightSource.PATTERN_DETECTED.value
        assert fatigue.is_read is False and fatigue.is_dismissed is False

        log = db_session.query(InsightGenerationLog).filter(InsightGenerationLog.athlete_id == test_athlete.id).one()
        assert log.insights_created == 2
        assert log.patterns_detected == ["warning", "trend"]
        assert log.model_used is None

    def test_not_due_does_nothing(self, session_factory, db_session, test_athlete):
        result = _generator(session_factory, [FATIGUE], due=False).generate(test_athlete.id, now=NOW)

        assert result.success is True
        assert result.insights_created == 0
        assert _stored(db_session, test_athlete.id) == []
        assert db_session.query(InsightGenerationLog).count() == 0

    def test_force_skips_rate_limit(self, session_factory, db_session, test_athlete):
        gen = _generator(session_factory, [FATIGUE], due=False)

        result = gen.generate(test_athlete.id, force=True, now=NOW)

        assert result.insights_created == 1
        assert gen.rate_limiter.calls == []

    def test_recent_duplicate_is_skipped(self, session_factory, db_session, test_athlete):
        add_insight(db_session, test_athlete.id, created_at=NOW - timedelta(hours=3))

        result = _generator(session_factory, [FATIGUE, STATUS]).generate(test_athlete.id, now=NOW)

        assert (result.insights_created, result.patterns_detected) == (1, 2)
        titles = [r.title for r in _stored(db_session, test_athlete.id)]
        assert titles.count("High Fatigue Alert") == 1

    def test_duplicate_outside_window_is_stored_again(self, session_factory, db_session, test_athlete):
        add_insight(db_session, test_athlete.id, created_at=NOW - timedelta(hours=30))

        result = _generator(session_factory, [FATIGUE]).generate(test_athlete.id, now=NOW)

        assert result.insights_created == 1
        assert len(_stored(db_session, test_athlete.id)) == 2

    def test_dismissed_insight_still_blocks_repeat(self, session_factory, db_session, test_athlete):
        add_insight(db_session, test_athlete.id, created_at=NOW - timedelta(hours=1), is_dismissed=True)

        result = _generator(session_factory, [FATIGUE]).generate(test_athlete.id, now=NOW)

        assert result.insights_created == 0

    def test_same_pattern_twice_in_one_batch(self, session_factory, db_session, test_athlete):
        result = _generator(session_factory, [FATIGUE, replace(FATIGUE, description="again")]).generate(
            test_athlete.id, now=NOW
        )

        assert result.insights_created == 1
        assert _stored(db_session, test_athlete.id)[0].content == "Your form (TSB) is at -35."

    def test_same_day_conflict_is_ignored(self, session_factory, db_session, test_athlete):
        # window of zero lets the pattern past dedup; the unique key still holds
        add_insight(db_session, test_athlete.id, created_at=NOW - timedelta(hours=1))

        result = _generator(session_factory, [FATIGUE], dedup_window_hours=0).generate(test_athlete.id, now=NOW)

        assert result.success is True
        assert result.insights_created == 0
        assert len(_stored(db_session, test_athlete.id)) == 1

    @staticmethod
    def _dedup_read_fails(session_factory):
        """Session factory whose first session (the dedup lookup) cannot query."""
        calls = []

        def factory():
            calls.append(1)
            if len(calls) == 1:
                broken = MagicMock()
                broken.__enter__.return_value.query.side_effect = OperationalError(
                    "SELECT", {}, Exception("store down")
                )
                return broken
            return session_factory()

        return factory

    def test_dedup_lookup_failure_still_stores(self, session_factory, db_session, test_athlete):
        gen = _generator(self._dedup_read_fails(session_factory), [FATIGUE, STATUS])

        result = gen.generate(test_athlete.id, now=NOW)

        assert result.success is True
        assert result.error is None
        assert (result.insights_created, result.patterns_detected) == (2, 2)
        assert len(_stored(db_session, test_athlete.id)) == 2
        assert db_session.query(InsightGenerationLog).count() == 1

    def test_dedup_lookup_failure_keeps_same_day_uniqueness(self, session_factory, db_session, test_athlete):
        add_insight(db_session, test_athlete.id, created_at=NOW - timedelta(hours=1))
        gen = _generator(self._dedup_read_fails(session_factory), [FATIGUE, FATIGUE])

        result = gen.generate(test_athlete.id, now=NOW)

        assert result.success is True
        assert result.insights_created == 0
        assert len(_stored(db_session, test_athlete.id)) == 1

    def test_no_patterns_logs_empty_run(self, session_factory, db_session, test_athlete):
        result = _generator(session_factory, []).generate(test_athlete.id, now=NOW)

        assert result.success is True
        assert result.patterns_detected == 0
        log = db_session.query(InsightGenerationLog).one()
        assert log.insights_created == 0
        assert log.patterns_detected == []

    def test_enhanced_text_is_stored(self, session_factory, db_session, test_athlete):
        enhancer = MagicMock()
        enhancer.enhance.return_value = EnhancementResult(
            patterns=[replace(FATIGUE, description="Take two easy days before your next interval session.")],
            model_used="gemini-2.5-flash",
            tokens_used=180,
            enhanced_count=1,
        )

        _generator(session_factory, [FATIGUE], enhancer=enhancer).generate(test_athlete.id, now=NOW)

        row = _stored(db_session, test_athlete.id)[0]
        assert row.content == "Take two easy days before your next interval session."
        log = db_session.query(InsightGenerationLog).one()
        assert (log.model_used, log.tokens_used) == ("gemini-2.5-flash", 180)

    def test_enhancer_crash_keeps_original_text(self, session_factory, db_session, test_athlete):
        enhancer = MagicMock()
        enhancer.enhance.side_effect = RuntimeError("boom")

        result = _generator(session_factory, [FATIGUE], enhancer=enhancer).generate(test_athlete.id, now=NOW)

        assert result.insights_created == 1
        assert _stored(db_session, test_athlete.id)[0].content == "Your form (TSB) is at -35."

    def test_lock_held_elsewhere_skips_run(self, session_factory, db_session, test_athlete):
        lock = FakeLock(available=False)
        gen = _generator(session_factory, [FATIGUE], lock=lock)

        result = gen.generate(test_athlete.id, now=NOW)

        assert result.success is True
        assert result.insights_created == 0
        assert gen.rate_limiter.calls == []
        assert lock.released == []

    def test_detector_failure_reports_error_and_releases_lock(self, session_factory, test_athlete):
        lock = FakeLock()
        detector = MagicMock()
        detector.detect.side_effect = RuntimeError("snapshot failed")
        gen = InsightGenerator(session_factory, FakeRateLimiter(), detector=detector, lock=lock)

        result = gen.generate(test_athlete.id, now=NOW)

        assert result.success is False
        assert "snapshot failed" in result.error
        assert lock.released == [test_athlete.id]


class TestReadsAndFlags:

    def test_list_hides_read_and_dismissed(self, session_factory, db_session, test_athlete):
        add_insight(db_session, test_athlete.id, title="Unread", created_at=NOW - timedelta(hours=1))
        add_insight(db_session, test_athlete.id, title="Read", created_at=NOW - timedelta(hours=2), is_read=True)
        add_insight(db_session, test_athlete.id, title="Gone", created_at=NOW - timedelta(hours=3), is_dismissed=True)
        gen = _generator(session_factory)

        assert [i.title for i in gen.list_insights(test_athlete.id)] == ["Unread"]
        assert [i.title for i in gen.list_insights(test_athlete.id, include_read=True)] == ["Unread", "Read"]

    def test_list_filters_types_and_limits(self, session_factory, db_session, test_athlete):
        add_insight(db_session, test_athlete.id, "warning", "A", NOW - timedelta(hours=1))
        add_insight(db_session, test_athlete.id, "trend", "B", NOW - timedelta(hours=2), priority="low")
        add_insight(db_session, test_athlete.id, "warning", "C", NOW - timedelta(hours=3))
        gen = _generator(session_factory)

        assert [i.title for i in gen.list_insights(test_athlete.id, types=["warning"])] == ["A", "C"]
        assert [i.title for i in gen.list_insights(test_athlete.id, limit=2)] == ["A", "B"]

    def test_mark_read_and_dismiss(self, session_factory, db_session, test_athlete):
        insight = add_insight(db_session, test_athlete.id)
        gen = _generator(session_factory)

        assert gen.mark_read(insight.id, test_athlete.id) is True
        assert gen.dismiss(insight.id, test_athlete.id) is True

        db_session.expire_all()
        row = db_session.get(Insight, insight.id)
        assert row.is_read is True and row.is_dismissed is True

    def test_flags_are_scoped_to_athlete(self, session_factory, db_session, test_athlete):
        insight = add_insight(db_session, test_athlete.id)
        gen = _generator(session_factory)

        assert gen.dismiss(insight.id, uuid4()) is False
        assert gen.mark_read(uuid4(), test_athlete.id) is False

    def test_counts_by_type(self, session_factory, db_session, test_athlete):
        add_insight(db_session, test_athlete.id, "warning", "A")
        add_insight(db_session, test_athlete.id, "warning", "B")
        add_insight(db_session, test_athlete.id, "trend", "C", priority="low")
        add_insight(db_session, test_athlete.id, "trend", "D", priority="low", is_read=True)

        assert _generator(session_factory).counts_by_type(test_athlete.id) == {"warning": 2, "trend": 1}

    def test_generation_status(self, session_factory, db_session, test_athlete):
        gen = _generator(session_factory, due=False)
        assert gen.get_generation_status(test_athlete.id).last_generated_at is None

        add_generation_log(db_session, test_athlete.id, NOW - timedelta(hours=1), insights_created=3)
        status = gen.get_generation_status(test_athlete.id, now=NOW)

        assert status.should_generate is False
        assert status.last_generated_at == NOW - timedelta(hours=1)
        assert status.insights_created == 3
