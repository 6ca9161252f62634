"""
Tests for the post-sync Celery tasks, run inline with task.run().
"""
from datetime import date, timedelta

from models import DailyFitness, Goal, Insight
from services.insight_generator import InsightGenerator
from services.pattern_detector import DetectedPattern, InsightPriority, PatternType
from fixtures.training_fixtures import FakeDetector, FakeLock, FakeRateLimiter, add_goal, add_session

FATIGUE = DetectedPattern(PatternType.WARNING, InsightPriority.URGENT, "High Fatigue Alert", "TSB is -35.")


def _wire(monkeypatch, session_factory, due=True):
    monkeypatch.setattr("tasks.insight_tasks.get_db_sync", lambda: session_factory())
    monkeypatch.setattr(
        "tasks.insight_tasks.build_insight_generator",
        lambda sf: InsightGenerator(
            session_factory=session_factory,
            rate_limiter=FakeRateLimiter(due),
            detector=FakeDetector([FATIGUE]),
            lock=FakeLock(),
        ),
    )


def test_recalculate_fitness_task(monkeypatch, session_factory, db_session, test_athlete):
    from tasks.insight_tasks import recalculate_fitness_task

    _wire(monkeypatch, session_factory)
    add_session(db_session, test_athlete.id, date(2026, 3, 1), tss=100.0)

    result = recalculate_fitness_task.run(str(test_athlete.id))

    assert result["status"] == "success"
    assert result["rows_written"] == 1
    assert db_session.query(DailyFitness).filter(DailyFitness.athlete_id == test_athlete.id).count() == 1


def test_process_athlete_sync_runs_full_pipeline(monkeypatch, session_factory, db_session, test_athlete):
    from tasks.insight_tasks import process_athlete_sync_task

    _wire(monkeypatch, session_factory)
    for i in range(3):
        add_session(db_session, test_athlete.id, date(2026, 3, 1) + timedelta(days=i), tss=80.0)
    goal = add_goal(db_session, test_athlete.id, current_value=240.0)

    result = process_athlete_sync_task.run(str(test_athlete.id))

    assert result["status"] == "success"
    assert result["fitness_rows"] == 3
    assert result["goals_updated"] == 1
    assert result["insights_created"] == 1

    db_session.expire_all()
    assert db_session.get(Goal, goal.id).current_value == 250.0
    assert db_session.query(Insight).filter(Insight.athlete_id == test_athlete.id).count() == 1


def test_process_athlete_sync_respects_rate_limit(monkeypatch, session_factory, test_athlete):
    from tasks.insight_tasks import process_athlete_sync_task

    _wire(monkeypatch, session_factory, due=False)

    result = process_athlete_sync_task.run(str(test_athlete.id))

    assert result["status"] == "success"
    assert result["insights_created"] == 0
    assert result["fitness_rows"] == 0
