"""
Celery tasks for the post-sync pipeline.

After new sessions land for an athlete:
1. Recalculate the fitness history
2. Check goal progress
3. Generate insights (rate limited)
"""
from typing import Dict
from uuid import UUID
import logging

from celery import Task
from sqlalchemy.orm import Session

from core.cache import invalidate_fitness_cache
from core.database import SessionLocal, get_db_sync
from tasks import celery_app
from services.goal_progress import GoalProgressDetector
from services.insight_generator import build_insight_generator
from services.training_load import TrainingLoadModel

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.recalculate_fitness", bind=True)
def recalculate_fitness_task(self: Task, athlete_id: str) -> Dict:
    """
    Rebuild CTL/ATL/TSB history for one athlete.

    Args:
        athlete_id: UUID string of the athlete

    Returns:
        Dictionary with the number of rows written
    """
    db: Session = get_db_sync()
    try:
        rows = TrainingLoadModel(db).recalculate(UUID(athlete_id))
        invalidate_fitness_cache(athlete_id)
        return {"status": "success", "athlete_id": athlete_id, "rows_written": rows}
    finally:
        db.close()


@celery_app.task(name="tasks.process_athlete_sync", bind=True)
def process_athlete_sync_task(self: Task, athlete_id: str, force_insights: bool = False) -> Dict:
    """Run the full post-sync pipeline for one athlete."""
    athlete_uuid = UUID(athlete_id)

    db: Session = get_db_sync()
    try:
        rows = TrainingLoadModel(db).recalculate(athlete_uuid)
        invalidate_fitness_cache(athlete_id)
        goals = GoalProgressDetector(db).check(athlete_uuid)
    finally:
        db.close()

    result = build_insight_generator(SessionLocal).generate(athlete_uuid, force=force_insights)
    if not result.success:
        logger.warning(f"[SyncPipeline] Insight generation failed for athlete {athlete_id}: {result.error}")

    return {
        "status": "success" if result.success else "partial",
        "athlete_id": athlete_id,
        "fitness_rows": rows,
        "goals_updated": goals.goals_updated,
        "goals_achieved": goals.goals_achieved,
        "insights_created": result.insights_created,
        "patterns_detected": result.patterns_detected,
    }
