"""
Shared FastAPI dependencies for athlete-scoped routes.

Routes identify the athlete by path parameter; there is no auth layer.
"""
from uuid import UUID

from fastapi import Depends
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import NotFoundError
from models import Athlete
from services.insight_generator import InsightGenerator, build_insight_generator


def get_athlete(athlete_id: UUID, db: Session = Depends(get_db)) -> Athlete:
    """Resolve the path athlete or raise 404."""
    athlete = db.query(Athlete).filter(Athlete.id == athlete_id).first()
    if not athlete:
        raise NotFoundError("Athlete", str(athlete_id))
    return athlete


def get_insight_generator() -> InsightGenerator:
    return build_insight_generator()
