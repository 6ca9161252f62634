"""
Fitness Router

Exposes the training load model:
- POST /fitness/recalculate - rebuild CTL/ATL/TSB history from sessions
- GET /fitness/history - daily rows for charting
- GET /fitness/current - latest values, weekly CTL trend, next event
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from core.cache import cache_key, get_cache, invalidate_fitness_cache, set_cache
from core.database import get_db
from models import Athlete
from routers.dependencies import get_athlete
from services.training_load import TrainingLoadModel

router = APIRouter(prefix="/v1/athletes/{athlete_id}/fitness", tags=["Fitness"])

CURRENT_FITNESS_TTL_S = 600


# ============ Response Models ============

class DailyFitnessResponse(BaseModel):
    date: date
    ctl: float
    atl: float
    tsb: float
    tss_day: float

    model_config = ConfigDict(from_attributes=True)


class FitnessHistoryResponse(BaseModel):
    days: int
    history: List[DailyFitnessResponse]


class CurrentFitnessResponse(BaseModel):
    date: date
    ctl: float
    atl: float
    tsb: float
    ctl_trend: str
    days_until_event: Optional[int] = None
    event_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RecalculateResponse(BaseModel):
    status: str
    rows_written: int


# ============ Endpoints ============

@router.post("/recalculate", response_model=RecalculateResponse)
def recalculate_fitness(
    athlete: Athlete = Depends(get_athlete),
    db: Session = Depends(get_db),
):
    """Recompute the athlete's full fitness history from stored sessions."""
    rows = TrainingLoadModel(db).recalculate(athlete.id)
    invalidate_fitness_cache(athlete.id)
    return RecalculateResponse(status="recalculated", rows_written=rows)


@router.get("/history", response_model=FitnessHistoryResponse)
def get_fitness_history(
    days: int = Query(90, ge=7, le=365),
    athlete: Athlete = Depends(get_athlete),
    db: Session = Depends(get_db),
):
    history = TrainingLoadModel(db).get_fitness_history(athlete.id, days=days)
    return FitnessHistoryResponse(
        days=days,
        history=[DailyFitnessResponse.model_validate(row) for row in history],
    )


@router.get("/current", response_model=Optional[CurrentFitnessResponse])
def get_current_fitness(
    athlete: Athlete = Depends(get_athlete),
    db: Session = Depends(get_db),
):
    """
    Latest CTL/ATL/TSB with a weekly CTL trend and the next planned event.

    Returns null when the athlete has no fitness history yet.
    """
    key = cache_key("fitness_current", athlete.id)
    cached = get_cache(key)
    if cached:
        return cached

    current = TrainingLoadModel(db).get_current_fitness(athlete.id)
    if current is None:
        return None

    response = CurrentFitnessResponse.model_validate(current)
    set_cache(key, response.model_dump(mode="json"), ttl=CURRENT_FITNESS_TTL_S)
    return response
