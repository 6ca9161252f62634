"""
Goals Router

- GET /goals - Active goals with progress %, risk level and unit
- POST /goals/{goal_id}/progress - Record a manual progress value
- POST /goals/check-progress - Detect progress from profile, fitness and sessions
"""

from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import NotFoundError
from models import Athlete, Goal
from routers.dependencies import get_athlete
from services.goal_progress import (
    GoalProgressDetector,
    GoalStatus,
    calculate_goal_progress,
    calculate_goal_risk_level,
    days_remaining,
    goal_unit,
    record_goal_progress,
)

router = APIRouter(prefix="/v1/athletes/{athlete_id}/goals", tags=["Goals"])


# ============ Schemas ============

class GoalResponse(BaseModel):
    id: UUID
    title: str
    description: Optional[str] = None
    target_type: str
    metric_type: Optional[str] = None
    target_value: Optional[float] = None
    current_value: Optional[float] = None
    deadline: Optional[date] = None
    status: str
    last_checked_at: Optional[datetime] = None

    # Derived
    progress: Optional[int] = None
    risk_level: str
    unit: str
    days_remaining: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class RecordProgressRequest(BaseModel):
    value: float
    session_id: Optional[str] = None
    notes: Optional[str] = None


class ProgressDetectionResponse(BaseModel):
    goal_id: UUID
    goal_title: str
    detected: bool
    previous_value: Optional[float] = None
    new_value: Optional[float] = None
    session_id: Optional[str] = None
    details: Optional[str] = None
    achieved: bool = False

    model_config = ConfigDict(from_attributes=True)


class GoalProgressCheckResponse(BaseModel):
    goals_checked: int
    goals_updated: int
    goals_achieved: int
    results: List[ProgressDetectionResponse]

    model_config = ConfigDict(from_attributes=True)


def _to_response(goal: Goal, today: date) -> GoalResponse:
    return GoalResponse(
        id=goal.id,
        title=goal.title,
        description=goal.description,
        target_type=goal.target_type,
        metric_type=goal.metric_type,
        target_value=goal.target_value,
        current_value=goal.current_value,
        deadline=goal.deadline,
        status=goal.status,
        last_checked_at=goal.last_checked_at,
        progress=calculate_goal_progress(goal),
        risk_level=calculate_goal_risk_level(goal, today).value,
        unit=goal_unit(goal),
        days_remaining=days_remaining(goal, today),
    )


# ============ Endpoints ============

@router.get("", response_model=List[GoalResponse])
def list_goals(
    athlete: Athlete = Depends(get_athlete),
    db: Session = Depends(get_db),
):
    goals = (
        db.query(Goal)
        .filter(Goal.athlete_id == athlete.id, Goal.status == GoalStatus.ACTIVE.value)
        .order_by(Goal.deadline.asc())
        .all()
    )
    today = date.today()
    return [_to_response(g, today) for g in goals]


@router.post("/check-progress", response_model=GoalProgressCheckResponse)
def check_goal_progress(
    athlete: Athlete = Depends(get_athlete),
    db: Session = Depends(get_db),
):
    """Auto-detect progress for every active goal (normally run after a sync)."""
    result = GoalProgressDetector(db).check(athlete.id)
    return GoalProgressCheckResponse.model_validate(result)


@router.post("/{goal_id}/progress", response_model=GoalResponse)
def record_progress(
    goal_id: UUID,
    request: RecordProgressRequest,
    athlete: Athlete = Depends(get_athlete),
    db: Session = Depends(get_db),
):
    goal = db.query(Goal).filter(Goal.id == goal_id, Goal.athlete_id == athlete.id).first()
    if not goal:
        raise NotFoundError("Goal", str(goal_id))

    record_goal_progress(db, goal, request.value, request.session_id, request.notes)
    db.commit()
    return _to_response(goal, date.today())
