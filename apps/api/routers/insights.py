"""
Insights API Router

Proactive insights detected from an athlete's training data.

Endpoints:
- GET /insights - Unread (optionally read) insights, newest first
- GET /insights/counts - Unread counts per insight type
- POST /insights/generate - Run a generation (rate limited unless force=true)
- GET /insights/generation-status - Last run and whether one is due
- POST /insights/{id}/read - Mark an insight read
- POST /insights/{id}/dismiss - Dismiss an insight
"""

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

from core.exceptions import NotFoundError
from models import Athlete
from routers.dependencies import get_athlete, get_insight_generator
from services.insight_generator import InsightGenerator

router = APIRouter(prefix="/v1/athletes/{athlete_id}/insights", tags=["Insights"])


# =============================================================================
# SCHEMAS
# =============================================================================

class InsightResponse(BaseModel):
    """Single insight for display"""
    id: UUID
    insight_type: str
    priority: str
    title: str
    content: str
    data: Optional[dict] = None
    source: str
    is_read: bool = False
    is_dismissed: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InsightListResponse(BaseModel):
    insights: List[InsightResponse]
    count: int


class GenerationResponse(BaseModel):
    success: bool
    insights_created: int
    patterns_detected: int
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class GenerationStatusResponse(BaseModel):
    should_generate: bool
    last_generated_at: Optional[datetime] = None
    insights_created: Optional[int] = None
    patterns_detected: List[str] = []
    model_used: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("", response_model=InsightListResponse)
def list_insights(
    limit: int = Query(20, ge=1, le=200),
    include_read: bool = False,
    types: Optional[List[str]] = Query(None),
    athlete: Athlete = Depends(get_athlete),
    generator: InsightGenerator = Depends(get_insight_generator),
):
    insights = generator.list_insights(athlete.id, limit=limit, include_read=include_read, types=types)
    return InsightListResponse(
        insights=[InsightResponse.model_validate(i) for i in insights],
        count=len(insights),
    )


@router.get("/counts", response_model=Dict[str, int])
def get_insight_counts(
    athlete: Athlete = Depends(get_athlete),
    generator: InsightGenerator = Depends(get_insight_generator),
):
    return generator.counts_by_type(athlete.id)


@router.post("/generate", response_model=GenerationResponse)
def generate_insights_now(
    force: bool = False,
    athlete: Athlete = Depends(get_athlete),
    generator: InsightGenerator = Depends(get_insight_generator),
):
    """
    Trigger insight generation.

    Normally runs after a sync; force=true skips the rate limit.
    """
    result = generator.generate(athlete.id, force=force)
    return GenerationResponse.model_validate(result)


@router.get("/generation-status", response_model=GenerationStatusResponse)
def get_generation_status(
    athlete: Athlete = Depends(get_athlete),
    generator: InsightGenerator = Depends(get_insight_generator),
):
    return GenerationStatusResponse.model_validate(generator.get_generation_status(athlete.id))


@router.post("/{insight_id}/read")
def mark_insight_read(
    insight_id: UUID,
    athlete: Athlete = Depends(get_athlete),
    generator: InsightGenerator = Depends(get_insight_generator),
):
    if not generator.mark_read(insight_id, athlete.id):
        raise NotFoundError("Insight", str(insight_id))
    return {"status": "read", "insight_id": str(insight_id)}


@router.post("/{insight_id}/dismiss")
def dismiss_insight(
    insight_id: UUID,
    athlete: Athlete = Depends(get_athlete),
    generator: InsightGenerator = Depends(get_insight_generator),
):
    """Dismiss an insight (hide from every list)."""
    if not generator.dismiss(insight_id, athlete.id):
        raise NotFoundError("Insight", str(insight_id))
    return {"status": "dismissed", "insight_id": str(insight_id)}
