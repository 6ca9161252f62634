"""
Training Load Model

Derives day-by-day training stress state from stored sessions:
- CTL (Chronic Training Load) - fitness, 42-day time constant
- ATL (Acute Training Load) - fatigue, 7-day time constant
- TSB (Training Stress Balance) - form (CTL - ATL)

Recurrence per input date, starting from ctl = atl = 0:
    ctl = ctl + (tss - ctl) / 42
    atl = atl + (tss - atl) / 7
    tsb = ctl - atl

All three are rounded to 2 decimals after each step and the rounded
values carry forward. Only dates that have sessions advance the
recurrence unless FITNESS_FILL_REST_DAYS is enabled, in which case every
calendar day between the first and last session gets a zero-TSS step.
"""

from dataclasses import dataclass
from datetime import date, timedelta, datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID
import logging
import math
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.database import dialect_insert
from models import DailyFitness, Event, TrainingSession

logger = logging.getLogger(__name__)


CTL_TIME_CONSTANT = 42
ATL_TIME_CONSTANT = 7

# CTL delta over a week that counts as a real trend
CTL_TREND_THRESHOLD = 2.0


@dataclass(frozen=True)
class DailyFitnessPoint:
    """One computed day of the recurrence."""
    date: date
    ctl: float
    atl: float
    tsb: float
    tss_day: float


@dataclass
class CurrentFitness:
    """Latest fitness row with a weekly CTL trend and the next planned event."""
    date: date
    ctl: float
    atl: float
    tsb: float
    ctl_trend: str  # 'up', 'down', 'stable'
    days_until_event: Optional[int] = None
    event_name: Optional[str] = None


def round_half_up(value: float, ndigits: int = 0):
    """
    Round halves toward +infinity (74.5 -> 75, -2.5 -> -2).

    Built-in round() rounds halves to even, which moves values sitting on
    a threshold. Returns an int when ndigits is 0.
    """
    scale = 10 ** ndigits
    rounded = math.floor(value * scale + 0.5)
    if ndigits == 0:
        return int(rounded)
    return rounded / scale


def group_daily_tss(sessions: Iterable) -> List[Tuple[date, float]]:
    """Sum session TSS per date (null TSS counts as 0), ascending by date."""
    by_date: Dict[date, float] = {}
    for s in sessions:
        by_date[s.date] = by_date.get(s.date, 0.0) + float(s.tss or 0)
    return sorted(by_date.items())


def _fill_rest_days(daily_tss: List[Tuple[date, float]]) -> List[Tuple[date, float]]:
    if not daily_tss:
        return []
    by_date = dict(daily_tss)
    start, end = daily_tss[0][0], daily_tss[-1][0]
    filled = []
    day = start
    while day <= end:
        filled.append((day, by_date.get(day, 0.0)))
        day += timedelta(days=1)
    return filled


def compute_fitness_series(
    daily_tss: List[Tuple[date, float]],
    fill_rest_days: Optional[bool] = None,
) -> List[DailyFitnessPoint]:
    """
    Run the CTL/ATL recurrence over per-day TSS totals.

    Args:
        daily_tss: (date, tss) pairs, one per date, ascending
        fill_rest_days: override for settings.FITNESS_FILL_REST_DAYS

    Returns:
        One DailyFitnessPoint per step, in input order
    """
    if fill_rest_days is None:
        fill_rest_days = settings.FITNESS_FILL_REST_DAYS
    if fill_rest_days:
        daily_tss = _fill_rest_days(daily_tss)

    ctl = 0.0
    atl = 0.0
    series: List[DailyFitnessPoint] = []

    for day, tss in daily_tss:
        ctl = round_half_up(ctl + (tss - ctl) / CTL_TIME_CONSTANT, 2)
        atl = round_half_up(atl + (tss - atl) / ATL_TIME_CONSTANT, 2)
        tsb = round_half_up(ctl - atl, 2)
        series.append(DailyFitnessPoint(date=day, ctl=ctl, atl=atl, tsb=tsb, tss_day=tss))

    return series


class TrainingLoadModel:
    """Recalculates and reads the stored fitness history for an athlete."""

    def __init__(self, db: Session):
        self.db = db

    def recalculate(self, athlete_id: UUID, sessions: Optional[List] = None) -> int:
        """
        Recompute the whole fitness history and replace the stored rows.

        Returns the number of rows written (0 if there were no sessions or
        the store failed).
        """
        try:
            if sessions is None:
                sessions = (
                    self.db.query(TrainingSession.date, TrainingSession.tss)
                    .filter(TrainingSession.athlete_id == athlete_id)
                    .order_by(TrainingSession.date.asc())
                    .all()
                )

            series = compute_fitness_series(group_daily_tss(sessions))

            # Drop rows for dates the series no longer covers (deleted sessions,
            # rest-day filling switched off)
            stale = self.db.query(DailyFitness).filter(DailyFitness.athlete_id == athlete_id)
            if series:
                stale = stale.filter(DailyFitness.date.notin_([p.date for p in series]))
            removed = stale.delete(synchronize_session=False)

            if not series:
                self.db.commit()
                if removed:
                    logger.info(f"[TrainingLoad] Cleared {removed} fitness rows for athlete {athlete_id}")
                return 0

            now = datetime.now(timezone.utc)
            rows = [
                {
                    "id": uuid.uuid4(),
                    "athlete_id": athlete_id,
                    "date": p.date,
                    "ctl": p.ctl,
                    "atl": p.atl,
                    "tsb": p.tsb,
                    "tss_day": p.tss_day,
                    "created_at": now,
                    "updated_at": now,
                }
                for p in series
            ]

            table = DailyFitness.__table__
            stmt = dialect_insert(self.db, table).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.athlete_id, table.c.date],
                set_={
                    "ctl": stmt.excluded.ctl,
                    "atl": stmt.excluded.atl,
                    "tsb": stmt.excluded.tsb,
                    "tss_day": stmt.excluded.tss_day,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            self.db.execute(stmt)
            self.db.commit()

            logger.info(f"[TrainingLoad] Recalculated {len(rows)} fitness rows for athlete {athlete_id}")
            return len(rows)

        except SQLAlchemyError as e:
            logger.error(f"[TrainingLoad] Recalculation failed for athlete {athlete_id}: {e}")
            self.db.rollback()
            return 0

    def get_fitness_history(
        self,
        athlete_id: UUID,
        days: int = 90,
        today: Optional[date] = None,
    ) -> List[DailyFitness]:
        """Fitness rows for the last `days` days, ascending by date."""
        today = today or date.today()
        start = today - timedelta(days=days)
        try:
            return (
                self.db.query(DailyFitness)
                .filter(
                    DailyFitness.athlete_id == athlete_id,
                    DailyFitness.date >= start,
                )
                .order_by(DailyFitness.date.asc())
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"[TrainingLoad] Could not load fitness history for athlete {athlete_id}: {e}")
            return []

    def get_current_fitness(
        self,
        athlete_id: UUID,
        today: Optional[date] = None,
    ) -> Optional[CurrentFitness]:
        today = today or date.today()
        try:
            latest = (
                self.db.query(DailyFitness)
                .filter(DailyFitness.athlete_id == athlete_id)
                .order_by(DailyFitness.date.desc())
                .first()
            )
            if latest is None:
                return None

            week_ago = (
                self.db.query(DailyFitness)
                .filter(
                    DailyFitness.athlete_id == athlete_id,
                    DailyFitness.date <= today - timedelta(days=7),
                )
                .order_by(DailyFitness.date.desc())
                .first()
            )

            next_event = (
                self.db.query(Event)
                .filter(
                    Event.athlete_id == athlete_id,
                    Event.status == "planned",
                    Event.date >= today,
                )
                .order_by(Event.date.asc())
                .first()
            )
        except SQLAlchemyError as e:
            logger.error(f"[TrainingLoad] Could not load current fitness for athlete {athlete_id}: {e}")
            return None

        ctl_trend = "stable"
        if week_ago is not None:
            diff = latest.ctl - week_ago.ctl
            if diff > CTL_TREND_THRESHOLD:
                ctl_trend = "up"
            elif diff < -CTL_TREND_THRESHOLD:
                ctl_trend = "down"

        return CurrentFitness(
            date=latest.date,
            ctl=latest.ctl,
            atl=latest.atl,
            tsb=latest.tsb,
            ctl_trend=ctl_trend,
            days_until_event=(next_event.date - today).days if next_event else None,
            event_name=next_event.name if next_event else None,
        )


def recalculate_fitness(db: Session, athlete_id: UUID) -> int:
    """Recompute and store the full fitness history for one athlete."""
    return TrainingLoadModel(db).recalculate(athlete_id)
