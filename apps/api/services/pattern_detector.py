"""
Pattern Detector

Scans an athlete's recent fitness history, sessions, upcoming events and
active goals and emits DetectedPattern records for anything worth telling
the athlete about: fitness trends, fatigue warnings, achievements,
training habits, race preparation, form-based suggestions and goal
milestones.

Data is fetched concurrently (one DB session per fetch) into a read-only
DetectionSnapshot. Evaluators are pure functions over that snapshot and
run in EVALUATORS order; one evaluator failing never stops the others.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID
import logging

from sqlalchemy.exc import SQLAlchemyError

from models import DailyFitness, Event, Goal, TrainingSession
from services.goal_progress import (
    GoalRiskLevel,
    GoalStatus,
    calculate_goal_progress,
    calculate_goal_risk_level,
    days_remaining,
    goal_unit,
)
from services.training_load import round_half_up

logger = logging.getLogger(__name__)


# =============================================================================
# TYPES
# =============================================================================

class PatternType(str, Enum):
    TREND = "trend"
    WARNING = "warning"
    ACHIEVEMENT = "achievement"
    SUGGESTION = "suggestion"
    PATTERN = "pattern"
    EVENT_PREP = "event_prep"
    GOAL_PROGRESS = "goal_progress"


class InsightPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True)
class DetectedPattern:
    """A finding from one evaluator. Never mutated; copy with dataclasses.replace."""
    type: PatternType
    priority: InsightPriority
    title: str
    description: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> str:
        return f"{self.type.value}:{self.title}"


@dataclass(frozen=True)
class DetectionSnapshot:
    """
    Everything the evaluators read.

    fitness and sessions are newest first, events soonest first.
    goals is None when the goal fetch failed (goal evaluation is skipped).
    """
    today: date
    fitness: Sequence[DailyFitness] = ()
    sessions: Sequence[TrainingSession] = ()
    events: Sequence[Event] = ()
    goals: Optional[Sequence[Goal]] = ()


# Lookback windows
FITNESS_LOOKBACK_DAYS = 90
SESSION_LOOKBACK_DAYS = 30
UPCOMING_EVENT_LIMIT = 5

# Fitness trends
TWO_WEEK_INDEX = 13
FOUR_WEEK_INDEX = 27
TWO_WEEK_CHANGE_PCT = 10
FOUR_WEEK_MILESTONE_PCT = 20

# Fatigue
TSB_URGENT = -30
TSB_ELEVATED = -20
ATL_SPIKE_RATIO = 1.5
ATL_SPIKE_FLOOR = 80

# Achievements
STEADY_EFFORT_S = 1200
NOTABLE_NP_W = 200
CONSISTENT_TRAINING_DAYS = 20
HIGH_VOLUME_HOURS = 40

# Training patterns
HIGH_INTENSITY_IF = 0.85
HEAVY_WEEK_SESSIONS = 4
VARIETY_MIN_SESSIONS = 10
VARIETY_MAX_TYPES = 2

# Form
FORM_SWEET_SPOT = (5, 25)
FORM_MIN_CTL = 40
FORM_VERY_FRESH = 30


def _within_last_week(d: date, today: date) -> bool:
    return (today - d).days < 7


def _pct_change(current: float, previous: float) -> float:
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100


# =============================================================================
# EVALUATORS
# =============================================================================

def detect_fitness_trends(snapshot: DetectionSnapshot) -> List[DetectedPattern]:
    fitness = snapshot.fitness
    if len(fitness) <= TWO_WEEK_INDEX:
        return []

    patterns: List[DetectedPattern] = []
    current = fitness[0]
    two_weeks_ago = fitness[TWO_WEEK_INDEX]

    change_2w = current.ctl - two_weeks_ago.ctl
    pct_2w = _pct_change(current.ctl, two_weeks_ago.ctl)

    if pct_2w >= TWO_WEEK_CHANGE_PCT:
        patterns.append(DetectedPattern(
            type=PatternType.TREND,
            priority=InsightPriority.MEDIUM,
            title="Fitness Building Nicely",
            description=(
                f"Your CTL has increased {round_half_up(pct_2w)}% over the last 2 weeks "
                f"({round_half_up(two_weeks_ago.ctl)} → {round_half_up(current.ctl)}). Great progress!"
            ),
            data={"ctl_change": change_2w, "ctl_change_percent": pct_2w, "period": "2 weeks"},
        ))
    elif pct_2w <= -TWO_WEEK_CHANGE_PCT:
        patterns.append(DetectedPattern(
            type=PatternType.TREND,
            priority=InsightPriority.MEDIUM,
            title="Fitness Declining",
            description=(
                f"Your CTL has dropped {round_half_up(abs(pct_2w))}% over the last 2 weeks. "
                "Consider whether this is intentional (rest/taper) or if you need to "
                "increase training load."
            ),
            data={"ctl_change": change_2w, "ctl_change_percent": pct_2w, "period": "2 weeks"},
        ))

    if len(fitness) > FOUR_WEEK_INDEX:
        four_weeks_ago = fitness[FOUR_WEEK_INDEX]
        pct_4w = _pct_change(current.ctl, four_weeks_ago.ctl)
        if pct_4w >= FOUR_WEEK_MILESTONE_PCT:
            patterns.append(DetectedPattern(
                type=PatternType.ACHIEVEMENT,
                priority=InsightPriority.LOW,
                title="Monthly Fitness Milestone",
                description=(
                    f"Your fitness (CTL) is up {round_half_up(pct_4w)}% over the past month. "
                    "Consistent work is paying off!"
                ),
                data={
                    "ctl_change": current.ctl - four_weeks_ago.ctl,
                    "ctl_change_percent": pct_4w,
                    "period": "4 weeks",
                },
            ))

    return patterns


def detect_fatigue_warnings(snapshot: DetectionSnapshot) -> List[DetectedPattern]:
    if not snapshot.fitness:
        return []

    patterns: List[DetectedPattern] = []
    current = snapshot.fitness[0]
    data = {"tsb": current.tsb, "atl": current.atl, "ctl": current.ctl}

    if current.tsb < TSB_URGENT:
        patterns.append(DetectedPattern(
            type=PatternType.WARNING,
            priority=InsightPriority.URGENT,
            title="High Fatigue Alert",
            description=(
                f"Your form (TSB) is at {round_half_up(current.tsb)}, indicating significant fatigue. "
                "Consider a rest day or easy recovery ride to avoid overtraining."
            ),
            data=data,
        ))
    elif current.tsb < TSB_ELEVATED:
        patterns.append(DetectedPattern(
            type=PatternType.WARNING,
            priority=InsightPriority.HIGH,
            title="Elevated Fatigue",
            description=(
                f"Your form (TSB) is at {round_half_up(current.tsb)}. You're carrying fatigue - "
                "a lighter day might help you absorb recent training."
            ),
            data=data,
        ))

    if current.atl > current.ctl * ATL_SPIKE_RATIO and current.atl > ATL_SPIKE_FLOOR:
        patterns.append(DetectedPattern(
            type=PatternType.WARNING,
            priority=InsightPriority.HIGH,
            title="Training Load Spike",
            description=(
                f"Your acute load (ATL: {round_half_up(current.atl)}) is significantly higher than "
                f"your chronic load (CTL: {round_half_up(current.ctl)}). Be careful not to overreach."
            ),
            data={
                "atl": current.atl,
                "ctl": current.ctl,
                "ratio": current.atl / current.ctl if current.ctl else None,
            },
        ))

    return patterns


def detect_achievements(snapshot: DetectionSnapshot) -> List[DetectedPattern]:
    sessions = snapshot.sessions
    if len(sessions) < 2:
        return []

    patterns: List[DetectedPattern] = []

    steady = [s for s in sessions if s.normalized_power and (s.duration_seconds or 0) >= STEADY_EFFORT_S]
    if steady:
        max_np = max(s.normalized_power for s in steady)
        best = next(s for s in steady if s.normalized_power == max_np)
        if _within_last_week(best.date, snapshot.today) and max_np > NOTABLE_NP_W:
            patterns.append(DetectedPattern(
                type=PatternType.ACHIEVEMENT,
                priority=InsightPriority.MEDIUM,
                title="Strong Power Output",
                description=(
                    f"Your recent ride hit {round_half_up(max_np)}W normalized power - "
                    "one of your best efforts in the past month!"
                ),
                data={
                    "normalized_power": max_np,
                    "session_id": str(best.id),
                    "date": best.date.isoformat(),
                },
            ))

    training_days = len({s.date for s in sessions})
    if training_days >= CONSISTENT_TRAINING_DAYS:
        patterns.append(DetectedPattern(
            type=PatternType.ACHIEVEMENT,
            priority=InsightPriority.LOW,
            title="Training Consistency",
            description=(
                f"You've trained {training_days} days in the last month. "
                "Consistency is key to improvement!"
            ),
            data={"training_days": training_days},
        ))

    total_hours = sum(s.duration_seconds or 0 for s in sessions) / 3600
    if total_hours >= HIGH_VOLUME_HOURS:
        patterns.append(DetectedPattern(
            type=PatternType.ACHIEVEMENT,
            priority=InsightPriority.LOW,
            title="High Training Volume",
            description=f"You've logged {round_half_up(total_hours)} hours of training in the past month. Solid volume!",
            data={"total_hours": total_hours},
        ))

    return patterns


def detect_training_patterns(snapshot: DetectionSnapshot) -> List[DetectedPattern]:
    sessions = snapshot.sessions
    if len(sessions) < 7:
        return []

    patterns: List[DetectedPattern] = []

    recent_hard = [
        s for s in sessions
        if (s.intensity_factor or 0) > HIGH_INTENSITY_IF and _within_last_week(s.date, snapshot.today)
    ]
    if len(recent_hard) >= HEAVY_WEEK_SESSIONS:
        patterns.append(DetectedPattern(
            type=PatternType.PATTERN,
            priority=InsightPriority.MEDIUM,
            title="Heavy Intensity Week",
            description=(
                f"You've done {len(recent_hard)} high-intensity sessions in the past week. "
                "Consider adding more recovery rides to balance the load."
            ),
            data={"high_intensity_count": len(recent_hard)},
        ))

    workout_types = sorted({s.workout_type for s in sessions if s.workout_type})
    if len(sessions) >= VARIETY_MIN_SESSIONS and len(workout_types) <= VARIETY_MAX_TYPES:
        patterns.append(DetectedPattern(
            type=PatternType.SUGGESTION,
            priority=InsightPriority.LOW,
            title="Add Training Variety",
            description=(
                "Your recent training has been mostly the same type. Consider mixing in "
                "different workout styles to target different energy systems."
            ),
            data={"workout_types": workout_types},
        ))

    return patterns


def detect_event_prep(snapshot: DetectionSnapshot) -> List[DetectedPattern]:
    patterns: List[DetectedPattern] = []

    for event in snapshot.events:
        if event.priority not in ("A", "B"):
            continue

        days_until = (event.date - snapshot.today).days
        data = {"event_id": str(event.id), "event_name": event.name, "days_until": days_until}

        if 14 < days_until <= 21:
            patterns.append(DetectedPattern(
                type=PatternType.EVENT_PREP,
                priority=InsightPriority.HIGH,
                title=f"3 Weeks to {event.name}",
                description=(
                    f"Your {event.priority}-priority event is in {days_until} days. This is "
                    "typically when you'd start reducing volume while maintaining intensity."
                ),
                data=data,
            ))
        elif 7 < days_until <= 14:
            patterns.append(DetectedPattern(
                type=PatternType.EVENT_PREP,
                priority=InsightPriority.HIGH,
                title=f"2 Weeks to {event.name}",
                description=(
                    f"{event.name} is in {days_until} days. Time to start your taper - "
                    "reduce volume by 30-40% while keeping some intensity."
                ),
                data=data,
            ))
        elif 3 < days_until <= 7:
            patterns.append(DetectedPattern(
                type=PatternType.EVENT_PREP,
                priority=InsightPriority.URGENT,
                title=f"Race Week: {event.name}",
                description=(
                    f"{event.name} is in {days_until} days! Keep rides short and easy, maybe "
                    "one opener workout. Focus on rest, nutrition, and mental prep."
                ),
                data=data,
            ))

    return patterns


def detect_form_suggestions(snapshot: DetectionSnapshot) -> List[DetectedPattern]:
    if not snapshot.fitness:
        return []

    patterns: List[DetectedPattern] = []
    current = snapshot.fitness[0]
    low, high = FORM_SWEET_SPOT

    if low <= current.tsb <= high and current.ctl >= FORM_MIN_CTL:
        patterns.append(DetectedPattern(
            type=PatternType.SUGGESTION,
            priority=InsightPriority.MEDIUM,
            title="Good Day for Intensity",
            description=(
                f"Your form (TSB: {round_half_up(current.tsb)}) is in the sweet spot. You're fresh "
                "enough for a quality workout but fit enough to handle it."
            ),
            data={"tsb": current.tsb, "ctl": current.ctl},
        ))

    if current.tsb > FORM_VERY_FRESH:
        patterns.append(DetectedPattern(
            type=PatternType.SUGGESTION,
            priority=InsightPriority.LOW,
            title="Time to Train",
            description=(
                f"Your form (TSB: {round_half_up(current.tsb)}) is very high. Unless you're tapering, "
                "you might be losing fitness. Consider getting back to training."
            ),
            data={"tsb": current.tsb},
        ))

    return patterns


def detect_training_status(snapshot: DetectionSnapshot) -> List[DetectedPattern]:
    """Low-priority summaries that appear whenever there is any data."""
    patterns: List[DetectedPattern] = []

    if snapshot.fitness:
        current = snapshot.fitness[0]
        state = "You're carrying some fatigue." if current.tsb < 0 else "You're relatively fresh."
        patterns.append(DetectedPattern(
            type=PatternType.TREND,
            priority=InsightPriority.LOW,
            title="Current Training Status",
            description=(
                f"Fitness (CTL): {round_half_up(current.ctl)}, Fatigue (ATL): {round_half_up(current.atl)}, "
                f"Form (TSB): {round_half_up(current.tsb)}. {state}"
            ),
            data={"ctl": current.ctl, "atl": current.atl, "tsb": current.tsb},
        ))

    if snapshot.sessions:
        recent = snapshot.sessions[:5]
        avg_minutes = round_half_up(sum(s.duration_seconds or 0 for s in recent) / len(recent) / 60)
        patterns.append(DetectedPattern(
            type=PatternType.PATTERN,
            priority=InsightPriority.LOW,
            title="Recent Training",
            description=(
                f"You've completed {len(snapshot.sessions)} workouts in the last 30 days, "
                f"averaging {avg_minutes} minutes per session."
            ),
            data={"session_count": len(snapshot.sessions), "avg_duration": avg_minutes},
        ))

    return patterns


def detect_goal_patterns(snapshot: DetectionSnapshot) -> List[DetectedPattern]:
    if snapshot.goals is None:
        return []

    patterns: List[DetectedPattern] = []

    for goal in snapshot.goals:
        progress = calculate_goal_progress(goal)
        if progress is None:
            continue

        unit = goal_unit(goal)
        goal_ref = {"goal_id": str(goal.id), "goal_title": goal.title}

        if progress >= 100 and goal.status == GoalStatus.ACTIVE.value:
            patterns.append(DetectedPattern(
                type=PatternType.ACHIEVEMENT,
                priority=InsightPriority.HIGH,
                title=f"Goal Achieved: {goal.title}",
                description=(
                    f"Congratulations! You've reached your goal of {goal.target_value:g} {unit}. "
                    "Time to set a new target!"
                ),
                data={
                    **goal_ref,
                    "target_value": goal.target_value,
                    "current_value": goal.current_value,
                    "progress": progress,
                },
            ))
            continue

        if 90 <= progress < 100:
            current_value = goal.current_value if goal.current_value is not None else 0
            patterns.append(DetectedPattern(
                type=PatternType.GOAL_PROGRESS,
                priority=InsightPriority.MEDIUM,
                title=f"Almost There: {goal.title}",
                description=(
                    f"You're {progress}% of the way to your goal "
                    f"({current_value:g}/{goal.target_value:g} {unit}). Just a little more push!"
                ),
                data={**goal_ref, "progress": progress, "milestone": 90},
            ))
        elif 75 <= progress < 90:
            patterns.append(DetectedPattern(
                type=PatternType.GOAL_PROGRESS,
                priority=InsightPriority.LOW,
                title=f"Great Progress: {goal.title}",
                description=f"You're {progress}% of the way to your goal. Keep up the momentum!",
                data={**goal_ref, "progress": progress, "milestone": 75},
            ))

        risk = calculate_goal_risk_level(goal, snapshot.today)
        remaining = days_remaining(goal, snapshot.today)
        if risk != GoalRiskLevel.AT_RISK or remaining is None:
            continue

        deadline = goal.deadline.isoformat()
        if remaining <= 0:
            patterns.append(DetectedPattern(
                type=PatternType.WARNING,
                priority=InsightPriority.HIGH,
                title=f"Goal Deadline Passed: {goal.title}",
                description=(
                    f'The deadline for "{goal.title}" has passed. You reached {progress}% of your '
                    "target. Consider adjusting the goal or setting a new deadline."
                ),
                data={**goal_ref, "progress": progress, "deadline": deadline},
            ))
        elif remaining <= 7:
            patterns.append(DetectedPattern(
                type=PatternType.WARNING,
                priority=InsightPriority.HIGH,
                title=f"Goal At Risk: {goal.title}",
                description=(
                    f"Only {remaining} days left to reach your goal, but you're only at "
                    f"{progress}%. You may need to intensify efforts or adjust expectations."
                ),
                data={**goal_ref, "progress": progress, "days_remaining": remaining, "deadline": deadline},
            ))
        elif remaining <= 14:
            patterns.append(DetectedPattern(
                type=PatternType.WARNING,
                priority=InsightPriority.MEDIUM,
                title=f"Goal Behind Schedule: {goal.title}",
                description=(
                    f"{remaining} days remaining and you're at {progress}%. Consider whether "
                    "you're on track or need to adjust your approach."
                ),
                data={**goal_ref, "progress": progress, "days_remaining": remaining, "deadline": deadline},
            ))

    return patterns


Evaluator = Callable[[DetectionSnapshot], List[DetectedPattern]]

# Output order follows this list.
EVALUATORS: List[Evaluator] = [
    detect_fitness_trends,
    detect_fatigue_warnings,
    detect_achievements,
    detect_training_patterns,
    detect_event_prep,
    detect_form_suggestions,
    detect_training_status,
    detect_goal_patterns,
]


def run_evaluators(
    snapshot: DetectionSnapshot,
    evaluators: Optional[Sequence[Evaluator]] = None,
) -> List[DetectedPattern]:
    """Run each evaluator in isolation and concatenate the results."""
    patterns: List[DetectedPattern] = []
    for evaluator in evaluators if evaluators is not None else EVALUATORS:
        try:
            patterns.extend(evaluator(snapshot))
        except Exception as e:
            logger.error(f"[PatternDetector] Evaluator {evaluator.__name__} failed: {e}", exc_info=True)
    return patterns


# =============================================================================
# DETECTOR
# =============================================================================

class PatternDetector:
    """
    Fetches detection inputs concurrently and runs the evaluators.

    session_factory must return a new SQLAlchemy Session per call; each
    fetch runs on its own worker thread with its own session.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def detect(self, athlete_id: UUID, today: Optional[date] = None) -> List[DetectedPattern]:
        snapshot = self.load_snapshot(athlete_id, today)
        patterns = run_evaluators(snapshot)

        logger.info(
            f"[PatternDetector] Athlete {athlete_id}: {len(snapshot.fitness)} fitness rows, "
            f"{len(snapshot.sessions)} sessions, {len(snapshot.events)} events -> "
            f"{len(patterns)} patterns ({', '.join(p.type.value for p in patterns)})"
        )
        return patterns

    def load_snapshot(self, athlete_id: UUID, today: Optional[date] = None) -> DetectionSnapshot:
        today = today or date.today()

        with ThreadPoolExecutor(max_workers=4) as pool:
            fitness_future = pool.submit(self._fetch, "fitness", self._fetch_fitness, athlete_id, today)
            sessions_future = pool.submit(self._fetch, "sessions", self._fetch_sessions, athlete_id, today)
            events_future = pool.submit(self._fetch, "events", self._fetch_events, athlete_id, today)
            goals_future = pool.submit(self._fetch, "goals", self._fetch_goals, athlete_id, today)

            fitness = fitness_future.result()
            sessions = sessions_future.result()
            events = events_future.result()
            goals = goals_future.result()

        return DetectionSnapshot(
            today=today,
            fitness=tuple(fitness or ()),
            sessions=tuple(sessions or ()),
            events=tuple(events or ()),
            goals=tuple(goals) if goals is not None else None,
        )

    def _fetch(self, name: str, query, athlete_id: UUID, today: date) -> Optional[list]:
        """Run one fetch in its own session; None on store failure."""
        try:
            with self.session_factory() as db:
                return query(db, athlete_id, today)
        except SQLAlchemyError as e:
            logger.warning(f"[PatternDetector] {name} fetch failed for athlete {athlete_id}: {e}")
            return None

    @staticmethod
    def _fetch_fitness(db, athlete_id: UUID, today: date) -> list:
        return (
            db.query(DailyFitness)
            .filter(
                DailyFitness.athlete_id == athlete_id,
                DailyFitness.date >= today - timedelta(days=FITNESS_LOOKBACK_DAYS),
            )
            .order_by(DailyFitness.date.desc())
            .all()
        )

    @staticmethod
    def _fetch_sessions(db, athlete_id: UUID, today: date) -> list:
        return (
            db.query(TrainingSession)
            .filter(
                TrainingSession.athlete_id == athlete_id,
                TrainingSession.date >= today - timedelta(days=SESSION_LOOKBACK_DAYS),
            )
            .order_by(TrainingSession.date.desc())
            .all()
        )

    @staticmethod
    def _fetch_events(db, athlete_id: UUID, today: date) -> list:
        return (
            db.query(Event)
            .filter(Event.athlete_id == athlete_id, Event.date >= today)
            .order_by(Event.date.asc())
            .limit(UPCOMING_EVENT_LIMIT)
            .all()
        )

    @staticmethod
    def _fetch_goals(db, athlete_id: UUID, today: date) -> list:
        return (
            db.query(Goal)
            .filter(Goal.athlete_id == athlete_id, Goal.status == GoalStatus.ACTIVE.value)
            .all()
        )


def detect_patterns(session_factory, athlete_id: UUID, today: Optional[date] = None) -> List[DetectedPattern]:
    return PatternDetector(session_factory).detect(athlete_id, today)
