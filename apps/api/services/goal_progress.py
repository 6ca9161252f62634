"""
Goal Progress & Risk Engine

Pure progress / risk calculations over a goal record, plus the detector
that runs after a sync and pulls new current values for active goals from
the athlete profile, the fitness history and recent sessions.

Progress is a percentage of target and is not capped: 100 or more means
the target has been met or exceeded. Weight and HR-at-power goals are
smaller-is-better.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Athlete, DailyFitness, Goal, GoalProgress, TrainingSession
from services.training_load import round_half_up

logger = logging.getLogger(__name__)


class GoalTargetType(str, Enum):
    FTP = "ftp"
    CTL = "ctl"
    WEIGHT = "weight"
    WEEKLY_HOURS = "weekly_hours"
    METRIC = "metric"
    EVENT_FINISH = "event_finish"


class GoalMetricType(str, Enum):
    HR_AT_POWER = "hr_at_power"
    POWER_DURATION = "power_duration"
    RELATIVE_POWER = "relative_power"


class GoalStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class GoalRiskLevel(str, Enum):
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    ACHIEVED = "achieved"
    UNKNOWN = "unknown"  # no deadline or no measurable progress


# Behind expected progress by more than this many points -> at risk
RISK_MARGIN_PCT = 20

# Session window used by metric goal detection
RECENT_SESSION_DAYS = 7

# Sessions shorter than this don't count as a steady effort at power
MIN_STEADY_EFFORT_S = 1200
POWER_MATCH_TOLERANCE = 0.10


def _value(v) -> str:
    return str(v.value) if isinstance(v, Enum) else (v or "")


def _as_date(v) -> Optional[date]:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v.date()
    return v


def _is_smaller_better(goal) -> bool:
    return (
        _value(goal.target_type) == GoalTargetType.WEIGHT.value
        or _value(goal.metric_type) == GoalMetricType.HR_AT_POWER.value
    )


def calculate_goal_progress(goal) -> Optional[int]:
    """
    Percentage progress toward target, or None when it can't be measured.

    None for a missing/zero target and for event_finish goals.
    """
    target = goal.target_value
    if not target:
        return None
    if _value(goal.target_type) == GoalTargetType.EVENT_FINISH.value:
        return None

    current = goal.current_value or 0

    if _is_smaller_better(goal):
        if current == 0:
            return 0
        return round_half_up(target / current * 100)

    return round_half_up(current / target * 100)


def days_remaining(goal, today: Optional[date] = None) -> Optional[int]:
    deadline = _as_date(goal.deadline)
    if deadline is None:
        return None
    return (deadline - (today or date.today())).days


def calculate_goal_risk_level(goal, today: Optional[date] = None) -> GoalRiskLevel:
    """
    Classify a goal against its deadline.

    Expected progress is linear from created_at to the deadline; a goal is
    at risk when it trails that line by more than RISK_MARGIN_PCT points.
    """
    today = today or date.today()

    if _value(goal.status) == GoalStatus.COMPLETED.value:
        return GoalRiskLevel.ACHIEVED

    deadline = _as_date(goal.deadline)
    if deadline is None:
        return GoalRiskLevel.UNKNOWN

    progress = calculate_goal_progress(goal)
    if progress is None:
        return GoalRiskLevel.UNKNOWN

    remaining = (deadline - today).days
    if remaining <= 0:
        return GoalRiskLevel.ACHIEVED if progress >= 100 else GoalRiskLevel.AT_RISK

    created = _as_date(goal.created_at) or today
    total_days = (deadline - created).days
    elapsed = (today - created).days
    expected = round_half_up(elapsed / total_days * 100) if total_days > 0 else 100

    if progress < expected - RISK_MARGIN_PCT:
        return GoalRiskLevel.AT_RISK
    if progress >= 100:
        return GoalRiskLevel.ACHIEVED
    return GoalRiskLevel.ON_TRACK


def goal_unit(goal) -> str:
    """Display unit for a goal's target value."""
    target_type = _value(goal.target_type)
    if target_type == GoalTargetType.METRIC.value:
        return {
            GoalMetricType.HR_AT_POWER.value: "bpm",
            GoalMetricType.POWER_DURATION.value: "W",
            GoalMetricType.RELATIVE_POWER.value: "W/kg",
        }.get(_value(goal.metric_type), "")
    return {
        GoalTargetType.FTP.value: "W",
        GoalTargetType.CTL.value: "CTL",
        GoalTargetType.WEIGHT.value: "kg",
        GoalTargetType.WEEKLY_HOURS.value: "hours",
    }.get(target_type, "")


# =============================================================================
# PERSISTENCE
# =============================================================================

def record_goal_progress(
    db: Session,
    goal: Goal,
    value: float,
    session_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> GoalProgress:
    """Append a progress entry and move the goal's current value. Caller commits."""
    now = datetime.now(timezone.utc)
    entry = GoalProgress(
        goal_id=goal.id,
        recorded_at=now,
        value=value,
        session_id=session_id,
        notes=notes,
    )
    db.add(entry)
    goal.current_value = value
    goal.last_checked_at = now
    goal.updated_at = now
    return entry


def mark_goal_achieved(db: Session, goal: Goal, session_id: Optional[str] = None) -> None:
    goal.status = GoalStatus.COMPLETED.value
    goal.achievement_session_id = session_id
    goal.updated_at = datetime.now(timezone.utc)


# =============================================================================
# PROGRESS DETECTION
# =============================================================================

@dataclass
class ProgressDetectionResult:
    goal_id: UUID
    goal_title: str
    detected: bool = False
    previous_value: Optional[float] = None
    new_value: Optional[float] = None
    session_id: Optional[str] = None
    details: Optional[str] = None
    achieved: bool = False


@dataclass
class GoalProgressCheckResult:
    goals_checked: int = 0
    goals_updated: int = 0
    goals_achieved: int = 0
    results: List[ProgressDetectionResult] = field(default_factory=list)


class GoalProgressDetector:
    """
    Detect new current values for an athlete's active goals.

    Runs after a sync. Each goal is checked independently; a failure on one
    goal is recorded in its result and the rest still run.
    """

    def __init__(self, db: Session):
        self.db = db

    def check(self, athlete_id: UUID, today: Optional[date] = None) -> GoalProgressCheckResult:
        today = today or date.today()

        try:
            goals = (
                self.db.query(Goal)
                .filter(Goal.athlete_id == athlete_id, Goal.status == GoalStatus.ACTIVE.value)
                .all()
            )
            if not goals:
                return GoalProgressCheckResult()

            athlete = self.db.query(Athlete).filter(Athlete.id == athlete_id).first()
            latest_fitness = (
                self.db.query(DailyFitness)
                .filter(DailyFitness.athlete_id == athlete_id)
                .order_by(DailyFitness.date.desc())
                .first()
            )
            recent_sessions = (
                self.db.query(TrainingSession)
                .filter(
                    TrainingSession.athlete_id == athlete_id,
                    TrainingSession.date >= today - timedelta(days=RECENT_SESSION_DAYS),
                )
                .order_by(TrainingSession.date.desc())
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"[GoalProgress] Could not load goal inputs for athlete {athlete_id}: {e}")
            self.db.rollback()
            return GoalProgressCheckResult()

        summary = GoalProgressCheckResult(goals_checked=len(goals))

        for goal in goals:
            try:
                result = self._detect(goal, athlete, latest_fitness, recent_sessions)
                summary.results.append(result)

                if result.detected and result.new_value is not None:
                    record_goal_progress(
                        self.db, goal, result.new_value, result.session_id, result.details
                    )
                    summary.goals_updated += 1
                    if result.achieved:
                        mark_goal_achieved(self.db, goal, result.session_id)
                        summary.goals_achieved += 1
                else:
                    goal.last_checked_at = datetime.now(timezone.utc)

                self.db.commit()
            except Exception as e:
                logger.error(f"[GoalProgress] Error checking goal {goal.id}: {e}")
                self.db.rollback()
                summary.results.append(ProgressDetectionResult(
                    goal_id=goal.id,
                    goal_title=goal.title,
                    details=f"Error: {e}",
                ))

        logger.info(
            f"[GoalProgress] Athlete {athlete_id}: checked {summary.goals_checked}, "
            f"updated {summary.goals_updated}, achieved {summary.goals_achieved}"
        )
        return summary

    def _detect(self, goal, athlete, fitness, sessions) -> ProgressDetectionResult:
        base = ProgressDetectionResult(
            goal_id=goal.id,
            goal_title=goal.title,
            previous_value=goal.current_value,
        )
        target_type = _value(goal.target_type)

        if target_type == GoalTargetType.FTP.value:
            return _detect_ftp(goal, athlete, base)
        if target_type == GoalTargetType.CTL.value:
            return _detect_ctl(goal, fitness, base)
        if target_type == GoalTargetType.WEIGHT.value:
            return _detect_weight(goal, athlete, base)
        if target_type == GoalTargetType.METRIC.value:
            return _detect_metric(goal, sessions, athlete, base)
        return base


def _detect_ftp(goal, athlete, base: ProgressDetectionResult) -> ProgressDetectionResult:
    if athlete is None or not athlete.ftp:
        base.details = "No FTP data available"
        return base

    previous = goal.current_value or 0
    if athlete.ftp != previous:
        base.detected = True
        base.new_value = athlete.ftp
        base.details = f"FTP updated from {previous:g}W to {athlete.ftp:g}W"
        base.achieved = bool(goal.target_value) and athlete.ftp >= goal.target_value
    return base


def _detect_ctl(goal, fitness, base: ProgressDetectionResult) -> ProgressDetectionResult:
    if fitness is None or not fitness.ctl:
        base.details = "No CTL data available"
        return base

    current = round_half_up(fitness.ctl)
    previous = goal.current_value or 0
    if abs(current - previous) >= 1:
        base.detected = True
        base.new_value = float(current)
        base.details = f"CTL updated from {previous:g} to {current}"
        base.achieved = bool(goal.target_value) and current >= goal.target_value
    return base


def _detect_weight(goal, athlete, base: ProgressDetectionResult) -> ProgressDetectionResult:
    if athlete is None or not athlete.weight_kg:
        base.details = "No weight data available"
        return base

    current = athlete.weight_kg
    previous = goal.current_value or 0
    if abs(current - previous) >= 0.1:
        base.detected = True
        base.new_value = current
        base.details = f"Weight updated from {previous:g}kg to {current:g}kg"
        base.achieved = bool(goal.target_value) and current <= goal.target_value
    return base


def _detect_metric(goal, sessions, athlete, base: ProgressDetectionResult) -> ProgressDetectionResult:
    conditions: Dict[str, Any] = goal.metric_conditions or {}
    metric_type = _value(goal.metric_type)
    if not metric_type or not conditions:
        base.details = "Invalid metric goal configuration"
        return base

    if metric_type == GoalMetricType.HR_AT_POWER.value:
        return _detect_hr_at_power(goal, conditions, sessions, base)
    if metric_type == GoalMetricType.POWER_DURATION.value:
        return _detect_power_duration(goal, conditions, sessions, base)
    if metric_type == GoalMetricType.RELATIVE_POWER.value:
        return _detect_relative_power(goal, conditions, athlete, base)
    return base


def _detect_hr_at_power(goal, conditions, sessions, base: ProgressDetectionResult) -> ProgressDetectionResult:
    """Lowest average HR among steady sessions ridden near the target power."""
    target_power = conditions.get("target_power")
    if not target_power:
        base.details = "Missing target_power in conditions"
        return base

    tolerance = target_power * POWER_MATCH_TOLERANCE
    matching = [
        s for s in sessions
        if s.avg_power and s.avg_hr
        and abs(s.avg_power - target_power) <= tolerance
        and (s.duration_seconds or 0) >= MIN_STEADY_EFFORT_S
    ]
    if not matching:
        base.details = f"No sessions found near {target_power}W"
        return base

    best = min(matching, key=lambda s: s.avg_hr)
    previous = goal.current_value
    if previous is None or best.avg_hr < previous:
        target_hr = conditions.get("target_hr")
        base.detected = True
        base.new_value = float(best.avg_hr)
        base.session_id = str(best.id)
        base.details = (
            f"Best HR at ~{target_power}W: {best.avg_hr}bpm "
            f"(was {previous if previous is not None else 'N/A'})"
        )
        base.achieved = bool(target_hr) and best.avg_hr <= target_hr
    return base


def _detect_power_duration(goal, conditions, sessions, base: ProgressDetectionResult) -> ProgressDetectionResult:
    """Normalized power held for the target duration (achieved), else best partial effort."""
    target_power = conditions.get("target_power")
    target_duration = conditions.get("duration_seconds")
    if not target_power or not target_duration:
        base.details = "Missing target_power or duration_seconds in conditions"
        return base

    minutes = round_half_up(target_duration / 60)
    achieving = [
        s for s in sessions
        if s.normalized_power and s.normalized_power >= target_power
        and (s.duration_seconds or 0) >= target_duration
    ]
    if achieving:
        best = max(achieving, key=lambda s: s.normalized_power)
        base.detected = True
        base.new_value = best.normalized_power
        base.session_id = str(best.id)
        base.details = f"Achieved {best.normalized_power:g}W for {minutes}min (target: {target_power}W)"
        base.achieved = True
        return base

    partial = [
        s for s in sessions
        if s.normalized_power and (s.duration_seconds or 0) >= target_duration * 0.5
    ]
    if partial:
        best = max(partial, key=lambda s: s.normalized_power)
        previous = goal.current_value
        if previous is None or best.normalized_power > previous:
            base.detected = True
            base.new_value = best.normalized_power
            base.session_id = str(best.id)
            base.details = (
                f"Best sustained power: {best.normalized_power:g}W "
                f"(target: {target_power}W for {minutes}min)"
            )
    return base


def _detect_relative_power(goal, conditions, athlete, base: ProgressDetectionResult) -> ProgressDetectionResult:
    target_wkg = conditions.get("target_wkg")
    if not target_wkg:
        base.details = "Missing target_wkg in conditions"
        return base
    if athlete is None or not athlete.ftp or not athlete.weight_kg:
        base.details = "Missing FTP or weight data"
        return base

    wkg = round_half_up(athlete.ftp / athlete.weight_kg, 2)
    previous = goal.current_value
    if previous is None or abs(wkg - previous) >= 0.01:
        base.detected = True
        base.new_value = wkg
        base.details = (
            f"W/kg updated from {f'{previous:.2f}' if previous is not None else 'N/A'} "
            f"to {wkg:.2f} (target: {target_wkg})"
        )
        base.achieved = wkg >= target_wkg
    return base


def check_goal_progress(db: Session, athlete_id: UUID) -> GoalProgressCheckResult:
    return GoalProgressDetector(db).check(athlete_id)
