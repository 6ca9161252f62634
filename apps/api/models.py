from sqlalchemy import (
    Column,
    Integer,
    Float,
    Text,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    UniqueConstraint,
    CheckConstraint,
    Uuid,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from core.database import Base

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Athlete(Base):
    __tablename__ = "athlete"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    email = Column(Text, unique=True, nullable=True)
    display_name = Column(Text, nullable=True)

    # Physiology used by goal progress detection
    ftp = Column(Float, nullable=True)  # Functional threshold power (W)
    weight_kg = Column(Float, nullable=True)
    max_hr = Column(Integer, nullable=True)


class TrainingSession(Base):
    """One completed workout. Immutable once stored except for corrective re-sync."""
    __tablename__ = "sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    sport = Column(Text, nullable=False, default="cycling")
    duration_seconds = Column(Integer, nullable=False, default=0)
    tss = Column(Float, nullable=True)  # Training Stress Score
    avg_power = Column(Float, nullable=True)
    normalized_power = Column(Float, nullable=True)
    intensity_factor = Column(Float, nullable=True)  # NP / FTP
    avg_hr = Column(Integer, nullable=True)
    workout_type = Column(Text, nullable=True)  # 'endurance', 'threshold', 'vo2max', ...
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_sessions_athlete_date", "athlete_id", "date"),
    )


class DailyFitness(Base):
    """
    One row per (athlete, date) produced by the training load model.

    tsb is always ctl - atl (rounded), never computed independently.
    """
    __tablename__ = "fitness_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    ctl = Column(Float, nullable=False, default=0.0)  # Chronic Training Load (fitness)
    atl = Column(Float, nullable=False, default=0.0)  # Acute Training Load (fatigue)
    tsb = Column(Float, nullable=False, default=0.0)  # Training Stress Balance (form)
    tss_day = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("athlete_id", "date", name="uq_fitness_history_athlete_date"),
    )


class Event(Base):
    __tablename__ = "events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    priority = Column(Text, nullable=False, default="C")  # 'A', 'B', 'C'
    status = Column(Text, nullable=False, default="planned")  # 'planned', 'completed', 'cancelled'
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("priority IN ('A', 'B', 'C')", name="ck_events_priority"),
    )


class Goal(Base):
    __tablename__ = "goals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(Uuid, ForeignKey("events.id", ondelete="SET NULL"), nullable=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    target_type = Column(Text, nullable=False)  # ftp, ctl, weight, weekly_hours, metric, event_finish
    metric_type = Column(Text, nullable=True)  # hr_at_power, power_duration, relative_power
    metric_conditions = Column(JSONType, nullable=True)  # e.g. {"target_power": 250, "target_hr": 150}
    target_value = Column(Float, nullable=True)
    current_value = Column(Float, nullable=True)
    deadline = Column(Date, nullable=True)
    status = Column(Text, nullable=False, default="active")  # active, completed, abandoned
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    achievement_session_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    progress_entries = relationship(
        "GoalProgress",
        back_populates="goal",
        cascade="all, delete-orphan",
        order_by="GoalProgress.recorded_at",
    )


class GoalProgress(Base):
    """Point-in-time value recorded against a goal."""
    __tablename__ = "goal_progress"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    goal_id = Column(Uuid, ForeignKey("goals.id", ondelete="CASCADE"), nullable=False)
    recorded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    value = Column(Float, nullable=False)
    session_id = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    goal = relationship("Goal", back_populates="progress_entries")

    __table_args__ = (
        Index("ix_goal_progress_goal_recorded", "goal_id", "recorded_at"),
    )


class Insight(Base):
    """
    Persisted insight shown to the athlete.

    dedup_day pins the unique key so two concurrent generations on the same
    day cannot both store the same (type, title).
    """
    __tablename__ = "insights"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id", ondelete="CASCADE"), nullable=False)
    insight_type = Column(Text, nullable=False)
    priority = Column(Text, nullable=False, default="medium")
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    data = Column(JSONType, nullable=False, default=dict)
    source = Column(Text, nullable=False, default="pattern_detected")
    is_read = Column(Boolean, nullable=False, default=False)
    is_dismissed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    dedup_day = Column(Date, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "athlete_id", "insight_type", "title", "dedup_day",
            name="uq_insights_athlete_type_title_day",
        ),
        Index("ix_insights_athlete_unread", "athlete_id", "is_read"),
        Index("ix_insights_athlete_created", "athlete_id", "created_at"),
        CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')",
            name="ck_insights_priority",
        ),
    )


class InsightGenerationLog(Base):
    """One row per generation run; also the input to the rate limiter."""
    __tablename__ = "insight_generation_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid, ForeignKey("athlete.id", ondelete="CASCADE"), nullable=False)
    generated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    insights_created = Column(Integer, nullable=False, default=0)
    patterns_detected = Column(JSONType, nullable=False, default=list)
    model_used = Column(Text, nullable=True)
    tokens_used = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_insight_generation_log_athlete", "athlete_id", "generated_at"),
    )
