"""Coaching context for the external text-completion service.

Only the structured context and its prompt rendering live here; generation
and streaming belong to the caller.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from ridecoach.models import Goal, TrainingSession, User
from ridecoach.timewindow import utc_now

MAX_GOALS = 3
MAX_RECENT_SESSIONS = 5
RECENT_DAYS = 7


class AthleteProfile(BaseModel):
    name: str
    ftp_watts: int | None = None
    threshold_heart_rate: int | None = None
    preferred_training_days: list[str] = Field(default_factory=list)
    preferred_training_time: str | None = None


class GoalSummary(BaseModel):
    title: str
    target_date: datetime | None = None
    progress: float = 0.0


class SessionSummary(BaseModel):
    title: str
    scheduled_start: datetime
    completed: bool
    perceived_effort: int | None = None


class CoachContext(BaseModel):
    """Everything the coach prompt needs about one athlete"""

    athlete: AthleteProfile | None = None
    goals: list[GoalSummary] = Field(default_factory=list)
    recent_sessions: list[SessionSummary] = Field(default_factory=list)


def build_context(
    user: User | None,
    goals: Iterable[Goal],
    recent_sessions: Iterable[TrainingSession],
    now: datetime | None = None,
) -> CoachContext:
    """Newest active goals first, then the latest sessions of the past week."""
    now = now or utc_now()
    cutoff = now - timedelta(days=RECENT_DAYS)

    athlete = None
    if user is not None:
        athlete = AthleteProfile(
            name=user.name,
            ftp_watts=user.ftp_watts,
            threshold_heart_rate=user.threshold_heart_rate,
            preferred_training_days=list(user.preferred_training_days),
            preferred_training_time=user.preferred_training_time,
        )

    active_goals = sorted(
        (goal for goal in goals if goal.is_open),
        key=lambda goal: goal.created_at,
        reverse=True,
    )
    sessions = sorted(
        (
            session
            for session in recent_sessions
            if cutoff <= session.scheduled_start <= now
        ),
        key=lambda session: session.scheduled_start,
        reverse=True,
    )

    return CoachContext(
        athlete=athlete,
        goals=[
            GoalSummary(
                title=goal.title, target_date=goal.target_date, progress=goal.progress
            )
            for goal in active_goals[:MAX_GOALS]
        ],
        recent_sessions=[
            SessionSummary(
                title=session.title,
                scheduled_start=session.scheduled_start,
                completed=session.completed,
                perceived_effort=session.perceived_effort,
            )
            for session in sessions[:MAX_RECENT_SESSIONS]
        ],
    )


SYSTEM_PROMPT_HEADER = """You are an experienced cycling coach giving personalized, evidence-based advice.

Coaching style:
- Encouraging and motivating
- Data-driven but empathetic
- Focused on long-term development
- Attentive to recovery and injury prevention
- Adaptive to the athlete's life circumstances
"""

SYSTEM_PROMPT_FOOTER = """
Respond naturally in conversation and ask follow-up questions to understand the athlete.
When discussing workouts, weigh current fitness, goals and life constraints."""


def render_system_prompt(context: CoachContext) -> str:
    """Plain-text system prompt for the completion service."""
    lines = [SYSTEM_PROMPT_HEADER]

    if context.athlete is not None:
        athlete = context.athlete
        lines.append("Athlete Profile:")
        lines.append(f"- Name: {athlete.name}")
        if athlete.ftp_watts:
            lines.append(f"- FTP: {athlete.ftp_watts}W")
        if athlete.threshold_heart_rate:
            lines.append(f"- Threshold HR: {athlete.threshold_heart_rate} bpm")
        if athlete.preferred_training_days:
            days = ", ".join(athlete.preferred_training_days)
            lines.append(f"- Preferred training days: {days}")
        lines.append("")

    if context.goals:
        lines.append("Current Goals:")
        for goal in context.goals:
            line = f"- {goal.title}"
            if goal.target_date:
                line += f" (target: {goal.target_date.strftime('%b %d, %Y')})"
            lines.append(line)
        lines.append("")

    if context.recent_sessions:
        lines.append(f"Recent Training (last {RECENT_DAYS} days):")
        for session in context.recent_sessions:
            status = "done" if session.completed else "missed"
            line = f"- [{status}] {session.title}"
            if session.perceived_effort:
                line += f" (RPE: {session.perceived_effort}/10)"
            lines.append(line)

    lines.append(SYSTEM_PROMPT_FOOTER)
    return "\n".join(lines)
