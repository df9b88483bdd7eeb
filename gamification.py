"""
Gamification rules: streaks, XP, levels and the Smart Revision batch.

Pure functions over the domain types; no I/O. Timestamps are epoch
milliseconds and calendar days are compared in server-local time.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta

from models import Mistake, UserStats

CREATE_SET_XP = 50
PASS_PERCENTAGE = 60
XP_PER_CORRECT = 10
PERFECT_SCORE_BONUS = 50
XP_PENALTY_PER_WRONG = 5
XP_PER_LEVEL = 1000
REVISION_BATCH_SIZE = 10

DEFAULT_STATS = UserStats(
    xp=0,
    streak_days=1,
    items_created=0,
    quizzes_taken=0,
    last_study_date=None,
)

TOPIC_SUGGESTIONS = [
    "Quantum Mechanics for Beginners",
    "The French Revolution",
    "React Hooks vs Classes",
    "Introduction to Macroeconomics",
    "Cellular Respiration",
]


def now_ms(now: datetime | None = None) -> int:
    return int((now or datetime.now()).timestamp() * 1000)


def _day_of(ms: int) -> date:
    return datetime.fromtimestamp(ms / 1000).date()


def calculate_streak(stats: UserStats, now: datetime | None = None) -> int:
    """Return the streak after studying at ``now``.

    Same calendar day as the last study date keeps the streak, the next
    calendar day extends it, anything else starts over at 1.
    """
    if stats.last_study_date is None:
        return 1
    today = (now or datetime.now()).date()
    last_day = _day_of(stats.last_study_date)
    if last_day == today:
        return stats.streak_days
    if last_day + timedelta(days=1) == today:
        return stats.streak_days + 1
    return 1


def quiz_xp_delta(correct: int, total: int) -> int:
    """XP change for a finished quiz of ``total`` questions."""
    if total <= 0:
        return 0
    if correct < 0 or correct > total:
        raise ValueError(f"correct must be within 0..{total}, got {correct}")
    if correct * 100 >= PASS_PERCENTAGE * total:
        delta = correct * XP_PER_CORRECT
        if correct == total:
            delta += PERFECT_SCORE_BONUS
        return delta
    return -(total - correct) * XP_PENALTY_PER_WRONG


def apply_xp(xp: int, delta: int) -> int:
    return max(0, xp + delta)


def level_for(xp: int) -> int:
    return xp // XP_PER_LEVEL + 1


def level_progress_pct(xp: int) -> float:
    return min((xp % XP_PER_LEVEL) / 10, 100)


def record_study(stats: UserStats, now: datetime | None = None, **changes) -> UserStats:
    """Copy of ``stats`` with the streak and last study date advanced."""
    now = now or datetime.now()
    return replace(
        stats,
        streak_days=calculate_streak(stats, now),
        last_study_date=now_ms(now),
        **changes,
    )


def select_revision_batch(mistakes: list[Mistake]) -> list[Mistake]:
    """The most recently recorded mistakes, oldest first."""
    return list(mistakes[-REVISION_BATCH_SIZE:])


def remove_mistakes(mistakes: list[Mistake], used: list[Mistake]) -> list[Mistake]:
    used_ids = {m.id for m in used}
    return [m for m in mistakes if m.id not in used_ids]
