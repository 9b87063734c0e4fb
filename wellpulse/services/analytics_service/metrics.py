"""Metric primitives: single derived values from raw counts.

Pure functions with no dependencies on the rest of the engine. Degenerate
inputs (nothing assigned, no scores) resolve to conservative defaults
instead of raising: 0% completion, medium risk.
"""
import math
from datetime import date, datetime
from typing import Iterable, Optional, Sequence

from wellpulse.shared.models import DailyActivity, EngagementRecord, RiskLevel
from .config import DEFAULT_THRESHOLDS, RiskThresholds


def completion_rate(done: int, total: int) -> float:
    """Percentage of assigned items completed.

    Args:
        done: Items completed
        total: Items assigned

    Returns:
        ``done / total * 100``, or 0.0 when nothing was assigned

    Raises:
        ValueError: If either count is negative
    """
    if done < 0 or total < 0:
        raise ValueError(f"Counts must be non-negative, got {done}/{total}")
    if total == 0:
        return 0.0
    return done / total * 100.0


def engagement_rate(record: EngagementRecord) -> Optional[float]:
    """Overall completion across all three channels.

    Returns None when the student had nothing assigned in the window, so
    an empty window is not read as total disengagement.
    """
    total = record.total_assigned
    if total == 0:
        return None
    return completion_rate(record.total_completed, total)


def _axis_level(value: float, high_below: float, medium_below: float) -> RiskLevel:
    if value < high_below:
        return RiskLevel.HIGH
    if value < medium_below:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def risk_level(
    wellbeing_score: Optional[float],
    engagement: Optional[float],
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> RiskLevel:
    """Classify a student as low, medium or high risk.

    The two axes are OR-combined: poor wellbeing or poor engagement alone
    escalates. A missing axis counts as MEDIUM on that axis, so a student
    with no score or nothing assigned is never classified LOW.

    Args:
        wellbeing_score: 0-100 score, or None when no score was supplied
        engagement: Overall completion percentage, or None if nothing assigned
        thresholds: Level boundaries

    Returns:
        RiskLevel
    """
    levels = []
    if wellbeing_score is not None:
        levels.append(_axis_level(
            wellbeing_score, thresholds.high_wellbeing, thresholds.medium_wellbeing
        ))
    else:
        levels.append(RiskLevel.MEDIUM)
    if engagement is not None:
        levels.append(_axis_level(
            engagement, thresholds.high_engagement, thresholds.medium_engagement
        ))
    else:
        levels.append(RiskLevel.MEDIUM)
    return max(levels, key=lambda level: level.severity)


def classify_record(
    record: EngagementRecord,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> RiskLevel:
    return risk_level(record.wellbeing_score, engagement_rate(record), thresholds)


def _as_date(value) -> date:
    return value.date() if isinstance(value, datetime) else value


def streak(daily_log: Sequence[DailyActivity], as_of=None) -> int:
    """Consecutive active days ending at ``as_of``.

    Walks backwards from ``as_of`` while a day has an activity completed or
    the app opened. A missing day is the log boundary and ends the walk.

    Args:
        daily_log: Daily activity entries in any order
        as_of: Day (or instant) to count back from; defaults to the most
            recent day in the log

    Returns:
        Streak length; 0 for an empty log or an inactive ``as_of`` day
    """
    if not daily_log:
        return 0
    by_day = {entry.day: entry.active for entry in daily_log}
    day = _as_date(as_of) if as_of is not None else max(by_day)

    count = 0
    while by_day.get(day, False):
        count += 1
        day = date.fromordinal(day.toordinal() - 1)
    return count


def wellbeing_aggregate(scores: Iterable[Optional[float]]) -> float:
    """Arithmetic mean of the supplied scores.

    None entries are skipped. Returns 0.0 for empty input; callers that
    must tell "no data" from a real zero check for scores first.
    """
    present = [float(s) for s in scores if s is not None]
    if not present:
        return 0.0
    return sum(present) / len(present)


def round_half_up(value: float) -> int:
    """Display rounding: 72.5 -> 73, unlike round()'s banker's rounding."""
    return math.floor(value + 0.5)


def days_inactive(last_active: Optional[datetime], as_of: datetime) -> Optional[int]:
    """Whole calendar days since the student was last active.

    Returns None when the student has never been active.
    """
    if last_active is None:
        return None
    if last_active.tzinfo is not None and as_of.tzinfo is not None:
        last_active = last_active.astimezone(as_of.tzinfo)
    return max(0, (_as_date(as_of) - _as_date(last_active)).days)
