"""Risk classification and leaderboards over a classified student set.

Every student in scope gets exactly one standing. A missing wellbeing
score classifies as medium risk rather than dropping the student, so no
at-risk student disappears from a leaderboard for lack of data.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from wellpulse.shared.models import (
    Channel,
    EngagementRecord,
    RiskDistribution,
    RiskLevel,
)
from .config import DEFAULT_THRESHOLDS, RiskThresholds
from .metrics import classify_record, completion_rate, days_inactive
from .rollup import collapse_by_student

logger = logging.getLogger(__name__)

DEFAULT_INACTIVE_DAYS = 7


@dataclass(frozen=True)
class StudentStanding:
    """A student's record with its derived ranking fields."""
    record: EngagementRecord
    risk_level: RiskLevel
    overall_rate: float
    days_inactive: Optional[int]
    rank: Optional[int] = None

    @property
    def student_id(self) -> str:
        return self.record.student_id

    @property
    def student_name(self) -> str:
        return self.record.student_name

    @property
    def class_id(self) -> str:
        return self.record.class_id

    @property
    def class_name(self) -> str:
        return self.record.class_name

    @property
    def streak(self) -> int:
        return self.record.daily_streak

    @property
    def wellbeing_score(self) -> Optional[float]:
        return self.record.wellbeing_score

    @property
    def overall_pending_rate(self) -> float:
        record = self.record
        return completion_rate(
            record.total_assigned - record.total_completed, record.total_assigned
        )

    @property
    def fully_participating(self) -> bool:
        return self.record.total_assigned > 0 and (
            self.record.total_completed == self.record.total_assigned
        )

    def to_dict(self) -> Dict[str, Any]:
        record = self.record
        return {
            "student_id": record.student_id,
            "student_name": record.student_name,
            "class_id": record.class_id,
            "class_name": record.class_name,
            "rank": self.rank,
            "risk_level": self.risk_level.value,
            "wellbeing_score": record.wellbeing_score,
            "overall_rate": round(self.overall_rate, 1),
            "overall_pending_rate": round(self.overall_pending_rate, 1),
            "streak": record.daily_streak,
            "days_inactive": self.days_inactive,
            "last_active": record.last_active.isoformat() if record.last_active else None,
            "assessments_completed": record.assessments.completed,
            "activities_completed": record.activities.completed,
            "webinars_attended": record.webinars.completed,
            "pending_assessments": record.assessments.pending,
            "pending_activities": record.activities.pending,
            "missed_webinars": record.webinars.pending,
        }


@dataclass(frozen=True)
class EngagementStats:
    """Headline participation counts for the dashboard summary cards."""
    total_students: int
    students_with_full_participation: int
    students_needing_attention: int
    avg_assessment_rate: float
    avg_activity_rate: float
    avg_webinar_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_students": self.total_students,
            "students_with_full_participation": self.students_with_full_participation,
            "students_needing_attention": self.students_needing_attention,
            "avg_assessment_rate": round(self.avg_assessment_rate, 1),
            "avg_activity_rate": round(self.avg_activity_rate, 1),
            "avg_webinar_rate": round(self.avg_webinar_rate, 1),
        }


def classify_students(
    records: Iterable[EngagementRecord],
    as_of: datetime,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> List[StudentStanding]:
    """Build one standing per student.

    Args:
        records: Engagement records (repeated snapshots are collapsed)
        as_of: Reference instant for inactivity, normally ``TimeWindow.as_of``
        thresholds: Risk boundaries

    Returns:
        Standings in first-appearance order
    """
    standings = [
        StudentStanding(
            record=record,
            risk_level=classify_record(record, thresholds),
            overall_rate=completion_rate(record.total_completed, record.total_assigned),
            days_inactive=days_inactive(record.last_active, as_of),
        )
        for record in collapse_by_student(records)
    ]

    missing_scores = sum(1 for s in standings if s.wellbeing_score is None)
    if missing_scores:
        logger.info(
            "WELLBEING_SCORE_MISSING",
            extra={"student_count": missing_scores, "default_level": RiskLevel.MEDIUM.value}
        )
    return standings


def top_performers(
    standings: Iterable[StudentStanding],
    limit: int = 5,
) -> List[StudentStanding]:
    """Highest overall completion first.

    Ties break on streak (longer first), then student id ascending, which
    gives a total order so pages never shuffle.
    """
    ordered = sorted(
        standings,
        key=lambda s: (-s.overall_rate, -s.streak, s.student_id),
    )
    return [replace(s, rank=i + 1) for i, s in enumerate(ordered[:max(limit, 0)])]


def _inactivity_sort_key(standing: StudentStanding):
    # Never-active students sort ahead of any finite inactivity
    if standing.days_inactive is None:
        return (0, 0, standing.student_id)
    return (1, -standing.days_inactive, standing.student_id)


def is_needing_attention(
    standing: StudentStanding,
    inactive_days_threshold: int = DEFAULT_INACTIVE_DAYS,
) -> bool:
    if standing.risk_level is RiskLevel.HIGH:
        return True
    return standing.days_inactive is None or standing.days_inactive >= inactive_days_threshold


def at_risk_students(
    standings: Iterable[StudentStanding],
    inactive_days_threshold: int = DEFAULT_INACTIVE_DAYS,
) -> List[StudentStanding]:
    """High-risk or inactive students, longest inactive first.

    A student never seen active counts as inactive.
    """
    flagged = [
        s for s in standings
        if is_needing_attention(s, inactive_days_threshold)
    ]
    return sorted(flagged, key=_inactivity_sort_key)


def risk_distribution(standings: Iterable[StudentStanding]) -> RiskDistribution:
    """Count students per risk level; the counts sum to the input size."""
    counts = {level: 0 for level in RiskLevel}
    for standing in standings:
        counts[standing.risk_level] += 1
    return RiskDistribution(
        low=counts[RiskLevel.LOW],
        medium=counts[RiskLevel.MEDIUM],
        high=counts[RiskLevel.HIGH],
    )


def engagement_stats(
    standings: Iterable[StudentStanding],
    inactive_days_threshold: int = DEFAULT_INACTIVE_DAYS,
) -> EngagementStats:
    standings = list(standings)

    def channel_average(channel: Channel) -> float:
        done = sum(s.record.channel(channel).completed for s in standings)
        total = sum(s.record.channel(channel).assigned for s in standings)
        return completion_rate(done, total)

    return EngagementStats(
        total_students=len(standings),
        students_with_full_participation=sum(1 for s in standings if s.fully_participating),
        students_needing_attention=sum(
            1 for s in standings if is_needing_attention(s, inactive_days_threshold)
        ),
        avg_assessment_rate=channel_average(Channel.ASSESSMENTS),
        avg_activity_rate=channel_average(Channel.ACTIVITIES),
        avg_webinar_rate=channel_average(Channel.WEBINARS),
    )
