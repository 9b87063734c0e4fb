"""Tests for risk classification and leaderboards."""
import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from wellpulse.shared.models import ChannelCounts, EngagementRecord, RiskLevel
from wellpulse.services.analytics_service.ranking import (
    at_risk_students,
    classify_students,
    engagement_stats,
    is_needing_attention,
    risk_distribution,
    top_performers,
)
from wellpulse.services.analytics_service.time_window import resolve_window


AS_OF = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_record(student_id, done=0, total=0, streak=0, wellbeing=75, days_ago=0, **kwargs):
    last_active = AS_OF - timedelta(days=days_ago) if days_ago is not None else None
    return EngagementRecord(
        student_id=student_id,
        class_id=kwargs.pop("class_id", "c1"),
        school_id="sch1",
        assessments=ChannelCounts(assigned=total, completed=done),
        daily_streak=streak,
        wellbeing_score=wellbeing,
        last_active=last_active,
        **kwargs,
    )


@pytest.fixture
def standings():
    records = [
        make_record("s1", done=9, total=10, streak=4),
        make_record("s2", done=9, total=10, streak=8),
        make_record("s3", done=10, total=10, streak=1),
        make_record("s4", done=2, total=10, streak=0, days_ago=12),
        make_record("s5", done=5, total=10, wellbeing=None, days_ago=None),
        make_record("s6", done=7, total=10, wellbeing=30, days_ago=2),
    ]
    return classify_students(records, AS_OF)


class TestClassifyStudents:
    """Tests for per-student standings."""

    def test_one_standing_per_student(self, standings):
        assert [s.student_id for s in standings] == ["s1", "s2", "s3", "s4", "s5", "s6"]

    def test_missing_wellbeing_is_medium_not_dropped(self, standings):
        s5 = next(s for s in standings if s.student_id == "s5")
        assert s5.risk_level is RiskLevel.MEDIUM

    def test_derived_fields(self, standings):
        s4 = next(s for s in standings if s.student_id == "s4")
        assert s4.overall_rate == 20.0
        assert s4.overall_pending_rate == 80.0
        assert s4.days_inactive == 12
        assert s4.risk_level is RiskLevel.HIGH

    def test_to_dict_includes_pending_counts(self, standings):
        body = standings[0].to_dict()
        assert body["pending_assessments"] == 1
        assert body["risk_level"] == "low"


class TestTopPerformers:
    """Tests for the top performers leaderboard."""

    def test_orders_by_rate_then_streak(self, standings):
        top = top_performers(standings, limit=3)

        assert [s.student_id for s in top] == ["s3", "s2", "s1"]
        assert [s.rank for s in top] == [1, 2, 3]

    def test_ties_break_on_student_id(self):
        standings = classify_students(
            [make_record("b", 5, 10, 2), make_record("a", 5, 10, 2)], AS_OF
        )
        assert [s.student_id for s in top_performers(standings)] == ["a", "b"]

    def test_limit(self, standings):
        assert len(top_performers(standings, limit=2)) == 2
        assert top_performers(standings, limit=0) == []

    def test_deterministic(self, standings):
        first = [s.student_id for s in top_performers(standings)]
        second = [s.student_id for s in top_performers(list(reversed(standings)))]
        assert first == second


class TestAtRiskStudents:
    """Tests for the needs-attention list."""

    def test_high_risk_and_inactive_flagged(self, standings):
        flagged = [s.student_id for s in at_risk_students(standings, inactive_days_threshold=7)]
        assert set(flagged) == {"s4", "s5", "s6"}

    def test_never_active_sorts_first(self, standings):
        flagged = at_risk_students(standings, inactive_days_threshold=7)
        assert [s.student_id for s in flagged] == ["s5", "s4", "s6"]

    def test_custom_window_counts_inactivity_from_last_day(self):
        window = resolve_window("custom", "2024-03-01", "2024-03-31", now=AS_OF)
        records = [
            replace(
                make_record("s1", 9, 10),
                last_active=datetime(2024, 3, 31, 10, 0, tzinfo=timezone.utc),
            ),
            replace(
                make_record("s2", 9, 10),
                last_active=datetime(2024, 3, 25, tzinfo=timezone.utc),
            ),
        ]

        standings = classify_students(records, window.as_of)

        assert [s.days_inactive for s in standings] == [0, 6]
        assert at_risk_students(standings, inactive_days_threshold=7) == []

    def test_threshold_is_inclusive(self):
        standings = classify_students(
            [make_record("s1", 9, 10, days_ago=7)], AS_OF
        )
        assert is_needing_attention(standings[0], inactive_days_threshold=7)
        assert not is_needing_attention(standings[0], inactive_days_threshold=8)


class TestDistributionAndStats:
    """Tests for risk distribution and headline stats."""

    def test_distribution_sums_to_students(self, standings):
        distribution = risk_distribution(standings)
        assert distribution.total == len(standings)
        assert distribution.high == 2

    def test_engagement_stats(self, standings):
        stats = engagement_stats(standings, inactive_days_threshold=7)

        assert stats.total_students == 6
        assert stats.students_with_full_participation == 1
        assert stats.students_needing_attention == 3
        assert stats.avg_assessment_rate == pytest.approx(70.0)
        assert stats.avg_webinar_rate == 0.0

    def test_empty_input(self):
        assert top_performers([]) == []
        assert at_risk_students([]) == []
        assert risk_distribution([]).total == 0
