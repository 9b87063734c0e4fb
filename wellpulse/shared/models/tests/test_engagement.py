"""Tests for engagement domain models."""
import pytest
from datetime import date, datetime, timezone

from wellpulse.shared.models import (
    ChannelCounts,
    ClassRollup,
    DailyActivity,
    EngagementRecord,
    RiskLevel,
    SchoolOverview,
    StudentHistory,
    parse_timestamp,
)


class TestRiskLevel:
    """Tests for RiskLevel ordering and parsing."""

    def test_severity_order(self):
        assert RiskLevel.LOW.severity < RiskLevel.MEDIUM.severity < RiskLevel.HIGH.severity

    def test_parse_any_case(self):
        assert RiskLevel.parse("High") is RiskLevel.HIGH
        assert RiskLevel.parse(RiskLevel.LOW) is RiskLevel.LOW

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            RiskLevel.parse("severe")


class TestChannelCounts:
    """Tests for ChannelCounts invariants."""

    def test_completed_cannot_exceed_assigned(self):
        with pytest.raises(ValueError):
            ChannelCounts(assigned=2, completed=3)

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            ChannelCounts(assigned=-1)

    def test_addition_and_pending(self):
        total = ChannelCounts(4, 1) + ChannelCounts(2, 2)
        assert total == ChannelCounts(6, 3)
        assert total.pending == 3

    def test_from_dict_accepts_both_shapes(self):
        assert ChannelCounts.from_dict({"assigned": 5, "completed": 2}) == ChannelCounts(5, 2)
        assert ChannelCounts.from_dict({"total": 5, "done": 2}) == ChannelCounts(5, 2)
        assert ChannelCounts.from_dict(None) == ChannelCounts()


class TestEngagementRecord:
    """Tests for EngagementRecord validation and wire mapping."""

    def test_requires_student_id(self):
        with pytest.raises(ValueError):
            EngagementRecord(student_id="", class_id="c1", school_id="sch1")

    def test_wellbeing_range(self):
        with pytest.raises(ValueError):
            EngagementRecord(student_id="s1", class_id="c1", school_id="sch1",
                             wellbeing_score=120)

    def test_negative_streak_rejected(self):
        with pytest.raises(ValueError):
            EngagementRecord(student_id="s1", class_id="c1", school_id="sch1",
                             daily_streak=-1)

    def test_from_dict(self):
        record = EngagementRecord.from_dict({
            "student_id": "s1",
            "class_id": "7A",
            "school_id": "sch1",
            "name": "Ava Patel",
            "assessments": {"assigned": 4, "completed": 3},
            "webinars": {"assigned": 2, "completed": 1},
            "daily_streak": 5,
            "wellbeing_score": 72,
            "last_active": "2024-03-14T08:00:00Z",
        })

        assert record.student_name == "Ava Patel"
        assert record.total_assigned == 6
        assert record.total_completed == 4
        assert record.wellbeing_score == 72.0
        assert record.last_active == datetime(2024, 3, 14, 8, 0, tzinfo=timezone.utc)

    def test_missing_wellbeing_is_none(self):
        record = EngagementRecord.from_dict({"student_id": "s1"})
        assert record.wellbeing_score is None

    def test_to_dict_round_trip(self):
        record = EngagementRecord(
            student_id="s1", class_id="7A", school_id="sch1",
            activities=ChannelCounts(3, 2),
            recorded_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )
        assert EngagementRecord.from_dict(record.to_dict()) == record


class TestParseTimestamp:
    """Tests for wire timestamp parsing."""

    def test_naive_taken_as_utc(self):
        assert parse_timestamp("2024-03-01T10:00:00").tzinfo == timezone.utc

    def test_empty_is_none(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None


class TestSchoolOverview:
    """Tests for SchoolOverview invariants and wire mapping."""

    def test_distribution_must_cover_students(self):
        with pytest.raises(ValueError):
            SchoolOverview.from_dict({
                "summary": {"total_students": 5},
                "risk_distribution": {"low": 1, "medium": 1, "high": 1},
            })

    def test_average_rounds_half_up(self):
        overview = SchoolOverview.from_dict({
            "summary": {"total_students": 1, "avg_wellbeing_score": 68.5},
            "risk_distribution": {"low": 1},
        })
        assert overview.avg_wellbeing == 69


class TestClassRollup:
    """Tests for the flattened class wire shape."""

    def test_from_dict_and_to_dict(self):
        row = {
            "class_id": "7A",
            "name": "Grade 7 A",
            "grade": "7",
            "section": "A",
            "teacher_name": "Ms. Rao",
            "total_students": 24,
            "assessments": {"done": 30, "total": 48, "rate": 62.5},
            "at_risk_count": 3,
            "avg_wellbeing": 71,
        }
        rollup = ClassRollup.from_dict(row)

        assert rollup.teacher_name == "Ms. Rao"
        assert rollup.metrics.assessments.rate == 62.5
        body = rollup.to_dict()
        assert body["class_id"] == "7A"
        assert body["at_risk_count"] == 3
        assert "group_by" not in body


class TestStudentHistory:
    """Tests for StudentHistory wire mapping."""

    def test_history_entries(self):
        history = StudentHistory.from_dict({
            "student_id": "s1",
            "history": [
                {"date": "2024-03-01", "app_opened": True},
                {"date": "2024-03-02T00:00:00Z"},
            ],
        })

        assert history.daily_log[0] == DailyActivity(day=date(2024, 3, 1), app_opened=True)
        assert not history.daily_log[1].active
