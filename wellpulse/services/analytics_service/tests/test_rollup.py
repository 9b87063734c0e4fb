"""Tests for rollup aggregation."""
import pytest
from datetime import datetime, timedelta, timezone

from wellpulse.shared.models import ChannelCounts, ClassInfo, EngagementRecord, RiskLevel
from wellpulse.services.analytics_service.rollup import (
    RollupMemo,
    aggregate,
    collapse_by_student,
    filter_window,
    join_class_roster,
    roster_from_records,
    school_overview,
)
from wellpulse.services.analytics_service.time_window import TimeWindow


T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)


def make_record(
    student_id: str,
    class_id: str = "c1",
    school_id: str = "sch1",
    assessments=(0, 0),
    activities=(0, 0),
    webinars=(0, 0),
    **kwargs,
) -> EngagementRecord:
    return EngagementRecord(
        student_id=student_id,
        class_id=class_id,
        school_id=school_id,
        assessments=ChannelCounts(*assessments),
        activities=ChannelCounts(*activities),
        webinars=ChannelCounts(*webinars),
        **kwargs,
    )


@pytest.fixture
def class_7a():
    """Two students in 7A, one with no wellbeing score."""
    return [
        make_record(
            "s1", class_id="7A", assessments=(4, 3), activities=(10, 5),
            webinars=(2, 1), wellbeing_score=80,
        ),
        make_record(
            "s2", class_id="7A", assessments=(4, 1), activities=(10, 5),
            webinars=(2, 1), wellbeing_score=None,
        ),
    ]


class TestAggregate:
    """Tests for aggregate()."""

    def test_class_rollup_rates(self, class_7a):
        [rollup] = aggregate(class_7a, "class")

        assert rollup.group_key == "7A"
        assert rollup.total_students == 2
        assert (rollup.assessments.done, rollup.assessments.total) == (4, 8)
        assert rollup.assessments.rate == 50.0
        assert rollup.activities.rate == 50.0
        assert rollup.webinars.rate == 50.0

    def test_three_student_assessment_rate(self):
        records = [
            make_record("s1", class_id="7A", assessments=(2, 2)),
            make_record("s2", class_id="7A", assessments=(2, 1)),
            make_record("s3", class_id="7A", assessments=(2, 0)),
        ]
        [rollup] = aggregate(records, "class")
        assert rollup.assessments.rate == 50.0

    def test_missing_wellbeing_excluded_from_average(self, class_7a):
        [rollup] = aggregate(class_7a, "class")
        assert rollup.avg_wellbeing == 80

    def test_no_scores_means_no_average(self):
        [rollup] = aggregate([make_record("s1"), make_record("s2")], "class")
        assert rollup.avg_wellbeing is None

    def test_average_rounds_half_up(self):
        records = [
            make_record("s1", wellbeing_score=72),
            make_record("s2", wellbeing_score=73),
        ]
        [rollup] = aggregate(records, "class")
        assert rollup.avg_wellbeing == 73

    def test_count_conservation(self):
        """Rollup done/total equal the sum over member records."""
        records = [
            make_record("s1", class_id="c1", assessments=(5, 2), activities=(3, 3)),
            make_record("s2", class_id="c1", assessments=(5, 5), webinars=(1, 0)),
            make_record("s3", class_id="c2", assessments=(4, 1), activities=(2, 1)),
        ]
        rollups = aggregate(records, "class")

        assert sum(r.assessments.done for r in rollups) == 8
        assert sum(r.assessments.total for r in rollups) == 14
        assert sum(r.activities.done for r in rollups) == 4
        assert sum(r.webinars.total for r in rollups) == 1

    def test_distribution_sums_to_students(self):
        records = [
            make_record("s1", assessments=(10, 10), wellbeing_score=90),
            make_record("s2", assessments=(10, 5), wellbeing_score=60),
            make_record("s3", assessments=(10, 1), wellbeing_score=90),
            make_record("s4"),
        ]
        [rollup] = aggregate(records, "class")

        distribution = rollup.risk_distribution
        assert distribution.total == rollup.total_students == 4
        assert distribution.count(RiskLevel.HIGH) == rollup.at_risk_count == 1
        assert distribution.low == 1
        assert distribution.medium == 2

    def test_groups_sorted_by_key(self):
        records = [make_record("s1", class_id="9B"), make_record("s2", class_id="7A")]
        assert [r.group_key for r in aggregate(records, "class")] == ["7A", "9B"]

    def test_school_grouping(self, class_7a):
        [rollup] = aggregate(class_7a, "school")
        assert rollup.group_by == "school"
        assert rollup.group_key == "sch1"

    def test_empty_input(self):
        assert aggregate([], "class") == []

    def test_unknown_group_by(self, class_7a):
        with pytest.raises(ValueError):
            aggregate(class_7a, "district")


class TestCollapseByStudent:
    """Tests for merging repeated snapshots."""

    def test_snapshots_merge_into_one_student(self):
        records = [
            make_record("s1", assessments=(2, 1), daily_streak=3,
                        wellbeing_score=50, recorded_at=T0),
            make_record("s1", assessments=(3, 3), daily_streak=5,
                        wellbeing_score=None, recorded_at=T0 + timedelta(days=1)),
            make_record("s2", recorded_at=T0),
        ]
        collapsed = collapse_by_student(records)

        assert [r.student_id for r in collapsed] == ["s1", "s2"]
        merged = collapsed[0]
        assert merged.assessments == ChannelCounts(5, 4)
        assert merged.daily_streak == 5
        assert merged.wellbeing_score == 50

    def test_repeated_snapshots_count_once(self):
        records = [
            make_record("s1", recorded_at=T0),
            make_record("s1", recorded_at=T0 + timedelta(days=2)),
        ]
        [rollup] = aggregate(records, "class")

        assert rollup.total_students == 1
        assert rollup.risk_distribution.total == 1


class TestFilterWindow:
    """Tests for window scoping."""

    def test_keeps_records_inside_window(self):
        window = TimeWindow(start=T0, end=T0 + timedelta(days=7))
        records = [
            make_record("s1", recorded_at=T0 + timedelta(days=1)),
            make_record("s2", recorded_at=T0 + timedelta(days=8)),
            make_record("s3"),
        ]
        kept = filter_window(records, window)
        assert [r.student_id for r in kept] == ["s1", "s3"]


class TestRosterJoin:
    """Tests for left-joining rollups onto the class roster."""

    def test_class_without_records_is_zero_filled(self):
        rollups = aggregate([make_record("s1", class_id="7A", assessments=(2, 1))], "class")
        roster = [ClassInfo(class_id="7A", name="7A"), ClassInfo(class_id="7B", name="7B")]

        joined = join_class_roster(rollups, roster)

        assert [c.class_id for c in joined] == ["7A", "7B"]
        assert joined[1].total_students == 0
        assert joined[1].metrics.assessments.rate == 0.0

    def test_rollup_outside_roster_dropped(self):
        rollups = aggregate([make_record("s1", class_id="8C")], "class")
        assert join_class_roster(rollups, [ClassInfo(class_id="7A")])[0].class_id == "7A"

    def test_roster_from_records(self):
        records = [
            make_record("s1", class_id="9B", class_name="Grade 9 B"),
            make_record("s2", class_id="7A"),
            make_record("s3", class_id="9B"),
        ]
        roster = roster_from_records(records)

        assert [c.class_id for c in roster] == ["7A", "9B"]
        assert roster[0].name == "7A"
        assert roster[1].name == "Grade 9 B"


class TestSchoolOverview:
    """Tests for school-wide totals."""

    def test_overview_totals(self, class_7a):
        records = class_7a + [
            make_record("s3", class_id="7B", assessments=(2, 2), daily_app_openings=4),
            make_record("x1", school_id="other"),
        ]
        overview = school_overview(records, "sch1")

        assert overview.total_students == 3
        assert overview.total_classes == 2
        assert overview.assessments.done == 6
        assert overview.engagement.total_app_openings == 4
        assert overview.risk_distribution.total == 3

    def test_empty_school(self):
        overview = school_overview([], "sch1")

        assert overview.total_students == 0
        assert overview.avg_wellbeing is None
        assert overview.assessments.rate == 0.0


class TestRollupMemo:
    """Tests for memoized aggregation."""

    def test_same_key_hits(self, class_7a):
        memo = RollupMemo()
        first = memo.aggregate(class_7a, "class", 1, "w")
        second = memo.aggregate(class_7a, "class", 1, "w")

        assert first is second
        assert (memo.hits, memo.misses) == (1, 1)

    def test_new_version_recomputes(self, class_7a):
        memo = RollupMemo()
        memo.aggregate(class_7a, "class", 1, "w")
        memo.aggregate(class_7a[:1], "class", 2, "w")

        assert memo.misses == 2

    def test_matches_direct_aggregation(self, class_7a):
        memo = RollupMemo()
        assert list(memo.aggregate(class_7a, "class", 1, "w")) == aggregate(class_7a, "class")

    def test_bounded(self, class_7a):
        memo = RollupMemo(max_entries=2)
        for version in range(5):
            memo.aggregate(class_7a, "class", version, "w")
        assert len(memo) == 2

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            RollupMemo(max_entries=0)
