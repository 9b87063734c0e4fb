"""Rollup aggregation: student records -> class and school metrics.

``aggregate`` is a pure reduction. Records are pre-grouped by key in a
single pass before each group is reduced, which keeps school-sized inputs
(low thousands of students) well inside one scheduling tick.
"""
import logging
from collections import OrderedDict, defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from wellpulse.shared.models import (
    Channel,
    ChannelCounts,
    ChannelRate,
    ClassInfo,
    ClassRollup,
    EngagementRecord,
    EngagementTotals,
    RiskDistribution,
    RiskLevel,
    Rollup,
    SchoolOverview,
)
from .config import DEFAULT_THRESHOLDS, RiskThresholds
from .metrics import classify_record, completion_rate, round_half_up, wellbeing_aggregate
from .time_window import TimeWindow

logger = logging.getLogger(__name__)

GROUP_KEYS: Dict[str, Callable[[EngagementRecord], str]] = {
    "class": lambda record: record.class_id,
    "school": lambda record: record.school_id,
}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def channel_rate(counts: ChannelCounts) -> ChannelRate:
    return ChannelRate(
        done=counts.completed,
        total=counts.assigned,
        rate=completion_rate(counts.completed, counts.assigned),
    )


def _sum_channel(records: Sequence[EngagementRecord], channel: Channel) -> ChannelCounts:
    total = ChannelCounts()
    for record in records:
        total = total + record.channel(channel)
    return total


def _snapshot_order(record: EngagementRecord) -> datetime:
    stamp = record.recorded_at
    if stamp is None:
        return _EPOCH
    return stamp if stamp.tzinfo is not None else stamp.replace(tzinfo=timezone.utc)


def _merge_snapshots(snapshots: List[EngagementRecord]) -> EngagementRecord:
    ordered = sorted(snapshots, key=_snapshot_order)
    latest = ordered[-1]
    if len(ordered) == 1:
        return latest

    activity_times = [s.last_active for s in ordered if s.last_active is not None]
    scores = [s.wellbeing_score for s in ordered if s.wellbeing_score is not None]
    names = [s.student_name for s in ordered if s.student_name]
    class_names = [s.class_name for s in ordered if s.class_name]
    stamps = [s.recorded_at for s in ordered if s.recorded_at is not None]

    return replace(
        latest,
        assessments=_sum_channel(ordered, Channel.ASSESSMENTS),
        activities=_sum_channel(ordered, Channel.ACTIVITIES),
        webinars=_sum_channel(ordered, Channel.WEBINARS),
        daily_app_openings=sum(s.daily_app_openings for s in ordered),
        last_active=max(activity_times) if activity_times else None,
        wellbeing_score=scores[-1] if scores else None,
        student_name=names[-1] if names else "",
        class_name=class_names[-1] if class_names else "",
        recorded_at=max(stamps) if stamps else None,
    )


def collapse_by_student(records: Iterable[EngagementRecord]) -> List[EngagementRecord]:
    """Merge several snapshots of one student into a single record.

    Counts and app openings are summed; streak, wellbeing, names and class
    come from the most recent snapshot; ``last_active`` is the latest seen.
    Students keep their first-appearance order.
    """
    by_student: Dict[str, List[EngagementRecord]] = OrderedDict()
    for record in records:
        by_student.setdefault(record.student_id, []).append(record)
    return [_merge_snapshots(snapshots) for snapshots in by_student.values()]


def filter_window(
    records: Iterable[EngagementRecord],
    window: TimeWindow,
) -> List[EngagementRecord]:
    """Keep records whose snapshot falls inside the window.

    Records without ``recorded_at`` were already scoped by the store and
    are kept.
    """
    return [
        r for r in records
        if r.recorded_at is None or window.contains(r.recorded_at)
    ]


def empty_rollup(group_by: str, group_key: str) -> Rollup:
    zero = ChannelRate(done=0, total=0, rate=0.0)
    return Rollup(
        group_by=group_by,
        group_key=group_key,
        total_students=0,
        assessments=zero,
        activities=zero,
        webinars=zero,
    )


def _reduce_group(
    group_by: str,
    group_key: str,
    members: List[EngagementRecord],
    thresholds: RiskThresholds,
) -> Rollup:
    levels = [classify_record(m, thresholds) for m in members]
    distribution = RiskDistribution(
        low=levels.count(RiskLevel.LOW),
        medium=levels.count(RiskLevel.MEDIUM),
        high=levels.count(RiskLevel.HIGH),
    )
    scores = [m.wellbeing_score for m in members if m.wellbeing_score is not None]

    return Rollup(
        group_by=group_by,
        group_key=group_key,
        total_students=len(members),
        assessments=channel_rate(_sum_channel(members, Channel.ASSESSMENTS)),
        activities=channel_rate(_sum_channel(members, Channel.ACTIVITIES)),
        webinars=channel_rate(_sum_channel(members, Channel.WEBINARS)),
        at_risk_count=distribution.high,
        avg_wellbeing=round_half_up(wellbeing_aggregate(scores)) if scores else None,
        risk_distribution=distribution,
        app_openings=sum(m.daily_app_openings for m in members),
        avg_daily_streak=sum(m.daily_streak for m in members) / len(members),
    )


def aggregate(
    records: Iterable[EngagementRecord],
    group_by: str = "class",
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> List[Rollup]:
    """Aggregate student records into one rollup per group.

    Args:
        records: Engagement records; repeated snapshots of a student are
            collapsed first so each student counts once
        group_by: "class" or "school"
        thresholds: Risk boundaries used for ``at_risk_count``

    Returns:
        Rollups sorted by group key; one per distinct key, none for empty
        groups

    Raises:
        ValueError: If group_by is not supported
    """
    if group_by not in GROUP_KEYS:
        raise ValueError(f"Unsupported group_by: {group_by!r}")
    key_of = GROUP_KEYS[group_by]

    students = collapse_by_student(records)
    groups: Dict[str, List[EngagementRecord]] = defaultdict(list)
    for record in students:
        groups[key_of(record)].append(record)

    rollups = [
        _reduce_group(group_by, key, groups[key], thresholds)
        for key in sorted(groups)
    ]

    logger.info(
        "ROLLUP_COMPUTED",
        extra={
            "group_by": group_by,
            "student_count": len(students),
            "group_count": len(rollups),
        }
    )
    return rollups


def roster_from_records(records: Iterable[EngagementRecord]) -> List[ClassInfo]:
    """Derive a minimal class roster when no canonical list is available."""
    seen: Dict[str, ClassInfo] = OrderedDict()
    for record in records:
        if record.class_id not in seen:
            seen[record.class_id] = ClassInfo(
                class_id=record.class_id,
                name=record.class_name or record.class_id,
            )
    return sorted(seen.values(), key=lambda info: info.class_id)


def join_class_roster(
    rollups: Iterable[Rollup],
    roster: Iterable[ClassInfo],
) -> List[ClassRollup]:
    """Left-join class rollups onto the canonical class list.

    Every roster class appears, with a zero rollup when it had no records.
    Rollups for classes missing from the roster are dropped and logged.
    """
    by_key = {r.group_key: r for r in rollups}
    joined = []
    for info in roster:
        metrics = by_key.pop(info.class_id, None) or empty_rollup("class", info.class_id)
        joined.append(ClassRollup(info=info, metrics=metrics))

    if by_key:
        logger.warning(
            "ROLLUP_CLASS_NOT_IN_ROSTER",
            extra={"class_ids": sorted(by_key)}
        )
    return joined


def school_overview(
    records: Iterable[EngagementRecord],
    school_id: str,
    window: Optional[TimeWindow] = None,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> SchoolOverview:
    """School-wide totals for every student of ``school_id`` in scope."""
    students = collapse_by_student(r for r in records if r.school_id == school_id)
    rollups = aggregate(students, "school", thresholds)
    metrics = rollups[0] if rollups else empty_rollup("school", school_id)

    return SchoolOverview(
        school_id=school_id,
        total_students=metrics.total_students,
        total_classes=len({s.class_id for s in students}),
        assessments=metrics.assessments,
        activities=metrics.activities,
        webinars=metrics.webinars,
        risk_distribution=metrics.risk_distribution,
        engagement=EngagementTotals(
            total_app_openings=metrics.app_openings,
            total_assessments_completed=metrics.assessments.done,
            total_activities_completed=metrics.activities.done,
        ),
        avg_wellbeing=metrics.avg_wellbeing,
        avg_daily_streak=metrics.avg_daily_streak,
        period_start=window.start if window else None,
        period_end=window.end if window else None,
    )


class RollupMemo:
    """Bounded memo for rollups keyed by ``(records_version, window_key, group_by)``.

    Results are returned as tuples of frozen rollups so nothing a caller
    holds can alter a cached entry. Bump ``records_version`` whenever the
    underlying record collection changes.
    """

    def __init__(
        self,
        max_entries: int = 128,
        thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
    ):
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.max_entries = max_entries
        self.thresholds = thresholds
        self._entries: "OrderedDict[Tuple[Hashable, str, str], Tuple[Rollup, ...]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def aggregate(
        self,
        records: Iterable[EngagementRecord],
        group_by: str,
        records_version: Hashable,
        window_key: str,
    ) -> Tuple[Rollup, ...]:
        key = (records_version, window_key, group_by)
        cached = self._entries.get(key)
        if cached is not None:
            self._entries.move_to_end(key)
            self.hits += 1
            return cached

        self.misses += 1
        result = tuple(aggregate(records, group_by, self.thresholds))
        self._entries[key] = result
        if len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("ROLLUP_MEMO_EVICTED", extra={"memo_key": str(evicted)})
        return result

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
