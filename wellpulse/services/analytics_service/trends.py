"""Trend series for charting.

A resolved window is split into a fixed number of equal sub-intervals per
bucket type and the chosen metric is computed over each one through the
rollup aggregator. Sub-intervals without records report 0, so a series
always has the same length for the same bucket.
"""
import logging
from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Hashable, Iterable, List, Optional, Sequence, Union

from wellpulse.shared.models import EngagementRecord, Rollup
from .config import DEFAULT_THRESHOLDS, RiskThresholds
from .metrics import completion_rate
from .rollup import RollupMemo, aggregate, filter_window
from .time_window import TimeWindow

logger = logging.getLogger(__name__)

STABLE_BAND = 0.5


class TrendBucket(Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def points(self) -> int:
        return _BUCKET_POINTS[self]

    @classmethod
    def parse(cls, value: Union[str, "TrendBucket"]) -> "TrendBucket":
        if isinstance(value, TrendBucket):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown trend bucket: {value!r}")


_BUCKET_POINTS = {
    TrendBucket.DAY: 7,
    TrendBucket.WEEK: 4,
    TrendBucket.MONTH: 6,
}


class TrendMetric(Enum):
    ASSESSMENT_RATE = "assessment_rate"
    ACTIVITY_RATE = "activity_rate"
    WEBINAR_RATE = "webinar_rate"
    OVERALL_RATE = "overall_rate"
    AVG_WELLBEING = "avg_wellbeing"
    APP_OPENINGS = "app_openings"
    AT_RISK_COUNT = "at_risk_count"
    ACTIVE_STUDENTS = "active_students"

    @classmethod
    def parse(cls, value: Union[str, "TrendMetric"]) -> "TrendMetric":
        if isinstance(value, TrendMetric):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown trend metric: {value!r}")


@dataclass(frozen=True)
class TrendPoint:
    bucket_label: str
    value: float
    start: datetime
    end: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket_label": self.bucket_label,
            "value": round(self.value, 1),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }


@dataclass(frozen=True)
class PeriodComparison:
    """Current vs previous window for one metric."""
    metric: TrendMetric
    current: float
    previous: float
    trend: str
    trend_percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric.value,
            "current": round(self.current, 1),
            "previous": round(self.previous, 1),
            "trend": self.trend,
            "trend_percentage": round(self.trend_percentage, 1),
        }


def _combined_value(rollups: Sequence[Rollup], metric: TrendMetric) -> float:
    if not rollups:
        return 0.0

    if metric is TrendMetric.ASSESSMENT_RATE:
        return completion_rate(
            sum(r.assessments.done for r in rollups), sum(r.assessments.total for r in rollups)
        )
    if metric is TrendMetric.ACTIVITY_RATE:
        return completion_rate(
            sum(r.activities.done for r in rollups), sum(r.activities.total for r in rollups)
        )
    if metric is TrendMetric.WEBINAR_RATE:
        return completion_rate(
            sum(r.webinars.done for r in rollups), sum(r.webinars.total for r in rollups)
        )
    if metric is TrendMetric.OVERALL_RATE:
        done = sum(r.assessments.done + r.activities.done + r.webinars.done for r in rollups)
        total = sum(r.assessments.total + r.activities.total + r.webinars.total for r in rollups)
        return completion_rate(done, total)
    if metric is TrendMetric.AVG_WELLBEING:
        scored = [r for r in rollups if r.avg_wellbeing is not None]
        students = sum(r.total_students for r in scored)
        if not students:
            return 0.0
        return sum(r.avg_wellbeing * r.total_students for r in scored) / students
    if metric is TrendMetric.APP_OPENINGS:
        return float(sum(r.app_openings for r in rollups))
    if metric is TrendMetric.AT_RISK_COUNT:
        return float(sum(r.at_risk_count for r in rollups))
    return float(sum(r.total_students for r in rollups))


def metric_value(
    records: Sequence[EngagementRecord],
    metric: Union[str, TrendMetric],
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
    memo: Optional[RollupMemo] = None,
    records_version: Optional[Hashable] = None,
    window_key: str = "",
) -> float:
    """Compute one metric over a record set via school rollups."""
    metric = TrendMetric.parse(metric)
    if not records:
        return 0.0
    if memo is not None and records_version is not None:
        rollups = memo.aggregate(records, "school", records_version, window_key)
    else:
        rollups = aggregate(records, "school", thresholds)
    return _combined_value(rollups, metric)


def _bucket_label(bucket: TrendBucket, index: int, sub: TimeWindow) -> str:
    if bucket is TrendBucket.WEEK:
        return f"Week {index + 1}"
    if bucket is TrendBucket.MONTH and sub.duration.days >= 28:
        return sub.start.strftime("%b")
    return f"{sub.start.strftime('%b')} {sub.start.day}"


def _record_instant(record: EngagementRecord) -> Optional[datetime]:
    return record.recorded_at or record.last_active


def build_series(
    records: Iterable[EngagementRecord],
    window: TimeWindow,
    bucket: Union[str, TrendBucket],
    metric: Union[str, TrendMetric],
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
    memo: Optional[RollupMemo] = None,
    records_version: Optional[Hashable] = None,
) -> List[TrendPoint]:
    """Time-bucketed series of ``metric`` across ``window``.

    Args:
        records: Engagement snapshots, bucketed by ``recorded_at`` (falling
            back to ``last_active``)
        window: Resolved window to partition
        bucket: day (7 points), week (4 points) or month (6 points)
        metric: Metric computed per sub-interval
        thresholds: Risk boundaries for the at-risk metric
        memo: Optional rollup memo, used together with ``records_version``
        records_version: Version token of ``records`` for the memo

    Returns:
        Exactly ``bucket.points`` points in chronological order
    """
    bucket = TrendBucket.parse(bucket)
    metric = TrendMetric.parse(metric)
    subs = window.split(bucket.points)
    starts = [sub.start for sub in subs]
    grouped: List[List[EngagementRecord]] = [[] for _ in subs]

    undated = 0
    for record in records:
        instant = _record_instant(record)
        if instant is None:
            undated += 1
            continue
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        if not window.contains(instant):
            continue
        grouped[bisect_right(starts, instant) - 1].append(record)

    if undated:
        logger.warning(
            "TREND_RECORDS_UNDATED",
            extra={"skipped": undated, "metric": metric.value}
        )

    points = [
        TrendPoint(
            bucket_label=_bucket_label(bucket, i, sub),
            value=metric_value(
                grouped[i], metric, thresholds, memo, records_version, sub.key
            ),
            start=sub.start,
            end=sub.end,
        )
        for i, sub in enumerate(subs)
    ]

    logger.info(
        "TREND_SERIES_BUILT",
        extra={
            "bucket": bucket.value,
            "metric": metric.value,
            "points": len(points),
            "empty_points": sum(1 for g in grouped if not g),
        }
    )
    return points


def compare_values(
    metric: Union[str, TrendMetric],
    current: float,
    previous: float,
) -> PeriodComparison:
    """Classify the change between two readings.

    Changes inside a 0.5 point band are ``stable``. The percentage is
    relative to the previous reading, 0 when there was none.
    """
    metric = TrendMetric.parse(metric)
    delta = current - previous
    if abs(delta) < STABLE_BAND:
        trend = "stable"
    elif delta > 0:
        trend = "up"
    else:
        trend = "down"
    percentage = delta / previous * 100.0 if previous else 0.0
    return PeriodComparison(
        metric=metric,
        current=current,
        previous=previous,
        trend=trend,
        trend_percentage=percentage,
    )


def compare_periods(
    records: Iterable[EngagementRecord],
    window: TimeWindow,
    metric: Union[str, TrendMetric],
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> PeriodComparison:
    """Metric over ``window`` against the same-length window before it."""
    records = list(records)
    dated = [r for r in records if r.recorded_at is not None]
    current = metric_value(filter_window(dated, window), metric, thresholds)
    previous = metric_value(filter_window(dated, window.previous()), metric, thresholds)
    return compare_values(metric, current, previous)
