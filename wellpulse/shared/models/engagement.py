"""Engagement domain models.

Core value types shared by the analytics engine, the record store client
and the HTTP handler. Every type is immutable; invariants are checked at
construction so a malformed record never reaches an aggregation.
"""
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class RiskLevel(Enum):
    """Three-valued wellness/engagement risk classification.

    Ordered LOW < MEDIUM < HIGH; use ``severity`` to compare.
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def severity(self) -> int:
        return _RISK_SEVERITY[self]

    @classmethod
    def parse(cls, value: Any) -> "RiskLevel":
        """Accept a RiskLevel or any casing of its token ("High", "high")."""
        if isinstance(value, RiskLevel):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown risk level: {value!r}")


_RISK_SEVERITY = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class Channel(Enum):
    """Engagement channels tracked per student."""
    ASSESSMENTS = "assessments"
    ACTIVITIES = "activities"
    WEBINARS = "webinars"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 wire timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class ChannelCounts:
    """Assigned vs completed items for one channel."""
    assigned: int = 0
    completed: int = 0

    def __post_init__(self):
        if self.assigned < 0 or self.completed < 0:
            raise ValueError(
                f"Counts must be non-negative, got {self.completed}/{self.assigned}"
            )
        if self.completed > self.assigned:
            raise ValueError(
                f"Completed ({self.completed}) exceeds assigned ({self.assigned})"
            )

    @property
    def pending(self) -> int:
        return self.assigned - self.completed

    def __add__(self, other: "ChannelCounts") -> "ChannelCounts":
        return ChannelCounts(
            assigned=self.assigned + other.assigned,
            completed=self.completed + other.completed,
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChannelCounts":
        """Read either ``{assigned, completed}`` or ``{total, done}``."""
        if not data:
            return cls()
        assigned = data.get("assigned", data.get("total", 0))
        completed = data.get("completed", data.get("done", 0))
        return cls(assigned=int(assigned), completed=int(completed))

    def to_dict(self) -> Dict[str, int]:
        return {"assigned": self.assigned, "completed": self.completed}


@dataclass(frozen=True)
class EngagementRecord:
    """One student's engagement over a time window.

    ``wellbeing_score`` is None when no score was supplied, which is not the
    same thing as a score of 0. ``recorded_at`` is the instant the snapshot
    covers; trend bucketing and window filtering key off it.
    """
    student_id: str
    class_id: str
    school_id: str
    assessments: ChannelCounts = field(default_factory=ChannelCounts)
    activities: ChannelCounts = field(default_factory=ChannelCounts)
    webinars: ChannelCounts = field(default_factory=ChannelCounts)
    daily_app_openings: int = 0
    daily_streak: int = 0
    last_active: Optional[datetime] = None
    wellbeing_score: Optional[float] = None
    student_name: str = ""
    class_name: str = ""
    recorded_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.student_id:
            raise ValueError("student_id is required")
        if self.daily_streak < 0:
            raise ValueError(f"daily_streak must be >= 0, got {self.daily_streak}")
        if self.daily_app_openings < 0:
            raise ValueError(
                f"daily_app_openings must be >= 0, got {self.daily_app_openings}"
            )
        if self.wellbeing_score is not None and not 0.0 <= self.wellbeing_score <= 100.0:
            raise ValueError(
                f"wellbeing_score must be 0-100, got {self.wellbeing_score}"
            )

    def channel(self, channel: Channel) -> ChannelCounts:
        return getattr(self, channel.value)

    @property
    def total_assigned(self) -> int:
        return sum(self.channel(c).assigned for c in Channel)

    @property
    def total_completed(self) -> int:
        return sum(self.channel(c).completed for c in Channel)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngagementRecord":
        wellbeing = data.get("wellbeing_score")
        return cls(
            student_id=str(data["student_id"]),
            class_id=str(data.get("class_id") or ""),
            school_id=str(data.get("school_id") or ""),
            assessments=ChannelCounts.from_dict(data.get("assessments")),
            activities=ChannelCounts.from_dict(data.get("activities")),
            webinars=ChannelCounts.from_dict(data.get("webinars")),
            daily_app_openings=int(data.get("daily_app_openings") or 0),
            daily_streak=int(data.get("daily_streak") or 0),
            last_active=parse_timestamp(data.get("last_active")),
            wellbeing_score=float(wellbeing) if wellbeing is not None else None,
            student_name=data.get("student_name") or data.get("name") or "",
            class_name=data.get("class_name") or "",
            recorded_at=parse_timestamp(data.get("recorded_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "class_id": self.class_id,
            "school_id": self.school_id,
            "student_name": self.student_name,
            "class_name": self.class_name,
            "assessments": self.assessments.to_dict(),
            "activities": self.activities.to_dict(),
            "webinars": self.webinars.to_dict(),
            "daily_app_openings": self.daily_app_openings,
            "daily_streak": self.daily_streak,
            "last_active": format_timestamp(self.last_active),
            "wellbeing_score": self.wellbeing_score,
            "recorded_at": format_timestamp(self.recorded_at),
        }


@dataclass(frozen=True)
class ChannelRate:
    """Done/total/rate triple for one channel of a rollup."""
    done: int
    total: int
    rate: float

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChannelRate":
        if not data:
            return cls(done=0, total=0, rate=0.0)
        return cls(
            done=int(data.get("done", 0)),
            total=int(data.get("total", 0)),
            rate=float(data.get("rate") or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"done": self.done, "total": self.total, "rate": round(self.rate, 1)}


@dataclass(frozen=True)
class RiskDistribution:
    low: int = 0
    medium: int = 0
    high: int = 0

    @property
    def total(self) -> int:
        return self.low + self.medium + self.high

    def count(self, level: RiskLevel) -> int:
        return getattr(self, level.value)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RiskDistribution":
        data = data or {}
        return cls(
            low=int(data.get("low", 0)),
            medium=int(data.get("medium", 0)),
            high=int(data.get("high", 0)),
        )

    def to_dict(self) -> Dict[str, int]:
        return {"low": self.low, "medium": self.medium, "high": self.high}


@dataclass(frozen=True)
class EngagementTotals:
    total_app_openings: int = 0
    total_assessments_completed: int = 0
    total_activities_completed: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngagementTotals":
        data = data or {}
        return cls(
            total_app_openings=int(data.get("total_app_openings", 0)),
            total_assessments_completed=int(data.get("total_assessments_completed", 0)),
            total_activities_completed=int(data.get("total_activities_completed", 0)),
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_app_openings": self.total_app_openings,
            "total_assessments_completed": self.total_assessments_completed,
            "total_activities_completed": self.total_activities_completed,
        }


@dataclass(frozen=True)
class Rollup:
    """Aggregated metrics for one group (a class or a school).

    ``avg_wellbeing`` is None when no member supplied a score.
    """
    group_by: str
    group_key: str
    total_students: int
    assessments: ChannelRate
    activities: ChannelRate
    webinars: ChannelRate
    at_risk_count: int = 0
    avg_wellbeing: Optional[int] = None
    risk_distribution: RiskDistribution = field(default_factory=RiskDistribution)
    app_openings: int = 0
    avg_daily_streak: float = 0.0

    def channel(self, channel: Channel) -> ChannelRate:
        return getattr(self, channel.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_by": self.group_by,
            "group_key": self.group_key,
            "total_students": self.total_students,
            "assessments": self.assessments.to_dict(),
            "activities": self.activities.to_dict(),
            "webinars": self.webinars.to_dict(),
            "at_risk_count": self.at_risk_count,
            "avg_wellbeing": self.avg_wellbeing,
            "risk_distribution": self.risk_distribution.to_dict(),
            "app_openings": self.app_openings,
            "avg_daily_streak": round(self.avg_daily_streak, 1),
        }


@dataclass(frozen=True)
class ClassInfo:
    """Canonical roster entry for a class."""
    class_id: str
    name: str = ""
    grade: str = ""
    section: str = ""
    teacher_id: Optional[str] = None
    teacher_name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassInfo":
        return cls(
            class_id=str(data.get("class_id") or data.get("id")),
            name=data.get("name") or "",
            grade=str(data.get("grade") or ""),
            section=str(data.get("section") or ""),
            teacher_id=data.get("teacher_id"),
            teacher_name=data.get("teacher_name") or "",
        )


@dataclass(frozen=True)
class ClassRollup:
    """A class roster entry joined with its rollup."""
    info: ClassInfo
    metrics: Rollup

    @property
    def class_id(self) -> str:
        return self.info.class_id

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def grade(self) -> str:
        return self.info.grade

    @property
    def section(self) -> str:
        return self.info.section

    @property
    def teacher_name(self) -> str:
        return self.info.teacher_name

    @property
    def total_students(self) -> int:
        return self.metrics.total_students

    @property
    def at_risk_count(self) -> int:
        return self.metrics.at_risk_count

    @property
    def avg_wellbeing(self) -> Optional[int]:
        return self.metrics.avg_wellbeing

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassRollup":
        info = ClassInfo.from_dict(data)
        avg = data.get("avg_wellbeing")
        metrics = Rollup(
            group_by="class",
            group_key=info.class_id,
            total_students=int(data.get("total_students", 0)),
            assessments=ChannelRate.from_dict(data.get("assessments")),
            activities=ChannelRate.from_dict(data.get("activities")),
            webinars=ChannelRate.from_dict(data.get("webinars")),
            at_risk_count=int(data.get("at_risk_count", 0)),
            avg_wellbeing=int(avg) if avg is not None else None,
            risk_distribution=RiskDistribution.from_dict(data.get("risk_distribution")),
            app_openings=int(data.get("app_openings", 0)),
            avg_daily_streak=float(data.get("avg_daily_streak") or 0.0),
        )
        return cls(info=info, metrics=metrics)

    def to_dict(self) -> Dict[str, Any]:
        body = self.metrics.to_dict()
        body.pop("group_by")
        body.pop("group_key")
        body.update({
            "class_id": self.info.class_id,
            "name": self.info.name,
            "grade": self.info.grade,
            "section": self.info.section,
            "teacher_id": self.info.teacher_id,
            "teacher_name": self.info.teacher_name,
        })
        return body


@dataclass(frozen=True)
class SchoolOverview:
    """School-wide totals across every class in scope."""
    school_id: str
    total_students: int
    total_classes: int
    assessments: ChannelRate
    activities: ChannelRate
    webinars: ChannelRate
    risk_distribution: RiskDistribution
    engagement: EngagementTotals
    avg_wellbeing: Optional[int] = None
    avg_daily_streak: float = 0.0
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    def __post_init__(self):
        if self.risk_distribution.total != self.total_students:
            raise ValueError(
                f"Risk distribution covers {self.risk_distribution.total} students, "
                f"expected {self.total_students}"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchoolOverview":
        summary = data.get("summary", data)
        avg = summary.get("avg_wellbeing", summary.get("avg_wellbeing_score"))
        period = data.get("period") or {}
        return cls(
            school_id=str(data.get("school_id", "")),
            total_students=int(summary.get("total_students", 0)),
            total_classes=int(summary.get("total_classes", 0)),
            assessments=ChannelRate.from_dict(data.get("assessments")),
            activities=ChannelRate.from_dict(data.get("activities")),
            webinars=ChannelRate.from_dict(data.get("webinars")),
            risk_distribution=RiskDistribution.from_dict(data.get("risk_distribution")),
            engagement=EngagementTotals.from_dict(data.get("engagement")),
            avg_wellbeing=math.floor(float(avg) + 0.5) if avg is not None else None,
            avg_daily_streak=float(summary.get("avg_daily_streak") or 0.0),
            period_start=parse_timestamp(period.get("start_date")),
            period_end=parse_timestamp(period.get("end_date")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "school_id": self.school_id,
            "period": {
                "start_date": format_timestamp(self.period_start),
                "end_date": format_timestamp(self.period_end),
            },
            "summary": {
                "total_students": self.total_students,
                "total_classes": self.total_classes,
                "avg_wellbeing": self.avg_wellbeing,
                "avg_daily_streak": round(self.avg_daily_streak, 1),
            },
            "assessments": self.assessments.to_dict(),
            "activities": self.activities.to_dict(),
            "webinars": self.webinars.to_dict(),
            "risk_distribution": self.risk_distribution.to_dict(),
            "engagement": self.engagement.to_dict(),
        }


@dataclass(frozen=True)
class DailyActivity:
    """One day of a student's activity log."""
    day: date
    activity_completed: bool = False
    app_opened: bool = False

    @property
    def active(self) -> bool:
        return self.activity_completed or self.app_opened

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyActivity":
        raw_day = data["date"]
        day = raw_day if isinstance(raw_day, date) else date.fromisoformat(str(raw_day)[:10])
        return cls(
            day=day,
            activity_completed=bool(data.get("activity_completed", False)),
            app_opened=bool(data.get("app_opened", False)),
        )


@dataclass(frozen=True)
class StudentHistory:
    """A student's record for the window plus the daily log behind it."""
    record: EngagementRecord
    daily_log: Tuple[DailyActivity, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudentHistory":
        log = data.get("history") or data.get("daily_log") or []
        return cls(
            record=EngagementRecord.from_dict(data),
            daily_log=tuple(DailyActivity.from_dict(entry) for entry in log),
        )
