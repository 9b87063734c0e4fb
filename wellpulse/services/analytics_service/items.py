"""Item-level detail: one assessment, activity or webinar and its students.

Backs the item and response levels of the drill-down: how many of the
students an item was assigned to have submitted, completed or attended it.
"""
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from wellpulse.shared.models import Channel, parse_timestamp
from .metrics import completion_rate, round_half_up


class ItemStatus:
    """Per-student status tokens, grouped by what counts as done."""
    SUBMITTED = "submitted"
    PENDING = "pending"
    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"
    NOT_STARTED = "not_started"
    ATTENDED = "attended"
    MISSED = "missed"

    ALL = frozenset({
        SUBMITTED, PENDING, COMPLETED, IN_PROGRESS, NOT_STARTED, ATTENDED, MISSED,
    })
    DONE = frozenset({SUBMITTED, COMPLETED, ATTENDED})


@dataclass(frozen=True)
class StudentItemStatus:
    student_id: str
    student_name: str
    class_name: str
    status: str
    submitted_at: Optional[datetime] = None
    score: Optional[float] = None

    def __post_init__(self):
        if self.status not in ItemStatus.ALL:
            raise ValueError(f"Unknown item status: {self.status!r}")

    @property
    def done(self) -> bool:
        return self.status in ItemStatus.DONE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudentItemStatus":
        score = data.get("score")
        return cls(
            student_id=str(data["student_id"]),
            student_name=data.get("student_name") or "",
            class_name=data.get("class_name") or "",
            status=str(data["status"]).lower(),
            submitted_at=parse_timestamp(data.get("submitted_at")),
            score=float(score) if score is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "student_name": self.student_name,
            "class_name": self.class_name,
            "status": self.status,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "score": self.score,
        }


@dataclass(frozen=True)
class AssignedItem:
    """An assessment, activity or webinar and the students it went to."""
    item_id: str
    channel: Channel
    title: str
    category: str = ""
    due_date: Optional[datetime] = None
    students: Tuple[StudentItemStatus, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssignedItem":
        return cls(
            item_id=str(data["item_id"]),
            channel=Channel(data["channel"]),
            title=data.get("title") or "",
            category=data.get("category") or data.get("type") or "",
            due_date=parse_timestamp(data.get("due_date")),
            students=tuple(
                StudentItemStatus.from_dict(s) for s in data.get("students") or []
            ),
        )


@dataclass(frozen=True)
class ItemSummary:
    item_id: str
    channel: Channel
    title: str
    category: str
    assigned: int
    done: int
    rate: float
    status_breakdown: Dict[str, int]
    avg_score: Optional[float]

    @property
    def pending(self) -> int:
        return self.assigned - self.done

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "channel": self.channel.value,
            "title": self.title,
            "category": self.category,
            "assigned": self.assigned,
            "done": self.done,
            "pending": self.pending,
            "rate": round(self.rate, 1),
            "status_breakdown": dict(self.status_breakdown),
            "avg_score": round(self.avg_score, 1) if self.avg_score is not None else None,
        }


def summarize_item(item: AssignedItem) -> ItemSummary:
    """Counts, completion rate and mean score for one item."""
    breakdown = Counter(s.status for s in item.students)
    done = sum(1 for s in item.students if s.done)
    scores = [s.score for s in item.students if s.score is not None]

    return ItemSummary(
        item_id=item.item_id,
        channel=item.channel,
        title=item.title,
        category=item.category,
        assigned=len(item.students),
        done=done,
        rate=completion_rate(done, len(item.students)),
        status_breakdown=dict(breakdown),
        avg_score=sum(scores) / len(scores) if scores else None,
    )


def summarize_items(items: Iterable[AssignedItem]) -> Dict[str, Dict[str, Any]]:
    """Per-channel item counts and average students done/pending per item.

    Averages are rounded half-up for display; a channel with no items
    reports zeros.
    """
    summaries: Dict[Channel, List[ItemSummary]] = {channel: [] for channel in Channel}
    for item in items:
        summaries[item.channel].append(summarize_item(item))

    result = {}
    for channel, channel_items in summaries.items():
        count = len(channel_items)
        done = sum(s.done for s in channel_items)
        assigned = sum(s.assigned for s in channel_items)
        result[channel.value] = {
            "item_count": count,
            "avg_students_done": round_half_up(done / count) if count else 0,
            "avg_students_pending": round_half_up((assigned - done) / count) if count else 0,
            "rate": round(completion_rate(done, assigned), 1),
        }
    return result


def find_student_status(
    item: AssignedItem,
    student_id: str,
) -> Optional[StudentItemStatus]:
    """The response-level view: one student's status on one item."""
    for status in item.students:
        if status.student_id == student_id:
            return status
    return None
