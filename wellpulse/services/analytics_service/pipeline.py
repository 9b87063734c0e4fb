"""Filter, search, sort and paginate any list shown at a drill-down level.

The order of operations is fixed: text search, facet filters, sort, page
slice. One explicit ``FilterState`` value drives the whole pipeline, and
changing anything but the page sends the view back to page 1 so a stale
page number never lands past the end of a shrunk result set.
"""
import logging
import math
from dataclasses import dataclass, fields, replace
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Generic,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from wellpulse.shared.models import ClassRollup, RiskLevel
from .items import AssignedItem, StudentItemStatus
from .ranking import StudentStanding

logger = logging.getLogger(__name__)

T = TypeVar("T")

SORT_ASC = "asc"
SORT_DESC = "desc"
DEFAULT_PAGE_SIZE = 10

# Completion-rate bands; critical is a subset of needs_attention
PERFORMANCE_BANDS = ("excellent", "good", "average", "needs_attention", "critical")


def performance_bands(rate: float) -> Tuple[str, ...]:
    """Performance bands a completion rate falls into.

    excellent >= 90, good 70-90, average 50-70, needs_attention < 50 and
    critical < 30. A rate below 30 is in both of the last two bands.
    """
    if rate >= 90:
        return ("excellent",)
    if rate >= 70:
        return ("good",)
    if rate >= 50:
        return ("average",)
    if rate >= 30:
        return ("needs_attention",)
    return ("needs_attention", "critical")


@dataclass(frozen=True)
class FilterState:
    """Search, facet, sort and page selection for one list.

    Facet selections are sets; an empty set means no filter.
    """
    search_text: str = ""
    selected_categories: FrozenSet[str] = frozenset()
    selected_statuses: FrozenSet[str] = frozenset()
    risk_filter: FrozenSet[RiskLevel] = frozenset()
    performance_filter: FrozenSet[str] = frozenset()
    sort_key: Optional[str] = None
    sort_direction: str = SORT_ASC
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    def __post_init__(self):
        # Accept any iterable for the facets but store frozensets
        object.__setattr__(self, "selected_categories", frozenset(self.selected_categories))
        object.__setattr__(self, "selected_statuses", frozenset(self.selected_statuses))
        object.__setattr__(self, "performance_filter", frozenset(self.performance_filter))
        unknown = self.performance_filter - set(PERFORMANCE_BANDS)
        if unknown:
            raise ValueError(
                f"Unknown performance band(s) {sorted(unknown)}; "
                f"expected one of {list(PERFORMANCE_BANDS)}"
            )
        object.__setattr__(
            self, "risk_filter", frozenset(RiskLevel.parse(r) for r in self.risk_filter)
        )
        if self.sort_direction not in (SORT_ASC, SORT_DESC):
            raise ValueError(f"sort_direction must be asc or desc, got {self.sort_direction!r}")
        if self.page < 1:
            raise ValueError(f"page must be >= 1, got {self.page}")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")

    @classmethod
    def defaults(cls, page_size: int = DEFAULT_PAGE_SIZE) -> "FilterState":
        return cls(page_size=page_size)

    def update(self, **changes: Any) -> "FilterState":
        """Return a new state with ``changes`` applied.

        Any change to a field other than ``page`` resets ``page`` to 1.
        """
        updated = replace(self, **changes)
        filters_changed = any(
            getattr(updated, f.name) != getattr(self, f.name)
            for f in fields(self)
            if f.name != "page"
        )
        if filters_changed and updated.page != 1:
            updated = replace(updated, page=1)
        return updated

    def with_page(self, page: int) -> "FilterState":
        return replace(self, page=page)

    def reset(self) -> "FilterState":
        """Defaults, keeping only the page size."""
        return FilterState.defaults(page_size=self.page_size)


@dataclass(frozen=True)
class Page(Generic[T]):
    items: Tuple[T, ...]
    total_count: int
    total_pages: int
    page: int
    page_size: int

    def to_dict(self, serialize: Callable[[T], Any] = lambda item: item.to_dict()) -> Dict[str, Any]:
        return {
            "items": [serialize(item) for item in self.items],
            "total_count": self.total_count,
            "total_pages": self.total_pages,
            "page": self.page,
            "page_size": self.page_size,
        }


Accessor = Callable[[Any], Any]


def _matches_facet(value: Any, selected: FrozenSet) -> bool:
    if not selected:
        return True
    if isinstance(value, (list, tuple, set, frozenset)):
        return any(v in selected for v in value)
    return value in selected


class FilterPipeline(Generic[T]):
    """Configurable search/filter/sort/paginate over one item type.

    Args:
        search_fields: Accessors whose values are searched, case-insensitive
        category_of: Accessor for the category facet (value or collection)
        status_of: Accessor for the status facet
        risk_of: Accessor returning the item's RiskLevel
        performance_of: Accessor for the performance band facet
        sort_keys: Sort key name -> accessor
        id_of: Accessor for the tie-break identity giving a total order
    """

    def __init__(
        self,
        search_fields: Sequence[Accessor],
        category_of: Optional[Accessor] = None,
        status_of: Optional[Accessor] = None,
        risk_of: Optional[Accessor] = None,
        performance_of: Optional[Accessor] = None,
        sort_keys: Optional[Dict[str, Accessor]] = None,
        id_of: Accessor = str,
    ):
        self.search_fields = list(search_fields)
        self.category_of = category_of
        self.status_of = status_of
        self.risk_of = risk_of
        self.performance_of = performance_of
        self.sort_keys = dict(sort_keys or {})
        self.id_of = id_of

    def search(self, items: Iterable[T], text: str) -> List[T]:
        needle = (text or "").strip().casefold()
        if not needle:
            return list(items)
        return [
            item for item in items
            if any(
                needle in str(value).casefold()
                for value in (field(item) for field in self.search_fields)
                if value is not None
            )
        ]

    def filter_facets(self, items: Iterable[T], state: FilterState) -> List[T]:
        facets = [
            (self.category_of, state.selected_categories),
            (self.status_of, state.selected_statuses),
            (self.risk_of, state.risk_filter),
            (self.performance_of, state.performance_filter),
        ]
        active = [(accessor, selected) for accessor, selected in facets if selected]
        for accessor, _ in active:
            if accessor is None:
                raise ValueError("Filter selected for a facet this list does not support")
        return [
            item for item in items
            if all(_matches_facet(accessor(item), selected) for accessor, selected in active)
        ]

    def sort(self, items: Iterable[T], state: FilterState) -> List[T]:
        by_id = sorted(items, key=self.id_of)
        if state.sort_key is None:
            return by_id
        if state.sort_key not in self.sort_keys:
            raise ValueError(
                f"Unknown sort key {state.sort_key!r}; expected one of {sorted(self.sort_keys)}"
            )
        accessor = self.sort_keys[state.sort_key]
        present = [item for item in by_id if accessor(item) is not None]
        missing = [item for item in by_id if accessor(item) is None]
        # sorted() is stable with reverse=True, so ids stay ascending within ties
        present.sort(key=accessor, reverse=state.sort_direction == SORT_DESC)
        return present + missing

    def apply(self, items: Iterable[T], state: FilterState) -> Page[T]:
        """Run search -> facets -> sort -> page slice.

        Returns:
            Page with the slice and totals for the filtered set; a page past
            the end is empty but keeps the totals.
        """
        matched = self.filter_facets(self.search(items, state.search_text), state)
        ordered = self.sort(matched, state)

        total_count = len(ordered)
        total_pages = max(1, math.ceil(total_count / state.page_size))
        offset = (state.page - 1) * state.page_size
        window = tuple(ordered[offset:offset + state.page_size])

        if state.page > total_pages:
            logger.warning(
                "PAGE_OUT_OF_RANGE",
                extra={"page": state.page, "total_pages": total_pages}
            )
        return Page(
            items=window,
            total_count=total_count,
            total_pages=total_pages,
            page=state.page,
            page_size=state.page_size,
        )


def participation_status(standing: StudentStanding) -> str:
    """Engagement facet value: completed_all, partial, not_started, no_assignments."""
    record = standing.record
    if record.total_assigned == 0:
        return "no_assignments"
    if record.total_completed == record.total_assigned:
        return "completed_all"
    if record.total_completed == 0:
        return "not_started"
    return "partial"


def participation_tags(standing: StudentStanding) -> Tuple[str, ...]:
    """Status facet values: the participation status plus ``has_pending``."""
    record = standing.record
    status = participation_status(standing)
    if record.total_completed < record.total_assigned:
        return (status, "has_pending")
    return (status,)


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value else None


def student_pipeline() -> FilterPipeline[StudentStanding]:
    return FilterPipeline(
        search_fields=[
            lambda s: s.student_name,
            lambda s: s.class_name,
            lambda s: s.student_id,
        ],
        category_of=lambda s: s.class_name or s.class_id,
        status_of=participation_tags,
        risk_of=lambda s: s.risk_level,
        performance_of=lambda s: performance_bands(s.overall_rate),
        sort_keys={
            "name": lambda s: _casefold(s.student_name),
            "overall_rate": lambda s: s.overall_rate,
            "streak": lambda s: s.streak,
            "days_inactive": lambda s: s.days_inactive,
            "wellbeing": lambda s: s.wellbeing_score,
            "risk": lambda s: s.risk_level.severity,
        },
        id_of=lambda s: s.student_id,
    )


def class_pipeline() -> FilterPipeline[ClassRollup]:
    return FilterPipeline(
        search_fields=[
            lambda c: c.name,
            lambda c: c.teacher_name,
            lambda c: c.class_id,
        ],
        category_of=lambda c: c.grade,
        sort_keys={
            "name": lambda c: _casefold(c.name),
            "grade": lambda c: c.grade,
            "total_students": lambda c: c.total_students,
            "at_risk_count": lambda c: c.at_risk_count,
            "avg_wellbeing": lambda c: c.avg_wellbeing,
            "assessment_rate": lambda c: c.metrics.assessments.rate,
            "activity_rate": lambda c: c.metrics.activities.rate,
            "webinar_rate": lambda c: c.metrics.webinars.rate,
        },
        id_of=lambda c: c.class_id,
    )


def item_pipeline() -> FilterPipeline[AssignedItem]:
    return FilterPipeline(
        search_fields=[lambda i: i.title, lambda i: i.category],
        category_of=lambda i: i.category,
        status_of=lambda i: i.channel.value,
        sort_keys={
            "title": lambda i: _casefold(i.title),
            "due_date": lambda i: i.due_date,
        },
        id_of=lambda i: i.item_id,
    )


def item_status_pipeline() -> FilterPipeline[StudentItemStatus]:
    return FilterPipeline(
        search_fields=[lambda s: s.student_name, lambda s: s.class_name],
        category_of=lambda s: s.class_name,
        status_of=lambda s: s.status,
        sort_keys={
            "name": lambda s: _casefold(s.student_name),
            "submitted_at": lambda s: s.submitted_at,
            "score": lambda s: s.score,
        },
        id_of=lambda s: s.student_id,
    )
