"""Drill-down navigation: overview -> class -> student -> item -> response.

The navigator exclusively owns the selection stack. Moves are push/pop
only. Pushing resets the entering level's filters to defaults; popping
restores the parent's filters and context exactly as they were left.
"""
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .exceptions import InvalidTransitionError
from .pipeline import DEFAULT_PAGE_SIZE, FilterState

logger = logging.getLogger(__name__)


class DrillLevel(Enum):
    OVERVIEW = "overview"
    CLASS = "class"
    STUDENT = "student"
    ITEM = "item"
    RESPONSE = "response"


ALLOWED_TRANSITIONS = {
    DrillLevel.OVERVIEW: frozenset({DrillLevel.CLASS, DrillLevel.STUDENT, DrillLevel.ITEM}),
    DrillLevel.CLASS: frozenset({DrillLevel.STUDENT, DrillLevel.ITEM}),
    DrillLevel.STUDENT: frozenset({DrillLevel.ITEM}),
    DrillLevel.ITEM: frozenset({DrillLevel.RESPONSE, DrillLevel.STUDENT}),
    DrillLevel.RESPONSE: frozenset(),
}


def _frozen_context(values: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class Frame:
    """One level of the selection stack.

    ``context`` holds view state worth restoring on the way back up, such
    as scroll position or the active tab.
    """
    level: DrillLevel
    entity_id: Optional[str]
    filters: FilterState
    context: Mapping[str, Any] = field(default_factory=_frozen_context)


DrillDownSelection = Tuple[Frame, ...]

PopListener = Callable[[List[DrillLevel]], None]


class DrillDownNavigator:
    """State machine for the analytics drill-down.

    Args:
        page_size: Page size for every level's default FilterState
        on_pop: Called with the levels removed by a pop, so in-flight work
            for those levels can be cancelled
        root_id: Entity id shown at the overview (usually the school)
    """

    def __init__(
        self,
        page_size: int = DEFAULT_PAGE_SIZE,
        on_pop: Optional[PopListener] = None,
        root_id: Optional[str] = None,
    ):
        self.page_size = page_size
        self.on_pop = on_pop
        self._stack: DrillDownSelection = (
            Frame(
                level=DrillLevel.OVERVIEW,
                entity_id=root_id,
                filters=FilterState.defaults(page_size),
            ),
        )

    @property
    def stack(self) -> DrillDownSelection:
        return self._stack

    @property
    def current(self) -> Frame:
        return self._stack[-1]

    @property
    def level(self) -> DrillLevel:
        return self.current.level

    @property
    def depth(self) -> int:
        return len(self._stack)

    @property
    def at_root(self) -> bool:
        return self.depth == 1

    def selection(self) -> List[Tuple[DrillLevel, Optional[str]]]:
        """The breadcrumb path as ``(level, entity_id)`` pairs."""
        return [(frame.level, frame.entity_id) for frame in self._stack]

    def selected_id(self, level: DrillLevel) -> Optional[str]:
        """Entity id of the innermost frame at ``level``, if any."""
        for frame in reversed(self._stack):
            if frame.level is level:
                return frame.entity_id
        return None

    def can_push(self, level: DrillLevel) -> bool:
        return level in ALLOWED_TRANSITIONS[self.level]

    def push(self, level: DrillLevel, entity_id: str) -> Frame:
        """Descend into ``entity_id`` at ``level`` with fresh filters.

        Raises:
            InvalidTransitionError: If the move skips or inverts a level, or
                no entity is selected
        """
        if not self.can_push(level):
            raise InvalidTransitionError(
                f"Cannot move from {self.level.value} to {level.value}"
            )
        if not entity_id:
            raise InvalidTransitionError(f"Selecting {level.value} requires an id")

        frame = Frame(
            level=level,
            entity_id=entity_id,
            filters=FilterState.defaults(self.page_size),
        )
        self._stack = self._stack + (frame,)
        logger.info(
            "DRILLDOWN_PUSH",
            extra={"level": level.value, "depth": self.depth}
        )
        return frame

    def pop(self) -> Frame:
        """Go back one level; a no-op at the overview.

        Returns:
            The frame now current, with its filters and context intact
        """
        if self.at_root:
            logger.debug("DRILLDOWN_POP_AT_ROOT")
            return self.current

        removed = self.current
        self._stack = self._stack[:-1]
        logger.info(
            "DRILLDOWN_POP",
            extra={"level": removed.level.value, "depth": self.depth}
        )
        if self.on_pop is not None:
            self.on_pop([removed.level])
        return self.current

    def reset(self) -> Frame:
        """Return to the overview one level at a time."""
        while not self.at_root:
            self.pop()
        return self.current

    def open_student(self, student_id: str) -> Frame:
        """Lateral move from a leaderboard entry to a student's detail.

        Pops back to the nearest level that can show a student, then
        pushes, so every level left behind is cleaned up on the way.
        """
        while not self.can_push(DrillLevel.STUDENT) and not self.at_root:
            self.pop()
        return self.push(DrillLevel.STUDENT, student_id)

    def _replace_current(self, frame: Frame) -> Frame:
        self._stack = self._stack[:-1] + (frame,)
        return frame

    def update_filters(self, **changes: Any) -> FilterState:
        """Apply filter changes to the current level only."""
        filters = self.current.filters.update(**changes)
        self._replace_current(replace(self.current, filters=filters))
        return filters

    def set_page(self, page: int) -> FilterState:
        filters = self.current.filters.with_page(page)
        self._replace_current(replace(self.current, filters=filters))
        return filters

    def update_context(self, **values: Any) -> Mapping[str, Any]:
        merged: Dict[str, Any] = dict(self.current.context)
        merged.update(values)
        frame = self._replace_current(
            replace(self.current, context=_frozen_context(merged))
        )
        return frame.context
