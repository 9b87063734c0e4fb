"""Last-request-wins coordination of record store fetches per drill-down level.

Each level has at most one fetch in flight. Starting a new load for a level
cancels the one before it, and a result that resolves after its selection
was superseded is dropped without touching the level's state. A failed
fetch marks only its own level as errored.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple, Union

from .exceptions import StaleSelectionDiscard, UpstreamFetchError

logger = logging.getLogger(__name__)

FetchFactory = Callable[[], Awaitable[Any]]
LevelKey = Union[str, Enum]


class LoadStatus(Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class LevelState:
    status: LoadStatus = LoadStatus.IDLE
    selection_key: Optional[str] = None
    data: Any = None
    error: Optional[UpstreamFetchError] = None


_IDLE = LevelState()


def _level_name(level: LevelKey) -> str:
    return level.value if isinstance(level, Enum) else str(level)


class FetchCoordinator:
    """Tracks the loading state of every drill-down level.

    ``discard`` matches the navigator's ``on_pop`` signature, so the two can
    be wired directly::

        coordinator = FetchCoordinator()
        navigator = DrillDownNavigator(on_pop=coordinator.discard)
    """

    def __init__(self):
        self._states: Dict[str, LevelState] = {}
        self._tasks: Dict[str, asyncio.Future] = {}
        self._last_fetch: Dict[str, Tuple[str, FetchFactory]] = {}
        self._generation: Dict[str, int] = defaultdict(int)

    def state(self, level: LevelKey) -> LevelState:
        return self._states.get(_level_name(level), _IDLE)

    def in_flight(self, level: LevelKey) -> bool:
        task = self._tasks.get(_level_name(level))
        return task is not None and not task.done()

    def _supersede(self, level: str) -> int:
        self._generation[level] += 1
        task = self._tasks.pop(level, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug("FETCH_CANCELLED", extra={"level": level})
        return self._generation[level]

    def _ensure_current(self, level: str, token: int, selection_key: str) -> None:
        if self._generation[level] != token:
            raise StaleSelectionDiscard(level, selection_key)

    async def load(
        self,
        level: LevelKey,
        selection_key: str,
        fetch: FetchFactory,
    ) -> Optional[LevelState]:
        """Fetch data for ``level`` under ``selection_key``.

        Args:
            level: Drill-down level (DrillLevel or its name)
            selection_key: Identifies what was selected when the fetch started
            fetch: Zero-argument factory returning the awaitable to run

        Returns:
            The level's new state, or None when the result was superseded by
            a newer load or a discard and was dropped

        Raises:
            asyncio.CancelledError: If the caller cancels the load; the level
                returns to IDLE
            Exception: Anything other than UpstreamFetchError raised by
                ``fetch``, after the level is marked ERROR
        """
        level = _level_name(level)
        token = self._supersede(level)
        self._last_fetch[level] = (selection_key, fetch)
        self._states[level] = LevelState(
            status=LoadStatus.LOADING, selection_key=selection_key
        )

        task = None
        try:
            try:
                task = asyncio.ensure_future(fetch())
                self._tasks[level] = task
                data = await task
            except asyncio.CancelledError:
                self._ensure_current(level, token, selection_key)
                self._states[level] = LevelState(selection_key=selection_key)
                logger.info("LEVEL_FETCH_ABORTED", extra={"level": level})
                raise
            except UpstreamFetchError as e:
                self._ensure_current(level, token, selection_key)
                error = UpstreamFetchError(str(e), status=e.status, level=level)
                self._states[level] = LevelState(
                    status=LoadStatus.ERROR, selection_key=selection_key, error=error
                )
                logger.warning(
                    "LEVEL_FETCH_FAILED",
                    extra={"level": level, "status": e.status, "error": str(e)}
                )
                return self._states[level]
            except Exception as e:
                self._ensure_current(level, token, selection_key)
                error = UpstreamFetchError(f"Fetch failed: {e}", level=level)
                self._states[level] = LevelState(
                    status=LoadStatus.ERROR, selection_key=selection_key, error=error
                )
                logger.error(
                    "LEVEL_FETCH_CRASHED",
                    extra={"level": level, "error_type": type(e).__name__},
                    exc_info=True
                )
                raise
            self._ensure_current(level, token, selection_key)
        except StaleSelectionDiscard as e:
            logger.debug(
                "FETCH_STALE_DISCARDED",
                extra={"level": e.level, "selection_key": e.selection_key}
            )
            return None
        finally:
            if task is not None and self._tasks.get(level) is task:
                del self._tasks[level]

        self._states[level] = LevelState(
            status=LoadStatus.READY, selection_key=selection_key, data=data
        )
        logger.debug("LEVEL_FETCH_READY", extra={"level": level})
        return self._states[level]

    async def retry(self, level: LevelKey) -> Optional[LevelState]:
        """Re-run the last fetch issued for ``level``.

        Raises:
            ValueError: If nothing was ever loaded for the level
        """
        name = _level_name(level)
        if name not in self._last_fetch:
            raise ValueError(f"No fetch to retry for level {name!r}")
        selection_key, fetch = self._last_fetch[name]
        logger.info("LEVEL_FETCH_RETRY", extra={"level": name})
        return await self.load(name, selection_key, fetch)

    def discard(self, levels: Iterable[LevelKey]) -> None:
        """Cancel in-flight work and forget state for the given levels."""
        for level in levels:
            name = _level_name(level)
            self._supersede(name)
            self._states.pop(name, None)
            self._last_fetch.pop(name, None)
            logger.debug("LEVEL_STATE_DISCARDED", extra={"level": name})
