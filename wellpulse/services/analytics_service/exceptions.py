"""Error taxonomy for the engagement analytics engine.

Empty results are data, not errors: an empty window yields empty lists,
zero rollups and all-zero trend series. Only the conditions below raise.
"""
from typing import Optional


class AnalyticsError(Exception):
    """Base exception for analytics engine errors."""
    pass


class InvalidRangeError(AnalyticsError):
    """Malformed time window: missing custom bound, from > to, unknown period.

    Raised before any fetch is issued so the caller can show a validation
    message instead of a request.
    """
    pass


class InvalidTransitionError(AnalyticsError):
    """Drill-down push that skips or inverts a level."""
    pass


class UpstreamFetchError(AnalyticsError):
    """Record store request failed (network, timeout, non-2xx, bad body).

    Scoped to the drill-down level that issued the request; sibling levels
    keep their data.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        level: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.level = level


class StaleSelectionDiscard(AnalyticsError):
    """A fetch resolved after its selection was superseded.

    Internal signal only; the result is dropped and nothing is surfaced.
    """

    def __init__(self, level: str, selection_key: str):
        super().__init__(f"Stale result for {level}:{selection_key}")
        self.level = level
        self.selection_key = selection_key
