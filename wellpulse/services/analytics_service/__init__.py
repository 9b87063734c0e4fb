"""Analytics Service: Engagement analytics for school dashboards.

Turns per-student engagement records (assessments, activities, webinars,
app usage, wellbeing scores) into the numbers a counsellor dashboard
shows at every drill-down level.

This service provides:
- Completion rates, streaks and two-axis risk classification
- Class and school rollups over a resolved time window
- Top performer and needs-attention leaderboards
- Search/filter/sort/paginate over any level's list
- Drill-down navigation state and last-request-wins fetching
- Bucketed trend series with period-over-period comparison

Endpoints:
- GET /health - Health check
- GET /ready - Readiness check
- POST /records - Ingest engagement records
- GET /overview - School overview
- GET /classes - Class rollups
- GET /classes/<class_id> - One class and its students
- GET /students - Student standings
- GET /leaderboard - Top performers and students needing attention
- GET /trends - Trend series
"""

from .config import AnalyticsConfig, RecordStoreConfig, RiskThresholds
from .exceptions import (
    AnalyticsError,
    InvalidRangeError,
    InvalidTransitionError,
    StaleSelectionDiscard,
    UpstreamFetchError,
)
from .time_window import Period, TimeWindow, resolve_window
from .rollup import RollupMemo, aggregate, school_overview
from .ranking import StudentStanding, at_risk_students, classify_students, top_performers
from .pipeline import FilterPipeline, FilterState, Page
from .navigator import DrillDownNavigator, DrillLevel
from .trends import TrendBucket, TrendMetric, build_series, compare_periods
from .fetch_coordinator import FetchCoordinator, LevelState, LoadStatus
from .record_client import RecordStoreClient, StudentPage
from .handler import AnalyticsHandler, app

__all__ = [
    "AnalyticsConfig",
    "RecordStoreConfig",
    "RiskThresholds",
    "AnalyticsError",
    "InvalidRangeError",
    "InvalidTransitionError",
    "StaleSelectionDiscard",
    "UpstreamFetchError",
    "Period",
    "TimeWindow",
    "resolve_window",
    "RollupMemo",
    "aggregate",
    "school_overview",
    "StudentStanding",
    "at_risk_students",
    "classify_students",
    "top_performers",
    "FilterPipeline",
    "FilterState",
    "Page",
    "DrillDownNavigator",
    "DrillLevel",
    "TrendBucket",
    "TrendMetric",
    "build_series",
    "compare_periods",
    "FetchCoordinator",
    "LevelState",
    "LoadStatus",
    "RecordStoreClient",
    "StudentPage",
    "AnalyticsHandler",
    "app",
]
