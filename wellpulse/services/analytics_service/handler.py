"""Analytics Service HTTP Handler - Engagement Dashboard API.

Serves school, class and student engagement analytics computed from the
records ingested into this service. Every query resolves one time window
up front, so all numbers in a response describe the same interval.

Endpoints:
- GET /health - Health check
- GET /ready - Readiness check
- POST /records - Ingest engagement records
- GET /overview - School overview with period comparison
- GET /classes - Class rollups (search, filter, sort, paginate)
- GET /classes/<class_id> - One class and its students
- GET /students - Student standings (search, filter, sort, paginate)
- GET /leaderboard - Top performers and students needing attention
- GET /trends - Bucketed trend series for one metric
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from flask import Flask, request, jsonify

from wellpulse.shared.models import EngagementRecord
from wellpulse.shared.utils import configure_pii_salt, hash_many
from .config import AnalyticsConfig
from .exceptions import InvalidRangeError
from .pipeline import FilterState, class_pipeline, student_pipeline
from .ranking import (
    at_risk_students,
    classify_students,
    engagement_stats,
    risk_distribution,
    top_performers,
)
from .rollup import (
    RollupMemo,
    filter_window,
    join_class_roster,
    roster_from_records,
    school_overview,
)
from .time_window import TimeWindow, resolve_window
from .trends import TrendBucket, TrendMetric, build_series, compare_periods

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Configure PII salt
pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)


class ClassNotFoundError(LookupError):
    """No records exist for the requested class."""
    pass


class AnalyticsHandler:
    """Handler for engagement analytics endpoints."""

    def __init__(
        self,
        config: Optional[AnalyticsConfig] = None,
        memo: Optional[RollupMemo] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize handler with dependencies.

        Args:
            config: Analytics configuration
            memo: Rollup memo (injected for testing)
            clock: Source of "now" for window resolution (injected for testing)
        """
        self.config = config or AnalyticsConfig.from_env()
        self.memo = memo or RollupMemo(
            max_entries=self.config.memo_size,
            thresholds=self.config.thresholds,
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        # In-memory record store; the version bumps on every write
        self._records: List[EngagementRecord] = []
        self.records_version = 0

        logger.info(
            "ANALYTICS_HANDLER_INITIALIZED",
            extra={
                "default_period": self.config.default_period,
                "inactive_days_threshold": self.config.inactive_days_threshold,
                "memo_size": self.config.memo_size,
            }
        )

    def add_records(self, records: Iterable[EngagementRecord]) -> int:
        """Store records and invalidate memoized rollups.

        Returns:
            Number of records added
        """
        added = list(records)
        if not added:
            return 0
        self._records.extend(added)
        self.records_version += 1
        self.memo.clear()

        logger.info(
            "RECORDS_INGESTED",
            extra={
                "record_count": len(added),
                "school_ids": sorted({r.school_id for r in added}),
                "records_version": self.records_version,
            }
        )
        return len(added)

    def resolve(
        self,
        period: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> TimeWindow:
        return resolve_window(
            period or self.config.default_period,
            date_from=date_from,
            date_to=date_to,
            now=self.clock(),
            tz=self.config.timezone,
        )

    def as_of(self, window: TimeWindow) -> datetime:
        """Reference instant for inactivity: the window's last instant, capped at now."""
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return min(now, window.as_of)

    def _school_records(self, school_id: str) -> List[EngagementRecord]:
        return [r for r in self._records if r.school_id == school_id]

    def get_overview(self, school_id: str, window: TimeWindow) -> Dict[str, Any]:
        """School overview, headline stats and change against the prior window."""
        all_records = self._school_records(school_id)
        scoped = filter_window(all_records, window)

        overview = school_overview(scoped, school_id, window, self.config.thresholds)
        standings = classify_students(scoped, self.as_of(window), self.config.thresholds)
        comparison = compare_periods(
            all_records, window, TrendMetric.OVERALL_RATE, self.config.thresholds
        )

        logger.info(
            "SCHOOL_OVERVIEW_RETRIEVED",
            extra={
                "school_id": school_id,
                "period": window.period.value,
                "student_count": overview.total_students,
            }
        )

        result = overview.to_dict()
        result["engagement_stats"] = engagement_stats(
            standings, self.config.inactive_days_threshold
        ).to_dict()
        result["comparison"] = comparison.to_dict()
        return result

    def get_classes(
        self,
        school_id: str,
        window: TimeWindow,
        state: FilterState,
    ) -> Dict[str, Any]:
        """Class rollups for a school; classes without records show zeros."""
        all_records = self._school_records(school_id)
        scoped = filter_window(all_records, window)

        rollups = self.memo.aggregate(
            scoped, "class", (self.records_version, school_id), window.key
        )
        classes = join_class_roster(rollups, roster_from_records(all_records))
        page = class_pipeline().apply(classes, state)

        logger.info(
            "CLASS_ROLLUPS_RETRIEVED",
            extra={
                "school_id": school_id,
                "class_count": len(classes),
                "returned": len(page.items),
            }
        )

        result = page.to_dict()
        result["window"] = window.to_dict()
        return result

    def get_class(
        self,
        class_id: str,
        window: TimeWindow,
        state: FilterState,
    ) -> Dict[str, Any]:
        """One class's rollup and a page of its students.

        Raises:
            ClassNotFoundError: If no records were ever stored for the class
        """
        all_records = [r for r in self._records if r.class_id == class_id]
        if not all_records:
            raise ClassNotFoundError(class_id)
        scoped = filter_window(all_records, window)

        rollups = self.memo.aggregate(
            scoped, "class", (self.records_version, "class", class_id), window.key
        )
        [joined] = join_class_roster(rollups, roster_from_records(all_records))
        standings = classify_students(scoped, self.as_of(window), self.config.thresholds)
        page = student_pipeline().apply(standings, state)

        result = joined.to_dict()
        result["students"] = page.to_dict()
        result["window"] = window.to_dict()
        return result

    def get_students(
        self,
        school_id: str,
        window: TimeWindow,
        state: FilterState,
    ) -> Dict[str, Any]:
        scoped = filter_window(self._school_records(school_id), window)
        standings = classify_students(scoped, self.as_of(window), self.config.thresholds)
        page = student_pipeline().apply(standings, state)

        logger.info(
            "STUDENTS_RETRIEVED",
            extra={
                "school_id": school_id,
                "total_count": page.total_count,
                "page": page.page,
            }
        )

        result = page.to_dict()
        result["window"] = window.to_dict()
        return result

    def get_leaderboard(
        self,
        school_id: str,
        window: TimeWindow,
        limit: Optional[int] = None,
        inactive_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Top performers, students needing attention and risk distribution."""
        limit = self.config.top_performers_limit if limit is None else limit
        inactive_days = (
            self.config.inactive_days_threshold if inactive_days is None else inactive_days
        )

        scoped = filter_window(self._school_records(school_id), window)
        standings = classify_students(scoped, self.as_of(window), self.config.thresholds)
        top = top_performers(standings, limit)
        flagged = at_risk_students(standings, inactive_days)

        logger.info(
            "LEADERBOARD_RETRIEVED",
            extra={
                "school_id": school_id,
                "top_student_hashes": hash_many(s.student_id for s in top),
                "at_risk_count": len(flagged),
            }
        )

        return {
            "school_id": school_id,
            "window": window.to_dict(),
            "top_performers": [s.to_dict() for s in top],
            "at_risk_students": [s.to_dict() for s in flagged],
            "risk_distribution": risk_distribution(standings).to_dict(),
            "engagement_stats": engagement_stats(standings, inactive_days).to_dict(),
        }

    def get_trends(
        self,
        school_id: str,
        window: TimeWindow,
        bucket: str,
        metric: str,
    ) -> Dict[str, Any]:
        bucket = TrendBucket.parse(bucket)
        all_records = self._school_records(school_id)
        points = build_series(
            all_records,
            window,
            bucket,
            metric,
            self.config.thresholds,
            memo=self.memo,
            records_version=(self.records_version, school_id),
        )
        comparison = compare_periods(all_records, window, metric, self.config.thresholds)

        return {
            "school_id": school_id,
            "window": window.to_dict(),
            "bucket": bucket.value,
            "metric": comparison.metric.value,
            "points": [p.to_dict() for p in points],
            "comparison": comparison.to_dict(),
        }


# Global handler instance
_handler: Optional[AnalyticsHandler] = None


def get_handler() -> AnalyticsHandler:
    """Get or create the global handler instance."""
    global _handler
    if _handler is None:
        _handler = AnalyticsHandler()
    return _handler


def set_handler(handler: AnalyticsHandler) -> None:
    """Set the global handler (for testing)."""
    global _handler
    _handler = handler


def _split_arg(name: str) -> List[str]:
    raw = request.args.get(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


def _int_arg(name: str, default: Optional[int]) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def filter_state_from_args(config: AnalyticsConfig) -> FilterState:
    """Build the list FilterState from query parameters.

    Query params:
        search, category, status, risk, performance (comma-separated), sort,
        direction (asc|desc), page, page_size
    """
    page_size = _int_arg("page_size", config.default_page_size)
    if page_size > config.max_page_size:
        raise ValueError(f"page_size must be <= {config.max_page_size}")
    return FilterState(
        search_text=request.args.get("search", ""),
        selected_categories=_split_arg("category"),
        selected_statuses=_split_arg("status"),
        risk_filter=_split_arg("risk"),
        performance_filter=_split_arg("performance"),
        sort_key=request.args.get("sort") or None,
        sort_direction=request.args.get("direction", "asc").lower(),
        page=_int_arg("page", 1),
        page_size=page_size,
    )


def _window_from_args(handler: AnalyticsHandler) -> TimeWindow:
    return handler.resolve(
        request.args.get("period"),
        request.args.get("from"),
        request.args.get("to"),
    )


def _bad_request(event: str, error: Exception):
    logger.warning(event, extra={"error": str(error)})
    return jsonify({"error": str(error)}), 400


# Flask routes
@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({"status": "healthy", "service": "analytics-service"})


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check endpoint."""
    return jsonify({"status": "ready", "service": "analytics-service"})


@app.route("/records", methods=["POST"])
def add_records():
    """Ingest engagement records.

    Body:
        A single record object or a list of them, each with student_id,
        class_id, school_id and optional channel counts, streak, wellbeing
        score and timestamps
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400

    rows = data if isinstance(data, list) else [data]
    try:
        records = [EngagementRecord.from_dict(row) for row in rows]
    except (KeyError, TypeError, ValueError) as e:
        return _bad_request("RECORDS_REJECTED", e)

    missing_school = [r.student_id for r in records if not r.school_id]
    if missing_school:
        return jsonify({"error": "Every record needs a school_id"}), 400

    added = get_handler().add_records(records)
    return jsonify({"status": "accepted", "records": added}), 201


@app.route("/overview", methods=["GET"])
def overview():
    """School overview.

    Query params:
        school_id: Required - School identifier
        period: Optional - today|week|month|year|custom
        from, to: Required for custom - ISO dates, to is inclusive
    """
    school_id = request.args.get("school_id")
    if not school_id:
        return jsonify({"error": "school_id is required"}), 400

    handler = get_handler()
    try:
        window = _window_from_args(handler)
    except InvalidRangeError as e:
        return _bad_request("OVERVIEW_INVALID_RANGE", e)

    return jsonify(handler.get_overview(school_id, window))


@app.route("/classes", methods=["GET"])
def classes():
    """Class rollups for a school.

    Query params:
        school_id: Required - School identifier
        period, from, to: Time window
        search, category (grade), sort, direction, page, page_size
    """
    school_id = request.args.get("school_id")
    if not school_id:
        return jsonify({"error": "school_id is required"}), 400

    handler = get_handler()
    try:
        window = _window_from_args(handler)
        state = filter_state_from_args(handler.config)
        result = handler.get_classes(school_id, window, state)
    except (InvalidRangeError, ValueError) as e:
        return _bad_request("CLASSES_BAD_REQUEST", e)

    return jsonify(result)


@app.route("/classes/<class_id>", methods=["GET"])
def class_detail(class_id: str):
    """One class and a page of its students.

    Query params:
        period, from, to: Time window
        search, category, status, risk, sort, direction, page, page_size
    """
    handler = get_handler()
    try:
        window = _window_from_args(handler)
        state = filter_state_from_args(handler.config)
        result = handler.get_class(class_id, window, state)
    except ClassNotFoundError:
        return jsonify({"error": "Class not found"}), 404
    except (InvalidRangeError, ValueError) as e:
        return _bad_request("CLASS_DETAIL_BAD_REQUEST", e)

    return jsonify(result)


@app.route("/students", methods=["GET"])
def students():
    """Student standings for a school.

    Query params:
        school_id: Required - School identifier
        period, from, to: Time window
        search, category (class), status (incl. has_pending), risk,
        performance (excellent|good|average|needs_attention|critical),
        sort, direction, page, page_size
    """
    school_id = request.args.get("school_id")
    if not school_id:
        return jsonify({"error": "school_id is required"}), 400

    handler = get_handler()
    try:
        window = _window_from_args(handler)
        state = filter_state_from_args(handler.config)
        result = handler.get_students(school_id, window, state)
    except (InvalidRangeError, ValueError) as e:
        return _bad_request("STUDENTS_BAD_REQUEST", e)

    return jsonify(result)


@app.route("/leaderboard", methods=["GET"])
def leaderboard():
    """Top performers and students needing attention.

    Query params:
        school_id: Required - School identifier
        period, from, to: Time window
        limit: Optional - Number of top performers
        inactive_days: Optional - Inactivity threshold in days
    """
    school_id = request.args.get("school_id")
    if not school_id:
        return jsonify({"error": "school_id is required"}), 400

    handler = get_handler()
    try:
        window = _window_from_args(handler)
        limit = _int_arg("limit", None)
        inactive_days = _int_arg("inactive_days", None)
        result = handler.get_leaderboard(school_id, window, limit, inactive_days)
    except (InvalidRangeError, ValueError) as e:
        return _bad_request("LEADERBOARD_BAD_REQUEST", e)

    return jsonify(result)


@app.route("/trends", methods=["GET"])
def trends():
    """Trend series.

    Query params:
        school_id: Required - School identifier
        period, from, to: Time window
        bucket: Optional - day|week|month (default week)
        metric: Optional - metric name (default overall_rate)
    """
    school_id = request.args.get("school_id")
    if not school_id:
        return jsonify({"error": "school_id is required"}), 400

    handler = get_handler()
    try:
        window = _window_from_args(handler)
        result = handler.get_trends(
            school_id,
            window,
            request.args.get("bucket", "week"),
            request.args.get("metric", TrendMetric.OVERALL_RATE.value),
        )
    except (InvalidRangeError, ValueError) as e:
        return _bad_request("TRENDS_BAD_REQUEST", e)

    return jsonify(result)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "8080"))
    app.run(host="0.0.0.0", port=port)
