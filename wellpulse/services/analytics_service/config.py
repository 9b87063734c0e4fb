"""Analytics engine configuration and risk thresholds.

Risk boundaries are configuration, not data. Defaults follow the
counselling team's triage policy: either poor wellbeing or poor engagement
is on its own enough to escalate a student.
"""
import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RiskThresholds:
    """Boundaries for the two risk axes (wellbeing 0-100, engagement %).

    A value strictly below a boundary escalates to that level.
    """
    high_wellbeing: float = 40.0       # wellbeing < 40: high
    high_engagement: float = 30.0      # engagement < 30%: high
    medium_wellbeing: float = 70.0     # wellbeing < 70: medium
    medium_engagement: float = 60.0    # engagement < 60%: medium

    def __post_init__(self):
        if self.high_wellbeing > self.medium_wellbeing:
            raise ValueError(
                f"high_wellbeing ({self.high_wellbeing}) must not exceed "
                f"medium_wellbeing ({self.medium_wellbeing})"
            )
        if self.high_engagement > self.medium_engagement:
            raise ValueError(
                f"high_engagement ({self.high_engagement}) must not exceed "
                f"medium_engagement ({self.medium_engagement})"
            )

    @classmethod
    def from_env(cls) -> "RiskThresholds":
        """Create thresholds from environment variables.

        Environment variables:
            ANALYTICS_RISK_HIGH_WELLBEING (default 40)
            ANALYTICS_RISK_HIGH_ENGAGEMENT (default 30)
            ANALYTICS_RISK_MEDIUM_WELLBEING (default 70)
            ANALYTICS_RISK_MEDIUM_ENGAGEMENT (default 60)
        """
        return cls(
            high_wellbeing=float(os.getenv("ANALYTICS_RISK_HIGH_WELLBEING", "40")),
            high_engagement=float(os.getenv("ANALYTICS_RISK_HIGH_ENGAGEMENT", "30")),
            medium_wellbeing=float(os.getenv("ANALYTICS_RISK_MEDIUM_WELLBEING", "70")),
            medium_engagement=float(os.getenv("ANALYTICS_RISK_MEDIUM_ENGAGEMENT", "60")),
        )


DEFAULT_THRESHOLDS = RiskThresholds()


@dataclass(frozen=True)
class AnalyticsConfig:
    """Configuration for the analytics engine and its HTTP handler."""
    thresholds: RiskThresholds = field(default_factory=RiskThresholds)
    inactive_days_threshold: int = 7
    default_period: str = "month"
    default_page_size: int = 10
    max_page_size: int = 100
    top_performers_limit: int = 5
    timezone: str = "UTC"
    memo_size: int = 128

    @classmethod
    def from_env(cls) -> "AnalyticsConfig":
        """Create config from environment variables.

        Environment variables:
            ANALYTICS_INACTIVE_DAYS: Days without activity before a student
                is listed as a non-submitter (default 7)
            ANALYTICS_DEFAULT_PERIOD: today|week|month|year (default month)
            ANALYTICS_PAGE_SIZE: Default page size (default 10)
            ANALYTICS_TOP_PERFORMERS: Leaderboard length (default 5)
            ANALYTICS_TIMEZONE: Viewer time zone for "today" (default UTC)
            ANALYTICS_MEMO_SIZE: Rollup memo entries (default 128)
        """
        return cls(
            thresholds=RiskThresholds.from_env(),
            inactive_days_threshold=int(os.getenv("ANALYTICS_INACTIVE_DAYS", "7")),
            default_period=os.getenv("ANALYTICS_DEFAULT_PERIOD", "month"),
            default_page_size=int(os.getenv("ANALYTICS_PAGE_SIZE", "10")),
            top_performers_limit=int(os.getenv("ANALYTICS_TOP_PERFORMERS", "5")),
            timezone=os.getenv("ANALYTICS_TIMEZONE", "UTC"),
            memo_size=int(os.getenv("ANALYTICS_MEMO_SIZE", "128")),
        )


@dataclass(frozen=True)
class RecordStoreConfig:
    """Connection settings for the external record store REST API."""
    base_url: str = "http://localhost:8000/api/v1"
    api_token: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_env(cls) -> "RecordStoreConfig":
        """Create config from environment variables.

        Environment variables:
            RECORD_STORE_URL: API base URL
            RECORD_STORE_TOKEN: Bearer token (optional)
            RECORD_STORE_TIMEOUT: Request timeout in seconds (default 30)
        """
        return cls(
            base_url=os.getenv("RECORD_STORE_URL", "http://localhost:8000/api/v1"),
            api_token=os.getenv("RECORD_STORE_TOKEN", ""),
            timeout_seconds=int(os.getenv("RECORD_STORE_TIMEOUT", "30")),
        )
