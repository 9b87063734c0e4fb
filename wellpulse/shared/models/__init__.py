"""Shared domain models for WellPulse."""
from .engagement import (
    RiskLevel,
    Channel,
    ChannelCounts,
    EngagementRecord,
    ChannelRate,
    RiskDistribution,
    EngagementTotals,
    Rollup,
    ClassInfo,
    ClassRollup,
    SchoolOverview,
    DailyActivity,
    StudentHistory,
    parse_timestamp,
)

__all__ = [
    "RiskLevel",
    "Channel",
    "ChannelCounts",
    "EngagementRecord",
    "ChannelRate",
    "RiskDistribution",
    "EngagementTotals",
    "Rollup",
    "ClassInfo",
    "ClassRollup",
    "SchoolOverview",
    "DailyActivity",
    "StudentHistory",
    "parse_timestamp",
]
