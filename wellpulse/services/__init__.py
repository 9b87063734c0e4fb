"""WellPulse services.

- Analytics Service: engagement rollups, risk leaderboards, drill-down
  lists and trend series for school dashboards
"""
