"""
housecup.constants — Shared Tuning Constants
=============================================

Single source of truth for the voice reward formula, grace window,
recovery limits and shutdown budgets.  Import from here instead of
duplicating numbers in services and cogs.
"""

from __future__ import annotations

from datetime import timedelta

# ---------------------------------------------------------------------------
# Voice points (daily cumulative system)
# ---------------------------------------------------------------------------
FIRST_HOUR_POINTS = 5
REST_HOURS_POINTS = 2
MAX_HOURS_PER_DAY = 15

# An hour counts once the daily total is within this many seconds of it
# (the "55-minute rule").
HOUR_ROUNDING_TOLERANCE_SECONDS = 5 * 60

# Daily voice time needed before the streak is credited for the day
MIN_DAILY_SECONDS_FOR_STREAK = 15 * 60

# ---------------------------------------------------------------------------
# Session tracking
# ---------------------------------------------------------------------------
DEFAULT_GRACE_PERIOD = timedelta(minutes=5)
GRACE_RECONCILE_SECONDS = 30
HEARTBEAT_MINUTES = 2

# Open rows older than this at startup are closed without credit
RECOVERY_MAX_SESSION_AGE = timedelta(hours=24)

# ---------------------------------------------------------------------------
# Reset jobs
# ---------------------------------------------------------------------------
DAILY_RESET_JOB = "dailyReset"
MONTHLY_RESET_JOB = "monthlyReset"

DEFAULT_TIMEZONE = "UTC"

# ---------------------------------------------------------------------------
# Shutdown budgets (seconds)
# ---------------------------------------------------------------------------
SHUTDOWN_HARD_TIMEOUT = 15.0
SHUTDOWN_SESSIONS_TIMEOUT = 5.0
SHUTDOWN_SCHEDULER_TIMEOUT = 3.0
SHUTDOWN_GATEWAY_TIMEOUT = 2.0
