"""
housecup.services.metrics — Prometheus Instruments
===================================================

Two histograms, registered on the default ``prometheus_client`` registry:

- ``housecup_voice_session_duration_seconds`` — length of every credited
  voice session (observed when the row is closed).
- ``housecup_reset_execution_duration_seconds{action}`` — wall-clock time
  of each daily / monthly reset run.

The scrape endpoint is optional: set ``metrics_port`` in ``config.yaml``.
"""

from __future__ import annotations

import logging

from prometheus_client import Histogram, start_http_server

logger = logging.getLogger(__name__)

SESSION_DURATION = Histogram(
    "housecup_voice_session_duration_seconds",
    "Duration of credited voice sessions in seconds",
    buckets=(60, 300, 900, 1800, 3600, 7200, 14400, 28800, 57600),
)

RESET_DURATION = Histogram(
    "housecup_reset_execution_duration_seconds",
    "Duration of reset job runs in seconds",
    ["action"],
    buckets=(0.1, 0.3, 0.5, 1, 3, 5, 10, 30),
)


def start_metrics_server(port: int | None) -> bool:
    """Serve ``/metrics`` on *port*.  Returns False when disabled."""
    if not port:
        logger.info("Metrics endpoint disabled")
        return False
    start_http_server(port)
    logger.info("Metrics exposed on :%d/metrics", port)
    return True
