"""
housecup.services.shutdown — Graceful Shutdown Coordinator
===========================================================

On SIGINT / SIGTERM the bot drains in a fixed order, each step under its
own timeout:

    1. Persist open voice sessions         (tracker.close_all)
    2. Stop the reset jobs and tracker loops
    3. Close the gateway connection

A failing or hanging step is logged and the next one still runs.  A
watchdog thread force-exits the process once the hard timeout passes, so a
wedged database call can never block a restart.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from housecup.constants import (
    SHUTDOWN_GATEWAY_TIMEOUT,
    SHUTDOWN_HARD_TIMEOUT,
    SHUTDOWN_SCHEDULER_TIMEOUT,
    SHUTDOWN_SESSIONS_TIMEOUT,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ShutdownStep:
    name: str
    action: Callable[[], Awaitable[object]]
    timeout: float


class ShutdownCoordinator:
    """Runs the shutdown steps once, in order, each under its own timeout.

    Parameters
    ----------
    persist_sessions:
        Closes every open voice session.
    stop_schedulers:
        Cancels recurring jobs.
    close_gateway:
        Disconnects from Discord.
    hard_timeout:
        Seconds after which ``exit_func(1)`` is called from a watchdog thread.
    exit_func:
        Process exit hook; ``os._exit`` by default.
    """

    def __init__(
        self,
        persist_sessions: Callable[[], Awaitable[object]],
        stop_schedulers: Callable[[], Awaitable[object]],
        close_gateway: Callable[[], Awaitable[object]],
        *,
        hard_timeout: float = SHUTDOWN_HARD_TIMEOUT,
        sessions_timeout: float = SHUTDOWN_SESSIONS_TIMEOUT,
        scheduler_timeout: float = SHUTDOWN_SCHEDULER_TIMEOUT,
        gateway_timeout: float = SHUTDOWN_GATEWAY_TIMEOUT,
        exit_func: Callable[[int], object] = os._exit,
    ) -> None:
        self.steps = [
            ShutdownStep("persist voice sessions", persist_sessions, sessions_timeout),
            ShutdownStep("stop schedulers", stop_schedulers, scheduler_timeout),
            ShutdownStep("close gateway", close_gateway, gateway_timeout),
        ]
        self.hard_timeout = hard_timeout
        self.exit_func = exit_func
        self.started = False
        self._watchdog: threading.Timer | None = None

    def _force_exit(self) -> None:
        logger.critical(
            "Shutdown exceeded %.0fs, forcing exit", self.hard_timeout,
        )
        self.exit_func(1)

    async def run(self) -> dict[str, str]:
        """Drain once.  Returns ``{step name: "ok" | "timeout" | "error"}``."""
        if self.started:
            logger.debug("Shutdown already in progress")
            return {}
        self.started = True

        logger.info("Graceful shutdown started")
        began = time.monotonic()
        self._watchdog = threading.Timer(self.hard_timeout, self._force_exit)
        self._watchdog.daemon = True
        self._watchdog.start()

        outcomes: dict[str, str] = {}
        try:
            for index, step in enumerate(self.steps, start=1):
                logger.info("[%d/%d] %s…", index, len(self.steps), step.name)
                try:
                    await asyncio.wait_for(step.action(), timeout=step.timeout)
                    outcomes[step.name] = "ok"
                except TimeoutError:
                    logger.warning("Shutdown step '%s' timed out after %.1fs", step.name, step.timeout)
                    outcomes[step.name] = "timeout"
                except Exception:
                    logger.exception("Shutdown step '%s' failed", step.name)
                    outcomes[step.name] = "error"
        finally:
            self._watchdog.cancel()

        logger.info("Graceful shutdown completed in %.2fs", time.monotonic() - began)
        return outcomes
