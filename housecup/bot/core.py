"""
housecup.bot.core — Bot Instance & Service Wiring
==================================================

:class:`HouseCupBot` subclasses ``commands.Bot`` and owns every long-lived
collaborator so cogs reach them via ``self.bot.*``:

1. ``bot.cfg`` / ``bot.engine`` / ``bot.clock`` — configuration, database, time.
2. ``bot.alerting`` — failure-absorbing wrapper that DMs the owner.
3. ``bot.tracker`` — the Session Tracker (open sessions + grace periods).
4. ``bot.scheduler`` — the daily / monthly Reset Scheduler.
5. ``bot.shutdown`` — the Shutdown Coordinator, run from :meth:`close`.

Startup order (``setup_hook``, before the gateway connects):
crash recovery → cog loading → tracker loops → reset jobs.
"""

from __future__ import annotations

import logging

import discord
from discord.ext import commands
from sqlalchemy import Engine

from housecup.config import HouseCupConfig
from housecup.database.engine import run_db
from housecup.engine.clock import Clock, SystemClock
from housecup.services.alerting import AlertingWrapper, owner_dm_notifier
from housecup.services.recovery_service import recover_open_sessions
from housecup.services.reset_service import ResetScheduler
from housecup.services.session_tracker import SessionTracker
from housecup.services.shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "housecup.bot.cogs.voice",
]


class HouseCupBot(commands.Bot):
    """Custom Bot subclass that carries the voice-tracking services.

    Parameters
    ----------
    cfg:
        The parsed :class:`HouseCupConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    owner_id:
        Discord user that receives alert DMs; alerts are only logged if unset.
    clock:
        Time provider, the system clock unless a test injects one.
    """

    def __init__(
        self,
        cfg: HouseCupConfig,
        engine: Engine,
        *,
        owner_id: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        # GUILD_VOICE_STATES is in default(); GUILD_MEMBERS (privileged) is
        # needed for role-based house lookup.
        intents = discord.Intents.default()
        intents.members = True
        intents.presences = False

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            description="House Cup — voice-time rewards",
        )

        self.cfg = cfg
        self.engine = engine
        self.clock = clock or SystemClock()

        notifier = owner_dm_notifier(self, owner_id) if owner_id else None
        self.alerting = AlertingWrapper(notifier)
        self.tracker = SessionTracker(engine, self.clock, cfg.grace_period)
        self.scheduler = ResetScheduler(engine, self.tracker, self.alerting, self.clock)
        self.shutdown = ShutdownCoordinator(
            self.tracker.close_all,
            self._stop_schedulers,
            self._close_gateway,
            hard_timeout=cfg.shutdown_timeout_seconds,
        )

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Called once before the bot connects to Discord."""
        try:
            await run_db(recover_open_sessions, self.engine, self.clock.now())
        except Exception:
            logger.exception("Voice session recovery failed")

        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

        self.tracker.start()
        self.scheduler.start()

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None  # guaranteed after on_ready
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

    async def _stop_schedulers(self) -> None:
        await self.scheduler.stop()
        self.tracker.stop()

    async def _close_gateway(self) -> None:
        await super().close()

    async def close(self) -> None:
        """Graceful shutdown — drain through the coordinator exactly once."""
        if self.shutdown.started:
            await super().close()
            return
        logger.info("Bot shutting down…")
        await self.shutdown.run()
