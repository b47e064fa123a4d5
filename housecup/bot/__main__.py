"""
housecup.bot.__main__ — Entry point for ``python -m housecup.bot``
==================================================================

Wiring:
1. Load .env (secrets) and config.yaml; any gap is fatal (exit 1).
2. Create the SQLAlchemy engine and ensure tables exist; start /metrics.
3. Create the HouseCupBot and hand it config + engine.
4. Install SIGINT / SIGTERM handlers that run the graceful shutdown.
5. Connect (blocks until the bot closes).

Run with::

    uv run python -m housecup.bot
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from housecup.bot.core import HouseCupBot
from housecup.config import ConfigError, load_config, load_secrets
from housecup.database.engine import create_db_engine, init_db
from housecup.services.metrics import start_metrics_server

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("housecup")


def _install_signal_handlers(bot: HouseCupBot) -> None:
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task] = set()

    def _request_close(sig: signal.Signals) -> None:
        logger.info("Shutdown signal received (%s)", sig.name)
        task = loop.create_task(bot.close(), name="graceful-shutdown")
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_close, sig)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            logger.debug("Signal handlers unavailable for %s", sig.name)


async def _run(bot: HouseCupBot, token: str) -> None:
    async with bot:
        _install_signal_handlers(bot)
        await bot.start(token)


def main() -> None:
    """Bootstrap and run the House Cup bot."""

    # 1. Secrets + configuration; nothing is scheduled until both are valid.
    load_dotenv()
    try:
        secrets = load_secrets()
        cfg = load_config(os.getenv("HOUSECUP_CONFIG", "config.yaml"))
    except ConfigError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    logger.info("Config loaded — guild %d", cfg.guild_id)

    # 2. Database.
    engine = create_db_engine(secrets.database_url)
    init_db(engine)
    start_metrics_server(cfg.metrics_port)

    # 3. Bot.
    bot = HouseCupBot(cfg, engine, owner_id=secrets.owner_id)

    # 4–5. Run until a signal triggers the graceful shutdown.
    logger.info("Starting House Cup bot…")
    try:
        asyncio.run(_run(bot, secrets.discord_token))
    except KeyboardInterrupt:
        logger.info("Shutting down…")


if __name__ == "__main__":
    main()
