"""
housecup.services.alerting — Failure-Absorbing Job Wrapper
===========================================================

Scheduled jobs must never take the bot down.  :meth:`AlertingWrapper.wrap_with_alerting`
runs a unit of async work, and if it raises, logs the traceback, reports
``(label, error)`` to the alert collaborator and returns :data:`FAILED`
instead of re-raising.  Delivery failures of the alert itself are logged
and swallowed.

In the bot the collaborator DMs the owner (see :func:`owner_dm_notifier`).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Final, TypeVar

if TYPE_CHECKING:
    import discord

logger = logging.getLogger(__name__)

T = TypeVar("T")

AlertNotifier = Callable[[str, BaseException], Awaitable[None]]


class _Failed:
    """Sentinel type returned by a wrapped job that raised."""

    _instance: _Failed | None = None

    def __new__(cls) -> _Failed:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "FAILED"


FAILED: Final = _Failed()


class AlertingWrapper:
    """Runs labelled jobs and turns their failures into alerts."""

    def __init__(self, notifier: AlertNotifier | None = None) -> None:
        self.notifier = notifier

    async def alert(self, label: str, error: BaseException) -> None:
        """Report *error* under *label*.  Never raises."""
        if self.notifier is None:
            return
        try:
            await self.notifier(label, error)
        except Exception:
            logger.exception("Failed to deliver alert for %s", label)

    async def wrap_with_alerting(
        self, work: Callable[[], Awaitable[T]], label: str,
    ) -> T | _Failed:
        """Await ``work()``; on failure alert and return :data:`FAILED`."""
        try:
            return await work()
        except Exception as exc:
            logger.exception("Job %s failed", label, extra={"task": label})
            await self.alert(label, exc)
            return FAILED


def owner_dm_notifier(client: discord.Client, owner_id: int) -> AlertNotifier:
    """Build a notifier that direct-messages *owner_id* through *client*."""

    async def _notify(label: str, error: BaseException) -> None:
        user = client.get_user(owner_id) or await client.fetch_user(owner_id)
        message = f"⚠️ **{label}** failed: `{type(error).__name__}: {error}`"
        await user.send(message[:2000])

    return _notify
