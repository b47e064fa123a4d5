"""
housecup.bot.cogs.voice — Voice Presence Listener
==================================================

Translates gateway ``VOICE_STATE_UPDATE`` events into Session Tracker calls:

- **join** a counted channel → ``tracker.start_session``
- **leave** (or move into an excluded channel) → ``tracker.end_session``
- **move** between counted channels → same session, channel updated
- mute / deafen changes → ignored

On every ``on_ready`` the guild's voice channels are scanned so members who
were already in voice when the bot connected get a session, and tracked
members who left while the gateway was down enter their grace period.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

if TYPE_CHECKING:
    from housecup.bot.core import HouseCupBot

logger = logging.getLogger(__name__)


class Voice(commands.Cog, name="Voice"):
    """Feeds voice join/leave events into the session tracker."""

    def __init__(self, bot: HouseCupBot) -> None:
        self.bot = bot

    def _counts(self, channel: discord.abc.Connectable | None) -> bool:
        """True if time in *channel* earns points."""
        if channel is None:
            return False
        return channel.id not in self.bot.cfg.excluded_voice_channel_ids

    def _house_for(self, member: discord.Member) -> str | None:
        house = self.bot.cfg.house_for_roles({role.id for role in member.roles})
        return house.value if house else None

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """Track voice join/leave events."""
        before_ch = getattr(before.channel, "name", "None")
        after_ch = getattr(after.channel, "name", "None")
        logger.debug(
            "Gateway event: VOICE_STATE %s (%s → %s, bot=%s)",
            member.name, before_ch, after_ch, member.bot,
        )
        try:
            await self._handle_voice_update(member, before, after)
        except Exception:
            logger.exception("Error processing voice state update for user %s", member.id)

    async def _handle_voice_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if member.bot or member.guild.id != self.bot.cfg.guild_id:
            return

        tracker = self.bot.tracker
        was_counted = self._counts(before.channel)
        is_counted = self._counts(after.channel)

        if not was_counted and is_counted:
            await tracker.start_session(
                member.id,
                member.name,
                after.channel.id,
                self._house_for(member),
            )
            logger.debug("%s joined voice channel %s", member, after.channel)

        elif was_counted and not is_counted:
            tracker.end_session(member.id)
            logger.debug("%s left voice channel %s", member, before.channel)

        elif was_counted and is_counted and before.channel.id != after.channel.id:
            tracker.update_channel(member.id, after.channel.id)
            logger.debug("%s moved voice %s → %s", member, before.channel, after.channel)

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        try:
            started, ended = await self.scan_voice_channels()
            logger.info(
                "Voice scan: %d session(s) started, %d member(s) no longer in voice",
                started, ended,
            )
        except Exception:
            logger.exception("Voice channel scan failed")

    async def scan_voice_channels(self) -> tuple[int, int]:
        """Reconcile the tracker with who is actually in voice right now.

        Returns ``(sessions started, sessions moved into grace)``.
        """
        guild = self.bot.get_guild(self.bot.cfg.guild_id)
        if guild is None:
            logger.warning("Primary guild %d not found, skipping voice scan", self.bot.cfg.guild_id)
            return 0, 0

        tracker = self.bot.tracker
        present: set[int] = set()
        started = 0
        for channel in [*guild.voice_channels, *guild.stage_channels]:
            if not self._counts(channel):
                continue
            for member in channel.members:
                if member.bot:
                    continue
                present.add(member.id)
                if tracker.is_tracking(member.id) and not tracker.in_grace(member.id):
                    continue
                entry = await tracker.start_session(
                    member.id, member.name, channel.id, self._house_for(member),
                )
                if entry is not None:
                    started += 1

        ended = 0
        for user_id in tracker.tracked_user_ids():
            if user_id not in present and not tracker.in_grace(user_id):
                tracker.end_session(user_id)
                ended += 1
        return started, ended


async def setup(bot: HouseCupBot) -> None:
    await bot.add_cog(Voice(bot))
