"""
housecup.config — YAML Configuration & Environment Loader
==========================================================

Two sources:

* ``config.yaml`` — infrastructure settings: guild, house role ids,
  excluded voice channels, grace window, shutdown budget, metrics port.
* Environment (``.env`` via python-dotenv) — secrets: ``DISCORD_TOKEN``,
  ``DATABASE_URL`` and the optional ``OWNER_ID`` that receives alerts.

Anything missing or malformed raises :class:`ConfigError`; the entry point
treats it as fatal and exits before any scheduler starts.

Usage::

    from housecup.config import load_config, load_secrets

    cfg = load_config()          # reads ./config.yaml by default
    secrets = load_secrets()     # reads os.environ
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

from housecup.constants import SHUTDOWN_HARD_TIMEOUT
from housecup.database.models import House

PLACEHOLDER_TOKEN = "your-discord-bot-token-here"


class ConfigError(RuntimeError):
    """Required configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class HouseCupConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    guild_id: int
    house_role_ids: Mapping[House, int]

    excluded_voice_channel_ids: frozenset[int] = field(default_factory=frozenset)
    grace_period_minutes: float = 5
    shutdown_timeout_seconds: float = SHUTDOWN_HARD_TIMEOUT
    # None disables the Prometheus endpoint
    metrics_port: int | None = None

    @property
    def grace_period(self) -> timedelta:
        return timedelta(minutes=self.grace_period_minutes)

    def house_for_roles(self, role_ids: set[int]) -> House | None:
        """The house whose configured role is among *role_ids*, if any."""
        for house, role_id in self.house_role_ids.items():
            if role_id in role_ids:
                return house
        return None


@dataclass(frozen=True, slots=True)
class Secrets:
    """Credentials read from the environment."""

    discord_token: str
    database_url: str
    owner_id: int | None = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def _as_int(raw: dict, key: str) -> int:
    try:
        return int(raw[key])
    except KeyError:
        raise ConfigError(f"Missing required config key: {key}") from None
    except (TypeError, ValueError):
        raise ConfigError(f"Config key {key} must be an integer, got {raw[key]!r}") from None


def load_config(path: str | Path = "config.yaml") -> HouseCupConfig:
    """Read *path* and return a :class:`HouseCupConfig`.

    Raises
    ------
    ConfigError
        If the file is missing, a required key is absent, or a value has
        the wrong type.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    roles_raw = raw.get("house_role_ids")
    if not isinstance(roles_raw, dict):
        raise ConfigError("Missing required config key: house_role_ids")
    house_role_ids = {house: _as_int(roles_raw, house.value) for house in House}

    try:
        excluded = frozenset(int(c) for c in raw.get("excluded_voice_channel_ids") or [])
        grace_minutes = float(raw.get("grace_period_minutes", 5))
        shutdown_timeout = float(raw.get("shutdown_timeout_seconds", SHUTDOWN_HARD_TIMEOUT))
        metrics_port = int(raw["metrics_port"]) if raw.get("metrics_port") else None
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value in {config_path}: {exc}") from None
    if grace_minutes < 0 or shutdown_timeout <= 0:
        raise ConfigError("grace_period_minutes and shutdown_timeout_seconds must be positive")
    if metrics_port is not None and not 0 < metrics_port < 65536:
        raise ConfigError(f"metrics_port must be a TCP port, got {metrics_port}")

    return HouseCupConfig(
        guild_id=_as_int(raw, "guild_id"),
        house_role_ids=house_role_ids,
        excluded_voice_channel_ids=excluded,
        grace_period_minutes=grace_minutes,
        shutdown_timeout_seconds=shutdown_timeout,
        metrics_port=metrics_port,
    )


def load_secrets(environ: Mapping[str, str] | None = None) -> Secrets:
    """Read credentials from *environ* (``os.environ`` by default).

    Raises
    ------
    ConfigError
        If ``DISCORD_TOKEN`` or ``DATABASE_URL`` is missing, or ``OWNER_ID``
        is not numeric.
    """
    env = os.environ if environ is None else environ

    token = env.get("DISCORD_TOKEN")
    if not token or token == PLACEHOLDER_TOKEN:
        raise ConfigError(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )

    database_url = env.get("DATABASE_URL")
    if not database_url:
        raise ConfigError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    owner_raw = env.get("OWNER_ID")
    try:
        owner_id = int(owner_raw) if owner_raw else None
    except ValueError:
        raise ConfigError(f"OWNER_ID must be a Discord user id, got {owner_raw!r}") from None

    return Secrets(discord_token=token, database_url=database_url, owner_id=owner_id)
