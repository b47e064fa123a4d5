"""
House Cup — Voice-Time Rewards for a Discord Study Community
=============================================================
Rewards members for time spent in voice channels: daily, monthly and
lifetime point totals, streaks, and house standings.  The heart of the bot
is voice-presence tracking and the timezone-aware reset scheduler that
zeroes per-user counters without losing in-flight session time.

Package layout::

    housecup/
    ├── config.py              # YAML + env → typed config
    ├── constants.py           # Points / grace / shutdown tuning
    ├── database/
    │   ├── engine.py          # SQLAlchemy engine + async bridge
    │   ├── models.py          # User, VoiceSession, HousePoints
    │   └── seed.py            # House rows
    ├── engine/
    │   ├── clock.py           # Clock protocol + UTC helpers
    │   ├── timezones.py       # Local-day boundary math
    │   └── points.py          # Voice time → points
    ├── services/
    │   ├── voice_service.py   # Transactional session persistence
    │   ├── session_tracker.py # Open sessions + grace periods
    │   ├── reset_service.py   # Daily / monthly reset scheduler
    │   ├── recovery_service.py# Crash recovery + heartbeats
    │   ├── alerting.py        # Failure-absorbing job wrapper
    │   ├── metrics.py         # Prometheus histograms + endpoint
    │   └── shutdown.py        # Time-bounded drain on SIGTERM
    └── bot/
        ├── core.py            # Bot subclass, service wiring
        └── cogs/voice.py      # Voice-state listener
"""

__version__ = "0.1.0"
