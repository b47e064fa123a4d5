"""
housecup.database.seed — House Row Seeder
==========================================

One ``house_points`` row per :class:`House`, created on first startup so
point crediting never has to insert on the hot path.

Idempotent — only inserts houses that don't already exist.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from housecup.database.models import House, HousePoints

logger = logging.getLogger(__name__)


def seed_houses(engine: Engine) -> None:
    """Insert a zeroed ``house_points`` row for every missing house."""
    session = Session(engine)
    inserted = 0
    try:
        for house in House:
            if session.get(HousePoints, house.value) is None:
                session.add(HousePoints(name=house.value))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d house rows.", inserted)
