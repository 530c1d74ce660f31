"""Null WhatsApp message bodies older than the LGPD retention window.

Message metadata (direction, timestamps, delivery status) is kept.
"""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import sys
from typing import Sequence

from dotenv import load_dotenv

from app.conversations.repository import SqlSessionRepository
from app.core.settings import get_settings
from app.models.session import default_sessionmaker, session_scope

logger = logging.getLogger(__name__)


def purge_message_bodies(older_than_days: int, *, now: dt.datetime | None = None) -> int:
    cutoff = (now or dt.datetime.now(dt.timezone.utc)) - dt.timedelta(days=older_than_days)
    with session_scope(default_sessionmaker()) as db:
        purged = SqlSessionRepository(db).purge_message_bodies(cutoff)
    logger.info("Purged %d message bodies older than %s", purged, cutoff.isoformat())
    return purged


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention in days (defaults to MESSAGE_RETENTION_DAYS)",
    )
    args = parser.parse_args(argv)
    days = args.days if args.days is not None else get_settings().message_retention_days
    if days < 1:
        parser.error("--days must be positive")
    print(purge_message_bodies(days))
    return 0


if __name__ == "__main__":
    sys.exit(main())
