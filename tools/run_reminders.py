"""Cron entry point sending WhatsApp appointment reminders.

Usage:
    python tools/run_reminders.py --lead-time day-before
    python tools/run_reminders.py --lead-time same-day
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Sequence

from dotenv import load_dotenv

from app.conversations.dispatcher import MessageDispatcher
from app.core import clients
from app.core.settings import get_settings
from app.models.session import default_sessionmaker
from app.reminders.service import LEAD_TIMES, ReminderDispatcher


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--lead-time",
        required=True,
        choices=sorted(LEAD_TIMES),
        help="Which reminders to send (d1/d0 are accepted aliases)",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = parse_args(argv)
    settings = get_settings()
    graph_client = clients.get_graph_client()
    job = ReminderDispatcher(
        default_sessionmaker(),
        lambda db: MessageDispatcher(db, client=graph_client),
        timezone_name=settings.clinic_timezone,
    )
    report = job.run(args.lead_time)
    print(json.dumps(report.as_dict(), ensure_ascii=False))
    return 1 if report.failed and not report.sent else 0


if __name__ == "__main__":
    sys.exit(main())
