"""Create the schema from the ORM metadata and seed default templates.

Intended for development databases and tests; production schemas are
managed by the Alembic migrations under ``app/migrations``.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from dotenv import load_dotenv

from app.clinics.repository import ClinicRepository
from app.models import Base
from app.models.session import get_sessionmaker, session_scope

logger = logging.getLogger(__name__)


def init_db(database_url: str | None = None) -> int:
    """Create missing tables and return the number of templates seeded."""

    factory = get_sessionmaker(database_url)
    Base.metadata.create_all(factory.kw["bind"])
    seeded = 0
    with session_scope(factory) as db:
        repository = ClinicRepository(db)
        for clinic_id in repository.list_clinic_ids():
            seeded += repository.seed_default_templates(clinic_id)
    logger.info("Schema ready; seeded %d template(s)", seeded)
    return seeded


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL")
    args = parser.parse_args(argv)
    init_db(args.database_url)
    return 0


if __name__ == "__main__":
    sys.exit(main())
