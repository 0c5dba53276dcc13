"""
Schema management for the scheduling tables.

Usage:
    python -m cohort_scheduler.db.db create
    python -m cohort_scheduler.db.db reset
"""

import argparse
from typing import Optional

from sqlalchemy.engine import Engine

from cohort_scheduler.db.models import Base
from cohort_scheduler.db.session import engine as default_engine
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()


def create_tables(bind: Optional[Engine] = None) -> None:
    bind = bind or default_engine
    Base.metadata.create_all(bind)
    logger.info(f"Created {len(Base.metadata.tables)} tables on {bind.url.render_as_string()}")


def drop_tables(bind: Optional[Engine] = None) -> None:
    bind = bind or default_engine
    Base.metadata.drop_all(bind)
    logger.info(f"Dropped all tables on {bind.url.render_as_string()}")


def reset_db(bind: Optional[Engine] = None) -> None:
    logger.info("Resetting database...")
    drop_tables(bind)
    create_tables(bind)
    logger.info("Database reset complete.")


COMMANDS = {"create": create_tables, "drop": drop_tables, "reset": reset_db}


def main():
    parser = argparse.ArgumentParser(description="Manage the scheduling schema")
    parser.add_argument("command", choices=sorted(COMMANDS))
    args = parser.parse_args()
    COMMANDS[args.command]()


if __name__ == "__main__":
    main()
