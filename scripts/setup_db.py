import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from alembic import command

REPO_ROOT = Path(__file__).resolve().parents[1]
BACKEND_ROOT = REPO_ROOT / "backend"

logger = logging.getLogger("setup_db")


def _load_env() -> None:
    for env_file in (BACKEND_ROOT / ".env", REPO_ROOT / ".env"):
        if env_file.exists():
            load_dotenv(env_file)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Apply or roll back database migrations.")
    parser.add_argument("revision", nargs="?", default="head", help="target revision (default: head)")
    parser.add_argument("--downgrade", action="store_true", help="downgrade to the given revision")
    parser.add_argument("--check", action="store_true", help="report whether the schema is at head and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    _load_env()

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        logger.error("DATABASE_URL is not set. Configure it before running setup.")
        return 1

    sys.path.insert(0, str(BACKEND_ROOT))
    from database.migration_runner import build_alembic_config, schema_status
    from database.session import Base, build_engine, sanitize_database_url

    config = build_alembic_config(db_url)
    target = sanitize_database_url(db_url)
    if args.check:
        status = schema_status(build_engine(db_url), config, Base.metadata.tables.keys())
        logger.info("%s: current=%s head=%s", target, status.current, status.head)
        if status.missing_tables:
            logger.warning("Missing tables: %s", ", ".join(sorted(status.missing_tables)))
        return 1 if status.out_of_sync else 0
    if args.downgrade:
        logger.info("Downgrading %s to %s", target, args.revision)
        command.downgrade(config, args.revision)
    else:
        logger.info("Upgrading %s to %s", target, args.revision)
        command.upgrade(config, args.revision)
    logger.info("Database schema is up to date.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
