import os
import zlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine, Connection


_AUTO_MIGRATE_ENV = "AUTO_MIGRATE"
_LOCK_NAME = b"flakeguard_alembic_migration_lock"
_DATABASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class SchemaStatus:
    current: Optional[str]
    head: str
    missing_tables: frozenset

    @property
    def out_of_sync(self) -> bool:
        return bool(self.missing_tables) or self.current is None or self.current != self.head


def auto_migrate_enabled() -> bool:
    return os.getenv(_AUTO_MIGRATE_ENV, "").strip().lower() in {"1", "true", "yes", "on"}


def build_alembic_config(database_url: Optional[str] = None) -> Config:
    """Alembic config for the bundled migrations; DATABASE_URL unless a URL is given."""
    config = Config(str(_DATABASE_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(_DATABASE_DIR / "migrations"))
    url = database_url or os.getenv("DATABASE_URL")
    if url:
        # ConfigParser interpolation treats % specially.
        config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return config


def head_revision(config: Config) -> str:
    heads = ScriptDirectory.from_config(config).get_heads()
    if len(heads) != 1:
        raise RuntimeError(f"Expected exactly one Alembic head, found {heads or 'none'}")
    return heads[0]


def applied_revision(connection: Connection) -> Optional[str]:
    if "alembic_version" not in inspect(connection).get_table_names():
        return None
    return connection.execute(text("SELECT version_num FROM alembic_version")).scalar()


def schema_status(engine: Engine, config: Config, required_tables: Iterable[str]) -> SchemaStatus:
    with engine.connect() as connection:
        existing = set(inspect(connection).get_table_names())
        current = applied_revision(connection)
    return SchemaStatus(
        current=current,
        head=head_revision(config),
        missing_tables=frozenset(set(required_tables) - existing),
    )


def _lock_key() -> int:
    return zlib.crc32(_LOCK_NAME) & 0x7FFFFFFF


def _with_migration_lock(connection: Connection, locked: bool) -> None:
    # Only Postgres has advisory locks; SQLite is single-writer anyway.
    if connection.dialect.name != "postgresql":
        return
    statement = "SELECT pg_advisory_lock(:key)" if locked else "SELECT pg_advisory_unlock(:key)"
    connection.execute(text(statement), {"key": _lock_key()})


def upgrade_to_head(engine: Engine, config: Config, logger: Optional[logging.Logger] = None) -> bool:
    """Upgrade to head unless another process already did; returns True if it migrated."""
    log = logger or logging.getLogger("alembic.migration")
    with engine.connect() as connection:
        _with_migration_lock(connection, True)
        try:
            current = applied_revision(connection)
            head = head_revision(config)
            if current == head:
                log.info("Database already at revision %s", head)
                return False
            log.warning("Upgrading database schema %s -> %s", current or "<empty>", head)
            config.attributes["connection"] = connection
            command.upgrade(config, "head")
            connection.commit()
            log.info("Database schema upgraded to %s", head)
            return True
        finally:
            _with_migration_lock(connection, False)
