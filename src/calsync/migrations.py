"""Programmatic Alembic migration runner.

Lets the CLI and API bring the schema up to date without shelling out to the
Alembic CLI.
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CHAIN = "calsync"


def _build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the calsync version directory."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CHAIN))
    return config


def sqlalchemy_url(dsn: str) -> str:
    """Map an asyncpg-style DSN onto the psycopg2 driver SQLAlchemy uses."""
    for prefix in ("postgresql+asyncpg://", "postgres://"):
        if dsn.startswith(prefix):
            return "postgresql://" + dsn[len(prefix) :]
    return dsn


def run_migrations(db_url: str) -> None:
    """Upgrade the calsync chain to head."""
    config = _build_alembic_config(sqlalchemy_url(db_url))
    logger.info("Running migration chain to head (chain=%s)", CHAIN)
    command.upgrade(config, f"{CHAIN}@head")
