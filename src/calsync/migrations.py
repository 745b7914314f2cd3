"""Programmatic Alembic migration runner.

Lets the CLI apply the schema without shelling out to the Alembic CLI.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CHAIN = "calsync"


def sqlalchemy_url(db_url: str) -> str:
    """Translate libpq-style ``postgres://`` URLs into the SQLAlchemy dialect name."""
    if db_url.startswith("postgres://"):
        return "postgresql://" + db_url[len("postgres://") :]
    return db_url


def build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the calsync version directory."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", sqlalchemy_url(db_url).replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CHAIN))
    return config


def upgrade_to_head(db_url: str) -> None:
    logger.info("Running migration chain to head (chain=%s)", CHAIN)
    command.upgrade(build_alembic_config(db_url), f"{CHAIN}@head")


async def run_migrations(db_url: str) -> None:
    """Upgrade the database at *db_url* to the latest revision.

    Alembic drives a synchronous SQLAlchemy engine, so the upgrade runs in a
    worker thread.
    """
    await asyncio.to_thread(upgrade_to_head, db_url)
