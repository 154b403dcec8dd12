"""Run calwatch's packaged Alembic revisions from inside the process."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

ALEMBIC_DIR = Path(__file__).resolve().parent / "alembic"
BRANCH = "calwatch"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def build_alembic_config(db_url: str, schema: str | None = None) -> Config:
    """Alembic config for the packaged scripts, without an alembic.ini on disk."""
    if schema is not None and not _IDENTIFIER.fullmatch(schema):
        raise ValueError(f"Invalid migration schema name: {schema!r}")
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions"))
    # Config values go through configparser interpolation.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    if schema is not None:
        config.set_main_option("calwatch.schema", schema)
    return config


async def run_migrations(db_url: str, schema: str | None = None) -> None:
    """Upgrade the calwatch tables to the branch head in a worker thread."""
    config = build_alembic_config(db_url, schema)
    logger.info("Upgrading database", extra={"branch": BRANCH, "schema": schema})
    await asyncio.to_thread(command.upgrade, config, f"{BRANCH}@head")
