"""Startup migrations (`AUTO_MIGRATE`).

Replicas may start together; on PostgreSQL a session-level advisory lock
serializes `alembic upgrade head` so only one of them migrates at a time.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from alembic import command
from alembic.config import Config
from sqlalchemy import Engine, text
from sqlalchemy.exc import SQLAlchemyError

from .config import settings


logger = logging.getLogger("carbonwatch.migrations")

REPO_ROOT = Path(__file__).resolve().parents[2]

# Arbitrary but fixed; shared by every replica.
MIGRATION_LOCK_KEY = 0x43_57_4D_49_47  # "CWMIG"


def alembic_config(database_url: str) -> Config:
    cfg = Config(str(REPO_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(REPO_ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


@contextmanager
def migration_lock(engine: Engine) -> Iterator[None]:
    if engine.dialect.name != "postgresql":
        yield
        return

    with engine.connect() as conn:
        conn.execute(text("SELECT pg_advisory_lock(:key)"), {"key": MIGRATION_LOCK_KEY})
        conn.commit()
        logger.info("migration_lock_acquired")
        try:
            yield
        finally:
            try:
                conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": MIGRATION_LOCK_KEY})
                conn.commit()
            except SQLAlchemyError:
                # Closing the connection releases the lock anyway.
                logger.warning("migration_lock_release_failed")


def upgrade_head(*, engine: Engine, database_url: str | None = None) -> None:
    url = database_url or settings.database_url
    if not url:
        raise RuntimeError("DATABASE_URL is empty; cannot run migrations")

    with migration_lock(engine):
        command.upgrade(alembic_config(url), "head")
    logger.info("migrations_applied", extra={"fields": {"revision": "head"}})


def maybe_run_startup_migrations(*, engine: Engine) -> None:
    if not settings.auto_migrate:
        logger.info("migrations_skipped", extra={"fields": {"env": "AUTO_MIGRATE"}})
        return
    upgrade_head(engine=engine)
