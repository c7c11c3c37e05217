"""Alembic environment for the CarbonWatch schema.

DATABASE_URL wins over `sqlalchemy.url` so the same migrations run in
containers, CI and local SQLite checks.
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# `alembic` may be invoked from outside the repo root.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from carbonwatch.app.db import Base  # noqa: E402
import carbonwatch.app.models  # noqa: F401,E402

target_metadata = Base.metadata


def _database_url() -> str:
    for candidate in (os.getenv("DATABASE_URL"), config.get_main_option("sqlalchemy.url")):
        if candidate and candidate.strip():
            return candidate.strip()
    raise RuntimeError("set DATABASE_URL (or sqlalchemy.url in alembic.ini) before running migrations")


def _configure(**kwargs) -> None:
    # SQLite needs batch mode for ALTER TABLE in later revisions.
    context.configure(target_metadata=target_metadata, compare_type=True, render_as_batch=True, **kwargs)


if context.is_offline_mode():
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    section = dict(config.get_section(config.config_ini_section) or {})
    section["sqlalchemy.url"] = _database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
