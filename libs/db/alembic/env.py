# ruff: noqa: I001
"""
Alembic environment for the categorizer schema.

``DATABASE_URL`` (after loading the nearest ``.env``) takes precedence over
``sqlalchemy.url`` in the ini file. SQLite targets run in batch mode so
column and constraint changes are emitted as table rebuilds.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from dotenv import find_dotenv, load_dotenv
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import make_url

from db import metadata as target_metadata
from db.client import DATABASE_URL_ENV

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(dotenv_path=_dotenv_path, override=False)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _resolve_url() -> str:
    url = os.getenv(DATABASE_URL_ENV) or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError(
            f"{DATABASE_URL_ENV} is not set. Export it, add it to .env, "
            "or set 'sqlalchemy.url' in alembic.ini."
        )
    return url


db_url = _resolve_url()
config.set_main_option("sqlalchemy.url", db_url)
render_as_batch = make_url(db_url).get_backend_name() == "sqlite"


def run_migrations_offline() -> None:
    """Emit SQL for ``db_url`` without connecting."""
    context.configure(
        url=db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_as_batch=render_as_batch,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a fresh, unpooled connection."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section) or {"sqlalchemy.url": db_url},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=render_as_batch,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
