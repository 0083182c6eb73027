"""Engine and session helpers shared by the categorizer and its migrations.

One engine is bound per process, from ``DATABASE_URL`` or an explicit
``database_url``. Mutating learning-loop operations and the decision applier
each open their own ``session_scope``; read helpers take a caller-owned
session instead.

Usage
-----
from db.client import session_scope

with session_scope() as session:
    session.get(Transaction, tx_id)
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

DATABASE_URL_ENV = "DATABASE_URL"

# Seconds a SQLite connection waits on a locked database file before failing.
_SQLITE_BUSY_TIMEOUT = 30


@dataclass(slots=True)
class _Binding:
    url: str
    engine: Engine
    factory: sessionmaker[Session]


_BINDING: _Binding | None = None


def _database_url(override: str | None = None) -> str:
    url = override or os.getenv(DATABASE_URL_ENV)
    if not url:
        raise RuntimeError(f"{DATABASE_URL_ENV} is not set; cannot initialize database client")
    return url


def _engine_options(url: str) -> dict[str, Any]:
    if make_url(url).get_backend_name() == "sqlite":
        # Batch writers share one file; wait for the lock rather than erroring.
        return {"connect_args": {"timeout": _SQLITE_BUSY_TIMEOUT}}
    return {"pool_pre_ping": True}


def get_engine(*, database_url: str | None = None) -> Engine:
    """Return the process engine, binding it to ``database_url`` on first use.

    A later call naming a different URL raises ``RuntimeError``; call
    :func:`dispose_engine` first to rebind.
    """

    global _BINDING
    url = _database_url(database_url)
    if _BINDING is None:
        engine = create_engine(url, **_engine_options(url))
        _BINDING = _Binding(
            url=url,
            engine=engine,
            factory=sessionmaker(bind=engine, expire_on_commit=False, class_=Session),
        )
        return engine
    if url != _BINDING.url:
        raise RuntimeError(
            "get_engine() already bound to a different database URL; "
            "call dispose_engine() before switching databases"
        )
    return _BINDING.engine


def get_session(*, database_url: str | None = None) -> Session:
    """Open a new session on the process engine. The caller closes it."""

    get_engine(database_url=database_url)
    assert _BINDING is not None
    return _BINDING.factory()


def dispose_engine() -> None:
    """Close pooled connections and forget the binding."""

    global _BINDING
    if _BINDING is not None:
        _BINDING.engine.dispose()
    _BINDING = None


@contextmanager
def session_scope(*, database_url: str | None = None) -> Iterator[Session]:
    """Session that commits on clean exit and rolls back on any exception."""

    session = get_session(database_url=database_url)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "DATABASE_URL_ENV",
    "dispose_engine",
    "get_engine",
    "get_session",
    "session_scope",
]
