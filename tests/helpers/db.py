"""DB helpers for tests: bootstrap a temporary SQLite DB and seed engine rows."""

from __future__ import annotations

import os
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

from db import Base
from db.client import get_engine, session_scope
from db.models.categorizer import Transaction
from sqlalchemy import event
from sqlalchemy import text as sql_text

ORG = "00000000-0000-0000-0000-00000000a001"
OTHER_ORG = "00000000-0000-0000-0000-00000000b002"


def bootstrap_sqlite_db(db_file: Path, *, set_default_env: bool = False) -> str:
    """Create a SQLite database file, initialize schema, and return the URL.

    Using a file-backed SQLite DB ensures multiple SQLAlchemy connections share
    the same state (in-memory DBs are per-connection by default).
    """

    url = f"sqlite+pysqlite:///{db_file}"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(database_url=url)

    # Enforce FKs and provide a `now()` shim so server_default=now() works
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _):  # pragma: no cover - tiny bridge
        dbapi_conn.execute("PRAGMA foreign_keys = ON")
        dbapi_conn.create_function(
            "now", 0, lambda: datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S.%f")
        )

    Base.metadata.create_all(bind=engine)
    _assert_active_index_present(url)

    if set_default_env:
        os.environ.setdefault("DATABASE_URL", url)
    return url


def _assert_active_index_present(database_url: str) -> None:
    """The single-active-version guarantee relies on this partial unique index."""

    with session_scope(database_url=database_url) as session:
        rows = session.execute(sql_text("PRAGMA index_list('rule_versions')")).fetchall()
    names = {row[1] for row in rows}  # (seq, name, unique, origin, partial)
    assert "uq_rule_versions_active_key" in names, f"missing partial index; got {sorted(names)}"


def seed_transaction(
    database_url: str,
    *,
    org_id: str = ORG,
    amount_cents: str = "-2500",
    description: str = "",
    merchant_name: str | None = None,
    mcc: str | None = None,
    category_id: str | None = None,
    confidence: float | None = None,
    created_at: datetime | None = None,
    tx_date: date | None = None,
) -> str:
    """Insert one transaction row and return its id."""

    created = created_at or datetime.now(UTC)
    with session_scope(database_url=database_url) as session:
        tx = Transaction(
            org_id=org_id,
            date=tx_date or created.date(),
            amount_cents=amount_cents,
            description=description,
            merchant_name=merchant_name,
            mcc=mcc,
            category_id=category_id,
            confidence=confidence,
            created_at=created,
            updated_at=created,
        )
        session.add(tx)
        session.flush()
        return tx.id


def seed_history(
    database_url: str,
    *,
    count: int,
    category_id: str,
    age_days: int = 30,
    org_id: str = ORG,
    **fields,
) -> list[str]:
    """Seed ``count`` categorized transactions old enough for the canary holdout."""

    created = datetime.now(UTC) - timedelta(days=age_days)
    return [
        seed_transaction(
            database_url,
            org_id=org_id,
            category_id=category_id,
            created_at=created + timedelta(seconds=i),
            **fields,
        )
        for i in range(count)
    ]
