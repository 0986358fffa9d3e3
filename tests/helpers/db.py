"""DB helpers for tests: bootstrap a temporary SQLite DB and seed cards."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

from db import Base
from db.client import get_engine, session_scope
from db.models.statements import FaCard
from sqlalchemy import event
from sqlalchemy import text as sql_text


def bootstrap_sqlite_db(db_file: Path, *, set_default_env: bool = False) -> str:
    """Create a SQLite database file, initialize schema, and return the URL.

    Using a file-backed SQLite DB ensures multiple SQLAlchemy connections share
    the same state (in-memory DBs are per-connection by default).
    """

    url = f"sqlite+pysqlite:///{db_file}"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(database_url=url)

    # Enforce FKs so statement rows must point at a stored card
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _):  # pragma: no cover - tiny bridge
        dbapi_conn.execute("PRAGMA foreign_keys = ON")

    Base.metadata.create_all(bind=engine)
    _assert_schema_in_sync(url)

    if set_default_env:
        os.environ.setdefault("DATABASE_URL", url)
    return url


def seed_card(
    *,
    database_url: str,
    card_id: str,
    name: str,
    bank: str | None,
    card_number: str | None,
    holder_name: str | None,
    current_balance: str | None = None,
    last_statement_date: str | None = None,
) -> None:
    now = datetime.now(UTC)
    with session_scope(database_url=database_url) as session:
        session.add(
            FaCard(
                id=card_id,
                name=name,
                bank=bank,
                card_number=card_number,
                holder_name=holder_name,
                current_balance=Decimal(current_balance) if current_balance is not None else None,
                last_statement_date=last_statement_date,
                created_at=now,
                updated_at=now,
            )
        )


def _assert_schema_in_sync(database_url: str) -> None:
    """Quick sanity check: ORM column sets match the SQLite tables."""

    with session_scope(database_url=database_url) as session:
        for table in Base.metadata.sorted_tables:
            rows = session.execute(sql_text(f"PRAGMA table_info('{table.name}')")).fetchall()
            got = {row[1] for row in rows}  # (cid, name, type, notnull, dflt_value, pk)
            expected = {c.name for c in table.columns}
            assert got == expected, f"{table.name} schema drift: {expected ^ got}"
