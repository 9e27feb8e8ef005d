"""
core/database.py -- SQLAlchemy engine construction shared by every store.

Each repository owns its MetaData; make_engine() builds the engine for a URL
and creates that MetaData's tables. For SQLite the connection may be handed
between FastAPI threadpool workers, and every new connection is switched to
WAL journal mode.
"""

from __future__ import annotations

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, metadata: MetaData) -> Engine:
    connect_args: dict = {}
    is_sqlite = db_url.startswith("sqlite")
    if is_sqlite:
        # One pooled connection may serve several threads.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if is_sqlite:
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine
