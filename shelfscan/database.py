"""Database engine and session management using SQLModel.

Each catalog store owns its engine; there is no module-level engine.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine


def create_catalog_engine(db_path: Path) -> Engine:
    """SQLite engine with WAL, foreign keys and working SAVEPOINTs.

    pysqlite issues its own BEGIN lazily, which breaks nested transactions;
    the listeners hand transaction control back to SQLAlchemy.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # check_same_thread=False: scans commit from worker threads
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        # Catalog commits take the write lock up front; readers stay deferred.
        if conn.get_execution_options().get("sqlite_immediate"):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return engine


def init_db(engine: Engine) -> None:
    """Create database tables."""
    # Import models to ensure they are registered with SQLModel.metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def reset_database(engine: Engine) -> None:
    """Drop and recreate every catalog table."""
    from . import models  # noqa: F401

    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
