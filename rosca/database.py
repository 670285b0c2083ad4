"""
Ledger database connection
rosca/database.py

The ledger is the only shared mutable resource of the engine, so every
coordination rule lives in how sessions and transactions are opened here.

SQLite: pysqlite's own transaction handling is disabled and every transaction
starts with BEGIN IMMEDIATE, so writers serialize and SAVEPOINT works.
PostgreSQL: row locks (SELECT ... FOR UPDATE) on the group row, see
services/ledger.py.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from rosca.config import DATABASE_URL, DB_ECHO, DB_POOL_SIZE

Base = declarative_base()


def _enable_sqlite_locking(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str = DATABASE_URL, echo: bool = DB_ECHO) -> Engine:
    """Create an engine with the locking discipline the ledger relies on."""
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _enable_sqlite_locking(engine)
        return engine

    return create_engine(
        url,
        echo=echo,
        pool_size=DB_POOL_SIZE,
        pool_pre_ping=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


engine = build_engine()
SessionLocal = build_session_factory(engine)


def init_db(bind: Engine = None) -> None:
    """Create every ledger table (idempotent)."""
    from rosca import models  # noqa: F401  (registers the tables)

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
