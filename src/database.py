# src/database.py
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from flask import g

from src.config import Config
from src.errors import StorageError

logger = logging.getLogger(__name__)

engine_kwargs = {
    "echo": Config.SQL_ECHO,
    "future": True,
    "pool_pre_ping": True,
}

_IS_SQLITE = Config.DATABASE_URL.startswith("sqlite")

if _IS_SQLITE:
    engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": Config.SQLITE_BUSY_TIMEOUT}
else:
    engine_kwargs["pool_size"] = Config.DB_POOL_SIZE
    engine_kwargs["max_overflow"] = Config.DB_MAX_OVERFLOW

engine = create_engine(Config.DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

Base = declarative_base()


if _IS_SQLITE:
    @event.listens_for(engine, "connect")
    def _configure_sqlite_connection(dbapi_connection, connection_record):
        # pysqlite would otherwise defer BEGIN until the first write
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        # Take the write lock up front so a read-then-write transaction
        # (balance check, then order insert) is serialized against others.
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_schema() -> None:
    """Create all tables registered on Base.metadata."""
    # models must be imported so their tables are registered
    import src.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def storage_guard(session, operation: str):
    """Roll back and re-raise data-access failures as StorageError."""
    try:
        yield session
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Storage failure during %s: %s", operation, exc)
        raise StorageError(f"Storage failure during {operation}") from exc


def get_db():
    if 'db' not in g:
        g.db = SessionLocal()
    return g.db


def close_db(e=None):
    try:
        db = g.pop('db', None)
        if db is not None:
            db.close()
    except RuntimeError:
        # Outside of an application context (test teardown)
        pass
