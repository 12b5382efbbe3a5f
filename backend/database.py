"""
Database engine, session factory and transaction runner.

Every mutating operation runs as one unit of work through ``run_transaction``:
the unit is executed, committed, and on a serialization failure rolled back
and re-executed from the start. Logical errors (HTTP exceptions raised by
the unit) roll back and propagate without retry.
"""

import logging
from typing import Callable, Generator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

import config

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes PostgreSQL uses for serialization failure and deadlock
RETRYABLE_SQLSTATES = ("40001", "40P01")


def create_db_engine(url: str, **kwargs) -> Engine:
    """
    Create an engine for the given URL.

    SQLite engines get foreign key enforcement and open every transaction with
    ``BEGIN IMMEDIATE`` so concurrent writers are serialized by the database
    file lock. Other backends use the configured isolation level.
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        engine = create_engine(url, connect_args=connect_args, **kwargs)

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # Hand transaction control to the "begin" listener below
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        logger.debug(f"Created SQLite engine for {url}")
        return engine

    kwargs.setdefault("pool_pre_ping", True)
    kwargs.setdefault("isolation_level", config.DATABASE_ISOLATION_LEVEL)
    engine = create_engine(url, **kwargs)
    logger.debug(f"Created engine for {engine.url.render_as_string(hide_password=True)}")
    return engine


engine = create_db_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_serialization_failure(error: DBAPIError) -> bool:
    """
    Check whether a driver error means the transaction lost a concurrency race.

    Covers PostgreSQL serialization failures and deadlocks (psycopg2 exposes
    the SQLSTATE as ``pgcode``) and SQLite's busy/locked errors.
    """
    orig = getattr(error, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in RETRYABLE_SQLSTATES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "database is busy" in message


def run_transaction(db: Session, work: Callable[[], T], attempts: int = None) -> T:
    """
    Run ``work`` as a single transaction and commit it.

    Args:
        db: Session the unit operates on
        work: Callable performing authorization, mutation and audit on ``db``
        attempts: Override for TRANSACTION_RETRY_LIMIT

    Returns:
        Whatever ``work`` returns

    Raises:
        Any exception raised by ``work`` (after rollback), or the last
        serialization failure once retries are exhausted.

    Example:
        >>> task = run_transaction(db, lambda: create_task(db, group_id, payload))
    """
    limit = attempts or config.TRANSACTION_RETRY_LIMIT

    for attempt in range(1, limit + 1):
        try:
            result = work()
            db.commit()
            return result
        except DBAPIError as e:
            db.rollback()
            if is_serialization_failure(e) and attempt < limit:
                logger.warning(
                    f"⚠️  Serialization failure on attempt {attempt}/{limit}, retrying: {e.orig}"
                )
                continue
            raise
        except Exception:
            db.rollback()
            raise
