"""
Database session management
"""
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from shopfloor.core.settings import settings
from shopfloor.exceptions import ConcurrencyError
from shopfloor.logging_config import get_logger

logger = get_logger(__name__)

# lock_not_available, deadlock_detected, serialization_failure
_RETRYABLE_SQLSTATES = {"55P03", "40P01", "40001"}


def enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let pysqlite honour SAVEPOINT (used for per-line BOM consumption).

    pysqlite issues its own BEGIN lazily, which breaks nested transactions;
    hand transaction control to SQLAlchemy instead.
    """

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@lru_cache
def get_engine() -> Engine:
    """Create the engine on first use."""
    connection_string = settings.database_url

    if settings.is_sqlite:
        engine = create_engine(
            connection_string,
            echo=settings.DEBUG,
            connect_args={"check_same_thread": False},
        )
        enable_sqlite_savepoints(engine)
    else:
        logger.info(
            f"Database connection: {settings.DB_HOST}:{settings.DB_PORT}/{settings.DB_NAME} (PostgreSQL)"
        )
        engine = create_engine(
            connection_string,
            echo=settings.DEBUG,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    return engine


@lru_cache
def get_session_factory() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def apply_lock_timeout(db: Session) -> None:
    """Bound row-lock waits for the current transaction (PostgreSQL only)."""
    if db.get_bind().dialect.name == "postgresql":
        db.execute(text(f"SET LOCAL lock_timeout = {int(settings.LOCK_TIMEOUT_MS)}"))


def _is_retryable(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig or exc).lower()


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """
    Run a block as one transaction: commit on success, roll back on any error.

    Lock timeouts, deadlocks and unique-key races are surfaced as
    ConcurrencyError so callers can retry.

    Usage:
        with unit_of_work(db):
            consume(db, request)
    """
    try:
        apply_lock_timeout(db)
        yield db
        db.commit()
    except OperationalError as e:
        db.rollback()
        if _is_retryable(e):
            logger.warning(f"Lock wait failed, transaction rolled back: {e.orig}")
            raise ConcurrencyError(details={"cause": str(e.orig)}) from e
        raise
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Concurrent write conflicted with an existing row: {e.orig}")
        raise ConcurrencyError(
            "Concurrent write conflicted with an existing record",
            details={"cause": str(e.orig)},
        ) from e
    except BaseException:
        db.rollback()
        raise


@contextmanager
def session_scope() -> Iterator[Session]:
    """Open a new session, run one unit of work, close it."""
    db = get_session_factory()()
    try:
        with unit_of_work(db):
            yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all tables (idempotent)."""
    from shopfloor.db.base import Base
    import shopfloor.models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
    logger.info("Database tables ready")
