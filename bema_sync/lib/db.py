"""
Database engine and session management using SQLAlchemy 2.x.

The engine and session factory are built once by the composition root
(``bema_sync.container``) and handed to services; nothing here creates
connections at import time.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Generator

from sqlalchemy import create_engine, event, Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase
from sqlalchemy.pool import StaticPool
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from bema_sync.lib.logging import get_logger


logger = get_logger(__name__)

SessionFactory = Callable[[], Session]

DEADLOCK_RETRY_ATTEMPTS = 3
DEADLOCK_RETRY_WAIT_SECONDS = 0.1


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite and MySQL DATETIME columns do not keep tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite gets a shared connection so in-memory databases survive across
    sessions and scheduler threads; server databases get a small pool.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=10,
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def session_scope(session_factory: SessionFactory) -> Generator[Session, None, None]:
    """
    Transactional scope around a series of operations.

    Usage:
        with session_scope(factory) as db:
            db.add(record)
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def is_deadlock(exc: BaseException) -> bool:
    """True for lock-wait conflicts reported by MySQL (1213/1205), Postgres or SQLite."""
    if not isinstance(exc, DBAPIError):
        return False
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in ("deadlock", "1213", "lock wait timeout", "database is locked"))


def _log_deadlock_retry(retry_state) -> None:
    logger.warning(
        "Deadlock detected, retrying statement",
        extra={"extra_fields": {"attempt": retry_state.attempt_number}},
    )


# Statement-level retry for deadlocks; chunk-level retries live in the batch processor
retry_on_deadlock = retry(
    stop=stop_after_attempt(DEADLOCK_RETRY_ATTEMPTS),
    wait=wait_fixed(DEADLOCK_RETRY_WAIT_SECONDS),
    retry=retry_if_exception(is_deadlock),
    before_sleep=_log_deadlock_retry,
    reraise=True,
)


def init_db(engine: Engine) -> None:
    """
    Create all tables.
    Should be called after all models are imported.
    """
    import bema_sync.models  # noqa: F401  (registers mappers)

    Base.metadata.create_all(bind=engine)


def drop_db(engine: Engine) -> None:
    """
    Drop all tables. Use with caution - for testing only.
    """
    Base.metadata.drop_all(bind=engine)
