import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import ReconciliationConflictError, StorageError

logger = logging.getLogger(__name__)

# Driver messages that mean "another writer got there first", not "the store is broken".
_CONFLICT_MARKERS = (
    "database is locked",
    "database table is locked",
    "could not serialize",
    "deadlock detected",
    "lock timeout",
    "could not obtain lock",
)


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        configure_sqlite(eng)
    return eng


def configure_sqlite(eng: Engine) -> Engine:
    event.listen(eng, "connect", _enable_sqlite_pragmas)
    event.listen(eng, "begin", _begin_sqlite_transaction)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    # pysqlite would otherwise defer BEGIN until the first write, letting the
    # read half of a read-modify-write run outside the transaction.
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute("PRAGMA busy_timeout=5000;")
    cursor.close()


def _begin_sqlite_transaction(conn):
    # Take the write lock up front; a deferred read lock cannot wait its turn
    # when it is later upgraded, it fails with "database is locked" instead.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def is_conflict(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        message = str(exc.orig).lower()
        return "unique" in message or "duplicate" in message
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower()
        return any(marker in message for marker in _CONFLICT_MARKERS)
    pgcode = getattr(exc.orig, "pgcode", None)
    return pgcode in {"40001", "40P01"}


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run a unit of work as one transaction on ``session``.

    Commits when the block exits cleanly; on any exception everything written
    inside the block is rolled back. Driver errors are translated into
    ``ReconciliationConflictError`` (retryable) or ``StorageError`` (fatal).
    """
    try:
        yield session
        session.commit()
    except DBAPIError as exc:
        session.rollback()
        if is_conflict(exc):
            raise ReconciliationConflictError(str(exc.orig)) from exc
        logger.error(f"storage_failure: error={exc.orig!r}")
        raise StorageError(str(exc.orig)) from exc
    except Exception:
        session.rollback()
        raise

