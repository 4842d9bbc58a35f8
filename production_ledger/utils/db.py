# utils/db.py - Engine construction and transactional units of work
import logging
import random
import time

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.pool import StaticPool

from ..exceptions import ConcurrencyConflict, PersistenceFailure
from .config import config

logger = logging.getLogger(__name__)

# Driver messages that mean "lost a race, try again"
_CONFLICT_MARKERS = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "could not serialize",
    "lock wait timeout",
)


def get_db_engine(url=None, settings=None):
    """Create the engine handle shared by all managers.

    SQLite connections run with foreign keys on and open every transaction
    with BEGIN IMMEDIATE so concurrent writers queue on the database lock.
    """
    settings = settings or config
    url = make_url(url or settings.database_url)

    if url.get_backend_name() != "sqlite":
        logger.info(f"Using database: {url.render_as_string(hide_password=True)}")
        return create_engine(url, echo=settings.sql_echo, pool_pre_ping=True)

    if url.database in (None, "", ":memory:"):
        engine = create_engine(
            url,
            echo=settings.sql_echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            url,
            echo=settings.sql_echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to the "begin" hook below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    logger.info(f"Using SQLite database: {url.database or ':memory:'}")
    return engine


def translate_db_error(exc):
    """Map a driver error onto ConcurrencyConflict or PersistenceFailure"""
    message = str(getattr(exc, "orig", None) or exc).lower()
    if any(marker in message for marker in _CONFLICT_MARKERS):
        return ConcurrencyConflict(f"Write conflict: {message}")
    return PersistenceFailure(f"Storage error: {message}")


def run_in_transaction(engine, fn, settings=None, conn=None):
    """Run ``fn(conn)`` as one unit of work and return its result.

    When ``conn`` is given the call joins the caller's transaction and is not
    retried here; the outermost unit of work owns the retry. Otherwise the
    whole unit is retried on ConcurrencyConflict with exponential backoff.
    """
    if conn is not None:
        return fn(conn)

    settings = settings or config
    attempts = max(1, settings.max_write_retries)

    for attempt in range(1, attempts + 1):
        try:
            with engine.begin() as tx_conn:
                return fn(tx_conn)
        except ConcurrencyConflict as e:
            error = e
        except DBAPIError as e:
            error = translate_db_error(e)
            if not isinstance(error, ConcurrencyConflict):
                logger.error(f"Database error: {e}")
                raise error from e

        if attempt == attempts:
            logger.error(f"Giving up after {attempts} attempts: {error}")
            raise error

        delay = settings.retry_backoff_seconds * (2 ** (attempt - 1))
        delay += random.uniform(0, settings.retry_backoff_seconds)
        logger.warning(f"Write conflict (attempt {attempt}/{attempts}), retrying in {delay:.3f}s")
        time.sleep(delay)
