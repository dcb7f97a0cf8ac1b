# tasker_monitor/db/infra/core.py
import logging
from contextlib import contextmanager
from typing import Dict, Tuple

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import DBAPIError

from tasker_monitor.tasker_config import DatabaseConfig

logger = logging.getLogger(__name__)

# SQLAlchemy driver names per tasker driver
DRIVERNAMES = {
    "postgresql": "postgresql+psycopg2",
    "mysql": "mysql+pymysql",
    "sqlite": "sqlite",
}

# Fragments of driver error messages that mean "this table/view does not exist"
_MISSING_RELATION_MARKERS = (
    "does not exist",
    "no such table",
    "doesn't exist",
    "undefinedtable",
)

_engines: Dict[Tuple, Engine] = {}


class UnsupportedDriverError(ValueError):
    """Raised for a driver the monitor cannot talk to, or an operation a driver lacks."""


class MissingViewError(RuntimeError):
    """Raised when a queried view/table is absent from the tasker schema."""


class StatusQueryError(RuntimeError):
    """Raised when a status query fails for any reason other than a missing view."""


class TaskNotFoundError(LookupError):
    """Raised when a stage/task pair is not registered."""


def build_url(db: DatabaseConfig) -> URL:
    try:
        drivername = DRIVERNAMES[db.driver]
    except KeyError:
        raise UnsupportedDriverError(f"Unsupported driver: {db.driver!r}") from None

    if db.driver == "sqlite":
        return URL.create(drivername, database=db.dbname)

    return URL.create(
        drivername,
        username=db.user,
        password=db.password,
        host=db.host,
        port=db.port,
        database=db.dbname,
    )


def _enable_sqlite_foreign_keys(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def get_engine(db: DatabaseConfig) -> Engine:
    """
    Return a process-wide engine for the database configuration.
    Engines are pooled, so one per configuration is enough.
    """
    key = (db.driver, db.host, db.port, db.dbname, db.user, db.password)
    engine = _engines.get(key)
    if engine is not None:
        return engine

    logger.info("Creating database engine for %s", db.describe())
    engine = create_engine(build_url(db), pool_pre_ping=db.driver != "sqlite")
    if db.driver == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    _engines[key] = engine
    return engine


def dispose_engines() -> None:
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()


def is_missing_relation_error(exc: BaseException) -> bool:
    """True when a driver error reports a missing table or view."""
    original = exc.orig if isinstance(exc, DBAPIError) else exc
    text = f"{type(original).__name__} {original}".lower()
    return any(marker in text for marker in _MISSING_RELATION_MARKERS)


# -----------------------
# Connection helper
# -----------------------

@contextmanager
def get_conn(engine: Engine):
    conn = engine.connect()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
