"""Engine creation for the relational backend."""

import logging
import math
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from .config import SqlConfiguration

LOGGER = logging.getLogger(__name__)


def server_connect_args(config: SqlConfiguration, backend: str) -> dict[str, Any]:
    """Driver arguments bounding connects and statements on a server database.

    PostgreSQL cancels a statement that outlives ``statement_timeout`` (lock
    waits included) with ``QueryCanceled``, which the driver reports as an
    operational error. MySQL drivers bound each socket read and write instead.
    """
    connect_timeout = math.ceil(config.connect_timeout_seconds)
    statement_timeout = math.ceil(config.statement_timeout_seconds)
    if backend == "postgresql":
        statement_ms = math.ceil(config.statement_timeout_seconds * 1000)
        return {
            "connect_timeout": connect_timeout,
            "options": f"-c statement_timeout={statement_ms}",
        }
    if backend == "mysql":
        return {
            "connect_timeout": connect_timeout,
            "read_timeout": statement_timeout,
            "write_timeout": statement_timeout,
        }
    return {"connect_timeout": connect_timeout}


def create_engine_from_config(config: SqlConfiguration) -> Engine:
    """Create the process-wide engine.

    On SQLite, foreign keys are switched on for every new connection (they
    are off by default), transactions are started explicitly so that DDL and
    DML roll back alike, and an in-memory database is held on a single
    shared connection so that every caller sees the same data.

    Raises:
        ConfigurationError: If the URL is missing or malformed.
    """
    url = config.connection_url()

    if url.get_backend_name() == "sqlite":
        kwargs = {}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(
            url,
            connect_args={
                "check_same_thread": False,
                "timeout": config.connect_timeout_seconds,
            },
            echo=config.echo,
            **kwargs,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            # Let SQLAlchemy emit BEGIN itself so DDL is transactional too.
            dbapi_conn.isolation_level = None

        @event.listens_for(engine, "begin")
        def begin_transaction(conn):
            conn.exec_driver_sql("BEGIN")

    else:
        engine = create_engine(
            url,
            pool_size=config.pool_size,
            pool_timeout=config.pool_timeout_seconds,
            pool_pre_ping=True,
            connect_args=server_connect_args(config, url.get_backend_name()),
            echo=config.echo,
        )

    LOGGER.info(
        "Created database engine",
        extra={"url": config.masked_url(), "dialect": engine.dialect.name},
    )
    return engine
