"""Database bootstrap helpers.

The engine is built explicitly and handed to whoever needs it; nothing here
opens a connection at import time.
"""

import threading
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from givepay.common.config import CommonSettings
from givepay.common.errors import PoolSaturated


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def _on_sqlite_connect(dbapi_connection, _connection_record) -> None:
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT nests inside it.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_sqlite_begin(connection) -> None:
    connection.exec_driver_sql("BEGIN")


def build_engine(config: CommonSettings) -> Engine:
    """Create the process engine with bounded pool and query timeouts.

    PostgreSQL runs at READ COMMITTED with `statement_timeout` and
    `lock_timeout` set per connection, so a stuck commit surfaces as an error
    instead of holding the connection forever. SQLite is accepted for local
    runs and tests only.
    """

    url = make_url(config.database_url)
    if url.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        event.listen(engine, "connect", _on_sqlite_connect)
        event.listen(engine, "begin", _on_sqlite_begin)
        return engine

    connect_args = {}
    if url.get_backend_name() == "postgresql":
        connect_args["options"] = (
            f"-c statement_timeout={config.db_statement_timeout_ms} "
            f"-c lock_timeout={config.db_lock_timeout_ms}"
        )
    return create_engine(
        url,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_timeout=config.db_pool_timeout_seconds,
        pool_pre_ping=True,
        isolation_level="READ COMMITTED",
        connect_args=connect_args,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def ping(engine: Engine) -> None:
    """Round-trip `SELECT 1`; raises whatever the driver raises."""

    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


class ConnectionGate:
    """Admission control in front of the connection pool.

    Up to `capacity` units of work may hold or wait for a connection at once.
    Anything beyond that is rejected immediately with `PoolSaturated`.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("gate capacity must be positive")
        self.capacity = capacity
        self._slots = threading.BoundedSemaphore(capacity)

    @classmethod
    def from_settings(cls, config: CommonSettings) -> "ConnectionGate":
        return cls(config.db_pool_size + config.db_max_overflow + config.db_queue_limit)

    @contextmanager
    def admit(self):
        if not self._slots.acquire(blocking=False):
            raise PoolSaturated(f"connection queue full capacity={self.capacity}")
        try:
            yield
        finally:
            self._slots.release()
