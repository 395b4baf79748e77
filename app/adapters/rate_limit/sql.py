"""SQL counter store built on SQLAlchemy.

Supports both SQLite (local development, single host) and PostgreSQL
(shared across instances). Every counter mutation is a single conditional
statement so concurrent instances serialize on the database row:

    UPDATE rate_limits SET count = count + 1
    WHERE identifier = :identifier AND endpoint = :endpoint
      AND reset_time > :now
    RETURNING count, reset_time

Timestamps are stored as epoch milliseconds in a BIGINT column.
"""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import (
    BigInteger,
    Column,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from app.adapters.rate_limit.base import (
    AbstractCounterStore,
    IncrementMiss,
    WindowEntry,
    WindowKey,
)
from app.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

Base = declarative_base()


class RateLimitRow(Base):
    """One active quota window per (identifier, endpoint)."""

    __tablename__ = "rate_limits"
    __table_args__ = (
        UniqueConstraint("identifier", "endpoint", name="uq_rate_limits_identifier_endpoint"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String(255), nullable=False)
    endpoint = Column(String(64), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    reset_time = Column(BigInteger, nullable=False, index=True)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


# Writers on one SQLite file queue on its lock; waits of this order are routine
SQLITE_BUSY_TIMEOUT_MS = 5000


def create_store_engine(
    database_url: str,
    *,
    timeout_ms: int,
    sqlite_busy_timeout_ms: int = SQLITE_BUSY_TIMEOUT_MS,
) -> Engine:
    """Create a SQLAlchemy engine for the counter store.

    SQLite: WAL mode, check_same_thread=False and a busy timeout of at least
    sqlite_busy_timeout_ms. Every write takes the database-wide lock, so a
    short wait there is contention between healthy requests, not an outage.
    PostgreSQL: connection pooling with pre-ping, connect_timeout and a
    statement_timeout of timeout_ms.
    """
    timeout_s = timeout_ms / 1000

    if _is_sqlite(database_url):
        url = make_url(database_url)
        in_memory = url.database in (None, "", ":memory:")
        busy_ms = max(timeout_ms, sqlite_busy_timeout_ms)
        engine_kwargs: dict[str, object] = {
            "connect_args": {"check_same_thread": False, "timeout": busy_ms / 1000},
        }
        if in_memory:
            # One :memory: connection per thread would mean one database per thread
            engine_kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **engine_kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute(f"PRAGMA busy_timeout={int(busy_ms)}")
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        logger.info(
            "rate_limit.store_engine_created",
            extra={"dialect": "sqlite", "busy_timeout_ms": busy_ms, "in_memory": in_memory},
        )
        return engine

    connect_args: dict[str, object] = {}
    if database_url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(1, math.ceil(timeout_s)),
            "options": f"-c statement_timeout={int(timeout_ms)}",
        }

    engine = create_engine(
        database_url,
        pool_pre_ping=True,
        pool_timeout=timeout_s,
        connect_args=connect_args,
    )
    logger.info(
        "rate_limit.store_engine_created",
        extra={"dialect": engine.dialect.name, "timeout_ms": timeout_ms},
    )
    return engine


class SqlCounterStore(AbstractCounterStore):
    """Durable counter store on a relational table.

    The store is the source of truth shared by every instance. Callers are
    expected to keep their own process-local cache in front of it.
    """

    backend_name = "sql"

    def __init__(self, engine: Engine, *, timeout_ms: int = 50) -> None:
        self._engine = engine
        self._timeout_ms = timeout_ms

    @classmethod
    def from_url(
        cls,
        database_url: str,
        *,
        timeout_ms: int = 50,
        sqlite_busy_timeout_ms: int = SQLITE_BUSY_TIMEOUT_MS,
    ) -> "SqlCounterStore":
        engine = create_store_engine(
            database_url,
            timeout_ms=timeout_ms,
            sqlite_busy_timeout_ms=sqlite_busy_timeout_ms,
        )
        return cls(engine, timeout_ms=timeout_ms)

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def _store_errors(self, operation: str) -> Iterator[None]:
        """Translate driver, pool and timeout failures into StoreUnavailableError."""
        try:
            yield
        except SQLAlchemyError as exc:
            logger.warning(
                "rate_limit.store_error",
                extra={
                    "operation": operation,
                    "error_type": type(exc).__name__,
                    "timeout_ms": self._timeout_ms,
                },
            )
            raise StoreUnavailableError(
                code="store_unavailable",
                message="Rate limit store is unavailable",
                details={
                    "operation": operation,
                    "backend": self.backend_name,
                    "timeout_ms": self._timeout_ms,
                },
            ) from exc

    @staticmethod
    def _match(key: WindowKey):
        return (
            RateLimitRow.identifier == key.identifier,
            RateLimitRow.endpoint == key.endpoint,
        )

    def create_schema(self) -> None:
        with self._store_errors("create_schema"):
            Base.metadata.create_all(self._engine)

    def get(self, key: WindowKey) -> WindowEntry | None:
        stmt = select(RateLimitRow.count, RateLimitRow.reset_time).where(*self._match(key))
        with self._store_errors("get"):
            with self._engine.connect() as conn:
                row = conn.execute(stmt).first()
        if row is None:
            return None
        # Row.count is the tuple method, so unpack positionally
        count, reset_time = row
        return WindowEntry(count=count, window_reset_at=reset_time)

    def increment_if_window_valid(self, key: WindowKey, now: int) -> WindowEntry | IncrementMiss:
        stmt = (
            update(RateLimitRow)
            .where(*self._match(key), RateLimitRow.reset_time > now)
            .values(count=RateLimitRow.count + 1)
            .returning(RateLimitRow.count, RateLimitRow.reset_time)
        )
        existing = None
        with self._store_errors("increment_if_window_valid"):
            with self._engine.begin() as conn:
                row = conn.execute(stmt).first()
                if row is None:
                    existing = conn.execute(
                        select(RateLimitRow.reset_time).where(*self._match(key))
                    ).first()

        if row is not None:
            count, reset_time = row
            return WindowEntry(count=count, window_reset_at=reset_time)
        if existing is None:
            return IncrementMiss.ABSENT
        return IncrementMiss.EXPIRED

    def insert_if_absent(self, key: WindowKey, entry: WindowEntry) -> bool:
        stmt = insert(RateLimitRow).values(
            identifier=key.identifier,
            endpoint=key.endpoint,
            count=entry.count,
            reset_time=entry.window_reset_at,
        )
        with self._store_errors("insert_if_absent"):
            try:
                with self._engine.begin() as conn:
                    conn.execute(stmt)
            except IntegrityError:
                return False
        return True

    def replace_if_expired(self, key: WindowKey, entry: WindowEntry, now: int) -> bool:
        stmt = (
            update(RateLimitRow)
            .where(*self._match(key), RateLimitRow.reset_time <= now)
            .values(count=entry.count, reset_time=entry.window_reset_at)
        )
        with self._store_errors("replace_if_expired"):
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
        return result.rowcount == 1

    def delete(self, key: WindowKey) -> None:
        stmt = delete(RateLimitRow).where(*self._match(key))
        with self._store_errors("delete"):
            with self._engine.begin() as conn:
                conn.execute(stmt)

    def delete_expired_before(self, cutoff: int) -> int:
        stmt = delete(RateLimitRow).where(RateLimitRow.reset_time < cutoff)
        with self._store_errors("delete_expired_before"):
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
        return result.rowcount or 0

    def close(self) -> None:
        self._engine.dispose()
