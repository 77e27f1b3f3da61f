"""Thin psycopg client used by the smoke test and the pytest fixtures."""

import contextlib
from collections.abc import AsyncGenerator, Generator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypedDict

import psycopg
from psycopg import AsyncConnection, Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool
from typing_extensions import NotRequired

from pgscope.exceptions import QueryError
from pgscope.utils.logging import get_logger

if TYPE_CHECKING:
    from psycopg.abc import Query

    from pgscope.descriptor import ConnectionTarget

__all__ = (
    "AsyncPostgresDriver",
    "PostgresConfig",
    "PostgresConnectionConfig",
    "PostgresDriver",
    "PostgresPoolConfig",
    "handle_database_exceptions",
)

logger = get_logger("driver")


class PostgresConnectionConfig(TypedDict, total=False):
    """Extra keyword arguments for ``psycopg.connect()``."""

    connect_timeout: NotRequired[int]
    """Connection timeout in seconds."""

    application_name: NotRequired[str]
    """Application name reported to the server."""

    autocommit: NotRequired[bool]
    """Enable autocommit mode."""

    options: NotRequired[str]
    """Command-line options to send to the server."""


class PostgresPoolConfig(TypedDict, total=False):
    """Settings for ``psycopg_pool.ConnectionPool``."""

    min_size: NotRequired[int]
    """Minimum number of connections in the pool."""

    max_size: NotRequired[int]
    """Maximum number of connections in the pool."""

    timeout: NotRequired[float]
    """Timeout for acquiring connections."""

    name: NotRequired[str]
    """Name of the connection pool."""


def _describe(sql: "Query") -> str:
    if isinstance(sql, (str, bytes)):
        return sql.decode() if isinstance(sql, bytes) else sql
    return repr(sql)


@contextlib.contextmanager
def handle_database_exceptions(sql: "Query | None" = None) -> Generator[None, None, None]:
    """Translate psycopg failures raised while executing a statement into :class:`QueryError`."""
    try:
        yield
    except psycopg.IntegrityError as e:
        msg = f"PostgreSQL integrity constraint violation: {e}"
        raise QueryError(msg, sql=_describe(sql) if sql is not None else None) from e
    except errors.SyntaxError as e:
        msg = f"PostgreSQL SQL syntax error: {e}"
        raise QueryError(msg, sql=_describe(sql) if sql is not None else None) from e
    except psycopg.OperationalError as e:
        msg = f"PostgreSQL operational error: {e}"
        raise QueryError(msg, sql=_describe(sql) if sql is not None else None) from e
    except psycopg.Error as e:
        msg = f"PostgreSQL error: {e}"
        raise QueryError(msg, sql=_describe(sql) if sql is not None else None) from e


class PostgresDriver:
    """Executes statements on one synchronous psycopg connection."""

    __slots__ = ("connection",)

    def __init__(self, connection: "Connection[Any]") -> None:
        self.connection = connection

    def execute(self, sql: "Query", parameters: Any = None) -> int:
        """Run a statement and return the number of rows it affected (``-1`` when not applicable)."""
        with handle_database_exceptions(sql), self.connection.cursor() as cursor:
            cursor.execute(sql, parameters)
            return cursor.rowcount

    def fetch_one(self, sql: "Query", parameters: Any = None) -> "dict[str, Any] | None":
        """Run a query and return its first row as a dict, or ``None`` when it returns no rows."""
        with handle_database_exceptions(sql), self.connection.cursor(row_factory=dict_row) as cursor:
            cursor.execute(sql, parameters)
            return cursor.fetchone()

    def fetch_value(self, sql: "Query", parameters: Any = None) -> Any:
        """Run a query and return the first column of its first row."""
        with handle_database_exceptions(sql), self.connection.cursor() as cursor:
            cursor.execute(sql, parameters)
            row = cursor.fetchone()
            return row[0] if row else None


class AsyncPostgresDriver:
    """Executes statements on one asynchronous psycopg connection."""

    __slots__ = ("connection",)

    def __init__(self, connection: "AsyncConnection[Any]") -> None:
        self.connection = connection

    async def execute(self, sql: "Query", parameters: Any = None) -> int:
        with handle_database_exceptions(sql):
            async with self.connection.cursor() as cursor:
                await cursor.execute(sql, parameters)
                return cursor.rowcount

    async def fetch_one(self, sql: "Query", parameters: Any = None) -> "dict[str, Any] | None":
        with handle_database_exceptions(sql):
            async with self.connection.cursor(row_factory=dict_row) as cursor:
                await cursor.execute(sql, parameters)
                return await cursor.fetchone()

    async def fetch_value(self, sql: "Query", parameters: Any = None) -> Any:
        with handle_database_exceptions(sql):
            async with self.connection.cursor() as cursor:
                await cursor.execute(sql, parameters)
                row = await cursor.fetchone()
                return row[0] if row else None


class PostgresConfig:
    """Connection factory for a :class:`ConnectionTarget`.

    Args:
        target: Where to connect.
        connection_config: Extra ``psycopg.connect()`` arguments. ``autocommit`` defaults to True.
        pool_config: Settings used by :meth:`provide_pool`.
    """

    def __init__(
        self,
        target: "ConnectionTarget",
        connection_config: "PostgresConnectionConfig | None" = None,
        pool_config: "PostgresPoolConfig | None" = None,
    ) -> None:
        self.target = target
        self.connection_config: PostgresConnectionConfig = {"autocommit": True, "connect_timeout": 10}
        self.connection_config.update(connection_config or {})
        self.pool_config: PostgresPoolConfig = {"min_size": 1, "max_size": 4}
        self.pool_config.update(pool_config or {})

    @property
    def connection_config_dict(self) -> dict[str, Any]:
        return {**self.target.connect_kwargs(), **self.connection_config}

    def create_connection(self) -> "Connection[Any]":
        """Open a single synchronous connection (not from a pool)."""
        with handle_database_exceptions():
            return psycopg.connect(**self.connection_config_dict)

    async def create_async_connection(self) -> "AsyncConnection[Any]":
        with handle_database_exceptions():
            return await psycopg.AsyncConnection.connect(**self.connection_config_dict)

    @contextlib.contextmanager
    def provide_connection(self) -> Generator["Connection[Any]", None, None]:
        conn = self.create_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextlib.contextmanager
    def provide_session(self) -> Generator[PostgresDriver, None, None]:
        """Provide a driver bound to a fresh connection that is closed on exit."""
        with self.provide_connection() as conn:
            yield PostgresDriver(conn)

    @contextlib.contextmanager
    def provide_pool(self) -> Generator[ConnectionPool, None, None]:
        """Open a connection pool for the target and close it on exit."""
        pool = ConnectionPool(
            self.target.url,
            kwargs=dict(self.connection_config),
            open=False,
            **self.pool_config,
        )
        logger.debug("Opening connection pool for %s:%d", self.target.host, self.target.port)
        with handle_database_exceptions():
            pool.open(wait=True)
        try:
            yield pool
        finally:
            pool.close()

    @asynccontextmanager
    async def provide_async_connection(self) -> AsyncGenerator["AsyncConnection[Any]", None]:
        conn = await self.create_async_connection()
        try:
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def provide_async_session(self) -> AsyncGenerator[AsyncPostgresDriver, None]:
        async with self.provide_async_connection() as conn:
            yield AsyncPostgresDriver(conn)
