"""Data source fetching rows from a PostgreSQL query."""

from collections.abc import Awaitable, Callable
import logging
from typing import Any

import asyncpg

from query_operator.auth import DatabaseConnection
from query_operator.config import OperatorConfig
from query_operator.exceptions import SourceConnectionError, SourceQueryError
from query_operator.record import Record

from .base import DataSource, WriteBackPayload

__all__ = [
    "PostgresSource",
    "POSTGRES_TYPES",
]

_LOGGER = logging.getLogger(__name__)

POSTGRES_TYPES = ("", "postgres", "postgresql", "pgx")

Connector = Callable[..., Awaitable[Any]]


class PostgresSource(DataSource):
    """Runs a query over a connection opened for one cycle."""

    def __init__(
        self,
        connection: DatabaseConnection,
        query: str,
        config: OperatorConfig,
        connect: Connector = asyncpg.connect,
    ) -> None:
        self._connection = connection
        self._query = query
        self._config = config
        self._connect = connect
        self._conn: Any = None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        conn = self._connection
        _LOGGER.debug(
            "Connecting to database %s at %s:%s", conn.dbname, conn.host, conn.port
        )
        try:
            self._conn = await self._connect(
                host=conn.host,
                port=conn.port,
                user=conn.username,
                password=conn.password,
                database=conn.dbname,
                ssl=conn.sslmode,
                timeout=self._config.request_timeout,
            )
        except (OSError, TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as err:
            raise SourceConnectionError(
                f"Failed to connect to database {conn.dbname} at {conn.host}:{conn.port}: {err}"
            ) from err

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            await conn.close()
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as err:
            _LOGGER.warning("Error closing database connection: %s", err)

    async def fetch(self) -> list[Record]:
        """Run the query and return the rows in column order."""
        if self._conn is None:
            raise SourceConnectionError("Database source used outside of its context")
        try:
            rows = await self._conn.fetch(self._query, timeout=self._config.request_timeout)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, TimeoutError) as err:
            raise SourceQueryError(f"Failed to execute query: {err}") from err
        except OSError as err:
            raise SourceConnectionError(f"Database connection failed: {err}") from err
        records = [Record.from_pairs(list(row.items())) for row in rows]
        _LOGGER.debug("Query returned %d rows", len(records))
        return records

    async def execute(self, payload: WriteBackPayload) -> None:
        """Execute a rendered SQL statement."""
        if self._conn is None:
            raise SourceConnectionError("Database source used outside of its context")
        try:
            await self._conn.execute(payload.body, timeout=self._config.request_timeout)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, TimeoutError) as err:
            raise SourceQueryError(f"Failed to execute statement: {err}") from err
        except OSError as err:
            raise SourceConnectionError(f"Database connection failed: {err}") from err
